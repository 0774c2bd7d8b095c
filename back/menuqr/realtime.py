"""Order events over Redis pub/sub, consumed by the live kitchen and customer views."""

import json
import logging
import time

import redis

from .settings import settings

logger = logging.getLogger(__name__)

# Redis client for pub/sub
redis_client: redis.Redis | None = None

# After a failed connection, skip reconnect attempts until this monotonic time
REDIS_RETRY_SECONDS = 30
_redis_retry_at = 0.0


def get_redis() -> redis.Redis | None:
    global redis_client, _redis_retry_at
    if not settings.redis_url:
        return None
    if redis_client is None:
        if time.monotonic() < _redis_retry_at:
            return None
        try:
            client = redis.from_url(settings.redis_url, socket_connect_timeout=2)
            client.ping()
            redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {settings.redis_url}: {e}; retrying in {REDIS_RETRY_SECONDS}s")
            redis_client = None
            _redis_retry_at = time.monotonic() + REDIS_RETRY_SECONDS
    return redis_client


def order_channels(restaurant_id: int, table_number: str | None = None) -> list[str]:
    """
    Channels an order event goes to:
    - orders:restaurant:{id} - restaurant staff (all orders)
    - orders:restaurant:{id}:table:{number} - customers seated at that table
    """
    channels = [f"orders:restaurant:{restaurant_id}"]
    if table_number:
        channels.append(f"orders:restaurant:{restaurant_id}:table:{table_number}")
    return channels


def publish_order_update(restaurant_id: int, order_data: dict, table_number: str | None = None) -> bool:
    """Publish an order event. Returns False when nothing was published."""
    r = get_redis()
    if r is None:
        return False
    payload = json.dumps(order_data, default=str)
    try:
        for channel in order_channels(restaurant_id, table_number):
            r.publish(channel, payload)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish order update for restaurant #{restaurant_id}: {e}")
        return False
    return True


def order_event(event_type: str, order) -> dict:
    return {
        "type": event_type,
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "delivery_type": order.delivery_type.value,
        "table_number": order.table_number,
    }
