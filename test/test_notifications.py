"""Email and Redis side channels; both must fail soft."""

import asyncio
import json
from decimal import Decimal

import aiosmtplib
import pytest

from menuqr import email_service, realtime
from menuqr.settings import settings


@pytest.fixture
def smtp_settings(monkeypatch):
    monkeypatch.setattr(settings, "smtp_user", "billing@menuqr.pk")
    monkeypatch.setattr(settings, "smtp_password", "app-password")
    monkeypatch.setattr(settings, "smtp_port", 587)


# ============ EMAIL ============

@pytest.mark.parametrize(
    "port,use_tls,expected",
    [
        (587, False, {"start_tls": True}),
        (465, True, {"use_tls": True}),
        (2525, False, {"start_tls": False}),
    ],
)
def test_tls_options(monkeypatch, port, use_tls, expected):
    monkeypatch.setattr(settings, "smtp_port", port)
    monkeypatch.setattr(settings, "smtp_use_tls", use_tls)
    assert email_service._tls_options() == expected


def test_build_message():
    message = email_service.build_message(
        "owner@karachigrill.pk", "Hello", "<p>Hi</p>", "Hi", from_email="ops@menuqr.pk", from_name="Ops"
    )
    assert message["To"] == "owner@karachigrill.pk"
    assert message["From"] == "Ops <ops@menuqr.pk>"
    assert [part.get_content_type() for part in message.get_payload()] == ["text/plain", "text/html"]


def test_send_email_without_credentials():
    assert email_service.smtp_configured() is False
    assert asyncio.run(email_service.send_email("a@b.pk", "s", "<p>x</p>")) is False


def test_low_balance_warning_is_sent(smtp_settings, monkeypatch):
    calls = []

    async def fake_send(message, **kwargs):
        calls.append((message, kwargs))

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    sent = asyncio.run(email_service.send_low_balance_warning(
        "owner@karachigrill.pk", "Karachi Grill", Decimal("2000.00"), Decimal("1500.00"), "PKR", 40
    ))

    assert sent is True
    message, kwargs = calls[0]
    assert message["Subject"] == "Low balance warning for Karachi Grill"
    assert kwargs["start_tls"] is True
    assert kwargs["username"] == "billing@menuqr.pk"


def test_smtp_failure_returns_false(smtp_settings, monkeypatch):
    async def failing_send(message, **kwargs):
        raise aiosmtplib.SMTPException("relay refused")

    monkeypatch.setattr(aiosmtplib, "send", failing_send)

    assert asyncio.run(email_service.send_suspension_notice("o@x.pk", "Karachi Grill", "Unpaid")) is False


# ============ REDIS ============

class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, payload):
        if self.fail:
            raise realtime.redis.ConnectionError("connection reset")
        self.published.append((channel, json.loads(payload)))


def test_order_channels():
    assert realtime.order_channels(3) == ["orders:restaurant:3"]
    assert realtime.order_channels(3, "12") == ["orders:restaurant:3", "orders:restaurant:3:table:12"]


def test_publish_is_skipped_without_redis():
    assert realtime.publish_order_update(3, {"type": "new_order"}, "12") is False


def test_publish_to_restaurant_and_table(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(realtime, "get_redis", lambda: fake)

    assert realtime.publish_order_update(3, {"type": "new_order", "order_id": 9}, "12") is True
    assert [channel for channel, _ in fake.published] == [
        "orders:restaurant:3",
        "orders:restaurant:3:table:12",
    ]
    assert fake.published[0][1]["order_id"] == 9


def test_publish_failure_is_reported(monkeypatch):
    monkeypatch.setattr(realtime, "get_redis", lambda: FakeRedis(fail=True))
    assert realtime.publish_order_update(3, {"type": "new_order"}) is False


def test_unreachable_redis_is_not_retried_on_every_publish(monkeypatch):
    attempts = []

    class DownRedis:
        def ping(self):
            raise realtime.redis.ConnectionError("connection refused")

    def from_url(url, **kwargs):
        attempts.append(url)
        return DownRedis()

    clock = {"now": 1000.0}
    monkeypatch.setattr(settings, "redis_url", "redis://redis.invalid:6379/0")
    monkeypatch.setattr(realtime, "redis_client", None)
    monkeypatch.setattr(realtime, "_redis_retry_at", 0.0)
    monkeypatch.setattr(realtime.redis, "from_url", from_url)
    monkeypatch.setattr(realtime.time, "monotonic", lambda: clock["now"])

    for _ in range(5):
        assert realtime.publish_order_update(3, {"type": "new_order"}) is False
    assert len(attempts) == 1

    clock["now"] += realtime.REDIS_RETRY_SECONDS + 1
    assert realtime.publish_order_update(3, {"type": "new_order"}) is False
    assert len(attempts) == 2


def test_suspension_notice_escapes_html(smtp_settings, monkeypatch):
    calls = []

    async def fake_send(message, **kwargs):
        calls.append(message)

    monkeypatch.setattr(aiosmtplib, "send", fake_send)

    asyncio.run(email_service.send_suspension_notice(
        "o@x.pk", "<b>Grill</b> & Co", "<script>alert(1)</script>"
    ))

    text_part, html_part = calls[0].get_payload()
    html_body = html_part.get_payload(decode=True).decode("utf-8")
    assert "&lt;b&gt;Grill&lt;/b&gt; &amp; Co" in html_body
    assert "&lt;script&gt;" in html_body
    assert "<script>" not in html_body
    assert "<b>Grill</b> & Co" in text_part.get_payload(decode=True).decode("utf-8")
