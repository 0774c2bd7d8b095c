"""
Order Service

Customer order placement and the order status lifecycle.

Lifecycle by delivery type:
- dine in:   pending -> confirmed -> preparing -> ready -> served -> completed
- takeaway:  pending -> confirmed -> preparing -> ready -> completed
- delivery:  ... -> ready -> out_for_delivery -> delivered -> completed
Cancellation is possible until the kitchen has finished (pending, confirmed,
preparing).
"""

import logging
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import func
from sqlmodel import Session, select

from .billing_service import as_utc, to_money
from .models import (
    DeliveryType,
    MenuCategory,
    MenuItem,
    MenuItemCreate,
    Order,
    OrderCreate,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    Restaurant,
    RestaurantStatus,
    StaffRole,
    SubscriptionPlan,
    utcnow,
)
from .qr_service import resolve_table
from .settings import settings

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATED_TIME = 15  # minutes
CUSTOMER_ORDER_HISTORY_LIMIT = 50

KITCHEN_STATUSES = (OrderStatus.confirmed, OrderStatus.preparing)
DELIVERY_STATUSES = (OrderStatus.ready, OrderStatus.out_for_delivery)
TERMINAL_STATUSES = (OrderStatus.completed, OrderStatus.cancelled)
CANCELLABLE_STATUSES = (OrderStatus.pending, OrderStatus.confirmed, OrderStatus.preparing)

# Forward step after "ready" depends on how the order leaves the kitchen
_AFTER_READY = {
    DeliveryType.dine_in: OrderStatus.served,
    DeliveryType.takeaway: OrderStatus.completed,
    DeliveryType.delivery: OrderStatus.out_for_delivery,
}


class OrderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def format_order_number(order_number: int) -> str:
    return f"ORD{order_number}"


# ============ STATE MACHINE ============

def next_order_status(status: OrderStatus, delivery_type: DeliveryType) -> OrderStatus | None:
    """The forward step from a status, or None when there is none."""
    if status == OrderStatus.pending:
        return OrderStatus.confirmed
    if status == OrderStatus.confirmed:
        return OrderStatus.preparing
    if status == OrderStatus.preparing:
        return OrderStatus.ready
    if status == OrderStatus.ready:
        return _AFTER_READY[delivery_type]
    if status == OrderStatus.served and delivery_type == DeliveryType.dine_in:
        return OrderStatus.completed
    if status == OrderStatus.out_for_delivery and delivery_type == DeliveryType.delivery:
        return OrderStatus.delivered
    if status == OrderStatus.delivered and delivery_type == DeliveryType.delivery:
        return OrderStatus.completed
    return None


def allowed_transitions(status: OrderStatus, delivery_type: DeliveryType) -> set[OrderStatus]:
    allowed = set()
    forward = next_order_status(status, delivery_type)
    if forward:
        allowed.add(forward)
    if status in CANCELLABLE_STATUSES:
        allowed.add(OrderStatus.cancelled)
    return allowed


def apply_transition(order: Order, new_status: OrderStatus, now: datetime | None = None) -> Order:
    """Move an order to a new status, enforcing the lifecycle."""
    current = OrderStatus(order.status)
    if current in TERMINAL_STATUSES:
        raise OrderError(f"Order is already {current.value}")
    if new_status not in allowed_transitions(current, DeliveryType(order.delivery_type)):
        raise OrderError(
            f"Cannot change order from {current.value} to {new_status.value} "
            f"for {DeliveryType(order.delivery_type).value} orders"
        )

    now = now or utcnow()
    order.status = new_status
    order.updated_at = now
    if new_status == OrderStatus.completed:
        order.completed_at = now
    elif new_status == OrderStatus.cancelled:
        order.cancelled_at = now
    return order


def get_restaurant_order(session: Session, restaurant_id: int, order_id: int) -> Order:
    order = session.exec(
        select(Order).where(Order.id == order_id, Order.restaurant_id == restaurant_id)
    ).first()
    if not order:
        raise OrderError("Order not found", 404)
    return order


def transition_order(
    session: Session,
    restaurant_id: int,
    order_id: int,
    new_status: OrderStatus,
    now: datetime | None = None,
) -> Order:
    order = get_restaurant_order(session, restaurant_id, order_id)
    previous = order.status
    apply_transition(order, new_status, now)
    session.add(order)
    session.commit()
    session.refresh(order)
    logger.info(f"Order #{order.id} {previous.value} -> {order.status.value}")
    return order


def can_staff_advance(order: Order, role: StaffRole) -> bool:
    """Chefs work the kitchen queue, delivery staff the delivery queue, owners everything."""
    if role == StaffRole.owner:
        return True
    if role == StaffRole.chef:
        return order.status in KITCHEN_STATUSES
    if role == StaffRole.delivery_boy:
        return order.delivery_type == DeliveryType.delivery and order.status in DELIVERY_STATUSES
    return False


def advance_order(
    session: Session,
    restaurant_id: int,
    order_id: int,
    now: datetime | None = None,
    role: StaffRole = StaffRole.owner,
) -> Order:
    """Move an order one step forward along its lifecycle."""
    order = get_restaurant_order(session, restaurant_id, order_id)
    role = StaffRole(role)
    if not can_staff_advance(order, role):
        raise OrderError(f"Staff with role {role.value} cannot advance an order that is {order.status.value}", 403)
    forward = next_order_status(order.status, order.delivery_type)
    if forward is None:
        raise OrderError(f"Order is already {order.status.value}")
    return transition_order(session, restaurant_id, order_id, forward, now)


def mark_order_paid(
    session: Session,
    restaurant_id: int,
    order_id: int,
    payment_method: str,
    now: datetime | None = None,
) -> Order:
    order = get_restaurant_order(session, restaurant_id, order_id)
    if order.status != OrderStatus.completed:
        raise OrderError(
            f"Order must be completed before marking as paid. Current status: {order.status.value}"
        )
    if order.payment_status == OrderPaymentStatus.paid:
        raise OrderError("Order is already paid")

    now = now or utcnow()
    order.payment_status = OrderPaymentStatus.paid
    order.payment_method = payment_method
    order.paid_at = now
    order.updated_at = now
    session.add(order)
    session.commit()
    session.refresh(order)
    return order


# ============ PLACEMENT ============

def next_order_number(session: Session, restaurant_id: int) -> int:
    last = session.exec(
        select(func.max(Order.order_number)).where(Order.restaurant_id == restaurant_id)
    ).one()
    return (last or 0) + 1


def get_active_restaurant_by_slug(session: Session, slug: str) -> Restaurant:
    restaurant = session.exec(select(Restaurant).where(Restaurant.slug == slug)).first()
    if not restaurant or restaurant.status != RestaurantStatus.active:
        raise OrderError("Restaurant not found or inactive", 404)
    return restaurant


def place_order(session: Session, restaurant: Restaurant, data: OrderCreate) -> Order:
    """
    Place a customer order.

    Prices come from the restaurant's menu, never from the client. A scanned
    table parameter makes it a dine-in order for that table.
    """
    if restaurant.status != RestaurantStatus.active:
        raise OrderError("Restaurant not found or inactive", 404)
    if not data.items:
        raise OrderError("Order must have at least one item")

    table_number = None
    if data.encoded_table:
        _, table, _ = resolve_table(session, data.encoded_table, restaurant.slug)
        table_number = table.table_number

    if table_number:
        delivery_type = DeliveryType.dine_in
    elif data.delivery_type and data.delivery_type != DeliveryType.dine_in:
        delivery_type = data.delivery_type
    else:
        delivery_type = DeliveryType.takeaway

    item_ids = {line.menu_item_id for line in data.items}
    menu_items = {
        item.id: item
        for item in session.exec(
            select(MenuItem).where(
                MenuItem.restaurant_id == restaurant.id,
                MenuItem.id.in_(item_ids),
            )
        ).all()
    }

    lines = []
    total = Decimal("0.00")
    prep_times = []
    for line in data.items:
        if line.quantity < 1:
            raise OrderError("Quantity must be at least 1")
        menu_item = menu_items.get(line.menu_item_id)
        if not menu_item:
            raise OrderError(f"Menu item {line.menu_item_id} not found")
        if not menu_item.is_available:
            raise OrderError(f"{menu_item.name} is currently unavailable")

        unit_price = to_money(menu_item.price)
        line_total = to_money(unit_price * line.quantity)
        total += line_total
        if menu_item.preparation_time:
            prep_times.append(menu_item.preparation_time)
        lines.append((menu_item, line, unit_price, line_total))

    plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
    order = Order(
        restaurant_id=restaurant.id,
        order_number=next_order_number(session, restaurant.id),
        customer_id=data.customer_id or f"customer_{uuid4().hex[:12]}",
        table_number=table_number,
        delivery_type=delivery_type,
        total_amount=to_money(total),
        currency=plan.currency if plan else settings.default_currency,
        notes=data.notes,
        estimated_time=max(prep_times) if prep_times else DEFAULT_ESTIMATED_TIME,
    )
    session.add(order)
    session.flush()

    for menu_item, line, unit_price, line_total in lines:
        session.add(OrderItem(
            order_id=order.id,
            menu_item_id=menu_item.id,
            name=menu_item.name,
            quantity=line.quantity,
            unit_price=unit_price,
            total_price=line_total,
            special_requests=line.special_requests,
        ))

    session.commit()
    session.refresh(order)
    logger.info(
        f"Order {format_order_number(order.order_number)} placed at restaurant #{restaurant.id} "
        f"({delivery_type.value}, table={table_number}, total={order.total_amount})"
    )
    return order


# ============ QUERIES ============

def serialize_order(session: Session, order: Order, restaurant: Restaurant | None = None) -> dict:
    items = session.exec(
        select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.id)
    ).all()
    data = {
        "id": order.id,
        "order_number": format_order_number(order.order_number),
        "status": order.status.value,
        "delivery_type": order.delivery_type.value,
        "table_number": order.table_number,
        "customer_id": order.customer_id,
        "total": to_money(order.total_amount),
        "currency": order.currency,
        "estimated_time": order.estimated_time,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status.value,
        "notes": order.notes,
        "created_at": as_utc(order.created_at),
        "updated_at": as_utc(order.updated_at),
        "completed_at": as_utc(order.completed_at),
        "cancelled_at": as_utc(order.cancelled_at),
        "items": [
            {
                "menu_item_id": item.menu_item_id,
                "name": item.name,
                "quantity": item.quantity,
                "price": to_money(item.unit_price),
                "total": to_money(item.total_price),
                "special_requests": item.special_requests,
            }
            for item in items
        ],
    }
    if restaurant:
        data["restaurant_name"] = restaurant.name
        data["restaurant_slug"] = restaurant.slug
    return data


def get_order_status(session: Session, order_id: int) -> dict:
    order = session.get(Order, order_id)
    if not order:
        raise OrderError("Order not found", 404)
    return {
        "success": True,
        "status": order.status.value,
        "estimated_time": order.estimated_time,
    }


def list_customer_orders(session: Session, customer_id: str, restaurant_slug: str | None = None) -> list[dict]:
    statement = (
        select(Order, Restaurant)
        .join(Restaurant, Order.restaurant_id == Restaurant.id)
        .where(Order.customer_id == customer_id)
    )
    if restaurant_slug:
        statement = statement.where(Restaurant.slug == restaurant_slug)
    rows = session.exec(
        statement.order_by(Order.created_at.desc(), Order.id.desc()).limit(CUSTOMER_ORDER_HISTORY_LIMIT)
    ).all()
    return [serialize_order(session, order, restaurant) for order, restaurant in rows]


def list_restaurant_orders(
    session: Session,
    restaurant_id: int,
    statuses: tuple[OrderStatus, ...] | None = None,
    delivery_type: DeliveryType | None = None,
    oldest_first: bool = False,
) -> list[dict]:
    statement = select(Order).where(Order.restaurant_id == restaurant_id)
    if statuses:
        statement = statement.where(Order.status.in_(statuses))
    if delivery_type:
        statement = statement.where(Order.delivery_type == delivery_type)
    if oldest_first:
        statement = statement.order_by(Order.created_at.asc(), Order.id.asc())
    else:
        statement = statement.order_by(Order.created_at.desc(), Order.id.desc())
    return [serialize_order(session, order) for order in session.exec(statement).all()]


def list_kitchen_orders(session: Session, restaurant_id: int) -> list[dict]:
    return list_restaurant_orders(session, restaurant_id, KITCHEN_STATUSES, oldest_first=True)


def list_delivery_orders(session: Session, restaurant_id: int) -> list[dict]:
    return list_restaurant_orders(
        session, restaurant_id, DELIVERY_STATUSES, DeliveryType.delivery, oldest_first=True
    )


# ============ MENU ============

def create_menu_item(session: Session, restaurant: Restaurant, data: MenuItemCreate) -> MenuItem:
    """Add a menu item, keeping within the plan's item limit."""
    plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
    if plan and plan.max_menu_items is not None:
        count = session.exec(
            select(func.count(MenuItem.id)).where(MenuItem.restaurant_id == restaurant.id)
        ).one()
        if count >= plan.max_menu_items:
            raise OrderError(
                f"Your {plan.name} plan allows up to {plan.max_menu_items} menu items. "
                "Upgrade your plan to add more."
            )
    if to_money(data.price) < 0:
        raise OrderError("Price cannot be negative")
    if data.category_id is not None:
        category = session.get(MenuCategory, data.category_id)
        if not category or category.restaurant_id != restaurant.id:
            raise OrderError("Category not found", 404)

    item = MenuItem(
        restaurant_id=restaurant.id,
        category_id=data.category_id,
        name=data.name.strip(),
        description=data.description,
        price=to_money(data.price),
        preparation_time=data.preparation_time,
        is_available=data.is_available,
    )
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


def get_public_menu(session: Session, restaurant: Restaurant) -> dict:
    """Available menu items grouped by category, as shown to customers."""
    categories = session.exec(
        select(MenuCategory)
        .where(MenuCategory.restaurant_id == restaurant.id)
        .order_by(MenuCategory.sort_order, MenuCategory.id)
    ).all()
    items = session.exec(
        select(MenuItem)
        .where(MenuItem.restaurant_id == restaurant.id, MenuItem.is_available == True)
        .order_by(MenuItem.id)
    ).all()

    def _item(item: MenuItem) -> dict:
        return {
            "id": item.id,
            "name": item.name,
            "description": item.description,
            "price": to_money(item.price),
            "preparation_time": item.preparation_time,
        }

    plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
    sections = [
        {
            "id": category.id,
            "name": category.name,
            "items": [_item(i) for i in items if i.category_id == category.id],
        }
        for category in categories
    ]
    known = {c.id for c in categories}
    uncategorized = [_item(i) for i in items if i.category_id not in known]
    if uncategorized:
        sections.append({"id": None, "name": "Other", "items": uncategorized})

    return {
        "restaurant": {"id": restaurant.id, "name": restaurant.name, "slug": restaurant.slug},
        "currency": plan.currency if plan else settings.default_currency,
        "categories": sections,
    }
