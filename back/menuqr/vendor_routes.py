from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from sqlmodel import Session, select

from . import billing_service, models, order_service, qr_service, realtime
from .billing_service import BillingError, to_money
from .db import get_session
from .models import (
    MenuCategory,
    MenuItem,
    OrderStatus,
    QRCode,
    Restaurant,
    RestaurantTable,
    SubscriptionPlan,
)
from .order_service import OrderError
from .pdf_generator import generate_account_statement_pdf
from .permissions import VendorPermissions
from .qr_service import TableScanError
from .security import RestaurantPermissionChecker, get_current_restaurant, get_current_user

router = APIRouter(prefix="/vendor", tags=["vendor"])

CurrentRestaurant = Annotated[Restaurant, Depends(get_current_restaurant)]
OrdersRestaurant = Annotated[Restaurant, Depends(RestaurantPermissionChecker(VendorPermissions.ORDERS_MANAGE))]
KitchenRestaurant = Annotated[Restaurant, Depends(RestaurantPermissionChecker(VendorPermissions.KITCHEN_READ))]
DeliveryRestaurant = Annotated[Restaurant, Depends(RestaurantPermissionChecker(VendorPermissions.DELIVERY_READ))]
AdvanceRestaurant = Annotated[Restaurant, Depends(RestaurantPermissionChecker(VendorPermissions.ORDERS_ADVANCE))]


def _publish(event_type: str, order: models.Order) -> None:
    realtime.publish_order_update(
        order.restaurant_id, realtime.order_event(event_type, order), order.table_number
    )


# ============ ACCOUNT & BILLING ============

@router.get("/account")
def get_account(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> dict:
    return billing_service.account_summary(session, restaurant)


@router.get("/payment-history")
def get_payment_history(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[models.PaymentHistory]:
    return billing_service.list_payment_history(session, restaurant.id)


@router.get("/statement.pdf")
def download_statement(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
):
    """Account statement as a PDF."""
    summary = billing_service.account_summary(session, restaurant)
    entries = [
        {
            "created_at": billing_service.as_utc(entry.created_at),
            "type": entry.type.value,
            "description": entry.description,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "status": entry.status.value,
        }
        for entry in billing_service.list_payment_history(session, restaurant.id)
    ]
    restaurant_data = {
        "name": restaurant.name,
        "owner_name": restaurant.owner_name,
        "owner_email": restaurant.owner_email,
        "plan_name": summary["plan"]["name"] if summary["plan"] else None,
        "status": summary["status"],
        "account_balance": summary["account_balance"],
        "plan_expiry_date": summary["plan_expiry_date"],
        "next_billing_date": summary["next_billing_date"],
    }
    pdf_buffer = generate_account_statement_pdf(restaurant_data, entries, summary["currency"])
    filename = f"statement-{restaurant.slug}.pdf"
    return StreamingResponse(
        pdf_buffer,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/payment-requests")
def list_payment_requests(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[models.PaymentRequest]:
    return session.exec(
        select(models.PaymentRequest)
        .where(models.PaymentRequest.restaurant_id == restaurant.id)
        .order_by(models.PaymentRequest.created_at.desc(), models.PaymentRequest.id.desc())
    ).all()


@router.post("/payment-requests", status_code=201)
def create_payment_request(
    request_create: models.PaymentRequestCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> models.PaymentRequest:
    try:
        return billing_service.submit_payment_request(session, restaurant, request_create)
    except BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/plans")
def list_available_plans(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[SubscriptionPlan]:
    return session.exec(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active == True)
        .order_by(SubscriptionPlan.price)
    ).all()


@router.get("/plan-upgrade/quote")
def quote_plan_upgrade(
    restaurant: CurrentRestaurant,
    new_plan_id: int,
    session: Session = Depends(get_session),
) -> billing_service.PlanUpgradeQuote:
    try:
        new_plan = billing_service.get_plan_for_upgrade(session, restaurant, new_plan_id)
    except BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return billing_service.quote_plan_upgrade(session, restaurant, new_plan)


@router.post("/plan-upgrade")
def upgrade_plan(
    upgrade_create: models.VendorPlanUpgradeCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> dict:
    try:
        upgrade, new_balance = billing_service.upgrade_plan(session, restaurant.id, upgrade_create.new_plan_id)
    except BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "success": True,
        "message": "Plan upgraded successfully",
        "upgrade": upgrade,
        "new_balance": new_balance,
    }


# ============ TABLES ============

@router.get("/tables")
def list_tables(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[RestaurantTable]:
    return session.exec(
        select(RestaurantTable)
        .where(RestaurantTable.restaurant_id == restaurant.id)
        .order_by(RestaurantTable.id)
    ).all()


@router.post("/tables", status_code=201)
def create_table(
    table_create: models.TableCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> RestaurantTable:
    table_number = table_create.table_number.strip()
    if not table_number:
        raise HTTPException(status_code=400, detail="Table number is required")
    if qr_service.find_active_table(session, restaurant.id, table_number):
        raise HTTPException(status_code=400, detail=f"Table {table_number} already exists")

    table = RestaurantTable(
        restaurant_id=restaurant.id,
        table_number=table_number,
        capacity=table_create.capacity,
        location=table_create.location,
        special_notes=table_create.special_notes,
    )
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@router.put("/tables/{table_id}")
def update_table(
    table_id: int,
    table_update: models.TableUpdate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> RestaurantTable:
    table = session.get(RestaurantTable, table_id)
    if not table or table.restaurant_id != restaurant.id:
        raise HTTPException(status_code=404, detail="Table not found")

    table_data = table_update.model_dump(exclude_unset=True)
    if "table_number" in table_data:
        table_data["table_number"] = (table_data["table_number"] or "").strip()
        if not table_data["table_number"]:
            raise HTTPException(status_code=400, detail="Table number is required")
        duplicate = qr_service.find_active_table(session, restaurant.id, table_data["table_number"])
        if duplicate and duplicate.id != table.id:
            raise HTTPException(status_code=400, detail=f"Table {table_data['table_number']} already exists")
        try:
            qr_service.ensure_table_can_be_renamed(session, table, table_data["table_number"])
        except TableScanError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)
    for key, value in table_data.items():
        setattr(table, key, value)

    session.add(table)
    session.commit()
    session.refresh(table)
    return table


# ============ QR CODES ============

@router.get("/qr-codes")
def list_qr_codes(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[dict]:
    return qr_service.list_qr_codes(session, restaurant.id)


@router.post("/qr-codes", status_code=201)
def create_qr_code(
    qr_create: models.QRCodeCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> QRCode:
    if qr_create.size and qr_create.size not in qr_service.QR_SIZES:
        raise HTTPException(status_code=400, detail="Size must be small, medium or large")
    try:
        return qr_service.create_qr_code(session, restaurant, qr_create)
    except TableScanError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


def _get_restaurant_qr_code(session: Session, restaurant: Restaurant, qr_code_id: int) -> QRCode:
    qr_code = session.get(QRCode, qr_code_id)
    if not qr_code or qr_code.restaurant_id != restaurant.id:
        raise HTTPException(status_code=404, detail="QR code not found")
    return qr_code


@router.put("/qr-codes/{qr_code_id}")
def update_qr_code(
    qr_code_id: int,
    qr_update: models.QRCodeUpdate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> QRCode:
    qr_code = _get_restaurant_qr_code(session, restaurant, qr_code_id)
    try:
        return qr_service.update_qr_code(session, qr_code, qr_update)
    except TableScanError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/qr-codes/{qr_code_id}/image")
def get_qr_code_image(
    qr_code_id: int,
    restaurant: CurrentRestaurant,
    format: str = "png",
    preview: bool = False,
    session: Session = Depends(get_session),
):
    """QR code image for download (or a small preview)."""
    qr_code = _get_restaurant_qr_code(session, restaurant, qr_code_id)
    try:
        image_bytes, media_type = qr_service.render_qr_code(qr_code, format, preview)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    extension = "jpg" if media_type == "image/jpeg" else "png"
    headers = {}
    if not preview:
        headers["Content-Disposition"] = f'attachment; filename="qr-{qr_code.id}.{extension}"'
    return Response(content=image_bytes, media_type=media_type, headers=headers)


# ============ MENU ============

@router.get("/menu/categories")
def list_menu_categories(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[MenuCategory]:
    return session.exec(
        select(MenuCategory)
        .where(MenuCategory.restaurant_id == restaurant.id)
        .order_by(MenuCategory.sort_order, MenuCategory.id)
    ).all()


@router.post("/menu/categories", status_code=201)
def create_menu_category(
    category_create: models.MenuCategoryCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> MenuCategory:
    category = MenuCategory(
        restaurant_id=restaurant.id,
        name=category_create.name,
        sort_order=category_create.sort_order or 0,
    )
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


@router.get("/menu/items")
def list_menu_items(
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> list[MenuItem]:
    return session.exec(
        select(MenuItem).where(MenuItem.restaurant_id == restaurant.id).order_by(MenuItem.id)
    ).all()


@router.post("/menu/items", status_code=201)
def create_menu_item(
    item_create: models.MenuItemCreate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> MenuItem:
    try:
        return order_service.create_menu_item(session, restaurant, item_create)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/menu/items/{item_id}")
def update_menu_item(
    item_id: int,
    item_update: models.MenuItemUpdate,
    restaurant: CurrentRestaurant,
    session: Session = Depends(get_session),
) -> MenuItem:
    item = session.get(MenuItem, item_id)
    if not item or item.restaurant_id != restaurant.id:
        raise HTTPException(status_code=404, detail="Menu item not found")

    item_data = item_update.model_dump(exclude_unset=True)
    if item_data.get("price") is not None:
        if item_data["price"] < 0:
            raise HTTPException(status_code=400, detail="Price cannot be negative")
        item_data["price"] = to_money(item_data["price"])
    for key, value in item_data.items():
        setattr(item, key, value)

    session.add(item)
    session.commit()
    session.refresh(item)
    return item


# ============ ORDERS ============

@router.get("/orders")
def list_orders(
    restaurant: OrdersRestaurant,
    status: list[OrderStatus] | None = Query(default=None),
    session: Session = Depends(get_session),
) -> list[dict]:
    return order_service.list_restaurant_orders(
        session, restaurant.id, tuple(status) if status else None
    )


@router.get("/orders/kitchen")
def list_kitchen_orders(
    restaurant: KitchenRestaurant,
    session: Session = Depends(get_session),
) -> list[dict]:
    return order_service.list_kitchen_orders(session, restaurant.id)


@router.get("/orders/delivery")
def list_delivery_orders(
    restaurant: DeliveryRestaurant,
    session: Session = Depends(get_session),
) -> list[dict]:
    return order_service.list_delivery_orders(session, restaurant.id)


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    restaurant: OrdersRestaurant,
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.get_restaurant_order(session, restaurant.id, order_id)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return order_service.serialize_order(session, order)


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    restaurant: OrdersRestaurant,
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.transition_order(session, restaurant.id, order_id, status_update.status)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    _publish("status_changed", order)
    return order_service.serialize_order(session, order)


@router.post("/orders/{order_id}/advance")
def advance_order(
    order_id: int,
    restaurant: AdvanceRestaurant,
    current_user: Annotated[models.User, Depends(get_current_user)],
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.advance_order(session, restaurant.id, order_id, role=current_user.role)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    _publish("status_changed", order)
    return order_service.serialize_order(session, order)


@router.put("/orders/{order_id}/mark-paid")
def mark_order_paid(
    order_id: int,
    mark_paid: models.OrderMarkPaid,
    restaurant: OrdersRestaurant,
    session: Session = Depends(get_session),
) -> dict:
    try:
        order = order_service.mark_order_paid(session, restaurant.id, order_id, mark_paid.payment_method)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    _publish("order_paid", order)
    return order_service.serialize_order(session, order)
