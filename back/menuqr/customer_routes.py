from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from . import models, order_service, qr_service, realtime
from .db import get_session
from .order_service import OrderError
from .qr_service import TableScanError

router = APIRouter(prefix="/customer", tags=["customer"])


@router.post("/validate-table")
def validate_table(
    scan: models.TableScanRequest,
    session: Session = Depends(get_session),
) -> qr_service.TableScanResult:
    """Validate a scanned table QR code before the customer starts ordering."""
    try:
        return qr_service.validate_table_scan(session, scan.encoded_table, scan.restaurant_slug)
    except TableScanError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/orders")
def list_orders(
    customer_id: str,
    restaurant_slug: str | None = None,
    session: Session = Depends(get_session),
) -> dict:
    orders = order_service.list_customer_orders(session, customer_id, restaurant_slug)
    return {"success": True, "orders": orders}


@router.get("/orders/{order_id}/status")
def get_order_status(
    order_id: int,
    session: Session = Depends(get_session),
) -> dict:
    try:
        return order_service.get_order_status(session, order_id)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/{slug}/menu")
def get_menu(
    slug: str,
    session: Session = Depends(get_session),
) -> dict:
    try:
        restaurant = order_service.get_active_restaurant_by_slug(session, slug)
    except OrderError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return order_service.get_public_menu(session, restaurant)


@router.post("/{slug}/orders", status_code=201)
def place_order(
    slug: str,
    order_create: models.OrderCreate,
    session: Session = Depends(get_session),
) -> dict:
    try:
        restaurant = order_service.get_active_restaurant_by_slug(session, slug)
        order = order_service.place_order(session, restaurant, order_create)
    except (OrderError, TableScanError) as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    realtime.publish_order_update(
        restaurant.id, realtime.order_event("new_order", order), order.table_number
    )
    return {
        "success": True,
        "message": "Order placed successfully",
        "order": order_service.serialize_order(session, order, restaurant),
    }
