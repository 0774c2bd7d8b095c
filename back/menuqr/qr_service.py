"""
QR Service

Table QR codes: the signed table parameter embedded in menu URLs, QR image
rendering and validation of a customer's table scan.
"""

import logging
from datetime import datetime
from io import BytesIO

import qrcode
from qrcode.image.pil import PilImage
from jose import JWTError, jwt
from PIL import Image
from sqlalchemy import update
from sqlmodel import Session, SQLModel, select

from .models import (
    QRCode,
    QRCodeCreate,
    QRCodeUpdate,
    Restaurant,
    RestaurantStatus,
    RestaurantTable,
    utcnow,
)
from .settings import settings

logger = logging.getLogger(__name__)

TABLE_PARAM_TYPE = "table"
DEFAULT_TABLE_CAPACITY = 4

# Pixel width per size name: (download, preview)
QR_SIZES = {
    "small": (300, 150),
    "medium": (500, 200),
    "large": (700, 250),
}
QR_FORMATS = {
    "png": ("PNG", "image/png"),
    "jpg": ("JPEG", "image/jpeg"),
    "jpeg": ("JPEG", "image/jpeg"),
}


class TableScanError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class TableParam(SQLModel):
    restaurant_id: int
    table_number: str


class TableScanResult(SQLModel):
    success: bool = True
    table_number: str
    table_id: int | None
    restaurant_id: int
    restaurant_name: str
    qr_code_id: int
    message: str = "Valid QR code"


# ============ TABLE PARAMETER ============

def encode_table_param(restaurant_id: int, table_number: str | int) -> str:
    """Signed, URL-safe token identifying a restaurant table."""
    payload = {
        "typ": TABLE_PARAM_TYPE,
        "rid": restaurant_id,
        "tbl": str(table_number),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_table_param(encoded: str | None) -> TableParam | None:
    """Decode a table parameter; None if it is malformed or was tampered with."""
    if not encoded:
        return None
    try:
        payload = jwt.decode(encoded, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None

    restaurant_id = payload.get("rid")
    table_number = payload.get("tbl")
    if payload.get("typ") != TABLE_PARAM_TYPE or not isinstance(restaurant_id, int) or not table_number:
        return None
    return TableParam(restaurant_id=restaurant_id, table_number=str(table_number))


def build_menu_url(restaurant_slug: str, encoded_table: str | None = None) -> str:
    base_url = settings.public_base_url.rstrip("/")
    url = f"{base_url}/{restaurant_slug}"
    if encoded_table:
        url = f"{url}?table={encoded_table}"
    return url


# ============ IMAGES ============

def render_qr_image(
    data: str,
    size: str = "medium",
    fmt: str = "png",
    foreground_color: str = "#000000",
    background_color: str = "#ffffff",
    preview: bool = False,
) -> tuple[bytes, str]:
    """
    Render a QR code image.

    Returns:
        (image bytes, media type)
    """
    fmt = fmt.lower()
    if fmt not in QR_FORMATS:
        raise ValueError(f"Unsupported format: {fmt}. Allowed: {', '.join(QR_FORMATS)}")
    pil_format, media_type = QR_FORMATS[fmt]
    download_px, preview_px = QR_SIZES.get(size, QR_SIZES["medium"])
    pixels = preview_px if preview else download_px

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(image_factory=PilImage, fill_color=foreground_color, back_color=background_color)
    image = image.convert("RGB").resize((pixels, pixels), Image.Resampling.NEAREST)

    output = BytesIO()
    image.save(output, format=pil_format)
    return output.getvalue(), media_type


def render_qr_code(qr_code: QRCode, fmt: str = "png", preview: bool = False) -> tuple[bytes, str]:
    return render_qr_image(
        qr_code.menu_url,
        size=qr_code.size,
        fmt=fmt,
        foreground_color=qr_code.foreground_color,
        background_color=qr_code.background_color,
        preview=preview,
    )


# ============ QR CODE RECORDS ============

def find_active_table(session: Session, restaurant_id: int, table_number: str) -> RestaurantTable | None:
    return session.exec(
        select(RestaurantTable).where(
            RestaurantTable.restaurant_id == restaurant_id,
            RestaurantTable.table_number == table_number,
            RestaurantTable.is_active == True,
        )
    ).first()


def find_active_qr_code(session: Session, table_id: int, exclude_id: int | None = None) -> QRCode | None:
    statement = select(QRCode).where(QRCode.table_id == table_id, QRCode.is_active == True)
    if exclude_id is not None:
        statement = statement.where(QRCode.id != exclude_id)
    return session.exec(statement).first()


def ensure_single_active_qr_code(
    session: Session,
    table: RestaurantTable,
    exclude_id: int | None = None,
) -> None:
    """A table has at most one active QR code."""
    if find_active_qr_code(session, table.id, exclude_id):
        raise TableScanError(f"Table {table.table_number} already has an active QR code", 400)


def ensure_table_can_be_renamed(session: Session, table: RestaurantTable, new_number: str) -> None:
    # Printed codes carry the table number in their signed parameter
    if new_number != table.table_number and find_active_qr_code(session, table.id):
        raise TableScanError(
            f"Table {table.table_number} has an active QR code. Deactivate it before renaming the table.",
            400,
        )


def create_qr_code(session: Session, restaurant: Restaurant, data: QRCodeCreate) -> QRCode:
    """
    Create a QR code for a table (created on the fly if missing) or, without
    a table number, for the restaurant's main menu.
    """
    table = None
    encoded_table = None
    if data.table_number:
        table_number = str(data.table_number).strip()
        table = find_active_table(session, restaurant.id, table_number)
        if table:
            ensure_single_active_qr_code(session, table)
        else:
            table = RestaurantTable(
                restaurant_id=restaurant.id,
                table_number=table_number,
                capacity=DEFAULT_TABLE_CAPACITY,
            )
            session.add(table)
            session.flush()
        encoded_table = encode_table_param(restaurant.id, table_number)

    qr_code = QRCode(
        restaurant_id=restaurant.id,
        table_id=table.id if table else None,
        menu_url=build_menu_url(restaurant.slug, encoded_table),
        style=data.style or "classic",
        size=data.size or "medium",
        foreground_color=data.foreground_color or "#000000",
        background_color=data.background_color or "#ffffff",
    )
    session.add(qr_code)
    session.commit()
    session.refresh(qr_code)
    logger.info(f"QR code #{qr_code.id} created for restaurant #{restaurant.id} (table={data.table_number})")
    return qr_code


def update_qr_code(session: Session, qr_code: QRCode, data: QRCodeUpdate) -> QRCode:
    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("size") and update_data["size"] not in QR_SIZES:
        raise TableScanError("Size must be small, medium or large", 400)
    if update_data.get("is_active") and not qr_code.is_active and qr_code.table_id is not None:
        table = session.get(RestaurantTable, qr_code.table_id)
        ensure_single_active_qr_code(session, table, exclude_id=qr_code.id)

    for key, value in update_data.items():
        if value is not None:
            setattr(qr_code, key, value)
    session.add(qr_code)
    session.commit()
    session.refresh(qr_code)
    return qr_code


def list_qr_codes(session: Session, restaurant_id: int) -> list[dict]:
    rows = session.exec(
        select(QRCode, RestaurantTable)
        .join(RestaurantTable, QRCode.table_id == RestaurantTable.id, isouter=True)
        .where(QRCode.restaurant_id == restaurant_id)
        .order_by(QRCode.created_at.desc(), QRCode.id.desc())
    ).all()

    result = []
    for qr_code, table in rows:
        result.append({
            "id": qr_code.id,
            "name": f"Table {table.table_number} QR" if table else "Main Menu QR",
            "type": "table" if table else "menu",
            "table_number": table.table_number if table else None,
            "url": qr_code.menu_url,
            "scans": qr_code.scans_count,
            "last_scanned": qr_code.last_scanned,
            "is_active": qr_code.is_active,
            "created_at": qr_code.created_at,
        })
    return result


# ============ TABLE SCAN ============

def resolve_table(
    session: Session,
    encoded_table: str | None,
    restaurant_slug: str | None,
) -> tuple[Restaurant, RestaurantTable, QRCode]:
    """Check that a scanned table parameter points at an active table QR code."""
    if not encoded_table or not restaurant_slug:
        raise TableScanError("Encoded table parameter and restaurant slug are required", 400)

    decoded = decode_table_param(encoded_table)
    if not decoded:
        raise TableScanError("Invalid or corrupted table parameter", 400)

    restaurant = session.exec(
        select(Restaurant).where(
            Restaurant.id == decoded.restaurant_id,
            Restaurant.slug == restaurant_slug,
            Restaurant.status == RestaurantStatus.active,
        )
    ).first()
    if not restaurant:
        raise TableScanError("Restaurant not found or inactive", 404)

    row = session.exec(
        select(QRCode, RestaurantTable)
        .join(RestaurantTable, QRCode.table_id == RestaurantTable.id)
        .where(
            QRCode.restaurant_id == restaurant.id,
            RestaurantTable.table_number == decoded.table_number,
        )
        .order_by(QRCode.is_active.desc(), QRCode.id.desc())
    ).first()
    if not row:
        raise TableScanError("QR code not found for this table", 404)

    qr_code, table = row
    if not qr_code.is_active or not table.is_active:
        raise TableScanError("This QR code has been deactivated", 403)
    return restaurant, table, qr_code


def validate_table_scan(
    session: Session,
    encoded_table: str | None,
    restaurant_slug: str | None,
    now: datetime | None = None,
) -> TableScanResult:
    """Validate a customer's table scan and count it."""
    restaurant, table, qr_code = resolve_table(session, encoded_table, restaurant_slug)

    session.execute(
        update(QRCode)
        .where(QRCode.id == qr_code.id)
        .values(scans_count=QRCode.scans_count + 1, last_scanned=now or utcnow())
    )
    session.commit()
    logger.info(f"Table {table.table_number} scanned at restaurant #{restaurant.id} (QR #{qr_code.id})")

    return TableScanResult(
        table_number=table.table_number,
        table_id=table.id,
        restaurant_id=restaurant.id,
        restaurant_name=restaurant.name,
        qr_code_id=qr_code.id,
    )
