from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Numeric
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RestaurantStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class StaffRole(str, Enum):
    owner = "owner"
    chef = "chef"
    delivery_boy = "delivery_boy"


class AdminRole(str, Enum):
    super_admin = "super_admin"
    admin = "admin"
    support = "support"


class DeliveryType(str, Enum):
    dine_in = "dine_in"
    takeaway = "takeaway"
    delivery = "delivery"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    served = "served"  # dine in only
    out_for_delivery = "out_for_delivery"  # delivery only
    delivered = "delivered"  # delivery only
    completed = "completed"
    cancelled = "cancelled"


class OrderPaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"


class PaymentMethod(str, Enum):
    jazzcash = "jazzcash"
    easypaisa = "easypaisa"
    bank_transfer = "bank_transfer"


class PaymentRequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class LedgerEntryType(str, Enum):
    monthly_billing = "monthly_billing"
    billing_failed = "billing_failed"
    plan_upgrade = "plan_upgrade"
    balance_add = "balance_add"


class LedgerEntryStatus(str, Enum):
    completed = "completed"
    failed = "failed"


# ============ PLATFORM ============

class SubscriptionPlan(SQLModel, table=True):
    __tablename__ = "subscription_plan"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    price: Decimal = Field(sa_type=Numeric(10, 2))
    currency: str = Field(default="PKR")
    features: list[str] = Field(default_factory=list, sa_type=JSON)
    max_menu_items: int | None = None  # None means unlimited
    duration: int = Field(default=30)  # days
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Restaurant(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    owner_name: str
    owner_email: str
    owner_phone: str | None = None
    address: str | None = None
    city: str | None = None
    notes: str | None = None

    plan_id: int | None = Field(default=None, foreign_key="subscription_plan.id")
    status: RestaurantStatus = Field(default=RestaurantStatus.active, index=True)
    suspension_reason: str | None = None

    # Billing
    account_balance: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(12, 2))
    plan_expiry_date: datetime | None = None
    last_billing_date: datetime | None = None
    next_billing_date: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)

    users: list["User"] = Relationship(back_populates="restaurant")


class User(SQLModel, table=True):
    """Restaurant staff account for the vendor portal."""
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    full_name: str | None = None
    phone: str | None = None
    role: StaffRole = Field(default=StaffRole.owner)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)

    restaurant_id: int | None = Field(default=None, foreign_key="restaurant.id")
    restaurant: Restaurant | None = Relationship(back_populates="users")


class AdminUser(SQLModel, table=True):
    __tablename__ = "admin_user"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    hashed_password: str
    role: AdminRole = Field(default=AdminRole.admin)
    created_at: datetime = Field(default_factory=utcnow)


class RestaurantMixin(SQLModel):
    restaurant_id: int = Field(foreign_key="restaurant.id", index=True)


# ============ TABLES & QR CODES ============

class RestaurantTable(RestaurantMixin, table=True):
    __tablename__ = "restaurant_table"

    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(index=True)
    capacity: int | None = None
    location: str | None = None  # e.g. "Terrace", "Hall 2"
    special_notes: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class QRCode(RestaurantMixin, table=True):
    __tablename__ = "qr_code"

    id: int | None = Field(default=None, primary_key=True)
    table_id: int | None = Field(default=None, foreign_key="restaurant_table.id")  # None = main menu QR
    menu_url: str
    style: str = Field(default="classic")  # classic, rounded, dots
    size: str = Field(default="medium")  # small, medium, large
    foreground_color: str = Field(default="#000000")
    background_color: str = Field(default="#ffffff")
    is_active: bool = Field(default=True)
    scans_count: int = Field(default=0)
    last_scanned: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ============ MENU ============

class MenuCategory(RestaurantMixin, table=True):
    __tablename__ = "menu_category"

    id: int | None = Field(default=None, primary_key=True)
    name: str
    sort_order: int = Field(default=0)


class MenuItem(RestaurantMixin, table=True):
    __tablename__ = "menu_item"

    id: int | None = Field(default=None, primary_key=True)
    category_id: int | None = Field(default=None, foreign_key="menu_category.id")
    name: str
    description: str | None = None
    price: Decimal = Field(sa_type=Numeric(10, 2))
    is_available: bool = Field(default=True, index=True)
    preparation_time: int | None = None  # minutes
    created_at: datetime = Field(default_factory=utcnow)


# ============ ORDERS ============

class Order(RestaurantMixin, table=True):
    __tablename__ = "customer_order"

    id: int | None = Field(default=None, primary_key=True)
    order_number: int = Field(index=True)  # sequential per restaurant
    customer_id: str = Field(index=True)
    table_number: str | None = None  # None for takeaway / delivery
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    delivery_type: DeliveryType = Field(default=DeliveryType.dine_in)
    total_amount: Decimal = Field(default=Decimal("0.00"), sa_type=Numeric(10, 2))
    currency: str = Field(default="PKR")
    notes: str | None = None
    estimated_time: int | None = None  # minutes

    payment_method: str = Field(default="cash")
    payment_status: OrderPaymentStatus = Field(default=OrderPaymentStatus.pending)
    paid_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    items: list["OrderItem"] = Relationship(back_populates="order")


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="customer_order.id", index=True)
    menu_item_id: int = Field(foreign_key="menu_item.id")
    name: str  # Snapshot of the menu item name at order time
    quantity: int
    unit_price: Decimal = Field(sa_type=Numeric(10, 2))  # Snapshot of the price at order time
    total_price: Decimal = Field(sa_type=Numeric(10, 2))
    special_requests: str | None = None

    order: Order = Relationship(back_populates="items")


# ============ BILLING ============

class PaymentRequest(RestaurantMixin, table=True):
    """Balance top-up submitted by a restaurant, verified by an admin."""
    __tablename__ = "payment_request"

    id: int | None = Field(default=None, primary_key=True)
    amount: Decimal = Field(sa_type=Numeric(12, 2))
    payment_method: PaymentMethod
    description: str | None = None
    transaction_ref: str | None = None
    bank_name: str | None = None
    account_number: str | None = None
    account_holder: str | None = None
    status: PaymentRequestStatus = Field(default=PaymentRequestStatus.pending, index=True)
    admin_notes: str | None = None
    processed_at: datetime | None = None
    processed_by: int | None = Field(default=None, foreign_key="admin_user.id")
    created_at: datetime = Field(default_factory=utcnow)


class PaymentHistory(RestaurantMixin, table=True):
    """Append-only ledger of every balance movement and billing attempt."""
    __tablename__ = "payment_history"

    id: int | None = Field(default=None, primary_key=True)
    type: LedgerEntryType = Field(index=True)
    amount: Decimal = Field(sa_type=Numeric(12, 2))
    description: str
    balance_before: Decimal = Field(sa_type=Numeric(12, 2))
    balance_after: Decimal = Field(sa_type=Numeric(12, 2))
    related_plan_id: int | None = Field(default=None, foreign_key="subscription_plan.id")
    payment_request_id: int | None = Field(default=None, foreign_key="payment_request.id")
    transaction_ref: str | None = None
    status: LedgerEntryStatus = Field(default=LedgerEntryStatus.completed)
    created_at: datetime = Field(default_factory=utcnow)


class PlanUpgrade(RestaurantMixin, table=True):
    __tablename__ = "plan_upgrade"

    id: int | None = Field(default=None, primary_key=True)
    from_plan_id: int | None = Field(default=None, foreign_key="subscription_plan.id")
    to_plan_id: int = Field(foreign_key="subscription_plan.id")
    price_difference: Decimal = Field(sa_type=Numeric(10, 2))
    pro_rated_amount: Decimal = Field(sa_type=Numeric(12, 2))
    effective_date: datetime
    new_expiry_date: datetime
    status: str = Field(default="active")
    created_at: datetime = Field(default_factory=utcnow)


# Request/Response Models
class RestaurantCreate(SQLModel):
    name: str
    slug: str
    owner_name: str
    owner_email: str
    owner_password: str
    owner_phone: str | None = None
    address: str | None = None
    city: str | None = None
    plan_id: int | None = None


class RestaurantStatusUpdate(SQLModel):
    status: RestaurantStatus
    reason: str | None = None


class SubscriptionPlanCreate(SQLModel):
    name: str
    price: Decimal
    currency: str | None = None
    features: list[str] = []
    max_menu_items: int | None = None
    duration: int = 30


class TableCreate(SQLModel):
    table_number: str
    capacity: int | None = None
    location: str | None = None
    special_notes: str | None = None


class TableUpdate(SQLModel):
    table_number: str | None = None
    capacity: int | None = None
    location: str | None = None
    special_notes: str | None = None
    is_active: bool | None = None


class QRCodeCreate(SQLModel):
    table_number: str | None = None
    style: str | None = None
    size: str | None = None
    foreground_color: str | None = None
    background_color: str | None = None


class QRCodeUpdate(SQLModel):
    is_active: bool | None = None
    style: str | None = None
    size: str | None = None
    foreground_color: str | None = None
    background_color: str | None = None


class TableScanRequest(SQLModel):
    encoded_table: str | None = None
    restaurant_slug: str | None = None


class MenuCategoryCreate(SQLModel):
    name: str
    sort_order: int | None = None


class MenuItemCreate(SQLModel):
    name: str
    price: Decimal
    category_id: int | None = None
    description: str | None = None
    preparation_time: int | None = None
    is_available: bool = True


class MenuItemUpdate(SQLModel):
    name: str | None = None
    price: Decimal | None = None
    category_id: int | None = None
    description: str | None = None
    preparation_time: int | None = None
    is_available: bool | None = None


class OrderItemCreate(SQLModel):
    menu_item_id: int
    quantity: int
    special_requests: str | None = None


class OrderCreate(SQLModel):
    items: list[OrderItemCreate]
    encoded_table: str | None = None  # Table parameter from the scanned QR code
    customer_id: str | None = None
    delivery_type: DeliveryType | None = None
    notes: str | None = None


class OrderStatusUpdate(SQLModel):
    status: OrderStatus


class OrderMarkPaid(SQLModel):
    payment_method: str = "cash"


class PaymentRequestCreate(SQLModel):
    amount: Decimal
    payment_method: PaymentMethod
    description: str | None = None
    transaction_ref: str | None = None
    bank_name: str | None = None
    account_number: str | None = None
    account_holder: str | None = None


class PaymentVerification(SQLModel):
    payment_request_id: int
    action: str  # 'approve' or 'reject'
    admin_notes: str | None = None


class PlanUpgradeCreate(SQLModel):
    restaurant_id: int
    new_plan_id: int


class VendorPlanUpgradeCreate(SQLModel):
    new_plan_id: int


class StaffCreate(SQLModel):
    full_name: str
    email: str
    password: str
    role: StaffRole
    phone: str | None = None


class StaffUpdate(SQLModel):
    full_name: str | None = None
    phone: str | None = None
    is_active: bool | None = None
    password: str | None = None


class StaffRead(SQLModel):
    id: int
    email: str
    full_name: str | None = None
    phone: str | None = None
    role: StaffRole
    is_active: bool
    created_at: datetime
