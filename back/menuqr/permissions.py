from enum import Enum
from typing import Set

from .models import AdminRole, AdminUser, StaffRole, User


class Permissions(str, Enum):
    # Restaurants (tenants)
    RESTAURANTS_READ = "restaurants:read"
    RESTAURANTS_MANAGE = "restaurants:manage"  # Onboard, suspend, reactivate

    # Subscription plans
    PLANS_READ = "plans:read"
    PLANS_MANAGE = "plans:manage"
    PLANS_UPGRADE = "plans:upgrade"

    # Balance top-ups
    PAYMENTS_READ = "payments:read"
    PAYMENTS_VERIFY = "payments:verify"

    # Billing runs
    BILLING_RUN = "billing:run"


class VendorPermissions(str, Enum):
    # Account, billing, tables, QR codes, menu and staff
    RESTAURANT_MANAGE = "restaurant:manage"

    # Orders
    ORDERS_MANAGE = "orders:manage"  # List, set any status, mark paid
    ORDERS_ADVANCE = "orders:advance"
    KITCHEN_READ = "kitchen:read"
    DELIVERY_READ = "delivery:read"


ROLE_PERMISSIONS: dict[AdminRole, Set[str]] = {
    AdminRole.super_admin: {p.value for p in Permissions},
    AdminRole.admin: {
        Permissions.RESTAURANTS_READ.value,
        Permissions.RESTAURANTS_MANAGE.value,
        Permissions.PLANS_READ.value,
        Permissions.PLANS_UPGRADE.value,
        Permissions.PAYMENTS_READ.value,
        Permissions.PAYMENTS_VERIFY.value,
        Permissions.BILLING_RUN.value,
    },
    AdminRole.support: {
        Permissions.RESTAURANTS_READ.value,
        Permissions.PLANS_READ.value,
        Permissions.PAYMENTS_READ.value,
    },
}

STAFF_ROLE_PERMISSIONS: dict[StaffRole, Set[str]] = {
    StaffRole.owner: {p.value for p in VendorPermissions},
    StaffRole.chef: {
        VendorPermissions.KITCHEN_READ.value,
        VendorPermissions.ORDERS_ADVANCE.value,
    },
    StaffRole.delivery_boy: {
        VendorPermissions.DELIVERY_READ.value,
        VendorPermissions.ORDERS_ADVANCE.value,
    },
}


def _permission_value(permission) -> str:
    # Enum members hash by name, so compare on the raw value
    if isinstance(permission, Enum):
        return permission.value
    return permission


class PermissionService:
    @staticmethod
    def get_admin_permissions(admin: AdminUser) -> Set[str]:
        """Get all permissions granted to an admin by their role."""
        return set(ROLE_PERMISSIONS.get(AdminRole(admin.role), set()))

    @staticmethod
    def has_permission(admin: AdminUser, required_permission: str) -> bool:
        return _permission_value(required_permission) in PermissionService.get_admin_permissions(admin)

    @staticmethod
    def get_staff_permissions(user: User) -> Set[str]:
        return set(STAFF_ROLE_PERMISSIONS.get(StaffRole(user.role), set()))

    @staticmethod
    def staff_has_permission(user: User, required_permission: str) -> bool:
        return _permission_value(required_permission) in PermissionService.get_staff_permissions(user)
