from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from .db import get_session
from .models import AdminUser, Restaurant, User
from .permissions import PermissionService, VendorPermissions
from .settings import settings

ADMIN_SCOPE = "admin"
VENDOR_SCOPE = "vendor"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


async def get_token_from_cookie(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)]
) -> str:
    """
    Get token from cookie (primary) or Authorization header (fallback).
    """
    cookie_token = request.cookies.get("access_token")
    if cookie_token:
        return cookie_token

    if token:
        return token

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )


def _decode_token(token: str, expected_scope: str) -> dict:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise credentials_exception
    if payload.get("sub") is None or payload.get("scope") != expected_scope:
        raise credentials_exception
    return payload


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_cookie)],
    session: Annotated[Session, Depends(get_session)],
) -> User:
    """Restaurant staff user behind a vendor token."""
    payload = _decode_token(token, VENDOR_SCOPE)
    restaurant_id = payload.get("restaurant_id")
    if restaurant_id is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")

    user = session.exec(
        select(User).where(User.email == payload["sub"]).where(User.restaurant_id == restaurant_id)
    ).first()
    if user is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is inactive")
    return user


async def get_current_admin(
    token: Annotated[str, Depends(get_token_from_cookie)],
    session: Annotated[Session, Depends(get_session)],
) -> AdminUser:
    payload = _decode_token(token, ADMIN_SCOPE)
    admin = session.exec(select(AdminUser).where(AdminUser.email == payload["sub"])).first()
    if admin is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return admin


class PermissionChecker:
    """Dependency that requires the current admin to hold a permission."""

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(
        self,
        admin: Annotated[AdminUser, Depends(get_current_admin)],
    ) -> AdminUser:
        if not PermissionService.has_permission(admin, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return admin


class RestaurantPermissionChecker:
    """
    Dependency that requires the current staff user to hold a vendor
    permission. Resolves to the user's restaurant.
    """

    def __init__(self, required_permission: str):
        self.required_permission = required_permission

    def __call__(
        self,
        current_user: Annotated[User, Depends(get_current_user)],
        session: Annotated[Session, Depends(get_session)],
    ) -> Restaurant:
        if not PermissionService.staff_has_permission(current_user, self.required_permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        restaurant = session.get(Restaurant, current_user.restaurant_id)
        if restaurant is None:
            raise HTTPException(status_code=404, detail="Restaurant not found")
        return restaurant


# The restaurant as seen by its owner
get_current_restaurant = RestaurantPermissionChecker(VendorPermissions.RESTAURANT_MANAGE)
