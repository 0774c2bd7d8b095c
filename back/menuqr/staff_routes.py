from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from . import models, security
from .db import get_session
from .models import Restaurant, StaffRole, User
from .security import get_current_restaurant

router = APIRouter(prefix="/vendor/staff", tags=["staff"])

STAFF_ROLES = (StaffRole.chef, StaffRole.delivery_boy)


def _get_staff_member(session: Session, restaurant_id: int, staff_id: int) -> User:
    user = session.exec(
        select(User).where(
            User.id == staff_id,
            User.restaurant_id == restaurant_id,
            User.role.in_(STAFF_ROLES),
        )
    ).first()
    if not user:
        raise HTTPException(status_code=404, detail="Staff member not found")
    return user


@router.get("", response_model=list[models.StaffRead])
def list_staff(
    restaurant: Annotated[Restaurant, Depends(get_current_restaurant)],
    session: Session = Depends(get_session),
):
    """Chefs and delivery staff of the restaurant."""
    return session.exec(
        select(User)
        .where(User.restaurant_id == restaurant.id, User.role.in_(STAFF_ROLES))
        .order_by(User.role, User.id)
    ).all()


@router.post("", response_model=models.StaffRead, status_code=201)
def create_staff(
    staff_create: models.StaffCreate,
    restaurant: Annotated[Restaurant, Depends(get_current_restaurant)],
    session: Session = Depends(get_session),
):
    if staff_create.role not in STAFF_ROLES:
        raise HTTPException(status_code=400, detail="Role must be chef or delivery_boy")

    email = staff_create.email.strip().lower()
    if not email or not staff_create.password or not staff_create.full_name.strip():
        raise HTTPException(status_code=400, detail="Name, email and password are required")
    if session.exec(select(User).where(User.email == email)).first():
        raise HTTPException(status_code=400, detail="Email already exists")

    user = User(
        email=email,
        hashed_password=security.get_password_hash(staff_create.password),
        full_name=staff_create.full_name.strip(),
        phone=staff_create.phone or None,
        role=staff_create.role,
        restaurant_id=restaurant.id,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@router.put("/{staff_id}", response_model=models.StaffRead)
def update_staff(
    staff_id: int,
    staff_update: models.StaffUpdate,
    restaurant: Annotated[Restaurant, Depends(get_current_restaurant)],
    session: Session = Depends(get_session),
):
    """Update a staff member; deactivation locks them out on their next request."""
    user = _get_staff_member(session, restaurant.id, staff_id)

    if staff_update.full_name is not None:
        user.full_name = staff_update.full_name
    if staff_update.phone is not None:
        user.phone = staff_update.phone
    if staff_update.is_active is not None:
        user.is_active = staff_update.is_active
    if staff_update.password:
        user.hashed_password = security.get_password_hash(staff_update.password)

    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@router.delete("/{staff_id}")
def delete_staff(
    staff_id: int,
    restaurant: Annotated[Restaurant, Depends(get_current_restaurant)],
    session: Session = Depends(get_session),
) -> dict:
    user = _get_staff_member(session, restaurant.id, staff_id)
    session.delete(user)
    session.commit()
    return {"message": "Staff member deleted successfully"}
