import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from . import models, security
from .admin_routes import router as admin_router
from .billing_jobs import billing_scheduler
from .customer_routes import router as customer_router
from .db import check_db_connection, create_db_and_tables, get_session
from .settings import settings
from .staff_routes import router as staff_router
from .vendor_routes import router as vendor_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    create_db_and_tables()

    scheduler_task = None
    if settings.billing_scheduler_enabled:
        scheduler_task = asyncio.create_task(billing_scheduler())
        logger.info("Billing scheduler started")

    yield

    if scheduler_task:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    logger.info("Application stopped")


app = FastAPI(title="MenuQR API", lifespan=lifespan)

# CORS: credentials are required for the access_token cookie
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)
app.include_router(vendor_router)
app.include_router(staff_router)
app.include_router(customer_router)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}


# ============ AUTH ============

def _token_response(access_token: str) -> JSONResponse:
    response = JSONResponse(content={
        "status": "success",
        "message": "Logged in",
        "access_token": access_token,
        "token_type": "bearer",
    })
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.is_production,  # Only enforce HTTPS in production
        samesite="lax",
        path="/",
        max_age=settings.access_token_expire_minutes * 60
    )
    return response


@app.post("/token")
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    """Restaurant staff login."""
    user = session.exec(select(models.User).where(models.User.email == form_data.username)).first()
    if not user or not security.verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=401, detail="Account is inactive")
    if user.restaurant_id is None:
        raise HTTPException(status_code=403, detail="User is not linked to a restaurant")

    access_token = security.create_access_token(
        data={"sub": user.email, "scope": security.VENDOR_SCOPE, "restaurant_id": user.restaurant_id},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
    )
    return _token_response(access_token)


@app.post("/admin/token")
def admin_login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    admin = session.exec(select(models.AdminUser).where(models.AdminUser.email == form_data.username)).first()
    if not admin or not security.verify_password(form_data.password, admin.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = security.create_access_token(
        data={"sub": admin.email, "scope": security.ADMIN_SCOPE},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes)
    )
    return _token_response(access_token)


@app.post("/logout")
def logout():
    response = JSONResponse(content={"status": "success", "message": "Logged out"})
    response.delete_cookie(key="access_token", path="/")  # Must match path used in set_cookie
    return response


@app.get("/users/me")
def read_users_me(
    current_user: Annotated[models.User, Depends(security.get_current_user)]
) -> dict:
    return {
        "id": current_user.id,
        "email": current_user.email,
        "full_name": current_user.full_name,
        "restaurant_id": current_user.restaurant_id,
        "role": current_user.role,
    }
