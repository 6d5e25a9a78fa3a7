# aurelia/main.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx
import razorpay
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from .auth import bearer_token, create_token, decode_token, safe_redirect, verify_password
from .config import Settings, get_settings
from .db import Base, engine, get_db
from .errors import AureliaError, Forbidden, InvalidRequest, NotFound, Unauthenticated
from .identity.reconcile import PhoneIdentityReconciler
from .identity.store import IdentityStore
from .models import Order, Profile, User
from .ordering.cart import load_cart
from .ordering.checkout import place_order
from .payments.gateway import RazorpayOrders
from .payments.settlement import PaymentSettlement

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Aurelia API",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.middleware("http")
async def unhandled_errors(request: Request, call_next):
    # must stay inside CORSMiddleware (registered before it)
    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})


# called straight from the browser client
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)

Base.metadata.create_all(bind=engine)


# -------------------
# Errors
# -------------------
@app.exception_handler(AureliaError)
async def aurelia_error_handler(request: Request, exc: AureliaError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = (exc.errors() or [{}])[0]
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    details = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "")
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


# -------------------
# Schemas
# -------------------
class VerifyPhoneIn(BaseModel):
    user_json_url: Optional[str] = None
    redirect_to: Optional[str] = None


class VerifyPaymentIn(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    order_id: Optional[str] = None


class CreateGatewayOrderIn(BaseModel):
    order_id: Optional[str] = None
    amount: Optional[float] = None


class VerifyLinkIn(BaseModel):
    token_hash: str
    type: str = "magiclink"


class AdminLoginIn(BaseModel):
    email: EmailStr
    password: str


class CartLineIn(BaseModel):
    name: str
    price: float = Field(ge=0)
    qty: int = Field(default=1, ge=1)
    menu_item_id: Optional[str] = None


class CheckoutIn(BaseModel):
    items: List[CartLineIn]
    delivery_address: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_pincode: Optional[str] = None
    special_instructions: Optional[str] = None


# -------------------
# Dependencies
# -------------------
def get_http_client(settings: Settings = Depends(get_settings)) -> Iterator[httpx.Client]:
    with httpx.Client(timeout=settings.http_timeout_seconds) as client:
        yield client


def get_razorpay_client(settings: Settings = Depends(get_settings)) -> razorpay.Client:
    return razorpay.Client(
        auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
        base_url=settings.razorpay_api_base,
    )


def get_identity_store(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> IdentityStore:
    return IdentityStore(db, settings)


def require_user(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> User:
    if not authorization:
        raise Unauthenticated()

    token = bearer_token(authorization)
    uid = decode_token(token, settings) if token else None
    u = db.get(User, uid) if uid else None
    if u is None:
        logger.warning("Rejected bearer credential")
        raise Unauthenticated("Unauthorized")
    return u


# -------------------
# Helpers
# -------------------
def _session_payload(user: User, settings: Settings) -> Dict[str, Any]:
    return {
        "access_token": create_token(user.id, settings),
        "token_type": "bearer",
        "expires_in": settings.jwt_expire_minutes * 60,
        "user_id": user.id,
        "email": user.email,
    }


def _order_out(order: Order, with_payment: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "subtotal": order.subtotal,
        "tax_amount": order.tax_amount,
        "delivery_fee": order.delivery_fee,
        "discount_amount": order.discount_amount,
        "total_amount": order.total_amount,
        "loyalty_points_earned": order.loyalty_points_earned,
        "items": load_cart(order.items_json),
        "delivery_address": order.delivery_address,
        "delivery_city": order.delivery_city,
        "delivery_pincode": order.delivery_pincode,
        "special_instructions": order.special_instructions,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
    if with_payment:
        p = order.payment
        out["payment"] = None if p is None else {
            "amount": p.amount,
            "currency": p.currency,
            "status": p.status,
            "razorpay_order_id": p.razorpay_order_id,
            "razorpay_payment_id": p.razorpay_payment_id,
        }
    return out


# -------------------
# Health
# -------------------
@app.get("/")
def root():
    return {"ok": True, "service": "aurelia-api"}


# -------------------
# Functions (browser-invoked)
# -------------------
@app.post("/functions/verify-phone")
def verify_phone(
    payload: VerifyPhoneIn,
    store: IdentityStore = Depends(get_identity_store),
    http: httpx.Client = Depends(get_http_client),
    settings: Settings = Depends(get_settings),
):
    if not payload.user_json_url:
        raise InvalidRequest("user_json_url is required")

    reconciler = PhoneIdentityReconciler(settings, store, http)
    return reconciler.reconcile(payload.user_json_url, redirect_to=payload.redirect_to)


@app.post("/functions/create-razorpay-order")
def create_razorpay_order(
    payload: CreateGatewayOrderIn,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    rzp: razorpay.Client = Depends(get_razorpay_client),
    settings: Settings = Depends(get_settings),
):
    orders = RazorpayOrders(settings, db, rzp)
    return orders.create(user.id, payload.order_id or "", payload.amount or 0)


@app.post("/functions/verify-razorpay-payment")
def verify_razorpay_payment(
    payload: VerifyPaymentIn,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    rzp: razorpay.Client = Depends(get_razorpay_client),
):
    settlement = PaymentSettlement(db, rzp)
    return settlement.settle(
        user.id,
        razorpay_order_id=payload.razorpay_order_id,
        razorpay_payment_id=payload.razorpay_payment_id,
        razorpay_signature=payload.razorpay_signature,
        order_id=payload.order_id,
    )


# -------------------
# Auth
# -------------------
@app.post("/auth/verify")
def redeem_login_link(
    payload: VerifyLinkIn,
    store: IdentityStore = Depends(get_identity_store),
    settings: Settings = Depends(get_settings),
):
    if payload.type != "magiclink":
        raise InvalidRequest("Unsupported verification type")

    link = store.redeem_link(token_hash=payload.token_hash)
    user = store.db.get(User, link.user_id)
    if user is None:
        raise NotFound("User not found")
    return _session_payload(user, settings)


@app.get("/auth/verify")
def follow_login_link(
    token: str,
    store: IdentityStore = Depends(get_identity_store),
    settings: Settings = Depends(get_settings),
):
    link = store.redeem_link(token=token)
    user = store.db.get(User, link.user_id)
    if user is None:
        raise NotFound("User not found")

    # only the redirect recorded when the link was minted counts
    target = safe_redirect(link.redirect_to, settings) or settings.site_url
    session = _session_payload(user, settings)
    fragment = f"access_token={session['access_token']}&token_type=bearer&type=magiclink"
    return RedirectResponse(f"{target}#{fragment}", status_code=303)


@app.post("/auth/admin/login")
def admin_login(
    payload: AdminLoginIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    u = db.query(User).filter(func.lower(User.email) == payload.email.lower()).first()
    if not u or not verify_password(payload.password, u.password_hash):
        raise Unauthenticated("Invalid email or password")
    if not u.is_admin:
        logger.warning("Non-admin %s attempted admin login", u.id)
        raise Forbidden("Access denied. Admin privileges required.")
    return _session_payload(u, settings)


@app.get("/auth/me")
def me(user: User = Depends(require_user)):
    return {
        "id": user.id,
        "email": user.email,
        "phone": user.phone,
        "full_name": user.full_name,
        "role": user.role,
        "is_admin": user.is_admin,
    }


# -------------------
# Orders & profile
# -------------------
@app.post("/orders", status_code=201)
def checkout(
    payload: CheckoutIn,
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    order = place_order(
        db,
        user.id,
        [line.model_dump() for line in payload.items],
        currency=settings.currency,
        delivery_address=payload.delivery_address,
        delivery_city=payload.delivery_city,
        delivery_pincode=payload.delivery_pincode,
        special_instructions=payload.special_instructions,
    )
    return _order_out(order, with_payment=True)


@app.get("/orders")
def list_orders(user: User = Depends(require_user), db: Session = Depends(get_db)):
    orders = (
        db.query(Order)
        .filter(Order.user_id == user.id)
        .order_by(Order.created_at.desc())
        .all()
    )
    return [_order_out(o) for o in orders]


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: User = Depends(require_user), db: Session = Depends(get_db)):
    order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
    if not order:
        raise NotFound("Order not found")
    return _order_out(order, with_payment=True)


@app.get("/profile")
def get_profile(user: User = Depends(require_user), db: Session = Depends(get_db)):
    p = db.query(Profile).filter(Profile.user_id == user.id).first()
    if not p:
        raise NotFound("Profile not found")
    return {
        "user_id": p.user_id,
        "full_name": p.full_name,
        "email": p.email,
        "phone": p.phone,
        "address": p.address,
        "city": p.city,
        "pincode": p.pincode,
        "loyalty_points": p.loyalty_points,
        "total_orders": p.total_orders,
    }


def run() -> None:
    settings = get_settings()
    uvicorn.run("aurelia.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
