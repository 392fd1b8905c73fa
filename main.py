import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, ValidationError
from starlette.concurrency import run_in_threadpool

import triggers
from config import CORS_ORIGINS, JWT_ALG, JWT_SECRET, TOKEN_EXPIRE_MINUTES, ConfigProvider
from database import Store, db, get_store
from errors import (
    EmailDeliveryError,
    FailedPreconditionError,
    GatewayError,
    InsufficientStockError,
    InvalidRequestError,
    MalformedPayloadError,
    NotConfiguredError,
    OrderNotFoundError,
    ProductNotFoundError,
    SignatureVerificationError,
    StorefrontError,
    UnknownProviderError,
)
from logs import configure_logging
from notifications import Mailer, NotificationDispatcher, SmtpMailer
from orders import OrderService
from payments import CheckoutOutcome, PaymentService
from refunds import RefundService
from schemas import CartLine, CustomerInfo, Product as ProductSchema, ProductUpdate
from webhooks import PaymentWebhookReconciler

configure_logging()
log = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = {
    InvalidRequestError: 400,
    SignatureVerificationError: 400,
    MalformedPayloadError: 400,
    NotConfiguredError: 400,
    ProductNotFoundError: 404,
    OrderNotFoundError: 404,
    UnknownProviderError: 404,
    InsufficientStockError: 409,
    FailedPreconditionError: 409,
    GatewayError: 502,
    EmailDeliveryError: 502,
}

# What anyone holding a guest order id may see; the customer snapshot is withheld.
GUEST_ORDER_FIELDS = {
    "id", "order_id", "items", "status", "payment_status", "payment_gateway",
    "subtotal", "tax", "shipping", "total", "created_at", "updated_at",
}


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        log.error("request_failed", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )

# --------------------- Utility ---------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out["id"] = str(out.pop("_id", ""))
    return out


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "customer"


def _decode_token(token: str) -> AuthUser:
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    return AuthUser(**{
        "id": payload.get("id"),
        "email": payload.get("email"),
        "name": payload.get("name"),
        "role": payload.get("role", "customer"),
    })


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        return _decode_token(token)
    except (JWTError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[AuthUser]:
    if not authorization:
        return None
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            return None
        return _decode_token(token)
    except (ValueError, JWTError, ValidationError):
        return None


def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user

# --------------------- Dependencies ---------------------

def get_config(store: Store = Depends(get_store)) -> ConfigProvider:
    return ConfigProvider(store)


def get_mailer(config: ConfigProvider = Depends(get_config)) -> Mailer:
    return SmtpMailer(config)


def get_dispatcher(
    config: ConfigProvider = Depends(get_config), mailer: Mailer = Depends(get_mailer)
) -> NotificationDispatcher:
    return NotificationDispatcher(config, mailer)


def get_order_service(
    store: Store = Depends(get_store),
    config: ConfigProvider = Depends(get_config),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> OrderService:
    return OrderService(store, config, dispatcher)


def get_payment_service(
    orders: OrderService = Depends(get_order_service), config: ConfigProvider = Depends(get_config)
) -> PaymentService:
    return PaymentService(orders, config)


def get_refund_service(
    orders: OrderService = Depends(get_order_service),
    payments: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> RefundService:
    return RefundService(orders, payments, dispatcher)


def get_reconciler(
    store: Store = Depends(get_store),
    config: ConfigProvider = Depends(get_config),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(store, config, dispatcher)

# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(min_length=6)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PlaceOrderRequest(BaseModel):
    items: List[CartLine]
    customer: CustomerInfo
    payment_method: str = "cod"


class StatusUpdateRequest(BaseModel):
    status: str


class GatewayOrderRequest(BaseModel):
    order_id: str


class StripeCheckoutRequest(BaseModel):
    order_id: str
    success_url: str
    cancel_url: str


class CheckoutCallbackRequest(BaseModel):
    order_id: str
    outcome: CheckoutOutcome


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Storefront API is running"}


# Auth
@app.post("/api/auth/register")
def register(
    req: RegisterRequest,
    store: Store = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    email = str(req.email).lower()
    if store.find_user_by_email(email):
        raise HTTPException(status_code=400, detail="Email already registered")
    now = datetime.now(timezone.utc)
    user_doc = {
        "name": req.name,
        "email": email,
        "phone": req.phone,
        "password_hash": hash_password(req.password),
        "role": "customer",
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    user_id = store.insert_user(user_doc)
    log.info("customer_registered", user_id=user_id)
    triggers.on_customer_created(dispatcher, {**user_doc, "_id": user_id}, now=now)
    user = {"id": user_id, "email": email, "name": req.name, "role": "customer"}
    return {"token": create_token(user), "user": user}


@app.post("/api/auth/login")
def login(req: LoginRequest, store: Store = Depends(get_store)):
    user = store.find_user_by_email(str(req.email).lower())
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    out = {"id": str(user.get("_id")), "email": user["email"], "name": user["name"], "role": user.get("role", "customer")}
    return {"token": create_token(out), "user": out}


# Products
@app.get("/api/products")
def list_products(q: Optional[str] = None, limit: int = 20, store: Store = Depends(get_store)):
    return [serialize(d) for d in store.list_products(q=q, limit=limit)]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    doc = store.get_product(product_id)
    if not doc:
        raise ProductNotFoundError(product_id)
    return serialize(doc)


@app.post("/api/admin/products", status_code=201)
def create_product(body: ProductSchema, user: AuthUser = Depends(require_admin), store: Store = Depends(get_store)):
    now = datetime.now(timezone.utc)
    product_id = store.insert_product({**body.model_dump(), "created_at": now, "updated_at": now})
    log.info("product_created", product_id=product_id, admin=user.id)
    return {"id": product_id}


@app.put("/api/admin/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdate,
    user: AuthUser = Depends(require_admin),
    store: Store = Depends(get_store),
):
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise InvalidRequestError("No fields to update")
    fields["updated_at"] = datetime.now(timezone.utc)
    doc = store.update_product(product_id, fields)
    if doc is None:
        raise ProductNotFoundError(product_id)
    log.info("product_updated", product_id=product_id, admin=user.id, fields=sorted(fields))
    return serialize(doc)


# Orders
@app.post("/api/orders", status_code=201)
def place_order(
    body: PlaceOrderRequest,
    user: Optional[AuthUser] = Depends(get_optional_user),
    orders: OrderService = Depends(get_order_service),
):
    customer_id = user.id if user is not None and user.role == "customer" else None
    order = orders.place_order(body.items, body.customer, body.payment_method, customer_id=customer_id)
    return order.model_dump(mode="json")


@app.get("/api/orders/mine")
def my_orders(user: AuthUser = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return [o.model_dump(mode="json") for o in orders.list_orders(customer_id=user.id, limit=50)]


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    user: Optional[AuthUser] = Depends(get_optional_user),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.get_order(order_id)
    privileged = bool(user and (user.id == order.customer_id or user.role == "admin"))
    # Guest orders are reachable by id alone; account orders only by their owner.
    if order.customer_id and not privileged:
        raise OrderNotFoundError(order_id)
    if not privileged:
        return order.model_dump(mode="json", include=GUEST_ORDER_FIELDS)
    return order.model_dump(mode="json")


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    user: AuthUser = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service),
):
    return orders.cancel_order(order_id, user.id).model_dump(mode="json")


# Admin orders
@app.get("/api/admin/orders")
def admin_list_orders(
    status: Optional[str] = None,
    limit: int = 100,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    return [o.model_dump(mode="json") for o in orders.list_orders(status=status, limit=limit)]


@app.get("/api/admin/orders/stats")
def admin_order_stats(user: AuthUser = Depends(require_admin), orders: OrderService = Depends(get_order_service)):
    return orders.order_stats()


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_status(
    order_id: str,
    body: StatusUpdateRequest,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    return orders.update_status(order_id, body.status).model_dump(mode="json")


@app.post("/api/admin/orders/{order_id}/refund")
def admin_refund_order(
    order_id: str,
    user: AuthUser = Depends(require_admin),
    refunds: RefundService = Depends(get_refund_service),
):
    return refunds.refund_order(order_id)


@app.post("/api/admin/orders/{order_id}/resend-confirmation")
def admin_resend_confirmation(
    order_id: str,
    user: AuthUser = Depends(require_admin),
    orders: OrderService = Depends(get_order_service),
):
    message_id = orders.resend_confirmation(order_id)
    return {"success": True, "message_id": message_id}


# Payments
@app.post("/api/payments/razorpay/order")
def create_razorpay_order(body: GatewayOrderRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.create_razorpay_order(body.order_id)


@app.post("/api/payments/stripe/checkout")
def create_stripe_checkout(body: StripeCheckoutRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.create_stripe_checkout(body.order_id, body.success_url, body.cancel_url)


@app.post("/api/payments/razorpay/callback")
def razorpay_callback(body: CheckoutCallbackRequest, payments: PaymentService = Depends(get_payment_service)):
    return payments.verify_checkout(body.order_id, body.outcome)


# Webhooks
@app.post("/webhooks/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    reconciler: PaymentWebhookReconciler = Depends(get_reconciler),
):
    # Signatures cover the exact bytes received, so the body is never re-serialized.
    raw_body = await request.body()
    try:
        ack = await run_in_threadpool(reconciler.handle, provider, raw_body, request.headers)
    except StorefrontError:
        raise
    except Exception:
        log.exception("webhook_unhandled", provider=provider)
        raise
    return ack.body()


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    if db is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
        try:
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
