import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import List, Optional, Union
from urllib.parse import urlencode

from bson import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import (
    COOKIE_NAME,
    check_password,
    create_token,
    get_current_user,
    get_optional_user,
    new_user,
    password_change,
    require_admin,
)
from cache import ResponseCache, get_cache
from cart import CartService
from config import Settings, get_app_settings, get_settings
from database import connect, create_document, ensure_indexes, get_db, get_documents, oid, serialize, utcnow
from errors import (
    AppError,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    TransactionNotFoundError,
    register_exception_handlers,
)
from logging_config import setup_logging
from notifications import NotificationDispatcher, PhoneVerifier, SmsClient
from orders import OrderService
from pagination import Pagination, pagination_params
from payments import PaymentService, ZarinpalClient
from schemas import (
    Category,
    LoginRequest,
    PaymentMethod,
    Product,
    RegisterRequest,
    TransactionStatus,
    UpdatePasswordRequest,
    UpdateProfileRequest,
    UserOut,
)

log = logging.getLogger("shop")

STARTED_AT = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(app.state.db)
    except PyMongoError as exc:
        log.error("Could not create MongoDB indexes: %s", exc)
    yield


settings = get_settings()
setup_logging(settings.log_level)

app = FastAPI(title="Shop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.cors_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    log.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed)
    return response


def configure(
    app: FastAPI,
    settings: Settings,
    db: Optional[Database] = None,
    cache: Optional[ResponseCache] = None,
    zarinpal_http=None,
    sms_http=None,
) -> FastAPI:
    """Wires settings, the database and the services onto ``app.state``."""
    db = db if db is not None else connect(settings.database_url, settings.database_name)
    app.state.settings = settings
    app.state.db = db
    app.state.cache = cache if cache is not None else ResponseCache.from_url(settings.redis_url)
    app.state.carts = CartService(db)
    app.state.orders = OrderService(db, app.state.carts)
    app.state.payments = PaymentService(db, settings, ZarinpalClient(settings, zarinpal_http), app.state.orders)
    app.state.sms = SmsClient(settings, sms_http)
    app.state.notifier = NotificationDispatcher(db, app.state.sms)
    app.state.phones = PhoneVerifier(db, app.state.sms, settings)
    return app


configure(app, settings)


def get_carts(request: Request) -> CartService:
    return request.app.state.carts


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_payments(request: Request) -> PaymentService:
    return request.app.state.payments


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


def get_phones(request: Request) -> PhoneVerifier:
    return request.app.state.phones


def get_sms(request: Request) -> SmsClient:
    return request.app.state.sms


def success(**data) -> dict:
    return {"status": "success", "data": data}


class UserData(BaseModel):
    user: UserOut


class TokenResponse(BaseModel):
    status: str = "success"
    token: str
    data: UserData


def user_out(user_doc: dict) -> UserOut:
    return UserOut(**serialize(dict(user_doc)))


def send_token(response: Response, user_doc: dict, settings: Settings) -> TokenResponse:
    token = create_token(user_doc, settings)
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=settings.jwt_cookie_expires_in_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )
    return TokenResponse(token=token, data=UserData(user=user_out(user_doc)))


@app.get("/")
def root():
    return {"status": "ok", "service": "shop-backend", "message": "Welcome to the shop API"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "time": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.time() - STARTED_AT, 1),
    }


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    status = {
        "backend": "running",
        "database": "not-configured",
    }
    try:
        db.list_collection_names()
        status["database"] = "connected"
    except PyMongoError as exc:
        log.error("Database check failed: %s", exc)
        status["database"] = "error"
    return status


# Users
@app.post("/api/users/register", response_model=TokenResponse, status_code=201)
def register(
    payload: RegisterRequest,
    response: Response,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise BadRequestError("Email already registered")
    user = new_user(payload.username, email, payload.password, settings.bcrypt_rounds)
    user_id = create_document(db, "user", user)
    user_doc = db["user"].find_one({"_id": oid(user_id)})
    log.info("New user registered: %s", email)
    return send_token(response, user_doc, settings)


@app.post("/api/users/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    response: Response,
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = db["user"].find_one({"email": payload.email.lower(), "active": {"$ne": False}})
    if not user or not check_password(payload.password, user.get("password_hash")):
        log.warning("Failed login attempt for %s", payload.email)
        raise AuthenticationError("Incorrect email or password")
    return send_token(response, user, settings)


@app.get("/api/users/logout")
def logout(response: Response):
    response.set_cookie(COOKIE_NAME, "loggedout", max_age=10, httponly=True)
    return {"status": "success"}


@app.get("/api/users/profile")
def profile(user: dict = Depends(get_current_user)):
    return success(user=user_out(user))


@app.patch("/api/users/update-profile")
def update_profile(payload: UpdateProfileRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    if changes:
        changes["updated_at"] = utcnow()
        user = db["user"].find_one_and_update(
            {"_id": user["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
    return success(user=user_out(user))


@app.patch("/api/users/update-password", response_model=TokenResponse)
def update_password(
    payload: UpdatePasswordRequest,
    response: Response,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    if not check_password(payload.current_password, user.get("password_hash")):
        raise AuthenticationError("Your current password is wrong")
    user = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {**password_change(payload.new_password, settings.bcrypt_rounds), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    log.info("Password changed for %s", user["email"])
    return send_token(response, user, settings)


@app.patch("/api/users/deactivate")
def deactivate(response: Response, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"active": False, "updated_at": utcnow()}})
    response.set_cookie(COOKIE_NAME, "loggedout", max_age=10, httponly=True)
    log.info("User %s deactivated", user["email"])
    return {"status": "success", "data": None}


@app.get("/api/users/admin/all")
def list_users(admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    users = get_documents(db, "user", {"active": {"$ne": False}}, sort=[("created_at", -1)])
    return {"status": "success", "results": len(users), "data": {"users": [user_out(u) for u in users]}}


# Categories
class CategoryPayload(BaseModel):
    title: str = Field(..., min_length=1)
    slug: Optional[str] = None


def category_out(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return None
    return {"id": str(doc["_id"]), "title": doc["title"], "slug": doc["slug"]}


def clear_catalog_cache(cache: ResponseCache) -> None:
    cache.clear_pattern("/api/products*")
    cache.clear_pattern("/api/categories*")


@app.get("/api/categories")
def list_categories(
    request: Request,
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
):
    def load():
        categories = [category_out(c) for c in get_documents(db, "category", sort=[("title", 1)])]
        return {"status": "success", "results": len(categories), "data": {"categories": categories}}

    return cache.fetch(request, settings.categories_cache_ttl, load)


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: str,
    request: Request,
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
):
    def load():
        doc = db["category"].find_one({"_id": oid(category_id)})
        if not doc:
            raise NotFoundError("Category not found")
        return success(category=category_out(doc))

    return cache.fetch(request, settings.categories_cache_ttl, load)


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryPayload,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    category = Category.build(payload.title, payload.slug)
    category_id = create_document(db, "category", category)
    clear_catalog_cache(cache)
    return success(category=category_out(db["category"].find_one({"_id": oid(category_id)})))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryPayload,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    category = Category.build(payload.title, payload.slug)
    doc = db["category"].find_one_and_update(
        {"_id": oid(category_id)},
        {"$set": {**category.model_dump(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Category not found")
    clear_catalog_cache(cache)
    return success(category=category_out(doc))


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: str,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    res = db["category"].delete_one({"_id": oid(category_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Category not found")
    clear_catalog_cache(cache)
    return {"status": "success", "data": None}


# Products
class ProductUpdate(BaseModel):
    product_code: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = Field(None, min_length=1)
    image_path: Optional[str] = None
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    manufacturer: Optional[str] = Field(None, min_length=1)
    available: Optional[bool] = None


def require_category(db: Database, category_id: str) -> dict:
    category = db["category"].find_one({"_id": oid(category_id)})
    if not category:
        raise NotFoundError("Category not found")
    return category


def product_out(doc: dict, categories: dict) -> dict:
    product = serialize(doc)
    product["category"] = categories.get(product.get("category")) or {"id": product.get("category")}
    return product


def embed_categories(db: Database, docs: List[dict]) -> List[dict]:
    ids = {d.get("category") for d in docs if ObjectId.is_valid(d.get("category") or "")}
    categories = {
        str(c["_id"]): category_out(c) for c in db["category"].find({"_id": {"$in": [ObjectId(i) for i in ids]}})
    }
    return [product_out(d, categories) for d in docs]


@app.get("/api/products")
def list_products(
    request: Request,
    category: Optional[str] = None,
    search: Optional[str] = None,
    pagination: Pagination = Depends(pagination_params()),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
):
    def load():
        filt = {"available": True}
        if category:
            if ObjectId.is_valid(category):
                filt["category"] = category
            else:
                found = db["category"].find_one({"slug": category})
                filt["category"] = str(found["_id"]) if found else category
        if search:
            pattern = re.escape(search.strip())
            filt["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("title", "description", "manufacturer", "product_code")
            ]
        total = db["product"].count_documents(filt)
        docs = list(
            db["product"].find(filt).sort("created_at", -1).skip(pagination.skip).limit(pagination.limit)
        )
        products = embed_categories(db, docs)
        return {
            "status": "success",
            "results": len(products),
            "total": total,
            "page": pagination.page,
            "limit": pagination.limit,
            "data": {"products": products},
        }

    return cache.fetch(request, settings.products_cache_ttl, load)


@app.get("/api/products/{product_id}")
def get_product(
    product_id: str,
    request: Request,
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
):
    def load():
        doc = db["product"].find_one({"_id": oid(product_id)})
        if not doc:
            raise NotFoundError("Product not found")
        return success(product=embed_categories(db, [doc])[0])

    return cache.fetch(request, settings.products_cache_ttl, load)


@app.post("/api/products", status_code=201)
def create_product(
    payload: Product,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    require_category(db, payload.category)
    product_id = create_document(db, "product", payload)
    clear_catalog_cache(cache)
    log.info("Product %s created by %s", payload.product_code, admin["email"])
    doc = db["product"].find_one({"_id": oid(product_id)})
    return success(product=embed_categories(db, [doc])[0])


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise BadRequestError("No fields to update")
    if "category" in changes:
        require_category(db, changes["category"])
    doc = db["product"].find_one_and_update(
        {"_id": oid(product_id)},
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Product not found")
    clear_catalog_cache(cache)
    return success(product=embed_categories(db, [doc])[0])


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    res = db["product"].delete_one({"_id": oid(product_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Product not found")
    clear_catalog_cache(cache)
    return {"status": "success", "data": None}


# Cart
@app.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return success(cart=carts.get_or_create(str(user["_id"])))


@app.post("/api/cart/add/{product_id}")
def add_to_cart(product_id: str, user: dict = Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return success(cart=carts.add(str(user["_id"]), product_id))


@app.post("/api/cart/reduce/{product_id}")
def reduce_in_cart(product_id: str, user: dict = Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return success(cart=carts.reduce_by_one(str(user["_id"]), product_id))


@app.post("/api/cart/remove/{product_id}")
def remove_from_cart(product_id: str, user: dict = Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return success(cart=carts.remove(str(user["_id"]), product_id))


@app.post("/api/cart/clear")
def clear_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(get_carts)):
    return success(cart=carts.clear(str(user["_id"])))


# Orders
class CheckoutPayload(BaseModel):
    address: str = Field(..., min_length=1)
    payment_method: Optional[PaymentMethod] = None
    payment_id: Optional[str] = None


class StatusPayload(BaseModel):
    status: str


@app.get("/api/orders")
def my_orders(user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    found = orders.list_for_user(str(user["_id"]))
    return {"status": "success", "results": len(found), "data": {"orders": found}}


@app.get("/api/orders/admin/all")
def all_orders(admin: dict = Depends(require_admin), orders: OrderService = Depends(get_orders)):
    found = orders.list_all()
    return {"status": "success", "results": len(found), "data": {"orders": found}}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    return success(order=orders.get_for_user(order_id, user))


@app.post("/api/orders", status_code=201)
def create_order(payload: CheckoutPayload, user: dict = Depends(get_current_user), orders: OrderService = Depends(get_orders)):
    order = orders.place_order(user, payload.address, payload.payment_method, payload.payment_id)
    return success(order=order)


@app.patch("/api/orders/{order_id}/deliver")
def deliver_order(
    order_id: str,
    background: BackgroundTasks,
    admin: dict = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    order, changed = orders.mark_delivered(order_id)
    if changed:
        background.add_task(notifier.order_status_changed, order.id, order.status)
    return success(order=order)


@app.patch("/api/orders/{order_id}/status")
def change_order_status(
    order_id: str,
    payload: StatusPayload,
    background: BackgroundTasks,
    admin: dict = Depends(require_admin),
    orders: OrderService = Depends(get_orders),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    order, changed = orders.update_status(order_id, payload.status)
    if changed:
        background.add_task(notifier.order_status_changed, order.id, order.status)
    return success(order=order)


# Payments
class PaymentPayload(BaseModel):
    order_id: str = Field(..., min_length=1)


def payment_redirect(base: str, **params) -> RedirectResponse:
    return RedirectResponse(f"{base}?{urlencode(params)}", status_code=302)


@app.post("/api/payments/request")
def request_payment(
    payload: PaymentPayload,
    request: Request,
    user: dict = Depends(get_current_user),
    payments: PaymentService = Depends(get_payments),
    user_agent: Optional[str] = Header(None),
):
    ip = request.client.host if request.client else None
    result = payments.request_payment(payload.order_id, user, ip, user_agent)
    return {"status": "success", "data": result}


@app.get("/api/payments/verify")
def verify_payment(
    background: BackgroundTasks,
    Authority: Optional[str] = None,
    Status: Optional[str] = None,
    payments: PaymentService = Depends(get_payments),
    notifier: NotificationDispatcher = Depends(get_notifier),
    settings: Settings = Depends(get_app_settings),
):
    # browser navigation from the gateway: always answer with a redirect
    failure = settings.payment_failure_url
    if not Authority:
        return payment_redirect(failure, error="Incomplete transaction information")
    try:
        if Status != "OK":
            result = payments.cancel_payment(Authority)
        else:
            result = payments.verify_payment(Authority)
    except TransactionNotFoundError as exc:
        log.error("Transaction not found for authority %s", Authority)
        return payment_redirect(failure, error=exc.message)
    except AppError as exc:
        log.error("Payment verification for %s failed: %s", Authority, exc.message)
        return payment_redirect(failure, error=exc.message)
    except Exception:
        log.exception("Unexpected error verifying payment %s", Authority)
        return payment_redirect(failure, error="Payment verification failed")

    if result.success:
        if not result.already_settled:
            background.add_task(notifier.payment_confirmed, result.transaction_id)
        return payment_redirect(settings.payment_success_url, refId=result.ref_id or "")
    return payment_redirect(failure, error=result.error or "Payment verification failed")


@app.get("/api/payments/transactions")
def my_transactions(
    user: dict = Depends(get_current_user),
    pagination: Pagination = Depends(pagination_params()),
    payments: PaymentService = Depends(get_payments),
):
    result = payments.user_transactions(str(user["_id"]), pagination)
    return {
        "status": "success",
        "results": result["total_docs"],
        "data": {"transactions": result.pop("docs"), "pagination": result},
    }


@app.get("/api/payments/status/{authority}")
def transaction_status(authority: str, user: dict = Depends(get_current_user), payments: PaymentService = Depends(get_payments)):
    return success(transaction=payments.payment_status(authority, user))


@app.get("/api/payments/admin/transactions")
def all_transactions(
    status: Optional[TransactionStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    admin: dict = Depends(require_admin),
    pagination: Pagination = Depends(pagination_params(default_limit=20)),
    payments: PaymentService = Depends(get_payments),
):
    result = payments.all_transactions(pagination, status, start_date, end_date)
    summary = result.pop("summary")
    return {
        "status": "success",
        "results": result["total_docs"],
        "data": {"transactions": result.pop("docs"), "summary": summary, "pagination": result},
    }


@app.post("/api/payments/admin/expire")
def expire_transactions(
    threshold_minutes: Optional[int] = None,
    admin: dict = Depends(require_admin),
    payments: PaymentService = Depends(get_payments),
):
    return success(expired=payments.expire_stale_transactions(threshold_minutes))


# SMS
class PhonePayload(BaseModel):
    phone: str = Field(..., min_length=1)


class CodePayload(BaseModel):
    phone: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


class ManualSmsPayload(BaseModel):
    recipients: Union[str, List[str]]
    message: str = Field(..., min_length=1)


def send_verification_code(phone: str, phones: PhoneVerifier) -> dict:
    expires_in = phones.send_code(phone)
    return {"status": "success", "message": "Verification code sent", "expires_in": expires_in}


@app.post("/api/sms/send-verification")
def send_verification(payload: PhonePayload, phones: PhoneVerifier = Depends(get_phones)):
    return send_verification_code(payload.phone, phones)


@app.post("/api/sms/verify-code")
def verify_code(
    payload: CodePayload,
    user: Optional[dict] = Depends(get_optional_user),
    phones: PhoneVerifier = Depends(get_phones),
):
    phones.verify_code(payload.phone, payload.code, user)
    return {"status": "success", "message": "Phone number verified"}


@app.post("/api/sms/verify-phone")
def verify_phone(payload: PhonePayload, user: dict = Depends(get_current_user), phones: PhoneVerifier = Depends(get_phones)):
    return send_verification_code(payload.phone, phones)


@app.post("/api/sms/confirm-phone")
def confirm_phone(payload: CodePayload, user: dict = Depends(get_current_user), phones: PhoneVerifier = Depends(get_phones)):
    phone = phones.verify_code(payload.phone, payload.code, user)
    return {"status": "success", "message": "Phone number verified", "data": {"phone": phone}}


@app.post("/api/sms/admin/send")
def send_manual_sms(payload: ManualSmsPayload, admin: dict = Depends(require_admin), sms: SmsClient = Depends(get_sms)):
    if isinstance(payload.recipients, list):
        result = sms.send_bulk(payload.recipients, payload.message)
    else:
        result = sms.send(payload.recipients, payload.message)
    log.info("Manual SMS sent by %s", admin["email"])
    return {"status": "success", "message": "SMS sent", "data": result}


@app.get("/api/sms/admin/credit")
def sms_credit(admin: dict = Depends(require_admin), sms: SmsClient = Depends(get_sms)):
    return success(credit=sms.credit())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
