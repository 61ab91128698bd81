import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool

from auth import Actor, Authenticator
from catalog import Catalog
from config import Settings, configure_logging
from database import create_client, ensure_indexes, get_database
from discounts import DiscountEvaluator
from errors import StorefrontError
from fulfillment import FulfillmentService
from gateway import MockGateway, PaymentGateway, RazorpayClient
from inventory import InventoryLedger
from notifications import Dispatcher, LogNotifier, Notifier, ResendNotifier, order_confirmation
from orders import OrderAssemblyService
from payments import PaymentReconciler, ReconcileOutcome
from schemas import Coupon, OrderRequest, OrderStatus, PaymentSource, PaymentVerifyRequest, Product, Variant

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------- Wiring ----------------------

@dataclass
class Services:
    settings: Settings
    db: Database
    gateway: PaymentGateway
    auth: Authenticator
    catalog: Catalog
    ledger: InventoryLedger
    discounts: DiscountEvaluator
    dispatcher: Dispatcher
    orders: OrderAssemblyService
    fulfillment: FulfillmentService
    payments: PaymentReconciler


def build_services(settings: Settings, db: Database, gateway: PaymentGateway, notifier: Notifier) -> Services:
    catalog = Catalog(db)
    ledger = InventoryLedger(db)
    discounts = DiscountEvaluator(db)
    dispatcher = Dispatcher(db, notifier)
    return Services(
        settings=settings,
        db=db,
        gateway=gateway,
        auth=Authenticator(db, settings.ADMIN_KEY, settings.JWT_SECRET,
                           timedelta(days=settings.JWT_EXPIRES_DAYS)),
        catalog=catalog,
        ledger=ledger,
        discounts=discounts,
        dispatcher=dispatcher,
        orders=OrderAssemblyService(db, catalog, ledger, discounts, settings.ESTIMATED_DELIVERY_DAYS),
        fulfillment=FulfillmentService(db, dispatcher),
        payments=PaymentReconciler(
            db, gateway, discounts,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            currency=settings.CURRENCY,
            dispatcher=dispatcher,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_actor(request: Request, authorization: Optional[str] = Header(None),
                  x_admin_key: Optional[str] = Header(None)) -> Actor:
    token = authorization
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    return get_services(request).auth.resolve(token, x_admin_key)


def admin_actor(actor: Actor = Depends(current_actor)) -> Actor:
    return Authenticator.require_admin(actor)


def error_response(status_code: int, message: str, category: str, retryable: bool = False,
                   **extra: Any) -> JSONResponse:
    body = {"success": False, "message": message, "category": category, "retryable": retryable}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               gateway: Optional[PaymentGateway] = None, notifier: Optional[Notifier] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)

    client = None
    if db is None:
        client = create_client(settings)
        db = get_database(client, settings)
    if gateway is None:
        if settings.RAZORPAY_KEY_ID:
            gateway = RazorpayClient(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET,
                                     settings.RAZORPAY_BASE_URL)
        else:
            logger.warning("RAZORPAY_KEY_ID not set, using the mock payment gateway")
            gateway = MockGateway()
    if notifier is None:
        notifier = ResendNotifier(settings.RESEND_API_KEY, settings.EMAIL_FROM) \
            if settings.RESEND_API_KEY else LogNotifier()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(db)
        yield
        if client is not None:
            client.close()

    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = build_services(settings, db, gateway, notifier)

    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        return error_response(exc.status_code, exc.message, exc.category, exc.retryable)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return error_response(422, "Invalid request", "validation", errors=exc.errors())

    app.include_router(router)
    return app


# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class CouponValidateBody(BaseModel):
    code: str
    totalPrice: float = Field(..., ge=0)


class PaymentIntentBody(BaseModel):
    orderId: str


class RefundBody(BaseModel):
    paymentId: str
    amount: Optional[float] = Field(None, gt=0)


class StockAdjustBody(BaseModel):
    size: Optional[str] = None
    color: Optional[str] = None
    delta: int


class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class StatusBody(BaseModel):
    status: OrderStatus


class TrackBody(BaseModel):
    orderId: str
    email: str


# ---------------------- Root & Health ----------------------

@router.get("/")
def read_root():
    return {"message": "Storefront API running"}


@router.get("/health")
def health(services: Services = Depends(get_services)):
    response = {"backend": "ok", "database": "unavailable"}
    try:
        services.db.command("ping")
        response["database"] = "ok"
    except Exception as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ---------------------- Auth ----------------------

@router.post("/auth/register", status_code=201)
def register(body: RegisterBody, services: Services = Depends(get_services)):
    return services.auth.register(body.name, body.email, body.password, body.phone)


@router.post("/auth/login")
def login(body: LoginBody, services: Services = Depends(get_services)):
    return services.auth.login(body.email, body.password)


# ---------------------- Products ----------------------

@router.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  featured: Optional[bool] = None, limit: int = Query(50, ge=1, le=200),
                  services: Services = Depends(get_services)):
    return services.catalog.list_products(q, category, brand, min_price, max_price, featured, limit)


@router.get("/products/{pid}")
def get_product(pid: str, services: Services = Depends(get_services)):
    product = services.catalog.get_product(pid)
    product["_id"] = str(product["_id"])
    return product


@router.get("/products/{pid}/stock")
def product_stock(pid: str, services: Services = Depends(get_services)):
    return services.ledger.stock_levels(pid)


@router.post("/products/{pid}/reviews", status_code=201)
def add_review(pid: str, body: ReviewBody, actor: Actor = Depends(current_actor),
               services: Services = Depends(get_services)):
    if actor.user_id is None:
        return error_response(401, "Reviews must be written by a signed-in user", "unauthorized")
    product = services.catalog.add_review(pid, actor.user_id, actor.name, body.rating, body.comment)
    return {"message": "Review added", "product": product}


@router.post("/admin/products", status_code=201)
def admin_create_product(body: Product, actor: Actor = Depends(admin_actor),
                         services: Services = Depends(get_services)):
    return {"_id": services.catalog.create_product(body)}


@router.put("/admin/products/{pid}")
def admin_update_product(pid: str, body: Dict[str, Any], actor: Actor = Depends(admin_actor),
                         services: Services = Depends(get_services)):
    return services.catalog.update_product(pid, body)


@router.delete("/admin/products/{pid}")
def admin_delete_product(pid: str, actor: Actor = Depends(admin_actor),
                         services: Services = Depends(get_services)):
    services.catalog.delete_product(pid)
    return {"ok": True}


@router.patch("/admin/products/{pid}/stock")
def admin_adjust_stock(pid: str, body: StockAdjustBody, actor: Actor = Depends(admin_actor),
                       services: Services = Depends(get_services)):
    services.ledger.adjust_stock(pid, body.size, body.color, body.delta)
    return services.ledger.stock_levels(pid)


@router.post("/admin/products/{pid}/variants", status_code=201)
def admin_add_variant(pid: str, body: Variant, actor: Actor = Depends(admin_actor),
                      services: Services = Depends(get_services)):
    return services.ledger.add_variant(pid, body.size, body.color, body.stock)


@router.delete("/admin/products/{pid}/variants")
def admin_remove_variant(pid: str, size: str, color: str, actor: Actor = Depends(admin_actor),
                         services: Services = Depends(get_services)):
    return services.ledger.remove_variant(pid, size, color)


# ---------------------- Coupons ----------------------

@router.post("/admin/coupons", status_code=201)
def admin_add_coupon(body: Coupon, actor: Actor = Depends(admin_actor),
                     services: Services = Depends(get_services)):
    return services.discounts.create_coupon(body)


@router.get("/admin/coupons")
def admin_list_coupons(actor: Actor = Depends(admin_actor), services: Services = Depends(get_services)):
    return services.discounts.list_coupons()


@router.delete("/admin/coupons/{cid}")
def admin_delete_coupon(cid: str, actor: Actor = Depends(admin_actor),
                        services: Services = Depends(get_services)):
    services.discounts.delete_coupon(cid)
    return {"message": "Coupon deleted successfully"}


@router.post("/coupons/validate")
def validate_coupon(body: CouponValidateBody, actor: Actor = Depends(current_actor),
                    services: Services = Depends(get_services)):
    return services.discounts.preview(body.code, body.totalPrice)


# ---------------------- Orders ----------------------

@router.post("/orders", status_code=201)
def create_order(body: OrderRequest, actor: Actor = Depends(current_actor),
                 services: Services = Depends(get_services)):
    if actor.user_id is None:
        return error_response(401, "Orders must be placed by a signed-in user", "unauthorized")
    order = services.orders.create_order(actor.user_id, body)
    services.dispatcher.notify_user(actor.user_id, order_confirmation(order))
    return order


@router.get("/orders/mine")
def my_orders(actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    if actor.user_id is None:
        return error_response(401, "Sign in to see your orders", "unauthorized")
    return services.orders.list_for_user(actor.user_id)


@router.get("/orders")
def list_orders(actor: Actor = Depends(admin_actor), services: Services = Depends(get_services)):
    return services.orders.list_all()


@router.get("/orders/status/{status}")
def orders_by_status(status: OrderStatus, actor: Actor = Depends(admin_actor),
                     services: Services = Depends(get_services)):
    return services.orders.list_by_status(status)


@router.post("/orders/track")
def track_order(body: TrackBody, services: Services = Depends(get_services)):
    return services.orders.track(body.orderId, body.email)


@router.get("/orders/{oid}")
def get_order(oid: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    return services.orders.get_order(oid, actor)


@router.put("/orders/{oid}/cancel")
def cancel_order(oid: str, actor: Actor = Depends(current_actor), services: Services = Depends(get_services)):
    order = services.fulfillment.cancel(oid, actor)
    return {"message": "Order cancelled successfully", "order": order}


@router.put("/orders/{oid}/admin-cancel")
def admin_cancel_order(oid: str, actor: Actor = Depends(admin_actor),
                       services: Services = Depends(get_services)):
    order = services.fulfillment.cancel(oid, actor)
    return {"message": "Order cancelled by admin", "order": order}


@router.put("/orders/{oid}/status")
def update_order_status(oid: str, body: StatusBody, actor: Actor = Depends(admin_actor),
                        services: Services = Depends(get_services)):
    order = services.fulfillment.change_status(oid, body.status, actor)
    return {"message": "Order status updated successfully", "order": order}


@router.put("/orders/{oid}/deliver")
def mark_delivered(oid: str, actor: Actor = Depends(admin_actor), services: Services = Depends(get_services)):
    return services.fulfillment.mark_delivered(oid, actor)


# ---------------------- Payments ----------------------

@router.post("/payment/create-order")
def create_payment_order(body: PaymentIntentBody, actor: Actor = Depends(current_actor),
                         services: Services = Depends(get_services)):
    remote = services.payments.create_payment_intent(body.orderId, actor)
    if remote is None:
        return {"order": None, "key": None, "paid": True, "message": "Nothing to pay, order confirmed"}
    return {"order": remote, "key": getattr(services.gateway, "key_id", None), "paid": False}


@router.post("/payment/verify")
def verify_payment(body: PaymentVerifyRequest, actor: Actor = Depends(current_actor),
                   services: Services = Depends(get_services)):
    # raises unless the caller owns the order or is an admin
    services.orders.get_order(body.order_id, actor)
    result = services.payments.reconcile(
        body.order_id, body.gateway_order_ref, body.gateway_payment_ref, body.signature,
        PaymentSource.CLIENT_CALLBACK,
    )
    message = "Payment verified successfully" if result.outcome is ReconcileOutcome.CONFIRMED \
        else "Payment already verified"
    return {"success": True, "message": message, "outcome": result.outcome.value, "order": result.order}


@router.post("/payment/webhook")
async def payment_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(None)):
    raw_body = await request.body()
    services = get_services(request)
    result = await run_in_threadpool(services.payments.handle_webhook, raw_body, x_razorpay_signature)
    return {"status": result.outcome.value, "detail": result.detail}


@router.post("/payment/refund")
def refund_payment(body: RefundBody, actor: Actor = Depends(admin_actor),
                   services: Services = Depends(get_services)):
    refund = services.payments.refund(body.paymentId, body.amount)
    return {"success": True, "refund": refund}


if __name__ == "__main__":
    import uvicorn
    settings = Settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)
