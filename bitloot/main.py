"""
BitLoot Service API

This module implements the FastAPI application for BitLoot order fulfillment:
checkout, payment callbacks, key delivery and the promo code engine.

Endpoints:
    GET /healthz: Liveness check
    POST /orders: Checkout (guest or authenticated), returns a session token
    GET /orders/{order_id}: Get an order (owner, session token or admin)
    GET /orders/{order_id}/timeline: Order events (owner, session token or admin)
    POST /payments/webhook: Payment status callback from the gateway
    GET /fulfillment/health/check: Fulfillment dependencies health
    GET /fulfillment/{order_id}/status: Fulfillment progress
    GET /fulfillment/{order_id}/download-link: Issue signed download links
    GET /fulfillment/{order_id}/link-expiry: Current link expiry
    POST /fulfillment/{order_id}/reveal/{item_id}: Reveal a key (owner or guest)
    POST /fulfillment/{order_id}/reveal-key/{item_id}: Reveal a key (admin)
    POST /fulfillment/{order_id}/recover: Re-issue missing links
    POST /fulfillment/{order_id}/fulfill: Synchronous fulfillment (admin)
    GET /fulfillment/download/{token}: Resolve a signed link to the encrypted key
    POST /promos/validate: Validate a promo code against a trial order
    /admin/promos: Promo code administration
    POST /admin/inventory/{product_id}/keys: Add stock keys

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "bitloot-service"
"""
import asyncio
import functools
import hmac
import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, crud, inventory, jobs, models, schemas, webhooks
from .database import engine, get_db
from .delivery import KeyDeliveryService
from .exceptions import DomainError, ForbiddenError, NotFoundError, UnauthorizedError
from .fulfillment import FulfillmentService
from .ownership import CallerContext, OwnershipResolver
from .promos import PromoService
from .validators import validate_order_items, validate_order_status_transition

config.setup_logging()
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="bitloot-service")


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def guarded(endpoint):
    """
    Answer unexpected errors with a generic 400 instead of leaking internals.

    HTTP and domain errors pass through unchanged. Plain endpoints stay plain
    so FastAPI keeps running them in its threadpool.
    """
    def generic_error():
        logger.exception(f"Unhandled error in {endpoint.__name__}")
        return HTTPException(status_code=400, detail="Request could not be processed")

    if asyncio.iscoroutinefunction(endpoint):
        @functools.wraps(endpoint)
        async def async_wrapper(*args, **kwargs):
            try:
                return await endpoint(*args, **kwargs)
            except (HTTPException, DomainError):
                raise
            except Exception:
                raise generic_error()
        return async_wrapper

    @functools.wraps(endpoint)
    def wrapper(*args, **kwargs):
        try:
            return endpoint(*args, **kwargs)
        except (HTTPException, DomainError):
            raise
        except Exception:
            raise generic_error()
    return wrapper


def get_fulfillment_service(db: Session = Depends(get_db)) -> FulfillmentService:
    return FulfillmentService(db)


def get_delivery_service(db: Session = Depends(get_db)) -> KeyDeliveryService:
    return KeyDeliveryService(db)


def get_promo_service(db: Session = Depends(get_db)) -> PromoService:
    return PromoService(db)


def get_caller(
    user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
    session_token: Optional[str] = Depends(auth.get_session_token),
) -> CallerContext:
    return CallerContext(user=user, session_token=session_token)


def get_authenticated_caller(
    user: auth.CurrentUser = Depends(auth.get_current_user),
    session_token: Optional[str] = Depends(auth.get_session_token),
) -> CallerContext:
    return CallerContext(user=user, session_token=session_token)


def access_info(request: Request) -> schemas.AccessInfo:
    return schemas.AccessInfo(
        ip_address=request.client.host if request.client else "0.0.0.0",
        user_agent=request.headers.get("user-agent", "unknown"),
    )


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for orchestration systems.

    Returns:
        dict: {"status": "healthy"} when the service is running
    """
    return {"status": "healthy"}


# ==================== ORDERS ====================

@app.post("/orders", response_model=schemas.OrderCreated, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
):
    """
    Create an order at checkout. Guests get a session token for later access.

    Args:
        order: Items, buyer email and optional promo code
        db: Database session (injected)
        current_user: Authenticated buyer, None for guest checkout (injected)

    Returns:
        Created order with its session token

    Raises:
        HTTPException: 400 if items or the promo code are invalid
    """
    is_valid, error_message = validate_order_items(order.items)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    user_id = current_user.id if current_user else None
    promo_code_id = None
    discount = Decimal("0")
    if order.promo_code:
        subtotal = sum(item.unit_price * item.quantity for item in order.items)
        result = PromoService(db).validate_code(
            order.promo_code,
            str(subtotal),
            user_id=user_id,
            email=order.email,
            product_ids=[item.product_id for item in order.items],
            category_ids=order.category_ids,
        )
        if not result.valid:
            raise HTTPException(status_code=400, detail={"errorCode": result.error_code, "message": result.message})
        promo_code_id = result.promo_code_id
        discount = Decimal(result.discount_amount)

    db_order = crud.create_order(
        db=db, order=order, user_id=user_id, promo_code_id=promo_code_id, discount_amount=discount
    )
    crud.log_order_event(
        db=db,
        order_id=db_order.id,
        event_type="created",
        description=f"Order created with {len(db_order.items)} items, total {db_order.total}",
        new_value=db_order.status,
        user_id=user_id,
    )
    logger.info(f"Order {db_order.id} created ({'user ' + user_id if user_id else 'guest'})")

    session_token = auth.SessionTokenService().issue(db_order.id, db_order.email)
    return schemas.OrderCreated(
        **schemas.Order.model_validate(db_order).model_dump(),
        session_token=session_token,
    )


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """
    Get a single order (owner, guest with session token, or admin).

    Raises:
        HTTPException: 401 if no identity was presented
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    if caller.is_anonymous:
        raise UnauthorizedError("Authentication required")
    return OwnershipResolver(db).require_access(order_id, caller).order


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
):
    """
    Get the timeline of events for an order in chronological order.

    Raises:
        HTTPException: 401 if no identity was presented
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    if caller.is_anonymous:
        raise UnauthorizedError("Authentication required")
    OwnershipResolver(db).require_access(order_id, caller)
    return crud.get_order_events(db, order_id)


@app.post("/payments/webhook", response_model=dict)
async def payment_webhook(
    notification: schemas.PaymentNotification,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    x_payment_webhook_secret: Optional[str] = Header(None),
):
    """
    Apply a status reported by the payment gateway.

    When the order reaches a paid status, its promo redemption is recorded
    and fulfillment is scheduled in the background. Deliveries are
    idempotent: a repeated notification changes nothing it has already done.

    Raises:
        HTTPException: 401 if the shared secret is wrong
        HTTPException: 404 if order not found
    """
    if not x_payment_webhook_secret or not hmac.compare_digest(
        x_payment_webhook_secret, config.PAYMENT_WEBHOOK_SECRET
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    order = crud.get_order(db, notification.order_id)
    if order is None:
        raise NotFoundError("Order not found")

    old_status = order.status
    new_status = notification.status.lower()
    is_valid, error_message = validate_order_status_transition(old_status, new_status)
    if not is_valid:
        logger.warning(f"Payment webhook for order {order.id} ignored: {error_message}")
        return {"orderId": order.id, "status": order.status, "accepted": False}

    if crud.update_order_status(db, order, new_status):
        webhooks.notify_order_status_changed(order.id, old_status, new_status)

    if order.status in models.OrderStatus.PAYMENT_OBSERVED:
        if order.promo_code_id:
            PromoService(db).record_redemption(
                promo_code_id=order.promo_code_id,
                order_id=order.id,
                email=order.email,
                discount_applied=order.discount_amount,
                original_total=order.subtotal,
                final_total=order.total,
                user_id=order.user_id,
            )
        background_tasks.add_task(jobs.run_fulfillment_job, order.id)
        logger.info(f"Fulfillment scheduled for order {order.id}")

    return {"orderId": order.id, "status": order.status, "accepted": True}


# ==================== FULFILLMENT ====================

@app.get("/fulfillment/health/check", response_model=schemas.HealthCheckResult)
async def fulfillment_health(service: FulfillmentService = Depends(get_fulfillment_service)):
    return await service.health_check()


@app.get("/fulfillment/download/{token}", response_model=schemas.EncryptedKeyDocument)
@guarded
def download_key(token: str, delivery: KeyDeliveryService = Depends(get_delivery_service)):
    """Resolve a signed link. The response carries ciphertext only."""
    return delivery.resolve_download(token)


@app.get("/fulfillment/{order_id}/status", response_model=schemas.FulfillmentStatus)
@guarded
def fulfillment_status(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_authenticated_caller),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    OwnershipResolver(db).require_access(order_id, caller)
    return service.check_status(order_id)


@app.get("/fulfillment/{order_id}/download-link", response_model=schemas.DeliveryLink)
@guarded
def download_link(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_authenticated_caller),
    delivery: KeyDeliveryService = Depends(get_delivery_service),
):
    """
    Issue fresh signed download links for an order's keys.

    Raises:
        HTTPException: 400 if the order is not fulfilled
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    OwnershipResolver(db).require_access(order_id, caller)
    return delivery.generate_delivery_link(order_id)


@app.get("/fulfillment/{order_id}/link-expiry", response_model=schemas.LinkExpiryStatus)
@guarded
def link_expiry(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_authenticated_caller),
    delivery: KeyDeliveryService = Depends(get_delivery_service),
):
    OwnershipResolver(db).require_access(order_id, caller)
    return delivery.check_link_expiry(order_id)


@app.post("/fulfillment/{order_id}/reveal/{item_id}", response_model=schemas.RevealedKey)
@guarded
def reveal_key(
    order_id: str,
    item_id: str,
    request: Request,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller),
    delivery: KeyDeliveryService = Depends(get_delivery_service),
):
    """
    Reveal a purchased key to its owner.

    Accepts a user JWT, the order's session token (x-order-session-token),
    or both. Refused attempts are audited.

    Raises:
        HTTPException: 401 if no identity was presented
        HTTPException: 403 if not authorized
        HTTPException: 404 if order or item not found
    """
    if caller.is_anonymous:
        raise UnauthorizedError("Authentication required")

    info = access_info(request)
    decision = OwnershipResolver(db).resolve_access(order_id, caller)
    if not decision.granted:
        delivery.record_denied(order_id, item_id, info, detail="ownership check failed")
        raise ForbiddenError("Forbidden")

    return delivery.reveal_key(order_id, item_id, info, method=decision.method)


@app.post("/fulfillment/{order_id}/reveal-key/{item_id}", response_model=schemas.RevealedKey)
@guarded
def admin_reveal_key(
    order_id: str,
    item_id: str,
    request: Request,
    delivery: KeyDeliveryService = Depends(get_delivery_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    logger.info(f"Admin {current_user.id} revealing key for order {order_id} item {item_id}")
    return delivery.reveal_key(order_id, item_id, access_info(request), method="admin")


@app.post("/fulfillment/{order_id}/recover", response_model=schemas.RecoveryResult)
@guarded
def recover_order(
    order_id: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_authenticated_caller),
    service: FulfillmentService = Depends(get_fulfillment_service),
):
    """
    Re-issue missing signed links from stored keys. Never acquires new keys.

    Raises:
        HTTPException: 400 if the order is not paid or has no stored keys
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    OwnershipResolver(db).require_access(order_id, caller)
    return service.recover_order_keys(order_id)


@app.post("/fulfillment/{order_id}/fulfill", response_model=schemas.FulfillmentResult)
@guarded
async def fulfill_order(
    order_id: str,
    service: FulfillmentService = Depends(get_fulfillment_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Run fulfillment synchronously (admin only).

    Raises:
        HTTPException: 400 if the order is not paid
        HTTPException: 502 if a key could not be acquired
    """
    logger.info(f"Admin {current_user.id} triggered fulfillment for order {order_id}")
    return await service.fulfill_order(order_id, raise_on_failure=True)


# ==================== PROMOS ====================

@app.post("/promos/validate", response_model=schemas.ValidatePromoResponse)
def validate_promo(
    promo_request: schemas.ValidatePromoRequest,
    promos: PromoService = Depends(get_promo_service),
):
    """Validate a promo code. Rejections are results (valid=false), never errors."""
    return promos.validate_code(
        promo_request.code,
        promo_request.order_total,
        user_id=promo_request.user_id,
        email=promo_request.email,
        product_ids=promo_request.product_ids,
        category_ids=promo_request.category_ids,
        applied_promo_code_ids=promo_request.applied_promo_code_ids,
    )


@app.get("/admin/promos", response_model=schemas.PaginatedPromoCodes)
def list_promos(
    page: int = 1,
    limit: int = 20,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    scope_type: Optional[str] = None,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return promos.list_codes(page=page, limit=limit, is_active=is_active, search=search, scope_type=scope_type)


@app.post("/admin/promos", response_model=schemas.PromoCode, status_code=status.HTTP_201_CREATED)
def create_promo(
    promo: schemas.PromoCodeCreate,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Create a promo code (admin only).

    Raises:
        HTTPException: 400 if the discount or validity window is invalid
        HTTPException: 409 if the code already exists
    """
    return promos.create(promo)


@app.get("/admin/promos/{promo_id}", response_model=schemas.PromoCode)
def get_promo(
    promo_id: str,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return promos.get_or_404(promo_id)


@app.patch("/admin/promos/{promo_id}", response_model=schemas.PromoCode)
def update_promo(
    promo_id: str,
    promo: schemas.PromoCodeUpdate,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return promos.update(promo_id, promo)


@app.delete("/admin/promos/{promo_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_promo(
    promo_id: str,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Soft-delete a promo code; its redemption history is kept."""
    promos.soft_delete(promo_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/admin/promos/{promo_id}/redemptions", response_model=schemas.PaginatedRedemptions)
def list_promo_redemptions(
    promo_id: str,
    page: int = 1,
    limit: int = 20,
    promos: PromoService = Depends(get_promo_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return promos.list_redemptions(promo_id, page=page, limit=limit)


# ==================== INVENTORY ====================

@app.post(
    "/admin/inventory/{product_id}/keys",
    response_model=schemas.InventoryStock,
    status_code=status.HTTP_201_CREATED,
)
def add_inventory_keys(
    product_id: str,
    payload: schemas.InventoryKeysCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Encrypt and add keys to a product's stock (admin only)."""
    added = inventory.add_stock(db, product_id, payload.keys)
    return schemas.InventoryStock(
        product_id=product_id,
        added=added,
        available=inventory.count_available(db, product_id),
    )
