from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
from typing import Optional, List
import os
import sys
import httpx

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    get_db_client, settings, SuccessResponse, ErrorResponse,
    HealthResponse, AppException, UnauthorizedException, ForbiddenException
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse, CartSummary, AddressUpdate, AddressResponse,
    CheckoutSummary, OrderResponse, CancelRequest, OTPConfirm, OTPReceipt,
    CancellationReasons, item_response
)
from app.models import Actor, AddressDB, OrderDB, Role, StaffRole
from app.exceptions import OrderFlowError, NotFound
from app.store import MongoStore
from app.notifier import HttpNotifier
from app.cart import CartService, CartSummaryCache
from app.checkout import CheckoutService
from app.otp import DeliveryConfirmation
from app.cancellation import CancellationPolicy, reasons_for
from app.permissions import ensure_staff

# Setup Logging
logger = setup_logging("orders-service")

cart_summary_cache = CartSummaryCache(settings.CART_SUMMARY_CACHE_SIZE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.mongodb_client = get_db_client(settings.MONGO_URL)
    app.state.store = MongoStore(app.mongodb_client, settings.MONGO_DB_NAME)
    await app.state.store.ensure_indexes()
    logger.info("Orders service started")
    yield
    app.mongodb_client.close()


app = FastAPI(title="Orders Service", lifespan=lifespan)

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="orders-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrderFlowError)
async def order_flow_error_handler(request: Request, exc: OrderFlowError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.kind, details=exc.detail).dict(),
    )

# --- Dependencies ---
def get_store(request: Request):
    return request.app.state.store

def get_notifier(request: Request):
    return HttpNotifier(request_id=getattr(request.state, "request_id", None))

def get_clock():
    return datetime.utcnow

def get_cart_cache() -> CartSummaryCache:
    return cart_summary_cache

async def get_current_user(request: Request, authorization: str = Header(...)) -> Actor:
    async with httpx.AsyncClient() as client:
        try:
            headers = {"Authorization": authorization}
            request_id = getattr(request.state, "request_id", None)
            if request_id:
                headers["X-Request-ID"] = request_id

            response = await client.get(f"{settings.AUTH_SERVICE_URL}/verify", headers=headers)
            response.raise_for_status()
            data = response.json()
            if not data.get("success"):
                raise UnauthorizedException("Invalid token")
        except httpx.RequestError:
            raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Auth service unavailable")
        except httpx.HTTPStatusError:
            raise UnauthorizedException("Invalid authentication credentials")

    payload = data["data"]
    role = payload.get("role", Role.USER.value)
    if role not in {r.value for r in Role}:
        raise ForbiddenException(f"Role '{role}' cannot use the orders service")
    request.state.user_id = payload["sub"]
    return Actor(id=payload["sub"], role=role, email=payload.get("email"))

def get_cart_service(store=Depends(get_store), cache=Depends(get_cart_cache)) -> CartService:
    return CartService(store, cache)

def get_checkout_service(store=Depends(get_store), notifier=Depends(get_notifier),
                         cache=Depends(get_cart_cache), clock=Depends(get_clock)) -> CheckoutService:
    return CheckoutService(store, notifier, cache, clock)

def get_delivery_confirmation(store=Depends(get_store), notifier=Depends(get_notifier),
                              clock=Depends(get_clock)) -> DeliveryConfirmation:
    return DeliveryConfirmation(store, notifier, clock)

def get_cancellation_policy(store=Depends(get_store), notifier=Depends(get_notifier),
                            clock=Depends(get_clock)) -> CancellationPolicy:
    return CancellationPolicy(store, notifier, clock)

def get_staff(role: StaffRole, user: Actor = Depends(get_current_user)) -> Actor:
    # The {role} path segment must match the caller's own role
    ensure_staff(user, role)
    return user

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(user: Actor = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return SuccessResponse(data=CartResponse(**await carts.get_cart(user)))

@app.get("/cart/summary", response_model=SuccessResponse[CartSummary])
async def get_cart_summary(user: Actor = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return SuccessResponse(data=CartSummary(**await carts.summary(user)))

@app.post("/cart/items", response_model=SuccessResponse[CartSummary])
async def add_to_cart(item: CartItemAdd, user: Actor = Depends(get_current_user),
                      carts: CartService = Depends(get_cart_service)):
    summary = await carts.add_to_cart(user, item.product_id, item.quantity)
    return SuccessResponse(data=CartSummary(**summary), message="Item added to cart")

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartSummary])
async def update_cart_item(product_id: str, update: CartItemUpdate, user: Actor = Depends(get_current_user),
                           carts: CartService = Depends(get_cart_service)):
    summary = await carts.update_quantity(user, product_id, update.quantity)
    message = "Item removed from cart" if update.quantity == 0 else "Cart updated"
    return SuccessResponse(data=CartSummary(**summary), message=message)

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartSummary])
async def remove_cart_item(product_id: str, user: Actor = Depends(get_current_user),
                           carts: CartService = Depends(get_cart_service)):
    summary = await carts.remove_from_cart(user, product_id)
    return SuccessResponse(data=CartSummary(**summary), message="Item removed from cart")

# Account
@app.put("/account/address", response_model=SuccessResponse[AddressResponse])
async def update_address(address: AddressUpdate, user: Actor = Depends(get_current_user),
                         carts: CartService = Depends(get_cart_service)):
    saved = await carts.save_address(user, AddressDB(**address.dict()))
    return SuccessResponse(data=AddressResponse(**saved.dict()), message="Address saved")

# Checkout
@app.get("/checkout", response_model=SuccessResponse[CheckoutSummary])
async def checkout_preview(user: Actor = Depends(get_current_user),
                           checkout: CheckoutService = Depends(get_checkout_service)):
    summary = await checkout.validate_checkout(user)
    return SuccessResponse(data=CheckoutSummary(
        items=[item_response(line) for line in summary["items"]],
        total_amount=summary["total_amount"],
        shipping_address=AddressResponse(**summary["shipping_address"].dict()),
    ))

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_order(request: Request, user: Actor = Depends(get_current_user),
                       checkout: CheckoutService = Depends(get_checkout_service),
                       clock=Depends(get_clock)):
    order = await checkout.place_order(user, request_id=getattr(request.state, "request_id", None))
    return SuccessResponse(
        data=OrderResponse.from_order(order, clock(), show_delivery_otp=True),
        message="Order placed successfully",
    )

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    user: Actor = Depends(get_current_user),
    store=Depends(get_store),
    clock=Depends(get_clock),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    skip = (page - 1) * limit
    now = clock()
    docs = await store.find_orders(user_id=user.id, skip=skip, limit=limit)
    orders = [OrderDB(**doc) for doc in docs]
    return SuccessResponse(data=[OrderResponse.from_order(o, now, show_delivery_otp=True) for o in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, user: Actor = Depends(get_current_user),
                    store=Depends(get_store), clock=Depends(get_clock)):
    doc = await store.get_order(order_id)
    if doc is None or doc["user_id"] != user.id:
        raise NotFound("Order not found.")
    order = OrderDB(**doc)
    return SuccessResponse(data=OrderResponse.from_order(order, clock(), show_delivery_otp=True))

@app.put("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(order_id: str, user: Actor = Depends(get_current_user),
                       policy: CancellationPolicy = Depends(get_cancellation_policy), clock=Depends(get_clock)):
    order = await policy.cancel_by_customer(order_id, user)
    return SuccessResponse(
        data=OrderResponse.from_order(order, clock(), show_delivery_otp=True),
        message="Order cancelled",
    )

# Staff (admin / seller / delivery)
@app.get("/{role}/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_staff_orders(
    role: StaffRole,
    staff: Actor = Depends(get_staff),
    store=Depends(get_store),
    clock=Depends(get_clock),
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100)
):
    seller_id = staff.id if role == StaffRole.SELLER else None
    docs = await store.find_orders(seller_id=seller_id, status=status_filter,
                                   skip=(page - 1) * limit, limit=limit)
    now = clock()
    orders = [OrderDB(**doc) for doc in docs]
    return SuccessResponse(data=[OrderResponse.from_order(o, now) for o in orders])

@app.post("/{role}/orders/{order_id}/delivery-otp", response_model=SuccessResponse[OTPReceipt])
async def issue_delivery_otp(role: StaffRole, order_id: str, staff: Actor = Depends(get_staff),
                             confirmation: DeliveryConfirmation = Depends(get_delivery_confirmation)):
    receipt = await confirmation.issue(order_id, staff)
    return SuccessResponse(data=OTPReceipt(**receipt), message=receipt["message"])

@app.post("/{role}/orders/{order_id}/confirm-delivery", response_model=SuccessResponse[OrderResponse])
@limiter.limit("10/minute")
async def confirm_delivery(request: Request, role: StaffRole, order_id: str, body: OTPConfirm,
                           staff: Actor = Depends(get_staff),
                           confirmation: DeliveryConfirmation = Depends(get_delivery_confirmation),
                           clock=Depends(get_clock)):
    order = await confirmation.confirm(order_id, staff, body.otp)
    return SuccessResponse(data=OrderResponse.from_order(order, clock()),
                           message=f"Order {order.id} marked as delivered.")

@app.put("/{role}/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def staff_cancel_order(role: StaffRole, order_id: str, body: CancelRequest,
                             staff: Actor = Depends(get_staff),
                             policy: CancellationPolicy = Depends(get_cancellation_policy),
                             clock=Depends(get_clock)):
    order = await policy.cancel_by_staff(order_id, staff, body.reason)
    return SuccessResponse(data=OrderResponse.from_order(order, clock()),
                           message=f"Order {order.id} cancelled.")

@app.get("/{role}/cancellation-reasons", response_model=SuccessResponse[CancellationReasons])
async def cancellation_reasons(role: StaffRole, staff: Actor = Depends(get_staff)):
    return SuccessResponse(data=CancellationReasons(role=role.value, reasons=reasons_for(role)))

# Health
async def check_service(url: str) -> str:
    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{url}/health", timeout=2.0)
            return "healthy" if resp.status_code == 200 else "unhealthy"
        except httpx.HTTPError:
            return "unreachable"

@app.get("/health", response_model=HealthResponse)
async def health_check(store=Depends(get_store)):
    try:
        await store.ping()
        db_status = "connected"
    except Exception:
        logger.exception("Database ping failed")
        db_status = "disconnected"

    auth_status = await check_service(settings.AUTH_SERVICE_URL)
    overall_status = "healthy" if db_status == "connected" else "unhealthy"

    if overall_status == "unhealthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(error="Service Unhealthy", details={"database": db_status}).dict(),
        )

    return HealthResponse(
        service="orders-service",
        status=overall_status,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"auth-service": auth_status}
    )
