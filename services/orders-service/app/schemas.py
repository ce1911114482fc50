from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from app.models import OrderDB

# --- Cart ---
class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)

class CartItemUpdate(BaseModel):
    # 0 removes the line
    quantity: int = Field(..., ge=0)

class CartItemResponse(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal
    stock: int
    available: bool
    image_url: Optional[str] = None

class CartResponse(BaseModel):
    items: List[CartItemResponse]
    total_amount: Decimal

class CartSummary(BaseModel):
    item_count: int
    total_quantity: int

# --- Account ---
class AddressUpdate(BaseModel):
    name: str = Field(..., max_length=100)
    phone: str = Field(..., max_length=20)
    pincode: str = Field(..., max_length=10)
    city_village: str = Field(..., max_length=100)
    locality: Optional[str] = Field(None, max_length=200)
    landmark_nearby: Optional[str] = Field(None, max_length=200)

    @field_validator('name', 'phone', 'pincode', 'city_village', 'locality', 'landmark_nearby')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class AddressResponse(BaseModel):
    name: str
    phone: str
    pincode: str
    city_village: str
    locality: Optional[str] = None
    landmark_nearby: Optional[str] = None

# --- Checkout / Orders ---
class OrderItemResponse(BaseModel):
    product_id: str
    seller_id: str
    name: str
    price_at_order: Decimal
    quantity: int
    subtotal: Decimal
    image_url: Optional[str] = None

class CheckoutSummary(BaseModel):
    items: List[OrderItemResponse]
    total_amount: Decimal
    shipping_address: AddressResponse
    payment_method: str = "COD"

class OrderResponse(BaseModel):
    id: str
    user_id: str
    items: List[OrderItemResponse]
    total_amount: Decimal
    shipping_address: AddressResponse
    payment_method: str
    status: str
    order_date: datetime
    cancellation_allowed_until: Optional[datetime] = None
    is_cancellable: bool = False
    delivery_otp: Optional[str] = None
    delivery_otp_expires_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by_role: Optional[str] = None
    received_by_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: OrderDB, now: datetime, show_delivery_otp: bool = False) -> "OrderResponse":
        """`show_delivery_otp` is only ever set for the customer who owns the order."""
        otp = order.active_otp(now) if show_delivery_otp else None
        return cls(
            id=order.id,
            user_id=order.user_id,
            items=[item_response(item) for item in order.items],
            total_amount=order.total_amount,
            shipping_address=AddressResponse(**order.shipping_address.dict()),
            payment_method=order.payment_method,
            status=order.status,
            order_date=order.order_date,
            cancellation_allowed_until=order.cancellation_allowed_until,
            is_cancellable=order.customer_can_cancel(now),
            delivery_otp=otp.code if otp else None,
            delivery_otp_expires_at=otp.expires_at if otp else None,
            cancellation_reason=order.cancellation_reason,
            cancelled_by_role=order.cancelled_by.role if order.cancelled_by else None,
            received_by_date=order.received_by_date,
            updated_at=order.updated_at,
        )

def item_response(item) -> OrderItemResponse:
    return OrderItemResponse(
        product_id=item.product_id,
        seller_id=item.seller_id,
        name=item.name,
        price_at_order=item.price_at_order,
        quantity=item.quantity,
        subtotal=item.subtotal,
        image_url=item.image_url,
    )

# --- Staff actions ---
class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=100)

class OTPConfirm(BaseModel):
    otp: str = Field(..., min_length=1, max_length=12)

    @field_validator('otp')
    def strip_otp(cls, v):
        return v.strip()

class OTPReceipt(BaseModel):
    order_id: str
    expires_at: datetime
    message: str

class CancellationReasons(BaseModel):
    role: str
    reasons: List[str]
