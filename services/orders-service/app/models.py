from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    # Mongo hands prices back as floats; go through str to avoid binary noise
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_mongo(value):
    """Recursively convert Decimals to floats and enums to their values for storage."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_mongo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_mongo(v) for v in value]
    return value


class OrderStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(str, Enum):
    USER = "user"
    SELLER = "seller"
    ADMIN = "admin"
    DELIVERY = "delivery"


class StaffRole(str, Enum):
    ADMIN = "admin"
    SELLER = "seller"
    DELIVERY = "delivery"


class ProductDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    seller_id: str
    name: str
    category: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    order_count: int = 0
    review_status: ReviewStatus = ReviewStatus.PENDING
    image_url: Optional[str] = None

    @field_validator("price", mode="before")
    def coerce_price(cls, v):
        return to_money(v)

    @property
    def is_approved(self) -> bool:
        return self.review_status == ReviewStatus.APPROVED

    class Config:
        populate_by_name = True
        use_enum_values = True


class CartItemDB(BaseModel):
    product_id: str
    quantity: int


class AddressDB(BaseModel):
    name: str = ""
    phone: str = ""
    pincode: str = ""
    city_village: str = ""
    locality: Optional[str] = None
    landmark_nearby: Optional[str] = None

    def is_complete(self) -> bool:
        return all(
            (value or "").strip()
            for value in (self.name, self.phone, self.pincode, self.city_village)
        )


class UserDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    email: Optional[str] = None
    address: Optional[AddressDB] = None
    cart: List[CartItemDB] = []
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True


class OrderItemDB(BaseModel):
    """Frozen snapshot of a product line at the moment the order was placed."""
    product_id: str
    seller_id: str
    name: str
    price_at_order: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None

    @field_validator("price_at_order", mode="before")
    def coerce_price(cls, v):
        return to_money(v)

    @property
    def subtotal(self) -> Decimal:
        return to_money(self.price_at_order * self.quantity)


class DeliveryOTP(BaseModel):
    code: str
    expires_at: datetime
    issued_by_role: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


class CancelledBy(BaseModel):
    role: str
    actor_id: str


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    user_email: str
    items: List[OrderItemDB] = Field(..., min_length=1)
    total_amount: Decimal
    shipping_address: AddressDB
    payment_method: str = "COD"
    status: OrderStatus = OrderStatus.PENDING
    order_date: datetime = Field(default_factory=datetime.utcnow)
    cancellation_allowed_until: Optional[datetime] = None
    delivery_otp: Optional[DeliveryOTP] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancelledBy] = None
    received_by_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("total_amount", mode="before")
    def coerce_total(cls, v):
        return to_money(v)

    @model_validator(mode="after")
    def check_total(self):
        expected = sum((item.subtotal for item in self.items), Decimal(0))
        if to_money(expected) != self.total_amount:
            raise ValueError(
                f"total_amount {self.total_amount} does not match line items ({expected})"
            )
        return self

    @property
    def seller_ids(self) -> set:
        return {item.seller_id for item in self.items}

    def lines_for_seller(self, seller_id: str) -> List[OrderItemDB]:
        return [item for item in self.items if item.seller_id == seller_id]

    def active_otp(self, now: datetime) -> Optional[DeliveryOTP]:
        if self.status != OrderStatus.PENDING or self.delivery_otp is None:
            return None
        return self.delivery_otp if self.delivery_otp.is_active(now) else None

    def customer_can_cancel(self, now: datetime) -> bool:
        return (
            self.status == OrderStatus.PENDING
            and self.cancellation_allowed_until is not None
            and now < self.cancellation_allowed_until
        )

    def to_document(self) -> dict:
        doc = self.dict(by_alias=True, exclude={"id"}, exclude_none=True)
        return to_mongo(doc)

    class Config:
        populate_by_name = True
        use_enum_values = True


class Actor(BaseModel):
    """The authenticated caller, as vouched for by the auth service."""
    id: str
    role: Role = Role.USER
    email: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.ADMIN, Role.SELLER, Role.DELIVERY)

    class Config:
        use_enum_values = True
