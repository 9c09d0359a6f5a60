# paypost/models.py
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from .errors import InvalidState


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PUBLISHED = "published"


# forward-only; published is terminal
TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.PUBLISHED},
    OrderStatus.PUBLISHED: set(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS[current]


def check_transition(current: OrderStatus, new: OrderStatus) -> None:
    if not can_transition(current, new):
        raise InvalidState(f"transition {current.value} -> {new.value} is not allowed")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class OrderPhoto(BaseModel):
    filename: str
    mimetype: str
    storage_locator: str


class PhotoUpload(BaseModel):
    """Raw image received at intake, before it is stored."""
    filename: str
    mimetype: str
    data: bytes


class Order(BaseModel):
    id: str
    text: str
    group_id: int
    user_id: Optional[int] = None
    price: Decimal = Field(gt=0)
    custom_erid: Optional[str] = None
    erid: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_id: Optional[str] = None
    post_id: Optional[int] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    # start of the publish attempt currently holding the order
    publishing_at: Optional[datetime] = None
    # most recent publish failure, kept after a later success
    last_error: Optional[str] = None
    publish_failed_at: Optional[datetime] = None
    photos: List[OrderPhoto] = Field(default_factory=list)


class OrderFilters(BaseModel):
    status: Optional[OrderStatus] = None
    group_id: Optional[int] = None
    user_id: Optional[int] = None
    limit: Optional[int] = Field(default=None, ge=1, le=500)


class PublishResult(BaseModel):
    post_id: int
    erid: str


# API schemas

class CreateOrderOut(BaseModel):
    order_id: str
    payment_type: str
    order: Optional[dict] = None  # VK Pay widget payload
    payment_url: Optional[str] = None


class ConfirmPaymentIn(BaseModel):
    order_id: str = Field(min_length=1)
    payment_id: Optional[str] = None


class PublishOut(BaseModel):
    success: bool = True
    post_id: int
    erid: str
    message: str = "Пост успешно опубликован с ERID"


class OrderStatusOut(BaseModel):
    order_id: str
    status: OrderStatus
    order_data: Order
