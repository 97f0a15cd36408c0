from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ProductBase(BaseModel):
    merchant_id: str
    title: str
    price: Decimal = Field(ge=0, decimal_places=2)
    sizes: List[str] = Field(min_length=1)
    image_url: str = ""
    active: bool = True

    @field_validator("sizes")
    @classmethod
    def sizes_unique(cls, sizes):
        if len(set(sizes)) != len(sizes):
            raise ValueError("sizes must be unique")
        return sizes


class ProductCreate(ProductBase):
    inventory: Dict[str, int] = {}


class ProductUpdate(BaseModel):
    title: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    sizes: Optional[List[str]] = Field(default=None, min_length=1)
    image_url: Optional[str] = None
    active: Optional[bool] = None


class Product(ProductBase):
    id: str
    inventory: Dict[str, int]
    total_inventory: int
    available_sizes: List[str]
    event_ids: List[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockLevelsUpdate(BaseModel):
    levels: Dict[str, int]


class StockLevels(BaseModel):
    product_id: str
    levels: Dict[str, int]


class EventBase(BaseModel):
    name: str
    venue_name: str
    address: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    geofence_radius: float = Field(gt=0)
    start_date: datetime
    end_date: datetime
    active: bool = True
    merchant_ids: List[str] = []
    image_url: Optional[str] = None
    description: Optional[str] = None


class EventCreate(EventBase):
    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class EventUpdate(BaseModel):
    name: Optional[str] = None
    venue_name: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    geofence_radius: Optional[float] = Field(default=None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    active: Optional[bool] = None
    merchant_ids: Optional[List[str]] = None
    image_url: Optional[str] = None
    description: Optional[str] = None


class Event(EventBase):
    id: str
    product_ids: List[str]
    is_live: bool
    is_upcoming: bool
    is_past: bool
    archived: bool
    archived_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EventSummary(BaseModel):
    """Event counts on a merchant's dashboard"""
    active: int
    archived: int
    expired: int
    upcoming: int


class OrderItemCreate(BaseModel):
    product_id: str
    size: str
    quantity: int


class OrderCreate(BaseModel):
    user_id: str
    event_id: str
    items: List[OrderItemCreate]
    currency: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    size: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_title: Optional[str] = None

    model_config = {"from_attributes": True}


class Order(BaseModel):
    id: str
    order_number: str
    user_id: str
    event_id: str
    merchant_id: str
    amount: Decimal
    currency: str
    status: str
    payment_status: str
    payment_intent_id: Optional[str] = None
    payment_simulated: bool
    transaction_id: Optional[str] = None
    pickup_token: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    order_items: List[OrderItem] = []

    model_config = {"from_attributes": True}


class PaymentIntent(BaseModel):
    intent_id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str
    simulated: bool
    fallback_reason: Optional[str] = None


class OrderCreated(BaseModel):
    order: Order
    payment: PaymentIntent


class PaymentOutcomeIn(BaseModel):
    status: str  # succeeded, cancelled, failed
    transaction_id: Optional[str] = None

    @model_validator(mode="after")
    def transaction_id_for_success(self):
        if self.status not in ("succeeded", "cancelled", "failed"):
            raise ValueError("status must be one of succeeded, cancelled, failed")
        if self.status == "succeeded" and not self.transaction_id:
            raise ValueError("transaction_id is required for a succeeded outcome")
        return self


class OrderCancel(BaseModel):
    reason: str = "cancelled by user"


class RedeemRequest(BaseModel):
    token: str
    event_id: Optional[str] = None
