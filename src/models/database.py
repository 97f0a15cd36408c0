import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Table,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus:
    PENDING_PAYMENT = "pending_payment"
    PENDING_PICKUP = "pending_pickup"
    PICKED_UP = "picked_up"
    CANCELLED = "cancelled"

    TERMINAL = (PICKED_UP, CANCELLED)


class PaymentStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# One row links both directions: Product.events and Event.products
event_products = Table(
    "event_products",
    Base.metadata,
    Column("event_id", String(36), ForeignKey("events.id", ondelete="CASCADE"), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
)


class Product(Base):
    """Merchandise sold by a merchant, stocked per size"""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_new_id)
    merchant_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    sizes = Column(JSON, nullable=False, default=list)
    image_url = Column(String, nullable=False, default="")
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stock_levels = relationship(
        "ProductInventory", back_populates="product", cascade="all, delete-orphan"
    )
    events = relationship("Event", secondary=event_products, back_populates="products")

    @property
    def inventory(self) -> dict:
        return {level.size: level.quantity for level in self.stock_levels}

    @property
    def total_inventory(self) -> int:
        return sum(level.quantity for level in self.stock_levels)

    @property
    def available_sizes(self) -> list:
        counts = self.inventory
        return [size for size in self.sizes if counts.get(size, 0) > 0]

    @property
    def event_ids(self) -> list:
        return [event.id for event in self.events]


class ProductInventory(Base):
    """Authoritative stock count for one (product, size) pair"""
    __tablename__ = "product_inventory"

    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)
    size = Column(String, primary_key=True)
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="stock_levels")


class Event(Base):
    """A live event with a geofence, where linked products are sellable"""
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    venue_name = Column(String, nullable=False)
    address = Column(String, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    geofence_radius = Column(Float, nullable=False)  # metres
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime)
    merchant_ids = Column(JSON, nullable=False, default=list)
    image_url = Column(String)
    description = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    products = relationship("Product", secondary=event_products, back_populates="events")

    @property
    def product_ids(self) -> list:
        return [product.id for product in self.products]

    @property
    def is_live(self) -> bool:
        now = utcnow()
        return self.active and self.start_date <= now <= self.end_date

    @property
    def is_upcoming(self) -> bool:
        return self.start_date > utcnow()

    @property
    def is_past(self) -> bool:
        return self.end_date < utcnow()


class Order(Base):
    """Customer order moving through the pickup state machine"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    event_id = Column(String(36), index=True, nullable=False)
    merchant_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String, nullable=False, default=OrderStatus.PENDING_PAYMENT)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    payment_intent_id = Column(String, index=True)
    payment_simulated = Column(Boolean, nullable=False, default=False)
    payment_fallback_reason = Column(String)
    transaction_id = Column(String)
    pickup_token = Column(String, unique=True, index=True)
    redeemed_at = Column(DateTime)
    paid_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancel_reason = Column(String)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.order_items)


class OrderItem(Base):
    """Line item with price and title cached at checkout"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    product_id = Column(String(36), nullable=False)
    size = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    product_title = Column(String)

    order = relationship("Order", back_populates="order_items")


class StockReservation(Base):
    """Units taken from a (product, size) on behalf of an in-flight order"""
    __tablename__ = "stock_reservations"

    id = Column(String(36), primary_key=True, default=_new_id)
    # Reservations are taken before the order row exists, so no foreign key
    order_id = Column(String(36), index=True, nullable=False)
    product_id = Column(String(36), nullable=False)
    size = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    released = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    released_at = Column(DateTime)
