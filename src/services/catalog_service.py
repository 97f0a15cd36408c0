import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models.database import Event, Product, ProductInventory, utcnow
from src.models.schemas import EventCreate, ProductCreate
from src.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_PRODUCT_FIELDS = ("title", "price", "sizes", "image_url", "active")
_EVENT_FIELDS = (
    "name", "venue_name", "address", "latitude", "longitude", "geofence_radius",
    "start_date", "end_date", "active", "merchant_ids", "image_url", "description",
)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CatalogService:
    """
    Merchant-facing product and event management, plus the read-only
    sellability check the order engine relies on.

    The product/event link lives in one association row, so linking,
    unlinking and the cascades on delete touch both directions in a single
    transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # Products

    def create_product(self, product_data: ProductCreate) -> Product:
        _check_inventory_keys(product_data.sizes, product_data.inventory)

        product = Product(
            merchant_id=product_data.merchant_id,
            title=product_data.title,
            price=product_data.price,
            sizes=list(product_data.sizes),
            image_url=product_data.image_url,
            active=product_data.active,
        )
        for size in product_data.sizes:
            product.stock_levels.append(
                ProductInventory(size=size, quantity=product_data.inventory.get(size, 0))
            )

        self.db.add(product)
        self.db.commit()
        self.db.refresh(product)
        logger.info(f"Created product '{product.title}' ({product.id}) for merchant {product.merchant_id}")
        return product

    def get_product(self, product_id: str) -> Product:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Product:
        """Apply a merchant edit. Changing sizes keeps the inventory keys in step."""
        product = self.get_product(product_id)

        new_sizes = updates.get("sizes")
        if new_sizes is not None:
            if not new_sizes or len(set(new_sizes)) != len(new_sizes):
                raise ValidationError("sizes must be a non-empty list of unique labels")
            existing = {level.size: level for level in product.stock_levels}
            for size, level in existing.items():
                if size not in new_sizes:
                    product.stock_levels.remove(level)
            for size in new_sizes:
                if size not in existing:
                    product.stock_levels.append(ProductInventory(size=size, quantity=0))

        for field, value in updates.items():
            if field in _PRODUCT_FIELDS and value is not None:
                setattr(product, field, list(value) if field == "sizes" else value)

        self.db.commit()
        self.db.refresh(product)
        logger.info(f"Updated product {product_id}: {sorted(updates)}")
        return product

    def delete_product(self, product_id: str) -> None:
        """Hard delete; the product disappears from every linked event."""
        product = self.get_product(product_id)
        event_ids = product.event_ids
        try:
            product.events.clear()
            self.db.delete(product)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting product {product_id}: {str(e)}")
            raise
        logger.info(f"Deleted product {product_id}, unlinked from events {event_ids}")

    def list_merchant_products(self, merchant_id: str) -> List[Product]:
        return self.db.query(Product).filter(
            Product.merchant_id == merchant_id
        ).order_by(Product.created_at).all()

    # Events

    def create_event(self, event_data: EventCreate) -> Event:
        start_date = _naive_utc(event_data.start_date)
        end_date = _naive_utc(event_data.end_date)
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date")

        event = Event(
            name=event_data.name,
            venue_name=event_data.venue_name,
            address=event_data.address,
            latitude=event_data.latitude,
            longitude=event_data.longitude,
            geofence_radius=event_data.geofence_radius,
            start_date=start_date,
            end_date=end_date,
            active=event_data.active,
            merchant_ids=list(event_data.merchant_ids),
            image_url=event_data.image_url,
            description=event_data.description,
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        logger.info(f"Created event '{event.name}' ({event.id})")
        return event

    def get_event(self, event_id: str) -> Event:
        event = self.db.query(Event).filter(Event.id == event_id).first()
        if not event:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    def update_event(self, event_id: str, updates: Dict[str, Any]) -> Event:
        event = self.get_event(event_id)

        changes = {
            field: value for field, value in updates.items()
            if field in _EVENT_FIELDS and value is not None
        }
        for field in ("start_date", "end_date"):
            if field in changes:
                changes[field] = _naive_utc(changes[field])

        start_date = changes.get("start_date", event.start_date)
        end_date = changes.get("end_date", event.end_date)
        if end_date <= start_date:
            raise ValidationError("end_date must be after start_date")

        for field, value in changes.items():
            setattr(event, field, value)

        self.db.commit()
        self.db.refresh(event)
        logger.info(f"Updated event {event_id}: {sorted(changes)}")
        return event

    def delete_event(self, event_id: str) -> None:
        """Delete an event; its id disappears from every linked product."""
        event = self.get_event(event_id)
        try:
            event.products.clear()
            self.db.delete(event)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting event {event_id}: {str(e)}")
            raise
        logger.info(f"Deleted event {event_id}")

    def list_events(
        self,
        active_only: bool = False,
        include_archived: bool = False,
        merchant_id: Optional[str] = None,
    ) -> List[Event]:
        query = self.db.query(Event)
        if active_only:
            query = query.filter(Event.active.is_(True))
        if not include_archived:
            query = query.filter(Event.archived.is_(False))
        events = query.order_by(Event.start_date).all()
        if merchant_id:
            events = [event for event in events if merchant_id in (event.merchant_ids or [])]
        return events

    # Archiving

    def archive_event(self, event_id: str) -> Event:
        """Hide an event from default listings. Linked products stay sellable."""
        event = self.get_event(event_id)
        if not event.archived:
            event.archived = True
            event.archived_at = utcnow()
            self.db.commit()
            self.db.refresh(event)
            logger.info(f"Archived event {event_id}")
        return event

    def unarchive_event(self, event_id: str) -> Event:
        event = self.get_event(event_id)
        if event.archived:
            event.archived = False
            event.archived_at = None
            self.db.commit()
            self.db.refresh(event)
            logger.info(f"Unarchived event {event_id}")
        return event

    def archive_expired_events(self, merchant_id: str) -> int:
        """Archive every ended, not yet archived event of a merchant; returns how many."""
        now = utcnow()
        expired = [
            event for event in self.db.query(Event).filter(
                Event.archived.is_(False),
                Event.end_date < now,
            ).all()
            if merchant_id in (event.merchant_ids or [])
        ]
        try:
            for event in expired:
                event.archived = True
                event.archived_at = now
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error archiving expired events for merchant {merchant_id}: {str(e)}")
            raise

        if expired:
            logger.info(f"Auto-archived {len(expired)} expired events for merchant {merchant_id}")
        return len(expired)

    def event_counts(self, merchant_id: str) -> Dict[str, int]:
        events = self.list_events(include_archived=True, merchant_id=merchant_id)
        current = [event for event in events if not event.archived]
        return {
            "active": sum(1 for event in current if event.active),
            "archived": len(events) - len(current),
            "expired": sum(1 for event in current if event.is_past),
            "upcoming": sum(1 for event in current if event.is_upcoming),
        }

    # Product <-> event link

    def link_product(self, product_id: str, event_id: str) -> Event:
        product = self.get_product(product_id)
        event = self.get_event(event_id)
        if product not in event.products:
            try:
                event.products.append(product)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error linking product {product_id} to event {event_id}: {str(e)}")
                raise
            logger.info(f"Linked product {product_id} to event {event_id}")
        return event

    def unlink_product(self, product_id: str, event_id: str) -> Event:
        product = self.get_product(product_id)
        event = self.get_event(event_id)
        if product in event.products:
            try:
                event.products.remove(product)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error unlinking product {product_id} from event {event_id}: {str(e)}")
                raise
            logger.info(f"Unlinked product {product_id} from event {event_id}")
        return event

    # Sellability

    def get_sellable_product(self, product_id: str, event_id: str) -> Product:
        """Return the product only if it is active and linked to the event."""
        product = self.db.query(Product).join(Product.events).filter(
            Product.id == product_id,
            Event.id == event_id,
            Product.active.is_(True),
        ).first()
        if not product:
            raise NotFoundError(f"Product {product_id} is not sellable at event {event_id}")
        return product

    def list_sellable_products(self, event_id: str, merchant_id: Optional[str] = None) -> List[Product]:
        self.get_event(event_id)
        query = self.db.query(Product).join(Product.events).filter(
            Event.id == event_id,
            Product.active.is_(True),
        )
        if merchant_id:
            query = query.filter(Product.merchant_id == merchant_id)
        return query.order_by(Product.title).all()


def _check_inventory_keys(sizes, inventory: Dict[str, int]) -> None:
    for size, quantity in inventory.items():
        if size not in sizes:
            raise ValidationError(f"Inventory key '{size}' is not a declared size")
        if quantity < 0:
            raise ValidationError(f"Stock for size '{size}' cannot be negative")
