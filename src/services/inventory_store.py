import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict

from sqlalchemy import text
from sqlalchemy.orm import Session

from src.models.database import Order, Product, ProductInventory, StockReservation, utcnow
from src.services.errors import InsufficientStockError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """Handle for stock decremented on behalf of an order"""
    id: str
    order_id: str
    product_id: str
    size: str
    quantity: int


class InventoryStore:
    """
    Authoritative per-(product, size) stock counts.

    Every mutation is a single conditional UPDATE whose row count decides the
    outcome, so concurrent callers never see a check-then-write race and a
    count can never go below zero.
    """

    def __init__(self, db: Session):
        self.db = db

    def reserve_stock(
        self, order_id: str, product_id: str, size: str, quantity: int, commit: bool = True
    ) -> Reservation:
        """Decrement stock for one line and record the reservation.

        Raises InsufficientStockError when fewer than ``quantity`` units are
        left. The session is rolled back in that case, so with ``commit=False``
        every reservation taken earlier in the same transaction is undone too.
        """
        if quantity <= 0:
            raise ValidationError(f"Quantity must be positive, got {quantity}")

        try:
            update_count = self.db.execute(
                text("""
                    UPDATE product_inventory
                    SET quantity = quantity - :qty,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE product_id = :product_id AND size = :size AND quantity >= :qty
                """),
                {"qty": quantity, "product_id": product_id, "size": size},
            ).rowcount

            if update_count == 0:
                self.db.rollback()
                available = self.get_count(product_id, size)
                logger.warning(
                    f"Reservation refused for {product_id}/{size}: "
                    f"requested {quantity}, available {available}"
                )
                raise InsufficientStockError(product_id, size, quantity, available)

            reservation = StockReservation(
                order_id=order_id,
                product_id=product_id,
                size=size,
                quantity=quantity,
            )
            self.db.add(reservation)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except InsufficientStockError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error reserving stock for {product_id}/{size}: {str(e)}")
            raise

        logger.info(f"Reserved {quantity} x {product_id}/{size} for order {order_id}")
        return Reservation(
            id=reservation.id,
            order_id=order_id,
            product_id=product_id,
            size=size,
            quantity=quantity,
        )

    def release_stock(self, reservation_id: str, commit: bool = True) -> bool:
        """Give a reservation's units back. Returns False if it was already released."""
        flipped = self.db.execute(
            text("""
                UPDATE stock_reservations
                SET released = :released, released_at = :now
                WHERE id = :id AND released = :not_released
            """),
            {"id": reservation_id, "released": True, "not_released": False, "now": utcnow()},
        ).rowcount

        if flipped == 0:
            if commit:
                self.db.commit()
            return False

        reservation = self.db.query(StockReservation).filter(
            StockReservation.id == reservation_id
        ).one()
        self.db.execute(
            text("""
                UPDATE product_inventory
                SET quantity = quantity + :qty,
                    updated_at = CURRENT_TIMESTAMP
                WHERE product_id = :product_id AND size = :size
            """),
            {"qty": reservation.quantity, "product_id": reservation.product_id, "size": reservation.size},
        )
        if commit:
            self.db.commit()

        logger.info(
            f"Released {reservation.quantity} x {reservation.product_id}/{reservation.size} "
            f"from order {reservation.order_id}"
        )
        return True

    def release_order(self, order_id: str, commit: bool = True) -> int:
        """Release every outstanding reservation of an order; returns units restored."""
        outstanding = self.db.query(StockReservation.id, StockReservation.quantity).filter(
            StockReservation.order_id == order_id,
            StockReservation.released.is_(False),
        ).all()

        restored = 0
        for reservation_id, quantity in outstanding:
            if self.release_stock(reservation_id, commit=False):
                restored += quantity

        if commit:
            self.db.commit()
        return restored

    def release_orphaned(self, cutoff: datetime) -> int:
        """
        Release reservations taken before ``cutoff`` whose order row never got
        written, e.g. after a worker died mid-checkout. Returns units restored.
        """
        orphaned = self.db.query(StockReservation.id, StockReservation.quantity).outerjoin(
            Order, Order.id == StockReservation.order_id
        ).filter(
            StockReservation.released.is_(False),
            StockReservation.created_at < cutoff,
            Order.id.is_(None),
        ).all()

        restored = 0
        try:
            for reservation_id, quantity in orphaned:
                if self.release_stock(reservation_id, commit=False):
                    restored += quantity
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error releasing orphaned reservations: {str(e)}")
            raise

        if restored:
            logger.warning(f"Released {restored} units held by reservations without an order")
        return restored

    def get_count(self, product_id: str, size: str) -> int:
        level = self.db.query(ProductInventory.quantity).filter(
            ProductInventory.product_id == product_id,
            ProductInventory.size == size,
        ).scalar()
        return level or 0

    def get_levels(self, product_id: str) -> Dict[str, int]:
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        rows = self.db.query(ProductInventory.size, ProductInventory.quantity).filter(
            ProductInventory.product_id == product_id
        ).all()
        counts = dict(rows)
        return {size: counts.get(size, 0) for size in product.sizes}

    def set_levels(self, product_id: str, levels: Dict[str, int]) -> Dict[str, int]:
        """
        Merchant edit of absolute counts, merged by key.

        Only the sizes named in ``levels`` are written, one row each, so a
        reservation on another size is never overwritten.
        """
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        _validate_levels(product.sizes, levels)

        try:
            for size, quantity in levels.items():
                updated = self.db.execute(
                    text("""
                        UPDATE product_inventory
                        SET quantity = :qty, updated_at = CURRENT_TIMESTAMP
                        WHERE product_id = :product_id AND size = :size
                    """),
                    {"qty": quantity, "product_id": product_id, "size": size},
                ).rowcount
                if updated == 0:
                    self.db.add(ProductInventory(product_id=product_id, size=size, quantity=quantity))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating stock levels for {product_id}: {str(e)}")
            raise

        logger.info(f"Stock levels for {product_id} set: {levels}")
        return self.get_levels(product_id)

    def adjust_stock(self, product_id: str, size: str, delta: int) -> int:
        """Relative restock or write-off; refuses to drive the count below zero."""
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if size not in product.sizes:
            raise ValidationError(f"Unknown size '{size}'; declared sizes are {list(product.sizes)}")

        update_count = self.db.execute(
            text("""
                UPDATE product_inventory
                SET quantity = quantity + :delta, updated_at = CURRENT_TIMESTAMP
                WHERE product_id = :product_id AND size = :size AND quantity + :delta >= 0
            """),
            {"delta": delta, "product_id": product_id, "size": size},
        ).rowcount
        if update_count == 0:
            self.db.rollback()
            available = self.get_count(product_id, size)
            raise InsufficientStockError(product_id, size, -delta, available)
        self.db.commit()
        return self.get_count(product_id, size)


def _validate_levels(sizes, levels: Dict[str, int]) -> None:
    for size, quantity in levels.items():
        if size not in sizes:
            raise ValidationError(f"Unknown size '{size}'; declared sizes are {list(sizes)}")
        if quantity < 0:
            raise ValidationError(f"Stock for size '{size}' cannot be negative")
