import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from src.models.database import Order, OrderStatus, utcnow
from src.services.errors import AlreadyRedeemedError, NotFoundError, WrongStateError

logger = logging.getLogger(__name__)


class PickupVerifier:
    """Single-use redemption of pickup credentials scanned by merchant staff"""

    def __init__(self, db: Session):
        self.db = db

    def redeem(self, token: str, event_id: Optional[str] = None) -> Order:
        """
        Mark the order owning ``token`` as picked up.

        The transition is one conditional UPDATE, so of any number of scans of
        the same token exactly one succeeds. When nothing changed, the current
        row tells which of NotFound / AlreadyRedeemed / WrongState applies.
        """
        conditions = [
            Order.pickup_token == token,
            Order.status == OrderStatus.PENDING_PICKUP,
            Order.redeemed_at.is_(None),
        ]
        if event_id:
            conditions.append(Order.event_id == event_id)

        now = utcnow()
        update_count = self.db.execute(
            update(Order)
            .where(*conditions)
            .values(status=OrderStatus.PICKED_UP, redeemed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()

        order = self.db.query(Order).filter(Order.pickup_token == token).first()
        if update_count == 1:
            logger.info(f"Order {order.order_number} picked up")
            return order

        if not order:
            raise NotFoundError("No order matches this pickup code")
        if order.redeemed_at is not None:
            logger.warning(f"Pickup code for order {order.order_number} scanned again")
            raise AlreadyRedeemedError(
                f"Order {order.order_number} was already picked up at {order.redeemed_at.isoformat()}"
            )
        if event_id and order.event_id != event_id:
            raise WrongStateError(
                f"Order {order.order_number} belongs to a different event", order.status
            )
        raise WrongStateError(
            f"Order {order.order_number} is not ready for pickup (status: {order.status})", order.status
        )
