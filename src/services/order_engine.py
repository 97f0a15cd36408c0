import asyncio
import logging
import secrets
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from src.core.config import Settings, settings as default_settings
from src.models.database import Order, OrderItem, OrderStatus, PaymentStatus, utcnow
from src.models.schemas import OrderCreate
from src.services.catalog_service import CatalogService
from src.services.errors import (
    AlreadyFinalizedError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from src.services.inventory_store import InventoryStore
from src.services.payment_gateway import (
    IntentHandle,
    PaymentGatewayAdapter,
    PaymentOutcome,
    PaymentResult,
    to_minor_units,
)
from src.services.pickup_verifier import PickupVerifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


def new_pickup_token() -> str:
    return f"QR_{secrets.token_hex(16)}"


def order_number_for(order_id: str) -> str:
    return f"ORD-{order_id.replace('-', '')[:8].upper()}"


class OrderEngine:
    """
    Checkout orchestration: stock reservation, payment reconciliation and the
    order status state machine.

    Every transition is a conditional UPDATE on the order's current status,
    so duplicate callbacks and concurrent requests cannot apply one twice.
    The session is committed before awaiting the payment processor; no
    database transaction is held across that call.
    """

    max_retries = 3

    def __init__(
        self,
        db: Session,
        inventory: InventoryStore = None,
        catalog: CatalogService = None,
        gateway: PaymentGatewayAdapter = None,
        verifier: PickupVerifier = None,
        config: Settings = None,
    ):
        self.db = db
        self.inventory = inventory or InventoryStore(db)
        self.catalog = catalog or CatalogService(db)
        self.gateway = gateway or PaymentGatewayAdapter()
        self.verifier = verifier or PickupVerifier(db)
        self.config = config or default_settings

    async def create_order(
        self, order_data: OrderCreate, auth_user_id: Optional[str] = None
    ) -> Tuple[Order, IntentHandle]:
        """
        Reserve stock for every line, persist the order in pending_payment and
        request a payment intent for its total.

        The reservations and the order row are committed together, so an
        interrupted checkout holds no stock. A failure after that commit
        releases the stock and cancels the order before the error propagates.
        The caller completes payment separately (apply_payment_outcome or
        settle_payment).
        """
        lines, merchant_id, total = self._validate(order_data)
        currency = (order_data.currency or self.config.DEFAULT_CURRENCY).lower()
        self.gateway.validate(to_minor_units(total), currency)

        order_id = str(uuid.uuid4())
        logger.info(f"Processing order {order_id} for user {order_data.user_id}")

        # Steps 1 and 2 share one transaction: the reservations and the order
        # row become visible together or not at all
        try:
            for line in lines:
                self.inventory.reserve_stock(
                    order_id, line["product_id"], line["size"], line["quantity"], commit=False
                )

            order = Order(
                id=order_id,
                order_number=order_number_for(order_id),
                user_id=order_data.user_id,
                event_id=order_data.event_id,
                merchant_id=merchant_id,
                amount=total,
                currency=currency,
                status=OrderStatus.PENDING_PAYMENT,
                payment_status=PaymentStatus.PENDING,
            )
            for line in lines:
                order.order_items.append(OrderItem(
                    product_id=line["product_id"],
                    size=line["size"],
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    total_price=line["unit_price"] * line["quantity"],
                    product_title=line["product_title"],
                ))
            self.db.add(order)
            self.db.commit()
        except InsufficientStockError:
            logger.warning(f"Order {order_id} rejected, no stock was reserved")
            raise
        except BaseException as e:
            # Also covers task cancellation between two reservations
            self.db.rollback()
            logger.error(f"Error reserving stock for order {order_id}: {e!r}")
            raise

        try:
            # Step 3: payment intent, outside any open transaction
            handle = await self.gateway.create_intent(
                to_minor_units(total), currency, order_id, auth_user_id
            )

            order.payment_intent_id = handle.intent_id
            order.payment_simulated = handle.simulated
            order.payment_fallback_reason = handle.fallback_reason.value if handle.simulated else None
            self.db.commit()
        except BaseException as e:
            logger.error(f"Error processing order {order_id}: {e!r}")
            self._abort_checkout(order_id, "checkout failed")
            raise

        logger.info(
            f"Order {order.order_number} created: {order.amount} {currency}, "
            f"intent {handle.intent_id}{' (simulated)' if handle.simulated else ''}"
        )
        return order, handle

    def _validate(self, order_data: OrderCreate):
        if not order_data.items:
            raise ValidationError("Order must contain at least one item")

        lines = []
        for item in order_data.items:
            if item.quantity <= 0:
                raise ValidationError(f"Quantity for product {item.product_id} must be positive")
            try:
                product = self.catalog.get_sellable_product(item.product_id, order_data.event_id)
            except NotFoundError:
                raise ValidationError(f"Product {item.product_id} is not available at this event")
            if item.size not in product.sizes:
                raise ValidationError(f"Size '{item.size}' is not offered for {product.title}")

            lines.append({
                "product_id": product.id,
                "merchant_id": product.merchant_id,
                "size": item.size,
                "quantity": item.quantity,
                "unit_price": Decimal(product.price),
                "product_title": product.title,
            })

        merchants = {line["merchant_id"] for line in lines}
        if len(merchants) > 1:
            raise ValidationError("All items of an order must come from the same merchant")

        total = sum((line["unit_price"] * line["quantity"] for line in lines), Decimal("0"))
        if total <= 0:
            raise ValidationError("Order total must be positive")
        return lines, merchants.pop(), total

    def _abort_checkout(self, order_id: str, reason: str) -> None:
        """Release the order's stock and cancel it if it was persisted."""
        self.db.rollback()
        now = utcnow()
        self.inventory.release_order(order_id, commit=False)
        self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PAYMENT)
            .values(
                status=OrderStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_at=now,
                cancel_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    async def apply_payment_outcome(self, order_id: str, outcome: PaymentOutcome) -> Order:
        """
        Settle a pending_payment order with the processor's verdict.

        Succeeded moves it to pending_pickup with a fresh pickup credential;
        Cancelled or Failed cancels it and releases its stock. Delivering an
        outcome for an order that already left pending_payment raises
        AlreadyFinalizedError and changes nothing.
        """
        order = self._load(order_id)
        now = utcnow()

        if outcome.result == PaymentResult.SUCCEEDED:
            if not outcome.transaction_id:
                raise ValidationError("A succeeded payment needs a transaction id")
            token = new_pickup_token()
            update_count = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PAYMENT)
                .values(
                    status=OrderStatus.PENDING_PICKUP,
                    payment_status=PaymentStatus.SUCCEEDED,
                    transaction_id=outcome.transaction_id,
                    pickup_token=token,
                    paid_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if update_count == 0:
                self.db.rollback()
                raise AlreadyFinalizedError(order_id, order.status)
            self.db.commit()
            logger.info(f"Order {order.order_number} paid ({outcome.transaction_id}), ready for pickup")
            return order

        payment_status = (
            PaymentStatus.CANCELLED if outcome.result == PaymentResult.CANCELLED else PaymentStatus.FAILED
        )
        try:
            update_count = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PAYMENT)
                .values(
                    status=OrderStatus.CANCELLED,
                    payment_status=payment_status,
                    cancelled_at=now,
                    cancel_reason=outcome.message,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if update_count == 0:
                self.db.rollback()
                raise AlreadyFinalizedError(order_id, order.status)
            restored = self.inventory.release_order(order_id, commit=False)
            self.db.commit()
        except AlreadyFinalizedError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error cancelling order {order_id}: {str(e)}")
            raise

        logger.info(f"Order {order.order_number} {payment_status}, released {restored} units")
        return order

    async def settle_payment(self, order_id: str) -> Order:
        """Confirm the order's recorded intent with the gateway and apply the result."""
        order = self._load(order_id)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise AlreadyFinalizedError(order_id, order.status)
        if not order.payment_intent_id:
            raise WrongStateError(f"Order {order.order_number} has no payment intent", order.status)

        handle = self.gateway.restore_handle(order)
        self.db.commit()
        outcome = await self.gateway.confirm(handle)
        return await self.apply_payment_outcome(order_id, outcome)

    async def cancel_order(self, order_id: str, reason: str = "cancelled by user") -> Order:
        """
        User cancellation. Unpaid orders cancel like a cancelled payment;
        paid orders only within the pickup cancellation window.
        """
        order = self._load(order_id)

        if order.status == OrderStatus.PENDING_PAYMENT:
            return await self.apply_payment_outcome(order_id, PaymentOutcome.cancelled(reason))

        if order.status != OrderStatus.PENDING_PICKUP:
            raise WrongStateError(
                f"Order {order.order_number} cannot be cancelled (status: {order.status})", order.status
            )

        window = timedelta(minutes=self.config.PICKUP_CANCEL_WINDOW_MINUTES)
        now = utcnow()
        if order.paid_at is None or now > order.paid_at + window:
            raise WrongStateError(
                f"Cancellation window for order {order.order_number} has closed", order.status
            )

        update_count = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING_PICKUP)
            .values(
                status=OrderStatus.CANCELLED,
                cancelled_at=now,
                cancel_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if update_count == 0:
            self.db.rollback()
            raise WrongStateError(
                f"Order {order.order_number} cannot be cancelled (status: {order.status})", order.status
            )
        restored = self.inventory.release_order(order_id, commit=False)
        self.db.commit()

        logger.info(f"Order {order.order_number} cancelled before pickup, released {restored} units")
        return order

    async def expire_stale_orders(self, max_age_minutes: int) -> List[str]:
        """
        Cancel pending_payment orders older than the given age, releasing their
        stock. Reservations of the same age that never got an order row are
        released as well.
        """
        cutoff = utcnow() - timedelta(minutes=max_age_minutes)
        stale_ids = [
            order_id for (order_id,) in self.db.query(Order.id).filter(
                Order.status == OrderStatus.PENDING_PAYMENT,
                Order.created_at < cutoff,
            ).all()
        ]

        expired = []
        for order_id in stale_ids:
            try:
                await self.apply_payment_outcome(
                    order_id, PaymentOutcome.cancelled("payment not completed in time")
                )
                expired.append(order_id)
            except AlreadyFinalizedError:
                continue

        self.inventory.release_orphaned(cutoff)

        if expired:
            logger.info(f"Expired {len(expired)} unpaid orders")
        return expired

    async def redeem_credential(self, token: str, event_id: Optional[str] = None) -> Order:
        return self.verifier.redeem(token, event_id)

    # Reads

    async def get_order(self, order_id: str) -> Order:
        order = await self._read_with_retries(
            lambda: self.db.query(Order).filter(Order.id == order_id).first()
        )
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def list_user_orders(self, user_id: str) -> List[Order]:
        return await self._read_with_retries(
            lambda: self.db.query(Order).filter(
                Order.user_id == user_id
            ).order_by(Order.created_at.desc()).all()
        )

    async def list_merchant_orders(self, merchant_id: str, status: Optional[str] = None) -> List[Order]:
        def query():
            q = self.db.query(Order).filter(Order.merchant_id == merchant_id)
            if status:
                q = q.filter(Order.status == status)
            return q.order_by(Order.created_at.desc()).all()

        return await self._read_with_retries(query)

    async def _read_with_retries(self, read: Callable[[], T]) -> T:
        for attempt in range(self.max_retries):
            try:
                return read()
            except OperationalError as e:
                self.db.rollback()
                if attempt == self.max_retries - 1:
                    raise
                logger.warning(f"Transient read failure on attempt {attempt + 1}, retrying: {str(e)}")
                await asyncio.sleep(0.01 * (attempt + 1))

    def _load(self, order_id: str) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError("Order not found")
        return order
