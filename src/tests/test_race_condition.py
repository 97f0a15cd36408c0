import asyncio
import threading

import pytest

from src.models.database import Order, OrderStatus, StockReservation
from src.models.schemas import OrderCreate, OrderItemCreate
from src.services.errors import AlreadyFinalizedError, AlreadyRedeemedError, InsufficientStockError
from src.services.inventory_store import InventoryStore
from src.services.order_engine import OrderEngine
from src.services.payment_gateway import PaymentOutcome


def tee_order(event, product, size, quantity, user_id):
    return OrderCreate(
        user_id=user_id,
        event_id=event.id,
        items=[OrderItemCreate(product_id=product.id, size=size, quantity=quantity)],
    )


@pytest.fixture
def run_concurrently(session_factory, gateway, test_settings):
    """
    Run ``work(engine, i)`` in parallel threads, one event loop and one
    session per worker, all released at the same moment by a barrier.
    Returns each worker's result or the exception it raised.
    """

    def _run(work, workers):
        barrier = threading.Barrier(workers)
        results = [None] * workers

        def worker(i):
            db = session_factory()
            try:
                engine = OrderEngine(db, gateway=gateway, config=test_settings)
                barrier.wait()
                results[i] = asyncio.run(work(engine, i))
            except Exception as e:
                results[i] = e
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        return results

    return _run


class TestConcurrentCheckout:
    """Simultaneous checkouts against the same stock"""

    def test_last_units_sold_once(self, test_db, run_concurrently, merch_event, tour_tee):
        """Ten fans race for three small tees; exactly three get one"""
        InventoryStore(test_db).set_levels(tour_tee.id, {"S": 3})

        async def buy(engine, i):
            order, _ = await engine.create_order(tee_order(merch_event, tour_tee, "S", 1, f"fan-{i}"))
            return order.id

        results = run_concurrently(buy, 10)

        successful = [r for r in results if isinstance(r, str)]
        refused = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(successful) == 3
        assert len(refused) == 7
        assert InventoryStore(test_db).get_count(tour_tee.id, "S") == 0
        assert test_db.query(Order).count() == 3
        live = test_db.query(StockReservation).filter(StockReservation.released.is_(False)).count()
        assert live == 3

    def test_many_orders_never_oversell(self, test_db, run_concurrently, merch_event, tour_tee):
        """Five orders of two against five units: exactly two succeed"""

        async def buy(engine, i):
            order, _ = await engine.create_order(tee_order(merch_event, tour_tee, "S", 2, f"fan-{i}"))
            return order.id

        results = run_concurrently(buy, 5)

        successful = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if not isinstance(r, str)]
        assert all(isinstance(r, InsufficientStockError) for r in failures)
        assert len(successful) == 2
        assert InventoryStore(test_db).get_count(tour_tee.id, "S") == 1

    def test_sizes_do_not_interfere(self, test_db, run_concurrently, merch_event, tour_tee):
        """Orders on different sizes of one product all go through"""
        lines = [("S", 5), ("M", 3)]

        async def buy(engine, i):
            size, quantity = lines[i]
            order, _ = await engine.create_order(tee_order(merch_event, tour_tee, size, quantity, f"fan-{i}"))
            return order.id

        results = run_concurrently(buy, 2)

        assert all(isinstance(r, str) for r in results)
        assert InventoryStore(test_db).get_levels(tour_tee.id) == {"S": 0, "M": 0, "L": 0}

    @pytest.mark.asyncio
    async def test_restock_during_checkout_keeps_reservations(self, test_db, make_engine, merch_event, tour_tee):
        """A merchant restock of one size does not overwrite reservations on another"""
        engine = make_engine()
        order, _ = await engine.create_order(tee_order(merch_event, tour_tee, "M", 2, "fan-1"))

        InventoryStore(test_db).set_levels(tour_tee.id, {"S": 20})
        await engine.apply_payment_outcome(order.id, PaymentOutcome.failed())

        assert InventoryStore(test_db).get_levels(tour_tee.id) == {"S": 20, "M": 3, "L": 0}


class TestConcurrentFinalization:

    @pytest.mark.asyncio
    async def test_duplicate_outcomes_apply_once(self, test_db, make_engine, run_concurrently, merch_event, tour_tee):
        """Client callback and webhook deliveries report the same payment at once"""
        order, _ = await make_engine().create_order(tee_order(merch_event, tour_tee, "M", 1, "fan-1"))
        order_id = order.id

        async def report(engine, i):
            paid = await engine.apply_payment_outcome(order_id, PaymentOutcome.succeeded(f"tx_{i}"))
            return paid.transaction_id

        results = run_concurrently(report, 4)

        applied = [r for r in results if isinstance(r, str)]
        duplicates = [r for r in results if isinstance(r, AlreadyFinalizedError)]
        assert len(applied) == 1
        assert len(duplicates) == 3

        stored = test_db.query(Order).filter(Order.id == order_id).one()
        assert stored.status == OrderStatus.PENDING_PICKUP
        assert stored.transaction_id == applied[0]

    @pytest.mark.asyncio
    async def test_conflicting_outcomes_apply_once(self, test_db, make_engine, run_concurrently, merch_event, tour_tee):
        """Successes and failures racing: stock is released only if a failure won"""
        order, _ = await make_engine().create_order(tee_order(merch_event, tour_tee, "M", 2, "fan-1"))
        order_id = order.id

        async def report(engine, i):
            outcome = PaymentOutcome.succeeded(f"tx_{i}") if i % 2 == 0 else PaymentOutcome.failed()
            settled = await engine.apply_payment_outcome(order_id, outcome)
            return settled.status

        results = run_concurrently(report, 4)

        assert sum(1 for r in results if isinstance(r, str)) == 1
        stored = test_db.query(Order).filter(Order.id == order_id).one()
        remaining = InventoryStore(test_db).get_count(tour_tee.id, "M")
        if stored.status == OrderStatus.PENDING_PICKUP:
            assert remaining == 1
        else:
            assert stored.status == OrderStatus.CANCELLED
            assert remaining == 3

    @pytest.mark.asyncio
    async def test_double_scan_redeems_once(self, make_engine, run_concurrently, merch_event, tour_tee):
        """Several staff devices scan the same QR code"""
        engine = make_engine()
        order, _ = await engine.create_order(tee_order(merch_event, tour_tee, "M", 1, "fan-1"))
        order = await engine.apply_payment_outcome(order.id, PaymentOutcome.succeeded("tx_1"))
        token = order.pickup_token

        async def scan(engine, i):
            picked_up = await engine.redeem_credential(token, merch_event.id)
            return picked_up.status

        results = run_concurrently(scan, 4)

        assert results.count(OrderStatus.PICKED_UP) == 1
        assert sum(1 for r in results if isinstance(r, AlreadyRedeemedError)) == 3
