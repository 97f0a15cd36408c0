from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from src.api.deps import get_current_user_id, get_order_engine
from src.api.errors import http_error
from src.models.schemas import (
    Order,
    OrderCancel,
    OrderCreate,
    OrderCreated,
    PaymentIntent,
    PaymentOutcomeIn,
)
from src.services.errors import OrderError
from src.services.order_engine import OrderEngine
from src.services.payment_gateway import PaymentOutcome, PaymentResult

router = APIRouter()


@router.post("/", response_model=OrderCreated)
async def create_order(
    order_data: OrderCreate,
    engine: OrderEngine = Depends(get_order_engine),
    auth_user_id: Optional[str] = Depends(get_current_user_id),
):
    """Reserve stock and open a payment intent for a new order"""
    try:
        order, handle = await engine.create_order(order_data, auth_user_id)
    except OrderError as e:
        raise http_error(e)

    return OrderCreated(
        order=Order.model_validate(order),
        payment=PaymentIntent(
            intent_id=handle.intent_id,
            client_secret=handle.client_secret,
            amount=handle.amount,
            currency=handle.currency,
            simulated=handle.simulated,
            fallback_reason=handle.fallback_reason.value if handle.simulated else None,
        ),
    )


@router.get("/", response_model=List[Order])
async def list_orders(
    user_id: Optional[str] = None,
    merchant_id: Optional[str] = None,
    status: Optional[str] = None,
    engine: OrderEngine = Depends(get_order_engine),
):
    """Order history for a fan, or the order queue of a merchant"""
    if merchant_id:
        return await engine.list_merchant_orders(merchant_id, status)
    if user_id:
        return await engine.list_user_orders(user_id)
    raise HTTPException(status_code=400, detail="user_id or merchant_id is required")


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, engine: OrderEngine = Depends(get_order_engine)):
    """Get a specific order"""
    try:
        return await engine.get_order(order_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/{order_id}/payment-outcome", response_model=Order)
async def apply_payment_outcome(
    order_id: str,
    outcome_data: PaymentOutcomeIn,
    engine: OrderEngine = Depends(get_order_engine),
):
    """Report the result of the client-side payment sheet"""
    outcome = PaymentOutcome(PaymentResult(outcome_data.status), transaction_id=outcome_data.transaction_id)
    try:
        return await engine.apply_payment_outcome(order_id, outcome)
    except OrderError as e:
        raise http_error(e)


@router.post("/{order_id}/settle", response_model=Order)
async def settle_payment(order_id: str, engine: OrderEngine = Depends(get_order_engine)):
    """Confirm the order's payment intent with the processor and apply the result"""
    try:
        return await engine.settle_payment(order_id)
    except OrderError as e:
        raise http_error(e)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    cancel_data: OrderCancel = OrderCancel(),
    engine: OrderEngine = Depends(get_order_engine),
):
    try:
        return await engine.cancel_order(order_id, cancel_data.reason)
    except OrderError as e:
        raise http_error(e)
