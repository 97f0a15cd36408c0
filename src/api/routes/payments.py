import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from src.api.deps import get_order_engine
from src.api.errors import http_error
from src.services.errors import AlreadyFinalizedError, OrderError
from src.services.order_engine import OrderEngine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    engine: OrderEngine = Depends(get_order_engine),
    x_webhook_signature: Optional[str] = Header(default=None),
):
    """
    Processor callback, signed with HMAC-SHA256 of the raw body in the
    X-Webhook-Signature header. Duplicate deliveries are acknowledged
    without effect.
    """
    raw_body = await request.body()
    try:
        payload = engine.gateway.verify_webhook(raw_body, x_webhook_signature)
    except OrderError as e:
        raise http_error(e)

    parsed = engine.gateway.parse_webhook(payload)
    if parsed is None:
        return {"received": True, "applied": False}

    order_id, outcome = parsed
    try:
        order = await engine.apply_payment_outcome(order_id, outcome)
    except AlreadyFinalizedError as e:
        logger.info(f"Duplicate webhook for order {order_id}: {str(e)}")
        return {"received": True, "applied": False}
    except OrderError as e:
        raise http_error(e)

    return {"received": True, "applied": True, "status": order.status}
