from fastapi import APIRouter, Depends

from src.api.deps import get_order_engine
from src.api.errors import http_error
from src.models.schemas import Order, RedeemRequest
from src.services.errors import OrderError
from src.services.order_engine import OrderEngine

router = APIRouter()


@router.post("/redeem", response_model=Order)
async def redeem_pickup_code(redeem_data: RedeemRequest, engine: OrderEngine = Depends(get_order_engine)):
    """Staff scan of a fan's QR code; succeeds once per order"""
    try:
        return await engine.redeem_credential(redeem_data.token, redeem_data.event_id)
    except OrderError as e:
        raise http_error(e)
