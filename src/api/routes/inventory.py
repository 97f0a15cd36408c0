from fastapi import APIRouter, Depends

from src.api.deps import get_inventory
from src.api.errors import http_error
from src.models.schemas import StockLevels, StockLevelsUpdate
from src.services.errors import OrderError
from src.services.inventory_store import InventoryStore

router = APIRouter()


@router.get("/{product_id}", response_model=StockLevels)
async def get_stock_levels(product_id: str, inventory: InventoryStore = Depends(get_inventory)):
    """Current per-size stock of a product"""
    try:
        return StockLevels(product_id=product_id, levels=inventory.get_levels(product_id))
    except OrderError as e:
        raise http_error(e)


@router.patch("/{product_id}", response_model=StockLevels)
async def update_stock_levels(
    product_id: str,
    levels_data: StockLevelsUpdate,
    inventory: InventoryStore = Depends(get_inventory),
):
    """Set absolute counts for the given sizes only; other sizes are untouched"""
    try:
        levels = inventory.set_levels(product_id, levels_data.levels)
    except OrderError as e:
        raise http_error(e)
    return StockLevels(product_id=product_id, levels=levels)
