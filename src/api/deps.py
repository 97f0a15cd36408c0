from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from src.core.database import get_db
from src.services.catalog_service import CatalogService
from src.services.inventory_store import InventoryStore
from src.services.order_engine import OrderEngine
from src.services.payment_gateway import PaymentGatewayAdapter


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity from the auth proxy; None when unauthenticated."""
    return x_user_id or None


def get_payment_gateway() -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter()


def get_catalog(db: Session = Depends(get_db)) -> CatalogService:
    return CatalogService(db)


def get_inventory(db: Session = Depends(get_db)) -> InventoryStore:
    return InventoryStore(db)


def get_order_engine(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_payment_gateway),
) -> OrderEngine:
    return OrderEngine(db, gateway=gateway)
