import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api.routes import catalog, inventory, orders, payments, pickup
from src.core.config import settings
from src.core.database import engine
from src.models.database import Base

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables when running against a local SQLite database."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("SQLite schema ready")
    yield


app = FastAPI(
    title="Merch Stand Backend",
    description="Event merchandise ordering, payment reconciliation and QR pickup",
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(inventory.router, prefix="/api/v1/inventory", tags=["inventory"])
app.include_router(catalog.router, prefix="/api/v1/catalog", tags=["catalog"])
app.include_router(pickup.router, prefix="/api/v1/pickup", tags=["pickup"])
app.include_router(payments.router, prefix="/api/v1/payments", tags=["payments"])


@app.get("/")
async def root():
    return {"message": "Merch Stand Backend API"}

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
