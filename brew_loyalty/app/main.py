import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import (
    customer_router,
    purchase_router,
    reconciliation_router,
    redemption_router,
    stamp_router,
)
from .core.config import get_settings
from .core.db import init_db
from .services import build_chain_client

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    # One chain client per process, owned by the app rather than a module global.
    app.state.chain_client = build_chain_client(settings)
    yield
    app.state.chain_client = None
    logger.info("chain.client.released")

app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(purchase_router)
app.include_router(stamp_router)
app.include_router(redemption_router)
app.include_router(customer_router)
app.include_router(reconciliation_router)
register_exception_handlers(app)

@app.get("/health")
def read_health() -> dict[str, str]:
    return {"status": "ok"}
