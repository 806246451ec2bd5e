import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import settings
from core.dependencies import get_confirmation_sweep
from core.rate_limit import limiter
from database import connect_db, close_db

# Routers
from routers import admin, orders, store_orders, wallets

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _auto_confirm_deliveries() -> None:
    """
    Toutes les AUTO_CONFIRM_SWEEP_INTERVAL_SECONDS : auto-confirme les sous-commandes
    livrées depuis plus de AUTO_CONFIRM_GRACE_DAYS jours sans confirmation acheteur.
    """
    sweep = get_confirmation_sweep()
    while True:
        await asyncio.sleep(settings.AUTO_CONFIRM_SWEEP_INTERVAL_SECONDS)
        try:
            await sweep.run_sweep()
        except Exception as exc:
            logger.error(f"Erreur sweep auto-confirmation : {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    task = None
    if settings.AUTO_CONFIRM_SWEEP_ENABLED:
        task = asyncio.create_task(_auto_confirm_deliveries())
    logger.info("Marketplace settlement API started")
    yield
    # Shutdown
    if task:
        task.cancel()
    await close_db()
    logger.info("Marketplace settlement API stopped")


app = FastAPI(
    title="Marketplace Settlement API",
    description="Livraison des sous-commandes, escrow, wallets boutiques et retraits",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(store_orders.router, prefix="/api/store/orders", tags=["Store orders"])
app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(wallets.router, prefix="/api/wallets", tags=["Wallets"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "marketplace-settlement", "version": "1.0.0"}
