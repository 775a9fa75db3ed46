import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from app.core.db import init_db, close_db
from app.core.deps import build_container
from app.api.v1.orders import router as orders_router
from app.api.v1.inventory import router as inventory_router
from app.api.v1.realtime import router as realtime_router
from app.core.config import LOG_LEVEL, PROJECT_NAME, VERSION
from app.core.exception_handlers import setup_exception_handlers

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db() # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=PROJECT_NAME,
        version=VERSION,
        lifespan=lifespan if use_lifespan else None,
        # Configure API documentation and paths
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.container = build_container()

    # Include routers for modular API structure
    app.include_router(orders_router, prefix="/api/v1/orders", tags=["Order Management"])
    app.include_router(inventory_router, prefix="/api/v1/inventory", tags=["Inventory"])
    app.include_router(realtime_router, tags=["Realtime"])

    setup_exception_handlers(app)

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check():
        """Simple health check endpoint."""
        return {"status": "ok", "app_name": PROJECT_NAME}

    return app


app = create_app()
