from fastapi import FastAPI, Request
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import asyncio
import logging
import os
import sys

from tracklive.core.config import settings
from tracklive.core.security_config import configure_security_middleware
from tracklive.api.v1.endpoints import geo as geo_router
from tracklive.api.v1.schemas import HealthResponse
from tracklive.api import websockets as ws_router
from tracklive.services.geoip_service import GeoIPService
from tracklive.services.location_registry import LocationRegistry
from tracklive.services.location_relay_service import LocationRelayService

logging.basicConfig(level=os.getenv("LOG_LEVEL", settings.LOG_LEVEL), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def _log_uncaught_exception(exc_type, exc_value, exc_traceback):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("UNCAUGHT EXCEPTION", exc_info=(exc_type, exc_value, exc_traceback))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict):
    exception = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exception is not None:
        logger.error(f"UNHANDLED LOOP EXCEPTION - {message}", exc_info=exception)
    else:
        logger.error(f"UNHANDLED LOOP ERROR - {message}")


def install_process_hooks(loop: asyncio.AbstractEventLoop) -> None:
    """Log crashes at the process boundary instead of dying silently."""
    sys.excepthook = _log_uncaught_exception
    loop.set_exception_handler(_log_loop_exception)


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    logger.info("Application startup sequence initiated...")
    install_process_hooks(asyncio.get_running_loop())

    registry = LocationRegistry()
    connection_manager = ws_router.ConnectionManager()
    app_instance.state.location_registry = registry
    app_instance.state.connection_manager = connection_manager
    app_instance.state.location_relay_service = LocationRelayService(registry, connection_manager)
    app_instance.state.geoip_service = GeoIPService()
    logger.info("Location relay ready")

    try:
        yield
    finally:
        logger.info("Application shutdown sequence initiated...")
        logger.info(
            f"Dropping {len(registry)} live entities held by {connection_manager.get_connection_count()} connections"
        )

app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    version="0.1.0",
    lifespan=lifespan,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

configure_security_middleware(app)

app.include_router(geo_router.router, prefix=settings.API_PREFIX, tags=["Geo"])
app.include_router(ws_router.router, prefix=settings.WS_PREFIX, tags=["WebSockets"])

@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check(request: Request):
    registry = getattr(request.app.state, 'location_registry', None)
    manager = getattr(request.app.state, 'connection_manager', None)
    if registry is None or manager is None:
        return HealthResponse(status="starting_up", detail="Location relay not initialized")
    return HealthResponse(
        status="healthy",
        connections=manager.get_connection_count(),
        entities=len(registry),
    )

# Static assets are mounted last so API and websocket routes take precedence
static_dir = settings.resolved_static_dir
if static_dir.is_dir():
    app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    logger.info(f"Serving static assets from {static_dir}")
else:
    logger.warning(f"Static directory not found, static assets disabled: {static_dir}")


def run():
    import uvicorn
    logger.info(f"Server listening on http://localhost:{settings.PORT}")
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
