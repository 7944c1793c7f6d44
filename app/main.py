# app/main.py - Smartflo (Tata Tele) call reconciliation API

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import time

from .config.settings import settings
from .config.database import connect_to_mongo, close_mongo_connection, create_indexes, get_database
from .routers import call_logs, tata_admin, tata_calls, webhooks
from .services.cache_service import CacheStore
from .services.call_log_service import CallLogService
from .services.tata_admin_service import TataAdminService
from .services.tata_api_client import TataApiClient
from .services.tata_call_service import TataCallService
from .utils.recording_scheduler import RecordingFetchScheduler

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

def init_services(app: FastAPI) -> None:
    """Build the shared cache, provider client and services and hang them on app.state"""
    cache = CacheStore(
        default_ttl=settings.cache_default_ttl,
        check_period=settings.cache_check_period,
        max_keys=settings.cache_max_keys,
    )
    tata_client = TataApiClient()
    recording_scheduler = RecordingFetchScheduler(tata_client, cache=cache)
    call_log_service = CallLogService(cache=cache, recording_scheduler=recording_scheduler)

    app.state.cache = cache
    app.state.tata_client = tata_client
    app.state.recording_scheduler = recording_scheduler
    app.state.call_log_service = call_log_service
    app.state.tata_call_service = TataCallService(tata_client, call_log_service, cache=cache)
    app.state.tata_admin_service = TataAdminService(tata_client, cache=cache)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("🚀 Starting telephony reconciliation API...")
    await connect_to_mongo()
    await create_indexes()

    init_services(app)
    app.state.cache.start_sweeper()
    logger.info("✅ Cache sweeper started")

    if not settings.is_tata_configured():
        logger.warning("⚠️ Tata credentials not configured - click-to-call, CDR sync and recording fetch will fail")
    if not settings.tata_webhook_secret:
        logger.warning("⚠️ TATA_WEBHOOK_SECRET not set - webhook signatures are not verified")

    try:
        await app.state.recording_scheduler.start()
    except Exception as e:
        logger.error(f"❌ Failed to start recording scheduler: {e}")
        logger.warning("⚠️ Continuing without recording fetch scheduler")

    logger.info("✅ Application startup complete")

    yield

    # Shutdown
    logger.info("🛑 Shutting down telephony reconciliation API...")
    await app.state.recording_scheduler.stop()
    await app.state.cache.stop_sweeper()
    await close_mongo_connection()
    logger.info("✅ Application shutdown complete")

# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Smartflo webhook ingestion, call reconciliation and dialer API",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time to response headers"""
    start_time = time.time()
    try:
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response
    except Exception as e:
        logger.error(f"Request failed: {request.method} {request.url} - Error: {str(e)}", exc_info=True)
        raise

@app.get("/health")
async def health_check(request: Request):
    database_ok = True
    try:
        await get_database().command("ping")
    except Exception as e:
        logger.warning(f"Health check database ping failed: {e}")
        database_ok = False

    scheduler = getattr(request.app.state, "recording_scheduler", None)
    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.version,
        "database": "connected" if database_ok else "unavailable",
        "recording_scheduler": "running" if scheduler is not None and scheduler.is_running else "stopped",
        "tata_configured": settings.is_tata_configured(),
    }

app.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Smartflo Webhooks"]
)

app.include_router(
    tata_calls.router,
    prefix="/api/dialer",
    tags=["Dialer"]
)

app.include_router(
    call_logs.router,
    prefix="/api/calls",
    tags=["Call Logs"]
)

app.include_router(
    tata_admin.router,
    prefix="/api/tata-admin",
    tags=["Smartflo Admin"]
)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
