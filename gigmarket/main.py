import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gigmarket.settings import settings
from gigmarket.api.v1.applications import router as applications_router
from gigmarket.api.v1.jobs import router as jobs_router
from gigmarket.api.v1.messages import router as messages_router
from gigmarket.api.v1.metrics import router as metrics_router
from gigmarket.api.v1.notifications import router as notifications_router, ws_router
from gigmarket.api.v1.payments import router as payments_router
from gigmarket.api.v1.users import router as users_router
from gigmarket.domain.errors import GatewayError, MarketplaceError
from gigmarket.services.health import HealthMonitor
from gigmarket.services.realtime import hub

logger = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.getLogger("gigmarket").setLevel(settings.LOG_LEVEL.upper())

    monitor: HealthMonitor = app.state.health_monitor
    if settings.HEALTH_CHECK_ENABLED:
        await monitor.check_now()
        await monitor.start()
    else:
        logger.info("Health monitor disabled.")

    yield

    # Shutdown
    if settings.HEALTH_CHECK_ENABLED:
        await monitor.stop()
    await hub.drain()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)
app.state.health_monitor = HealthMonitor()

app.include_router(users_router, prefix="/api/v1/users", tags=["users"])
app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(applications_router, prefix="/api/v1/applications", tags=["applications"])
app.include_router(payments_router, prefix="/api/v1/payments", tags=["payments"])
app.include_router(notifications_router, prefix="/api/v1/notifications", tags=["notifications"])
app.include_router(messages_router, prefix="/api/v1", tags=["messages"])
app.include_router(ws_router, tags=["realtime"])
app.include_router(metrics_router, tags=["metrics"])


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if isinstance(exc, GatewayError):
        logger.error(f"{request.method} {request.url.path} gateway failure: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    content = {"detail": exc.message, "error": exc.error, **exc.context}
    if isinstance(exc, GatewayError):
        content["retriable"] = exc.retriable
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": "internal_error"})


@app.middleware("http")
async def health_gate(request: Request, call_next):
    """Rejects API traffic while too many dependencies are critical."""
    monitor: HealthMonitor = request.app.state.health_monitor
    if request.url.path.startswith("/api/") and monitor.is_degraded:
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Service temporarily unavailable",
                "error": "service_unavailable",
                "critical": monitor.critical_count,
            },
            headers={"Retry-After": str(monitor.interval)},
        )
    return await call_next(request)


@app.get("/health")
async def health(request: Request):
    return request.app.state.health_monitor.snapshot()
