"""
Video Order Engine - Main Application
FastAPI Entry Point with APScheduler for Stranded Order Recovery
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.container import build_container
from app.database import close_db, init_db
from app.exceptions import (
    AuthenticationError,
    InfrastructureError,
    OrchestrationError,
    OrderNotFoundError,
    ValidationError,
)
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.routers import jobs_router, videos_router, webhook_router
from app.scheduler import recover_stranded_orders, start_scheduler, stop_scheduler
from app.services.monitoring import init_sentry, setup_logging

setup_logging()
init_sentry()
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Video Order Engine",
    description="Paid video orders: payment webhooks, generation queue and delivery notifications",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)
app.add_middleware(CorrelationIdMiddleware)

# Set by startup (tests may install their own container before startup)
app.state.container = None
app.state.scheduler = None

# Register routers
app.include_router(webhook_router)
app.include_router(videos_router)
app.include_router(jobs_router)

STATUS_BY_ERROR = [
    (AuthenticationError, 401),
    (ValidationError, 400),
    (OrderNotFoundError, 404),
    (InfrastructureError, 503),
]


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError):
    status_code = 500
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    log = logger.warning if status_code < 500 else logger.error
    log("request_failed", path=request.url.path, code=exc.code, error=exc.message, status=status_code)

    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.message, "code": exc.code}
    )


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    logger.info("startup", environment=settings.environment)

    container = app.state.container
    if container is None:
        session_factory = init_db()
        logger.info("database_initialized", configured=session_factory is not None)
        container = build_container(settings, session_factory)
        app.state.container = container

    await container.start()

    # Orders left pending/queued by the previous process, then on a schedule
    if container.settings.environment != "testing":
        await recover_stranded_orders(container)
    app.state.scheduler = start_scheduler(container)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")

    stop_scheduler(app.state.scheduler)
    app.state.scheduler = None

    if app.state.container is not None:
        await app.state.container.stop()
        app.state.container = None

    await close_db()


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Video Order Engine API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health Check Endpoint
    """
    container = app.state.container
    scheduler = app.state.scheduler
    config = container.settings if container is not None else settings

    health_status = {
        "status": "healthy" if container is not None and container.started else "starting",
        "environment": config.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "database": "configured" if config.database_url else "in_memory",
        }
    }

    if container is not None:
        queue = container.job_queue.get_status()
        health_status["services"]["generation_queue"] = {
            "queue_length": queue["queue_length"],
            "active": len(queue["active_jobs"]),
        }
        health_status["services"]["notifications"] = {
            "queue_length": container.dispatcher.get_status()["queue_length"],
        }

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
