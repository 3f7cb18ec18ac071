import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.api.v1 import api_router
from app.middleware.monitoring import MonitoringMiddleware, configure_structured_logging
from app.jobs.instance_poller import InstanceStatePoller, get_scheduler_status, setup_poller_scheduler
from app.services.crm_client import GhlOAuthClient
from app.services.errors import ERROR_STATUS_CODES, LinkingError
from app.services.gateway_client import EvolutionGatewayClient

# Configure structured logging
if settings.ENABLE_STRUCTURED_LOGGING:
    configure_structured_logging(
        log_level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG  # Use JSON in production, plain text in debug
    )
else:
    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Owns the outbound clients and the poller scheduler.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    app.state.gateway = EvolutionGatewayClient.from_settings()
    app.state.crm_client = GhlOAuthClient.from_settings()
    app.state.poller = None
    app.state.scheduler = None

    if not settings.gateway_configured:
        logger.warning("Messaging gateway not configured; gateway calls will fail until it is")

    if settings.POLLER_ENABLED:
        poller = InstanceStatePoller(app.state.gateway)
        scheduler = setup_poller_scheduler(poller, settings.POLLER_INTERVAL_SECONDS)
        scheduler.start()
        app.state.poller = poller
        app.state.scheduler = scheduler
        logger.info("Instance state poller started")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")

    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
        logger.info("Instance state poller stopped")

    await app.state.gateway.aclose()
    await app.state.crm_client.aclose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="WhatsApp gateway to GoHighLevel linking API",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Performance monitoring middleware (outermost - runs first)
if settings.ENABLE_PROMETHEUS_METRICS:
    app.add_middleware(MonitoringMiddleware)


@app.exception_handler(LinkingError)
async def linking_error_handler(request: Request, exc: LinkingError):
    status_code = ERROR_STATUS_CODES.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind.value, "detail": exc.message},
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.

    Returns application health status including the poller schedule.
    """
    return {
        "status": "healthy",
        "gateway_configured": settings.gateway_configured,
        "crm_oauth_configured": settings.crm_oauth_configured,
        "schedulers": {
            "instance_poller": get_scheduler_status(
                getattr(request.app.state, "scheduler", None),
                getattr(request.app.state, "poller", None),
            )
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
