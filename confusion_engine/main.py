from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
import asyncio
import logging
import uuid

from confusion_engine.adaptive.confusion import (
    ConfusionEngine,
    WebhookSink,
    get_analytics_sink,
    get_confusion_engine,
    set_confusion_engine,
)
from confusion_engine.core.config import settings
from confusion_engine.core.logging import setup_logging
from confusion_engine.core.metrics import MetricsMiddleware, format_prometheus_metrics
from confusion_engine.routers import confusion
from confusion_engine.services.snapshot_cache import SnapshotCache
from confusion_engine.services.webhooks import WebhookEndpoint, WebhookEventType, get_webhook_service


logger = logging.getLogger(__name__)


def build_engine() -> ConfusionEngine:
    """Engine wired to the analytics buffer, webhooks and (optionally) Redis"""
    snapshot_cache = SnapshotCache() if settings.SNAPSHOT_CACHE_ENABLED else None
    engine = ConfusionEngine.from_settings(settings, snapshot_cache=snapshot_cache)

    analytics = get_analytics_sink()
    engine.aggregator.add_sink(analytics.record_score)
    engine.publisher.register(analytics.record_point)

    webhooks = get_webhook_service()
    for url in settings.WEBHOOK_URLS:
        webhooks.register_endpoint(WebhookEndpoint(
            id=f"wh_{uuid.uuid5(uuid.NAMESPACE_URL, url).hex[:12]}",
            url=url,
            secret=settings.WEBHOOK_SECRET,
            events=[WebhookEventType.CONFUSION_DETECTED, WebhookEventType.CONFUSION_HIGH],
        ))
    engine.publisher.register(WebhookSink(webhooks))
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events"""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    engine = build_engine()
    set_confusion_engine(engine)
    await engine.start()
    retry_task = asyncio.create_task(get_webhook_service().run_retry_loop())

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}")
    retry_task.cancel()
    await engine.stop()
    if engine.snapshot_cache is not None:
        await engine.snapshot_cache.close()


app = FastAPI(
    title=settings.APP_NAME,
    description="Real-time confusion detection with feedback-adaptive heuristic weights",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)

# Include routers
app.include_router(confusion.router, prefix="/api/confusion", tags=["confusion"])


@app.get("/")
async def root():
    return JSONResponse(
        content={
            "message": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
        }
    )


@app.get("/health")
async def health_check(engine: ConfusionEngine = Depends(get_confusion_engine)):
    """
    Health check endpoint with engine and snapshot cache status
    """
    health_status = {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": settings.APP_VERSION,
        "services": {
            "engine": "running" if engine.running else "stopped",
        }
    }
    if not engine.running:
        health_status["status"] = "degraded"

    if engine.snapshot_cache is not None:
        try:
            client = await engine.snapshot_cache.get_client()
            await client.ping()
            health_status["services"]["redis"] = "healthy"
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            health_status["status"] = "degraded"
            health_status["services"]["redis"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint"""
    return PlainTextResponse(format_prometheus_metrics(), media_type="text/plain; version=0.0.4")
