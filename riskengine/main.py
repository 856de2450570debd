"""FastAPI application entry point for the risk engine."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from riskengine.api.middleware.error_handler import global_exception_handler
from riskengine.api.middleware.logging import StructuredLoggingMiddleware
from riskengine.api.routes.fraud import configure_fraud_service
from riskengine.api.routes.fraud import router as fraud_router
from riskengine.api.routes.health import router as health_router
from riskengine.config import settings
from riskengine.db.database import close_db, init_db
from riskengine.db.repositories import create_repositories
from riskengine.domains.fraud.config import ConfigProvider, ScoringConfig
from riskengine.domains.fraud.errors import RiskEngineError
from riskengine.domains.fraud.repositories import StaticIpIntelligence
from riskengine.domains.fraud.service import create_fraud_detection_service
from riskengine.shared.cache import RedisCache, create_cache
from riskengine.shared.events import EventSink, KafkaEventSink, LoggingEventSink
from riskengine.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


async def _start_event_sink() -> EventSink:
    if settings.events_backend != "kafka":
        return LoggingEventSink()

    sink = KafkaEventSink(settings.kafka_bootstrap_servers, settings.kafka_events_topic)
    try:
        await sink.start()
    except Exception:
        logger.warning("kafka_producer_failed_to_start", exc_info=True)
        return LoggingEventSink()
    return sink


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level, settings.log_json)

    logger.info(
        "riskengine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    await init_db()

    provider = ConfigProvider(ScoringConfig.from_env())
    cache = create_cache(settings.cache_backend, settings.redis_url, settings.cache_key_prefix)
    events = await _start_event_sink()
    configure_fraud_service(
        create_fraud_detection_service(
            create_repositories(),
            cache=cache,
            events=events,
            ip_intelligence=StaticIpIntelligence(),
            provider=provider,
        )
    )

    yield

    configure_fraud_service(None)
    if isinstance(events, KafkaEventSink):
        await events.stop()
    if isinstance(cache, RedisCache):
        await cache.close()
    await close_db()
    logger.info("riskengine_shutting_down")


app = FastAPI(
    title="Risk Engine",
    description="Real-time transaction risk scoring",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(StructuredLoggingMiddleware)

app.add_exception_handler(RiskEngineError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(health_router)
app.include_router(fraud_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
