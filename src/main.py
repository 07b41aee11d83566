"""FastAPI application entry point for the threat defense service."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware.error_handler import global_exception_handler
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.health import router as health_router
from src.api.routes.threats import router as threats_router
from src.config import settings
from src.db.database import async_session_factory, init_db
from src.domains.threats.action_rules import ActionRuleEngine
from src.domains.threats.cluster_engine import ThreatClusterEngine
from src.domains.threats.config import ThreatConfig
from src.domains.threats.enforcement import DefenseEnforcer, RedisDefenseEnforcer
from src.domains.threats.notifications import (
    KafkaNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
)
from src.domains.threats.replay import DefenseLearner, ThreatReplayService
from src.domains.threats.repository import ThreatRepository
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


async def _build_notifier(config: ThreatConfig) -> NotificationSink:
    if not settings.kafka_bootstrap_servers:
        return LoggingNotificationSink()
    try:
        return await KafkaNotificationSink.connect(
            settings.kafka_bootstrap_servers, config.notifications.kafka_topic
        )
    except Exception:
        logger.warning("kafka_notifier_unavailable", exc_info=True)
        return LoggingNotificationSink()


def _build_enforcer(notifier: NotificationSink) -> DefenseEnforcer:
    if not settings.redis_url:
        return DefenseEnforcer(notifier)
    return RedisDefenseEnforcer(aioredis.from_url(settings.redis_url), notifier)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the engines, start the scheduler, clean up."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "threat_defense_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    await init_db()

    config = ThreatConfig.from_env()
    repository = ThreatRepository(async_session_factory)
    notifier = await _build_notifier(config)
    enforcer = _build_enforcer(notifier)
    rule_engine = ActionRuleEngine(repository, enforcer, notifier, config)
    cluster_engine = ThreatClusterEngine(repository, rule_engine, notifier, config)
    replay_service = ThreatReplayService(
        repository, DefenseLearner(repository, enforcer, config), config
    )

    app.state.threat_repository = repository
    app.state.rule_engine = rule_engine
    app.state.cluster_engine = cluster_engine
    app.state.replay_service = replay_service

    if settings.seed_default_rules:
        created = await rule_engine.create_default_rules()
        logger.info("default_action_rules_seeded", created=created)

    if settings.threat_analysis_enabled:
        cluster_engine.start()

    yield

    await cluster_engine.stop()
    await enforcer.close()
    await notifier.close()
    logger.info("threat_defense_shutting_down")


app = FastAPI(
    title="Threat Defense",
    description="Fraud threat clustering and automated defense service",
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

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Global exception handler
app.add_exception_handler(Exception, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(threats_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
