# app/main.py
import asyncio
import os
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from app.consumers import build_stream_handlers
from app.core.database import Base, SessionLocal, engine
from app.models import automation, domain, integration, webhook  # noqa: F401
from app.routers import automations, webhooks
from app.services.automation_engine import AutomationEngine
from app.services.notifications import HttpNotificationGateway
from app.services.webhook_service import WebhookService
from shared import (
    EventBus,
    EventConsumer,
    RequestContextLogMiddleware,
    cleanup_consumer,
    configure_logging,
    create_health_router,
    load_service_config,
)

tags_metadata = [
    {
        "name": "Automations",
        "description": "Event-driven rules that send emails, SMS and alerts on behalf of a workspace.",
    },
    {
        "name": "Webhooks",
        "description": "Signed outbound HTTP notifications for business events.",
    },
]

_CONFIG = load_service_config("automation")
_ROOT_PATH = os.getenv("APP_ROOT_PATH", "")
_LOGGER = configure_logging("automation")

# Consumer instance
_consumer: EventConsumer | None = None
_consumer_task: asyncio.Task | None = None


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """Database, event bus, engine, scheduler and stream consumer."""
    global _consumer, _consumer_task

    # Database startup with retries
    _LOGGER.info("service_starting")
    for attempt in range(10):
        try:
            await asyncio.to_thread(Base.metadata.create_all, bind=engine)
            break
        except Exception as e:
            if attempt < 9:
                _LOGGER.warning("database_unavailable", attempt=attempt + 1, error=str(e))
                await asyncio.sleep(2.0)
            else:
                _LOGGER.error("database_unavailable_giving_up")
                raise

    settings = _CONFIG.automation
    bus = EventBus()
    bus.bind()
    http_client = httpx.AsyncClient()

    gateway = HttpNotificationGateway(SessionLocal, http_client, timeout=settings.notification_timeout)
    automation_engine = AutomationEngine(
        bus,
        SessionLocal,
        gateway,
        base_url=settings.app_base_url,
        scan_interval=settings.scan_interval_seconds,
    )
    automation_engine.register()
    webhook_service = WebhookService(
        SessionLocal,
        http_client,
        timeout=settings.webhook_timeout,
        max_concurrency=settings.webhook_max_concurrency,
    )

    app.state.event_bus = bus
    app.state.automation_engine = automation_engine
    app.state.webhook_service = webhook_service

    if settings.scheduler_enabled:
        automation_engine.start()

    # Domain events from the other services
    if _CONFIG.redis.url:
        _consumer = EventConsumer(
            redis_url=_CONFIG.redis.url,
            stream_name=_CONFIG.redis.stream,
            group_name="automation-service",
            consumer_name="automation-worker-1",
        )
        _consumer.register_handlers(build_stream_handlers(automation_engine, webhook_service))
        _consumer_task = asyncio.create_task(_consumer.start())
        _LOGGER.info("event_consumer_started", stream=_CONFIG.redis.stream)

    yield

    await cleanup_consumer(_consumer, _consumer_task)
    _consumer, _consumer_task = None, None
    await automation_engine.stop()
    await bus.drain()
    bus.unbind()
    await http_client.aclose()
    _LOGGER.info("service_stopped")


app = FastAPI(
    title="Automation Service",
    version="0.1.0",
    description="Runs workspace automations and delivers signed webhooks.",
    openapi_tags=tags_metadata,
    root_path=_ROOT_PATH,
    lifespan=app_lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.config = _CONFIG
app.add_middleware(RequestContextLogMiddleware, logger=_LOGGER)


def custom_openapi_schema():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema["openapi"] = "3.0.3"
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi_schema

# Health check endpoints
app.include_router(
    create_health_router(
        service_name="automation",
        database_engine=engine,
        redis_url=_CONFIG.redis.url or None,
    )
)
app.include_router(automations.router)
app.include_router(webhooks.router)


@app.get("/")
def root():
    return {
        "service": "automation",
        "status": "ok",
        "docs_url": "/docs",
        "config": {
            "redis_stream": _CONFIG.redis.stream,
            "scheduler_enabled": _CONFIG.automation.scheduler_enabled,
        },
    }
