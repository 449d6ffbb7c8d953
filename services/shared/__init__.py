"""Shared utilities used across microservices."""

from .config import AutomationConfig, ServiceConfig, load_automation_config, load_service_config
from .event_bus import EventBus
from .event_consumer import EventConsumer, cleanup_consumer
from .health import create_health_router
from .logging import RequestContextLogMiddleware, configure_logging
from .webhooks import (
    WebhookAttempt,
    generate_signature,
    send_webhook,
    serialize_payload,
    validate_webhook_url,
    verify_signature,
)

__all__ = [
    "AutomationConfig",
    "ServiceConfig",
    "load_automation_config",
    "load_service_config",
    "EventBus",
    "EventConsumer",
    "cleanup_consumer",
    "create_health_router",
    "RequestContextLogMiddleware",
    "configure_logging",
    "WebhookAttempt",
    "generate_signature",
    "send_webhook",
    "serialize_payload",
    "validate_webhook_url",
    "verify_signature",
]
