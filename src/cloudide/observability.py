"""Logging and Sentry setup for the orchestrator service."""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

# Keys never sent to Sentry as extra context
SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "credentials")


def configure_logging(
    service_name: str,
    log_level: int = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Configure stdlib logging and structlog to work together.

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level (default: INFO)
        json_format: JSON output (True) or console output (False).
                     If None, JSON is used everywhere except development.

    Returns:
        Configured structlog logger bound to the service name
    """
    if json_format is None:
        environment = os.environ.get("CLOUDIDE_ENVIRONMENT", "development")
        json_format = environment != "development"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _add_sentry_breadcrumb,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def _add_sentry_breadcrumb(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Mirror structlog events into Sentry breadcrumbs."""
    standard_keys = {"event", "level", "timestamp", "logger"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=str(event_dict.get("event", "")),
        category="log",
        level=event_dict.get("level", method_name),
        data=extra_data or None,
    )
    return event_dict


def _scrub_event(event: Event, _hint: dict[str, Any]) -> Event | None:
    """Drop credentials from request headers and extra context."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in ("authorization", "cookie", "x-internal-service-token"):
                if header in headers:
                    headers[header] = "[Filtered]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                extra[key] = "[Filtered]"
    return event


def init_sentry(
    service_name: str,
    dsn: str | None,
    environment: str,
    traces_sample_rate: float | None = None,
) -> bool:
    """Initialize Sentry if a DSN is configured.

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    if not dsn:
        return False

    if traces_sample_rate is None:
        traces_sample_rate = (
            DEFAULT_TRACES_SAMPLE_RATE if environment == "production" else DEV_TRACES_SAMPLE_RATE
        )

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"{service_name}@{os.environ.get('VERSION', '0.1.0')}",
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        before_send=_scrub_event,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=service_name,
        ignore_errors=["asyncio.CancelledError", "KeyboardInterrupt", "SystemExit"],
    )
    return True
