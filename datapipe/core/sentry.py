"""Sentry setup for the API process and the in-process job scheduler."""

import structlog
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = structlog.get_logger()

_SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}

# Frame locals under these names hold raw record data or decoded file contents
_RECORD_LOCALS = {
    "record", "records", "batch", "output", "kept", "data", "payload", "text", "value", "detection",
}


def _scrub_event(event: dict, hint: dict) -> dict:
    """Drop auth headers and raw record values before the event leaves the process."""
    headers = event.get("request", {}).get("headers", {})
    for header in list(headers):
        if header.lower() in _SENSITIVE_HEADERS:
            headers[header] = "[REDACTED]"

    for exception in event.get("exception", {}).get("values", []):
        for frame in (exception.get("stacktrace") or {}).get("frames", []):
            local_vars = frame.get("vars")
            if not local_vars:
                continue
            for name in _RECORD_LOCALS.intersection(local_vars):
                local_vars[name] = "[REDACTED]"
    return event


def init_sentry(
    dsn: str | None,
    environment: str = "development",
    release: str | None = None,
) -> None:
    """Call before the app is built. A missing dsn disables reporting."""
    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sample_rate = 0.1 if environment == "production" else 1.0
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            # Job tasks run on the event loop outside any request
            AsyncioIntegration(),
        ],
        send_default_pii=False,
        before_send=_scrub_event,
    )
    sentry_sdk.set_tag("service", "datapipe-api")
    logger.info("sentry_initialized", environment=environment, traces_sample_rate=sample_rate)
