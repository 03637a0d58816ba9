"""Concrete integrations (one CLI tool each).

Why a package:
- Groups one module per upstream (PostHog, Sentry, Trigger.dev, Cloud Run, DB).
- Each module implements `skillquery.core.interfaces.integration.Integration`.
"""

from skillquery.adapters.integrations.cloudrun import CloudRunIntegration
from skillquery.adapters.integrations.db import DatabaseIntegration
from skillquery.adapters.integrations.posthog import PosthogIntegration
from skillquery.adapters.integrations.sentry import SentryIntegration
from skillquery.adapters.integrations.trigger import TriggerIntegration

ALL_INTEGRATIONS = (
    PosthogIntegration(),
    SentryIntegration(),
    TriggerIntegration(),
    CloudRunIntegration(),
    DatabaseIntegration(),
)


def get_integration(name: str):
    """Look up an integration by subcommand name or script name."""

    for integration in ALL_INTEGRATIONS:
        if name in (integration.name, integration.prog):
            return integration
    raise KeyError(name)


__all__ = [
    "ALL_INTEGRATIONS",
    "CloudRunIntegration",
    "DatabaseIntegration",
    "PosthogIntegration",
    "SentryIntegration",
    "TriggerIntegration",
    "get_integration",
]
