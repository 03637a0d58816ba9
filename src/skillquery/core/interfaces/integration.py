"""Contract for an upstream integration (one CLI tool).

Structural Protocol: integrations are plain classes, interchangeable for the
CLI registry and the doctor command, and testable without the CLI.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from skillquery.core.commands import Dispatcher
from skillquery.core.config import AppSettings, SkillSettings


@runtime_checkable
class Integration(Protocol):
    """Minimum surface of an integration.

    - `name` is the subcommand under `skillquery`, `prog` the standalone script.
    - `build_dispatcher` wires settings, client and verbs; tests inject a
      settings factory and an httpx transport.
    """

    name: str
    prog: str
    summary: str
    settings_cls: type[SkillSettings]
    probe_url: str | None

    def build_dispatcher(
        self,
        app_settings: AppSettings | None = None,
        *,
        settings_factory: Callable[[], SkillSettings] | None = None,
        transport: Any = None,
    ) -> Dispatcher:
        """Return the dispatcher for this integration's verbs."""

        ...
