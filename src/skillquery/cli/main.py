"""CLI entrypoints.

- `skillquery <integration> <verb> ...` groups every tool under one Typer app.
- `posthog-query`, `sentry-stats`, ... are standalone scripts for the same
  dispatchers, so agents can call the short names.

Typer only routes to the integration: verbs and their arguments are parsed by
the dispatcher so that usage errors are JSON too.
"""

from __future__ import annotations

import sys
from typing import Sequence

import typer
from pydantic import ValidationError

from skillquery.adapters.integrations import ALL_INTEGRATIONS, get_integration
from skillquery.adapters.json_exporter import render_json
from skillquery.cli import doctor
from skillquery.core.config import AppSettings
from skillquery.core.interfaces.integration import Integration
from skillquery.core.logs import configure_logging

PASSTHROUGH = {
    "ignore_unknown_options": True,
    "allow_extra_args": True,
    "help_option_names": [],
}

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Query observability and analytics APIs. Every integration prints one JSON document.",
)
app.add_typer(doctor.app, name="doctor")


def run_integration(integration: Integration, argv: Sequence[str]) -> int:
    """Run one dispatcher invocation and return its exit code."""

    try:
        app_settings = AppSettings()
    except ValidationError as exc:
        first = exc.errors()[0]
        typer.echo(
            render_json(
                {
                    "error": "invalid_config",
                    "setting": "SKILLQUERY_" + "_".join(str(p) for p in first["loc"]).upper(),
                    "message": first["msg"],
                },
                compact=True,
            )
        )
        return 1

    configure_logging(app_settings.log_level)
    return integration.build_dispatcher(app_settings).dispatch(list(argv))


def _register(integration: Integration) -> None:
    def command(ctx: typer.Context) -> None:
        raise typer.Exit(code=run_integration(integration, ctx.args))

    command.__doc__ = f"{integration.summary} (same as `{integration.prog}`)."
    app.command(name=integration.name, context_settings=PASSTHROUGH)(command)


for _integration in ALL_INTEGRATIONS:
    _register(_integration)


def _standalone(name: str) -> None:
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8")
        sys.stderr.reconfigure(encoding="utf-8")
    sys.exit(run_integration(get_integration(name), sys.argv[1:]))


def posthog_main() -> None:
    _standalone("posthog")


def sentry_main() -> None:
    _standalone("sentry")


def trigger_main() -> None:
    _standalone("trigger")


def cloudrun_main() -> None:
    _standalone("cloudrun")


def db_main() -> None:
    _standalone("db")


def run() -> None:
    app()
