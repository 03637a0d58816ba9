"""Doctor command for environment diagnostics."""

from __future__ import annotations

from pathlib import Path

import httpx
import typer
from pydantic import ValidationError
from rich.console import Console

from skillquery.adapters.http_client import build_client
from skillquery.adapters.integrations import ALL_INTEGRATIONS, get_integration
from skillquery.cli.ui_components import build_status_table, print_banner, styled_status
from skillquery.core.config import AppSettings, write_env_vars
from skillquery.core.errors import CommandError
from skillquery.core.interfaces.integration import Integration

app = typer.Typer(no_args_is_help=True, help="Environment diagnostics and credential setup.")

_console = Console()

SECRET_HINTS = ("KEY", "TOKEN", "SECRET", "URL")


def _check_http(url: str, settings: AppSettings) -> tuple[bool, str]:
    try:
        with build_client(settings) as client:
            response = client.get(url)
        return True, f"HTTP {response.status_code}"
    except httpx.HTTPError as exc:
        return False, str(exc) or type(exc).__name__


def check_config(integration: Integration) -> tuple[str, str]:
    """Return (status, detail) for one integration's resolved settings."""

    try:
        integration.settings_cls().ensure_ready()
    except CommandError as exc:
        result = exc.to_result()
        return "MISSING", result.get("fix") or result["error"]
    except ValidationError as exc:
        return "FAIL", f"invalid settings: {exc.error_count()} errors"
    return "OK", "configured"


@app.command()
def run(
    offline: bool = typer.Option(False, "--offline", help="Skip connectivity probes."),
) -> None:
    """Check every integration's configuration and reachability."""

    settings = AppSettings()
    print_banner(_console)
    table = build_status_table()

    for integration in ALL_INTEGRATIONS:
        status, detail = check_config(integration)
        if offline or integration.probe_url is None:
            reach = "SKIPPED"
        else:
            ok, reach_detail = _check_http(integration.probe_url, settings)
            reach = "OK" if ok else "FAIL"
            detail = f"{detail}; {reach_detail}"
        table.add_row(integration.prog, styled_status(status), styled_status(reach), detail)

    _console.print(table)


@app.command()
def setup(
    name: str = typer.Argument(..., help="Integration: posthog, sentry, trigger, cloudrun, db."),
    project: bool = typer.Option(False, "--project", help="Write to ./ instead of the home directory."),
) -> None:
    """Interactive credential setup (writes a KEY=value file)."""

    try:
        integration = get_integration(name)
    except KeyError:
        raise typer.BadParameter(f"unknown integration: {name}") from None

    settings_cls = integration.settings_cls
    values: dict[str, str] = {}
    for field, aliases in settings_cls.env_names.items():
        variable = aliases[0]
        default = settings_cls.model_fields[field].default or ""
        secret = any(hint in variable for hint in SECRET_HINTS)
        value = typer.prompt(variable, default=default, show_default=not secret, hide_input=secret).strip()
        if value:
            values[variable] = value

    if not values:
        _console.print("[yellow]Nothing to save.[/yellow]")
        raise typer.Exit(code=1)

    directory = Path.cwd() if project else Path.home()
    env_path = write_env_vars(directory / settings_cls.env_filename, values)
    _console.print(f"[green]Saved {integration.name} config to:[/green] {env_path}")
