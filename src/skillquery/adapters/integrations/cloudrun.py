"""Cloud Run logs integration (`cloudrun-logs`).

Reads service logs through the Cloud Logging `entries:list` API and service
metadata through the Cloud Run Admin API v2. Both are plain REST calls with a
short-lived OAuth access token, taken from the environment or from
`gcloud auth print-access-token`.

Service, project, region and account live in a `.cloudrun-logs` file written
by `init`; the nearest one walking up from the CWD wins, then `~/.cloudrun-logs`.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, ClassVar

from skillquery.adapters.http_client import ApiClient
from skillquery.core.commands import Arg, Command, CommandContext, Dispatcher
from skillquery.core.config import AppSettings, SkillSettings, find_env_file, write_env_vars
from skillquery.core.domain.models import ApiError, Empty
from skillquery.core.errors import CommandError, missing_dependency
from skillquery.core.normalize import TEXT_LIMIT, api_error_result, classify, minute, second, truncate

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".cloudrun-logs"
LOGGING_API = "https://logging.googleapis.com/v2"
RUN_API = "https://run.googleapis.com/v2"
ERROR_PATTERN = re.compile(r"(error|exception|fatal|panic|traceback|failed|timeout|denied|refused|crash)", re.IGNORECASE)
MAX_ERRORS = 20
GCLOUD_TIMEOUT_SECONDS = 30

SEVERITY_RANK = {
    "DEFAULT": 0,
    "DEBUG": 100,
    "INFO": 200,
    "NOTICE": 300,
    "WARNING": 400,
    "ERROR": 500,
    "CRITICAL": 600,
    "ALERT": 700,
    "EMERGENCY": 800,
}


class CloudRunSettings(SkillSettings):
    env_filename: ClassVar[str] = CONFIG_FILENAME
    env_names: ClassVar[dict[str, tuple[str, ...]]] = {
        "service": ("CLOUDRUN_SERVICE", "SERVICE"),
        "project": ("CLOUDRUN_PROJECT", "PROJECT"),
        "region": ("CLOUDRUN_REGION", "REGION"),
        "account": ("CLOUDRUN_ACCOUNT", "ACCOUNT"),
        "access_token": ("CLOUDRUN_ACCESS_TOKEN", "GOOGLE_OAUTH_ACCESS_TOKEN"),
    }

    service: str = ""
    project: str = ""
    region: str = ""
    account: str = ""
    access_token: str = ""

    def ensure_ready(self) -> None:
        missing = [name for name in ("service", "project", "region") if not getattr(self, name)]
        if missing:
            raise CommandError("missing_config", missing=missing, fix="run: cloudrun-logs init <project> <service>")

    def describe(self) -> dict[str, Any]:
        config_file = find_env_file(Path.cwd(), CONFIG_FILENAME)
        return {
            "service": self.service,
            "project": self.project,
            "region": self.region,
            "account": self.account,
            "config_file": str(config_file) if config_file else None,
        }


def fetch_access_token(settings: CloudRunSettings) -> str:
    """Return an OAuth token, asking gcloud when none is configured."""

    if settings.access_token:
        return settings.access_token

    gcloud = shutil.which("gcloud")
    if gcloud is None:
        raise missing_dependency(
            "gcloud",
            "Install the Google Cloud SDK or set CLOUDRUN_ACCESS_TOKEN",
        )

    argv = [gcloud, "auth", "print-access-token"]
    if settings.account:
        argv.append(f"--account={settings.account}")
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, timeout=GCLOUD_TIMEOUT_SECONDS, check=False)
    except subprocess.TimeoutExpired as exc:
        raise CommandError("auth_failed", message=f"gcloud timed out after {exc.timeout}s", fix="run: gcloud auth login") from exc

    token = completed.stdout.strip()
    if completed.returncode != 0 or not token:
        raise CommandError(
            "auth_failed",
            message=truncate(completed.stderr.strip() or "gcloud returned no token", TEXT_LIMIT),
            fix="run: gcloud auth login",
        )
    return token


def build_api_client(settings: CloudRunSettings, app: AppSettings, *, transport: Any = None) -> ApiClient:
    # Absolute URLs: one client talks to both Google APIs.
    return ApiClient.create(app, token=fetch_access_token(settings), transport=transport)


class Verb(str, Enum):
    INIT = "init"
    CONFIG = "config"
    ERRORS = "errors"
    RECENT = "recent"
    ALL = "all"
    SINCE = "since"
    REVISIONS = "revisions"
    REV = "rev"
    STATUS = "status"


# -- Projections ---------------------------------------------------------------


def short_name(resource_name: str | None) -> str | None:
    """`projects/p/locations/r/services/s/revisions/s-0001` -> `s-0001`."""

    return resource_name.rsplit("/", 1)[-1] if resource_name else None


def entry_message(entry: dict[str, Any]) -> str:
    if entry.get("textPayload"):
        return str(entry["textPayload"])
    payload = entry.get("jsonPayload") or {}
    if payload.get("message"):
        return str(payload["message"])
    request = entry.get("httpRequest") or {}
    if request:
        return f"{request.get('requestMethod', '')} {request.get('requestUrl', '')} {request.get('status', '')}".strip()
    return ""


def log_entry(entry: dict[str, Any]) -> dict[str, Any]:
    labels = (entry.get("resource") or {}).get("labels") or {}
    return {
        "time": second(entry.get("timestamp")),
        "severity": entry.get("severity", "DEFAULT"),
        "revision": labels.get("revision_name"),
        "message": truncate(entry_message(entry), TEXT_LIMIT),
    }


def is_error(entry: dict[str, Any]) -> bool:
    if SEVERITY_RANK.get(entry.get("severity", "DEFAULT"), 0) >= SEVERITY_RANK["ERROR"]:
        return True
    return bool(ERROR_PATTERN.search(entry_message(entry)))


def service_filter(settings: CloudRunSettings) -> str:
    return (
        'resource.type="cloud_run_revision" '
        f'AND resource.labels.service_name="{settings.service}" '
        f'AND resource.labels.location="{settings.region}"'
    )


def revision_row(revision: dict[str, Any], traffic: dict[str, int]) -> dict[str, Any]:
    name = short_name(revision.get("name"))
    return {
        "revision": name,
        "created": minute(revision.get("createTime")),
        "traffic_percent": traffic.get(name, 0),
        "active": name in traffic,
    }


# -- Upstream calls ------------------------------------------------------------


def _service_url(settings: CloudRunSettings) -> str:
    return f"{RUN_API}/projects/{settings.project}/locations/{settings.region}/services/{settings.service}"


def read_entries(ctx: CommandContext, log_filter: str, limit: int) -> Any:
    body = {
        "resourceNames": [f"projects/{ctx.settings.project}"],
        "filter": log_filter,
        "orderBy": "timestamp desc",
        "pageSize": limit,
    }
    return ctx.client.post(f"{LOGGING_API}/entries:list", body)


def fetch_service(ctx: CommandContext) -> dict[str, Any]:
    """GET the service or raise `service_not_found` / `api_error`."""

    settings = ctx.settings
    raw = ctx.client.get(_service_url(settings))
    outcome = classify(raw)
    if isinstance(outcome, ApiError):
        upstream = raw.get("error") if isinstance(raw, dict) else None
        if isinstance(upstream, dict) and (upstream.get("status") == "NOT_FOUND" or upstream.get("code") == 404):
            raise CommandError(
                "service_not_found",
                service=settings.service,
                region=settings.region,
                fix="run: cloudrun-logs init <project> <service>",
            )
        raise CommandError("api_error", message=truncate(outcome.message, TEXT_LIMIT))
    return outcome.payload


def fetch_revisions(ctx: CommandContext) -> list[dict[str, Any]]:
    outcome = classify(ctx.client.get(f"{_service_url(ctx.settings)}/revisions"), "revisions")
    if isinstance(outcome, ApiError):
        raise CommandError("api_error", message=truncate(outcome.message, TEXT_LIMIT))
    if isinstance(outcome, Empty):
        return []
    return sorted(outcome.items, key=lambda r: r.get("createTime") or "", reverse=True)


def _traffic(service: dict[str, Any]) -> dict[str, int]:
    return {
        short_name(status.get("revision")): int(status.get("percent") or 0)
        for status in service.get("trafficStatuses") or []
        if status.get("revision")
    }


# -- Handlers ------------------------------------------------------------------


def _context_note(ctx: CommandContext) -> None:
    s = ctx.settings
    ctx.note(f"{s.service} | {s.project} | {s.region}")


def _log_listing(ctx: CommandContext, limit: int) -> dict[str, Any]:
    _context_note(ctx)
    outcome = classify(read_entries(ctx, service_filter(ctx.settings), limit), "entries")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No logs found", "service": ctx.settings.service}
    return {
        "service": ctx.settings.service,
        "count": len(outcome.items),
        "entries": [log_entry(e) for e in outcome.items],
    }


def cmd_init(ctx: CommandContext, project: str, service: str, region: str | None, account: str | None) -> dict[str, Any]:
    ctx.note("=== Setup ===")
    updates = {"project": project, "service": service}
    if account:
        updates["account"] = account
    ctx.settings = ctx.settings.model_copy(update=updates)

    if not region:
        outcome = classify(ctx.client.get(f"{RUN_API}/projects/{project}/locations/-/services"), "services")
        if isinstance(outcome, ApiError):
            return api_error_result(outcome)
        names = [] if isinstance(outcome, Empty) else [s.get("name", "") for s in outcome.items]
        match = next((name for name in names if name.endswith(f"/services/{service}")), None)
        if match is None:
            return {
                "error": "service_not_found",
                "service": service,
                "project": project,
                "available": [short_name(name) for name in names],
            }
        region = match.split("/locations/", 1)[1].split("/", 1)[0]

    path = write_env_vars(
        Path.cwd() / CONFIG_FILENAME,
        {"SERVICE": service, "PROJECT": project, "REGION": region, "ACCOUNT": account},
        header="cloudrun-logs configuration",
    )
    ctx.note(f"Saved to {path}")
    return {"status": "configured", "service": service, "project": project, "region": region}


def cmd_config(ctx: CommandContext) -> dict[str, Any]:
    return ctx.settings.describe()


def cmd_errors(ctx: CommandContext) -> dict[str, Any]:
    _context_note(ctx)
    outcome = classify(read_entries(ctx, service_filter(ctx.settings), 100), "entries")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No logs found (logging issue?)"}

    errors = [log_entry(e) for e in outcome.items if is_error(e)][:MAX_ERRORS]
    if not errors:
        return {
            "status": "ok",
            "message": f"No errors in last {len(outcome.items)} logs",
            "latest_log": log_entry(outcome.items[0]),
        }
    return {"status": "errors_found", "count": len(errors), "errors": errors}


def cmd_recent(ctx: CommandContext) -> dict[str, Any]:
    return _log_listing(ctx, 30)


def cmd_all(ctx: CommandContext) -> dict[str, Any]:
    return _log_listing(ctx, 200)


def cmd_since(ctx: CommandContext) -> dict[str, Any]:
    _context_note(ctx)
    fetch_service(ctx)
    revisions = fetch_revisions(ctx)
    if not revisions:
        return {"status": "no_data", "message": "Service has no revisions"}

    latest = revisions[0]
    deployed = latest.get("createTime")
    ctx.note(f"Since deploy: {deployed}")
    log_filter = f'{service_filter(ctx.settings)} AND timestamp>="{deployed}"'
    outcome = classify(read_entries(ctx, log_filter, 100), "entries")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)

    raw_entries = [] if isinstance(outcome, Empty) else outcome.items
    return {
        "revision": short_name(latest.get("name")),
        "since": deployed,
        "count": len(raw_entries),
        "errors": sum(1 for e in raw_entries if is_error(e)),
        "entries": [log_entry(e) for e in raw_entries],
    }


def cmd_revisions(ctx: CommandContext) -> dict[str, Any]:
    traffic = _traffic(fetch_service(ctx))
    revisions = fetch_revisions(ctx)
    if not revisions:
        return {"status": "no_data", "message": "Service has no revisions"}
    return {"count": len(revisions), "revisions": [revision_row(r, traffic) for r in revisions]}


def cmd_rev(ctx: CommandContext, revision: str) -> dict[str, Any]:
    ctx.note(f"Revision {revision}")
    log_filter = f'resource.type="cloud_run_revision" AND resource.labels.revision_name="{revision}"'
    outcome = classify(read_entries(ctx, log_filter, 50), "entries")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No logs for revision", "revision": revision}
    return {"revision": revision, "count": len(outcome.items), "entries": [log_entry(e) for e in outcome.items]}


def cmd_status(ctx: CommandContext) -> dict[str, Any]:
    service = fetch_service(ctx)
    terminal = service.get("terminalCondition") or {}
    return {
        "service": ctx.settings.service,
        "region": ctx.settings.region,
        "url": service.get("uri"),
        "ready": terminal.get("state") == "CONDITION_SUCCEEDED",
        "latest_revision": short_name(service.get("latestReadyRevision")),
        "conditions": [
            {k: v for k, v in (("type", c.get("type")), ("state", c.get("state")), ("message", c.get("message"))) if v}
            for c in [terminal, *(service.get("conditions") or [])]
            if c
        ],
    }


COMMANDS: tuple[Command, ...] = (
    Command(
        Verb.INIT,
        cmd_init,
        "Save project/service/region (once)",
        group="Setup",
        args=(Arg("project", required=True), Arg("service", required=True), Arg("region"), Arg("account")),
        needs_config=False,
    ),
    Command(Verb.CONFIG, cmd_config, "Show current config", group="Setup"),
    Command(Verb.ERRORS, cmd_errors, "Errors in the last 100 log entries", group="Logs"),
    Command(Verb.RECENT, cmd_recent, "Last 30 entries", group="Logs"),
    Command(Verb.ALL, cmd_all, "Last 200 entries", group="Logs"),
    Command(Verb.SINCE, cmd_since, "Logs since the latest deploy", group="Logs"),
    Command(Verb.REVISIONS, cmd_revisions, "List revisions with traffic", group="Revisions"),
    Command(
        Verb.REV,
        cmd_rev,
        "Logs for one revision",
        group="Revisions",
        args=(Arg("revision", required=True),),
        hints={"hint": "List revisions with: cloudrun-logs revisions"},
    ),
    Command(Verb.STATUS, cmd_status, "Service health conditions", group="Revisions"),
)

FOOTER = """Auth:
  gcloud auth login                 # or export CLOUDRUN_ACCESS_TOKEN=...

Examples:
  cloudrun-logs init my-project api        # region is discovered
  cloudrun-logs since                      # start here after a deploy"""


class CloudRunIntegration:
    name = "cloudrun"
    prog = "cloudrun-logs"
    summary = "Cloud Run debugging: logs, revisions, health"
    settings_cls = CloudRunSettings
    probe_url: str | None = LOGGING_API

    def build_dispatcher(
        self,
        app_settings: AppSettings | None = None,
        *,
        settings_factory: Callable[[], SkillSettings] | None = None,
        transport: Any = None,
    ) -> Dispatcher:
        return Dispatcher(
            prog=self.prog,
            title=self.summary,
            verbs=Verb,
            commands=COMMANDS,
            settings_factory=settings_factory or CloudRunSettings,
            client_factory=partial(build_api_client, transport=transport),
            app_settings=app_settings,
            footer=FOOTER,
        )
