"""Trigger.dev integration (`trigger-runs`)."""

from __future__ import annotations

import logging
from enum import Enum
from functools import partial
from typing import Any, Callable, ClassVar

from pydantic import ValidationError

from skillquery.adapters.http_client import ApiClient
from skillquery.core.commands import Arg, Command, CommandContext, Dispatcher
from skillquery.core.config import AppSettings, SkillSettings, mask
from skillquery.core.domain.models import ApiError, Empty, TriggerRun
from skillquery.core.errors import CommandError
from skillquery.core.normalize import (
    TEXT_LIMIT,
    api_error_result,
    classify,
    count_by,
    duration_stats,
    ensure_prefix,
    format_duration,
    hours_ago,
    resource_error_result,
    second,
    truncate,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.trigger.dev"
RUN_PREFIX = "run_"
FAILED_STATUSES = ("FAILED", "CRASHED", "SYSTEM_FAILURE", "TIMED_OUT")
STATS_PAGE_SIZE = 100


class TriggerSettings(SkillSettings):
    env_names: ClassVar[dict[str, tuple[str, ...]]] = {
        "secret_key": ("TRIGGER_SECRET_KEY", "TRIGGER_API_KEY"),
        "api_base": ("TRIGGER_API_URL",),
    }

    secret_key: str = ""
    api_base: str = DEFAULT_API_BASE

    def ensure_ready(self) -> None:
        if not self.secret_key:
            raise CommandError(
                "missing_api_key",
                fix="Set TRIGGER_SECRET_KEY in your environment or .env (tr_dev_... or tr_prod_...)",
            )

    def describe(self) -> dict[str, Any]:
        return {
            "api_base": self.api_base,
            "secret_key": mask(self.secret_key),
            "environment": _environment(self.secret_key),
        }


def _environment(key: str) -> str:
    for prefix, name in (("tr_prod_", "prod"), ("tr_stg_", "staging"), ("tr_dev_", "dev")):
        if key.startswith(prefix):
            return name
    return "unknown"


def build_api_client(settings: TriggerSettings, app: AppSettings, *, transport: Any = None) -> ApiClient:
    return ApiClient.create(
        app,
        base_url=settings.api_base.rstrip("/"),
        token=settings.secret_key,
        transport=transport,
    )


class Verb(str, Enum):
    RUNS = "runs"
    FAILED = "failed"
    RUN = "run"
    ERROR = "error"
    STATS = "stats"
    REPLAY = "replay"
    CANCEL = "cancel"
    CONFIG = "config"


def normalize_run_id(run_id: str) -> str:
    return ensure_prefix(run_id.strip(), RUN_PREFIX)


def _runs(items: list[dict[str, Any]]) -> list[TriggerRun]:
    runs = []
    for item in items:
        try:
            runs.append(TriggerRun.model_validate(item))
        except ValidationError as exc:
            logger.debug("skipping malformed run record: %s", exc)
    return runs


def run_row(run: TriggerRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "task": run.task,
        "status": run.status,
        "created": second(run.created),
        "duration_ms": run.duration_ms,
        "duration": format_duration(run.duration_ms),
    }


def run_detail(run: TriggerRun) -> dict[str, Any]:
    detail = {
        **run_row(run),
        "started": second(run.started),
        "finished": second(run.finished),
        "is_test": run.is_test,
        "tags": run.tags,
        "attempts": run.attempt_count,
    }
    if run.error is not None:
        detail["error"] = {"name": run.error.name, "message": truncate(run.error.message, TEXT_LIMIT)}
    return detail


def run_stats(runs: list[TriggerRun], hours: int) -> dict[str, Any]:
    """Aggregate a window of runs by status and task, plus duration stats."""

    finished = [run.duration_ms for run in runs if run.duration_ms]
    failed = sum(1 for run in runs if run.status in FAILED_STATUSES)
    return {
        "period_hours": hours,
        "total": len(runs),
        "failed": failed,
        "failure_rate": round(failed / len(runs) * 100, 1) if runs else 0,
        "by_status": count_by(run.status for run in runs),
        "by_task": count_by(run.task for run in runs),
        "duration": duration_stats(finished),
    }


def _list(ctx: CommandContext, params: dict[str, Any]) -> Any:
    return ctx.client.get("/api/v1/runs", params=params)


def _retrieve(ctx: CommandContext, run_id: str) -> Any:
    return ctx.client.get(f"/api/v3/runs/{run_id}")


def cmd_runs(ctx: CommandContext, limit: int, status: str | None) -> dict[str, Any]:
    ctx.note(f"Recent runs (limit: {limit}{', status: ' + status if status else ''})")
    params = {"page[size]": limit, "filter[status]": status.upper() if status else None}
    outcome = classify(_list(ctx, params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No runs found"}
    runs = _runs(outcome.items)
    return {"count": len(runs), "runs": [run_row(run) for run in runs]}


def cmd_failed(ctx: CommandContext, limit: int) -> dict[str, Any]:
    ctx.note(f"Failed runs (limit: {limit})")
    params = {"page[size]": limit, "filter[status]": ",".join(FAILED_STATUSES)}
    outcome = classify(_list(ctx, params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No failed runs"}
    runs = _runs(outcome.items)
    return {"count": len(runs), "failed_runs": [run_row(run) for run in runs]}


def _parse_run(payload: Any, run_id: str) -> TriggerRun | dict[str, Any]:
    try:
        return TriggerRun.model_validate(payload)
    except ValidationError as exc:
        return {"error": "api_error", "message": f"Unexpected run shape: {exc.error_count()} errors", "run_id": run_id}


def cmd_run(ctx: CommandContext, run_id: str) -> dict[str, Any]:
    run_id = normalize_run_id(run_id)
    outcome = classify(_retrieve(ctx, run_id))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Run {run_id}", run_id=run_id)
    run = _parse_run(outcome.payload, run_id)
    if isinstance(run, dict):
        return run
    return run_detail(run)


def cmd_error(ctx: CommandContext, run_id: str) -> dict[str, Any]:
    run_id = normalize_run_id(run_id)
    outcome = classify(_retrieve(ctx, run_id))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Run {run_id}", run_id=run_id)

    run = _parse_run(outcome.payload, run_id)
    if isinstance(run, dict):
        return run
    if run.error is None:
        return {"status": "no_error", "run_id": run_id}
    return {
        "run_id": run_id,
        "task": run.task,
        "status": run.status,
        "error": {
            "name": run.error.name,
            "message": run.error.message,
            "stack_trace": run.error.stack_trace,
        },
    }


def cmd_stats(ctx: CommandContext, hours: int) -> dict[str, Any]:
    ctx.note(f"Run stats (last {hours}h, max {STATS_PAGE_SIZE} runs)")
    params = {"page[size]": STATS_PAGE_SIZE, "filter[createdAt][from]": f"{hours_ago(hours)}Z"}
    outcome = classify(_list(ctx, params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": f"No runs in the last {hours}h", "period_hours": hours}
    return run_stats(_runs(outcome.items), hours)


def cmd_replay(ctx: CommandContext, run_id: str) -> dict[str, Any]:
    run_id = normalize_run_id(run_id)
    ctx.note(f"Replaying {run_id}")
    outcome = classify(ctx.client.post(f"/api/v1/runs/{run_id}/replay"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Run {run_id}", run_id=run_id)
    return {"status": "replayed", "original_run_id": run_id, "new_run_id": outcome.payload.get("id")}


def cmd_cancel(ctx: CommandContext, run_id: str) -> dict[str, Any]:
    run_id = normalize_run_id(run_id)
    ctx.note(f"Cancelling {run_id}")
    outcome = classify(ctx.client.post(f"/api/v2/runs/{run_id}/cancel"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Run {run_id}", run_id=run_id)
    return {"status": "cancelled", "run_id": outcome.payload.get("id") or run_id}


def cmd_config(ctx: CommandContext) -> dict[str, Any]:
    return ctx.settings.describe()


_RUN_ID = Arg("run_id", required=True)

COMMANDS: tuple[Command, ...] = (
    Command(
        Verb.RUNS,
        cmd_runs,
        "Recent runs, optionally filtered by status",
        group="Query",
        args=(Arg("limit", default=20, numeric=True), Arg("status")),
    ),
    Command(Verb.FAILED, cmd_failed, "Failed/crashed/timed out runs", group="Query", args=(Arg("limit", default=10, numeric=True),)),
    Command(Verb.RUN, cmd_run, "Run details", group="Query", args=(_RUN_ID,), hints={"hint": "Run ids look like run_abc123"}),
    Command(Verb.ERROR, cmd_error, "Error and stack trace of a run", group="Query", args=(_RUN_ID,)),
    Command(
        Verb.STATS,
        cmd_stats,
        "Counts by status and task, duration stats",
        group="Query",
        args=(Arg("hours", default=24, numeric=True, invalid_message="hours must be a whole number"),),
    ),
    Command(Verb.REPLAY, cmd_replay, "Replay a run with the same payload", group="Actions", args=(_RUN_ID,)),
    Command(Verb.CANCEL, cmd_cancel, "Cancel an in-progress run", group="Actions", args=(_RUN_ID,)),
    Command(Verb.CONFIG, cmd_config, "Show configuration", group="Actions"),
)

FOOTER = """Setup:
  export TRIGGER_SECRET_KEY=tr_prod_...   # or add it to .env
  TRIGGER_API_URL for self-hosted instances

Examples:
  trigger-runs failed 5
  trigger-runs error abc123              # run_ prefix is optional"""


class TriggerIntegration:
    name = "trigger"
    prog = "trigger-runs"
    summary = "Query Trigger.dev task runs"
    settings_cls = TriggerSettings
    probe_url: str | None = DEFAULT_API_BASE

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
            settings_factory=settings_factory or TriggerSettings,
            client_factory=partial(build_api_client, transport=transport),
            app_settings=app_settings,
            footer=FOOTER,
        )
