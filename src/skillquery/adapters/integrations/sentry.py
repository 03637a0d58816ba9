"""Sentry integration (`sentry-stats`).

Unresolved issues, issue/event details, slow spans, trace breakdowns,
transaction performance and releases, via the Sentry REST API.
"""

from __future__ import annotations

import re
from collections import defaultdict
from enum import Enum
from functools import partial
from typing import Any, Callable, ClassVar

from pydantic import ValidationError

from skillquery.adapters.http_client import ApiClient
from skillquery.core.commands import Arg, Command, CommandContext, Dispatcher
from skillquery.core.config import AppSettings, SkillSettings
from skillquery.core.domain.models import ApiError, Empty, SentryIssue, SentryRelease
from skillquery.core.errors import CommandError
from skillquery.core.normalize import (
    LABEL_LIMIT,
    TEXT_LIMIT,
    api_error_result,
    classify,
    day,
    duration_stats,
    format_duration,
    minute,
    resource_error_result,
    truncate,
)

DEFAULT_API_BASE = "https://sentry.io/api/0"
MIDDLEWARE = re.compile("middleware", re.IGNORECASE)
EVENT_TAGS = frozenset({"environment", "release", "transaction", "url"})
SPAN_FIELDS = ["id", "trace", "span.name", "span.description", "span.duration", "transaction", "timestamp"]


class SentrySettings(SkillSettings):
    env_names: ClassVar[dict[str, tuple[str, ...]]] = {
        "token": ("SENTRY_TOKEN", "SENTRY_AUTH_TOKEN"),
        "org": ("SENTRY_ORG",),
        "project": ("SENTRY_PROJECT",),
        "project_id": ("SENTRY_PROJECT_ID",),
        "api_base": ("SENTRY_API_BASE",),
    }

    token: str = ""
    org: str = ""
    project: str = ""
    project_id: str = ""
    api_base: str = DEFAULT_API_BASE

    def ensure_ready(self) -> None:
        if not self.token:
            raise CommandError("missing_api_key", fix="Set SENTRY_TOKEN or add SENTRY_AUTH_TOKEN to .env")
        missing = [name for name, value in (("SENTRY_ORG", self.org), ("SENTRY_PROJECT", self.project), ("SENTRY_PROJECT_ID", self.project_id)) if not value]
        if missing:
            raise CommandError(
                "missing_config",
                missing=missing,
                fix="Add SENTRY_ORG, SENTRY_PROJECT, SENTRY_PROJECT_ID to .env",
            )

    def describe(self) -> dict[str, Any]:
        return {
            "org": self.org,
            "project": self.project,
            "project_id": self.project_id,
            "api_base": self.api_base,
            "token_configured": bool(self.token),
        }


def build_api_client(settings: SentrySettings, app: AppSettings, *, transport: Any = None) -> ApiClient:
    return ApiClient.create(app, base_url=settings.api_base.rstrip("/"), token=settings.token, transport=transport)


class Verb(str, Enum):
    ERRORS = "errors"
    ISSUES = "issues"
    ISSUE = "issue"
    EVENTS = "events"
    SPANS = "spans"
    TRACE = "trace"
    PERF = "perf"
    RELEASES = "releases"
    CONFIG = "config"


# -- Projections ---------------------------------------------------------------


def _issues(items: list[dict[str, Any]]) -> list[SentryIssue]:
    issues = []
    for item in items:
        try:
            issues.append(SentryIssue.model_validate(item))
        except ValidationError:
            continue
    return issues


def issue_summary(issue: SentryIssue, *, detailed_dates: bool = False) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": issue.id,
        "shortId": issue.short_id,
        "title": truncate(issue.title, LABEL_LIMIT),
        "culprit": truncate(issue.culprit, LABEL_LIMIT),
        "count": issue.count,
        "userCount": issue.user_count,
    }
    if detailed_dates:
        row["lastSeen"] = minute(issue.last_seen)
        row["status"] = issue.status
    else:
        row["firstSeen"] = day(issue.first_seen)
        row["lastSeen"] = day(issue.last_seen)
        row["level"] = issue.level
    return row


def issue_detail(issue: SentryIssue) -> dict[str, Any]:
    metadata = issue.metadata or {}
    details = {
        "type": metadata.get("type"),
        "value": truncate(metadata.get("value"), TEXT_LIMIT),
        "filename": metadata.get("filename"),
        "function": metadata.get("function"),
    }
    return {
        "id": issue.id,
        "shortId": issue.short_id,
        "title": issue.title,
        "culprit": issue.culprit,
        "level": issue.level,
        "status": issue.status,
        "count": issue.count,
        "userCount": issue.user_count,
        "firstSeen": minute(issue.first_seen),
        "lastSeen": minute(issue.last_seen),
        "metadata": {k: v for k, v in details.items() if v not in (None, "")},
        "permalink": issue.permalink,
    }


def event_summary(event: dict[str, Any]) -> dict[str, Any]:
    tags = {t.get("key"): t.get("value") for t in event.get("tags") or [] if t.get("key") in EVENT_TAGS}
    return {
        "id": event.get("eventID"),
        "timestamp": minute(event.get("dateCreated")),
        "message": truncate(event.get("message") or event.get("title"), TEXT_LIMIT),
        "tags": tags,
    }


def _duration(span: dict[str, Any]) -> float:
    return span.get("span.duration") or 0


def span_summary(span: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": span.get("id"),
        "trace_id": span.get("trace"),
        "name": span.get("span.name"),
        "description": truncate(span.get("span.description"), LABEL_LIMIT),
        "duration": format_duration(_duration(span)),
        "duration_ms": span.get("span.duration"),
        "transaction": span.get("transaction"),
        "timestamp": minute(span.get("timestamp")),
    }


def trace_breakdown(spans: list[dict[str, Any]], trace_id: str) -> dict[str, Any]:
    """Group a trace's spans by operation, ignoring middleware noise."""

    filtered = [s for s in spans if not MIDDLEWARE.search(s.get("span.name") or "")]

    groups: dict[str, list[float]] = defaultdict(list)
    for span in filtered:
        groups[span.get("span.name") or "unknown"].append(_duration(span))

    operations = [
        {
            "operation": operation,
            "count": len(durations),
            "total_ms": int(sum(durations)),
            "total": format_duration(sum(durations)),
            "avg": format_duration(sum(durations) / len(durations)),
            "max": format_duration(max(durations)),
        }
        for operation, durations in groups.items()
    ]
    operations.sort(key=lambda op: -op["total_ms"])

    return {
        "trace_id": trace_id,
        "span_count": len(spans),
        "total_duration": format_duration(max(_duration(s) for s in spans)),
        "by_operation": operations[:10],
        "slowest_spans": [
            {
                "name": s.get("span.name"),
                "description": truncate(s.get("span.description"), LABEL_LIMIT),
                "duration": format_duration(_duration(s)),
                "duration_ms": s.get("span.duration"),
            }
            for s in filtered[:10]
        ],
    }


def transaction_summary(row: dict[str, Any]) -> dict[str, Any]:
    avg = row.get("avg(span.duration)")
    p95 = row.get("p95(span.duration)")
    return {
        "endpoint": row.get("transaction"),
        "requests": int(row.get("count()") or 0),
        "avg": format_duration(avg),
        "avg_ms": int(avg or 0),
        "p95": format_duration(p95),
        "p95_ms": int(p95 or 0),
    }


def release_summary(release: SentryRelease) -> dict[str, Any]:
    return {
        "version": truncate(release.short_version or release.version, 40),
        "created": minute(release.date_created),
        "new_issues": release.new_groups,
        "authors": len(release.authors),
        "commits": release.commit_count,
    }


# -- Handlers ------------------------------------------------------------------


def _project_path(ctx: CommandContext, suffix: str) -> str:
    return f"/projects/{ctx.settings.org}/{ctx.settings.project}{suffix}"


def _org_path(ctx: CommandContext, suffix: str) -> str:
    return f"/organizations/{ctx.settings.org}{suffix}"


def cmd_errors(ctx: CommandContext, limit: int) -> dict[str, Any]:
    ctx.note(f"Unresolved Errors (limit: {limit})")
    raw = ctx.client.get(_project_path(ctx, "/issues/"), params={"query": "is:unresolved", "limit": limit})
    outcome = classify(raw)
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No unresolved issues"}
    issues = _issues(outcome.items)
    return {"count": len(issues), "issues": [issue_summary(i) for i in issues]}


def cmd_issues(ctx: CommandContext, query: str, limit: int) -> dict[str, Any]:
    ctx.note(f"Issues: {query} (limit: {limit})")
    outcome = classify(ctx.client.get(_project_path(ctx, "/issues/"), params={"query": query, "limit": limit}))
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "query": query, "count": 0}
    issues = _issues(outcome.items)
    return {
        "query": query,
        "count": len(issues),
        "issues": [issue_summary(i, detailed_dates=True) for i in issues],
    }


def cmd_issue(ctx: CommandContext, issue_id: str) -> dict[str, Any]:
    ctx.note(f"Issue: {issue_id}")
    outcome = classify(ctx.client.get(f"/issues/{issue_id}/"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Issue {issue_id}", issue_id=issue_id)
    try:
        issue = SentryIssue.model_validate(outcome.payload)
    except ValidationError as exc:
        return {"error": "api_error", "message": f"Unexpected issue shape: {exc.error_count()} errors", "issue_id": issue_id}
    return issue_detail(issue)


def cmd_events(ctx: CommandContext, issue_id: str, limit: int) -> dict[str, Any]:
    ctx.note(f"Events for issue {issue_id} (limit: {limit})")
    outcome = classify(ctx.client.get(f"/issues/{issue_id}/events/", params={"limit": limit}))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Issue {issue_id}", issue_id=issue_id)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "issue_id": issue_id, "message": "No events found"}
    return {
        "issue_id": issue_id,
        "count": len(outcome.items),
        "events": [event_summary(e) for e in outcome.items],
    }


def cmd_spans(ctx: CommandContext, endpoint: str | None, period: str, limit: int) -> dict[str, Any]:
    if endpoint:
        query = f"span.description:{endpoint}"
        ctx.note(f"Filter: {query}")
    else:
        query = "!span.name:middleware.starlette"
        ctx.note("Filter: excluding middleware")
    ctx.note(f"Slow Spans (period: {period}, limit: {limit})")

    params = {
        "dataset": "spans",
        "project": ctx.settings.project_id,
        "statsPeriod": period,
        "query": query,
        "field": SPAN_FIELDS,
        "sort": "-span.duration",
        "per_page": limit,
    }
    outcome = classify(ctx.client.get(_org_path(ctx, "/events/"), params=params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No spans found", "period": period}

    stats = duration_stats(_duration(s) for s in outcome.items)
    return {
        "period": period,
        "count": len(outcome.items),
        "spans": [span_summary(s) for s in outcome.items],
        "stats": {k: stats[k] for k in ("max_ms", "min_ms", "avg_ms", "max_human", "avg_human")},
    }


def cmd_trace(ctx: CommandContext, trace_id: str) -> dict[str, Any]:
    ctx.note(f"Trace: {trace_id}")
    params = {
        "dataset": "spans",
        "project": ctx.settings.project_id,
        "query": f"trace:{trace_id}",
        "field": ["id", "span.name", "span.description", "span.duration", "timestamp"],
        "sort": "-span.duration",
        "per_page": 100,
    }
    outcome = classify(ctx.client.get(_org_path(ctx, "/events/"), params=params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "Trace not found or expired", "trace_id": trace_id}
    return trace_breakdown(outcome.items, trace_id)


def cmd_perf(ctx: CommandContext, period: str) -> dict[str, Any]:
    ctx.note(f"Performance Summary (period: {period})")
    params = {
        "dataset": "spans",
        "project": ctx.settings.project_id,
        "statsPeriod": period,
        "field": ["transaction", "count()", "avg(span.duration)", "p95(span.duration)"],
        "query": "span.op:http.server",
        "sort": "-p95(span.duration)",
        "per_page": 15,
    }
    outcome = classify(ctx.client.get(_org_path(ctx, "/events/"), params=params), "data")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No transaction data", "period": period}
    return {
        "period": period,
        "endpoint_count": len(outcome.items),
        "transactions": [transaction_summary(row) for row in outcome.items],
    }


def cmd_releases(ctx: CommandContext, limit: int) -> dict[str, Any]:
    ctx.note(f"Recent Releases (limit: {limit})")
    params = {"project": ctx.settings.project_id, "per_page": limit}
    outcome = classify(ctx.client.get(_org_path(ctx, "/releases/"), params=params))
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "message": "No releases found"}

    releases = []
    for item in outcome.items:
        try:
            releases.append(release_summary(SentryRelease.model_validate(item)))
        except ValidationError:
            continue
    return {"count": len(releases), "releases": releases}


def cmd_config(ctx: CommandContext) -> dict[str, Any]:
    ctx.note("Sentry Config")
    return ctx.settings.describe()


_LIMIT_10 = Arg("limit", default=10, numeric=True)

COMMANDS: tuple[Command, ...] = (
    Command(Verb.ERRORS, cmd_errors, "Unresolved issues (default: 10)", args=(_LIMIT_10,)),
    Command(
        Verb.ISSUES,
        cmd_issues,
        'Search issues (default: "is:unresolved")',
        args=(Arg("query", default="is:unresolved"), Arg("limit", default=20, numeric=True)),
    ),
    Command(Verb.ISSUE, cmd_issue, "Single issue details", args=(Arg("issue_id", required=True),)),
    Command(
        Verb.EVENTS,
        cmd_events,
        "Events for an issue",
        args=(Arg("issue_id", required=True), _LIMIT_10),
    ),
    Command(
        Verb.SPANS,
        cmd_spans,
        "Slow spans (default: 14d, excludes middleware)",
        args=(Arg("endpoint"), Arg("period", default="14d"), Arg("limit", default=20, numeric=True)),
    ),
    Command(
        Verb.TRACE,
        cmd_trace,
        "Trace breakdown by operation",
        args=(Arg("trace_id", required=True),),
        hints={"hint": "Get trace_id from spans command"},
    ),
    Command(Verb.PERF, cmd_perf, "Transaction performance by p95", args=(Arg("period", default="24h"),)),
    Command(Verb.RELEASES, cmd_releases, "Recent releases (default: 5)", args=(Arg("limit", default=5, numeric=True),)),
    Command(Verb.CONFIG, cmd_config, "Show configuration"),
)

FOOTER = """Setup:
  export SENTRY_TOKEN=...     # or add SENTRY_AUTH_TOKEN to .env
  SENTRY_ORG, SENTRY_PROJECT, SENTRY_PROJECT_ID in .env
  Get token: https://sentry.io/settings/auth-tokens/

Examples:
  sentry-stats errors                 # Quick check for unresolved issues
  sentry-stats issues "level:error"   # Search for error-level issues
  sentry-stats spans /cluster 7d      # Slow /cluster spans over 7 days
  sentry-stats perf 7d                # Transaction perf over 7 days"""


class SentryIntegration:
    name = "sentry"
    prog = "sentry-stats"
    summary = "Query errors, performance, and traces"
    settings_cls = SentrySettings
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
            settings_factory=settings_factory or SentrySettings,
            client_factory=partial(build_api_client, transport=transport),
            app_settings=app_settings,
            footer=FOOTER,
        )
