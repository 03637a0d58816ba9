"""PostHog integration (`posthog-query`).

Explore events, debug dashboards/insights ("why is my insight empty?") and
summarize `$ai_generation` LLM events. Everything goes through the project
scoped REST API with a personal API key (`phx_...`).
"""

from __future__ import annotations

from collections import defaultdict
from enum import Enum
from functools import partial
from typing import Any, Callable, ClassVar

from skillquery.adapters.http_client import ApiClient
from skillquery.core.commands import Arg, Command, CommandContext, Dispatcher
from skillquery.core.config import AppSettings, SkillSettings
from skillquery.core.domain.models import ApiError, Empty
from skillquery.core.errors import CommandError
from skillquery.core.normalize import (
    LABEL_LIMIT,
    api_error_result,
    classify,
    count_by,
    floor_to,
    hours_ago,
    resource_error_result,
    second,
    truncate,
)

DEFAULT_API_BASE = "https://us.i.posthog.com"
DEFAULT_APP_URL = "https://us.posthog.com"
EVENTS_PAGE_SIZE = 500
INSIGHTS_PAGE_SIZE = 200
# Query wrappers that render on a dashboard tile.
VALID_WRAPPERS = frozenset({"InsightVizNode", "DataTableNode"})


class PosthogSettings(SkillSettings):
    env_names: ClassVar[dict[str, tuple[str, ...]]] = {
        "api_key": ("POSTHOG_KEY", "POSTHOG_PERSONAL_API_KEY"),
        "project_id": ("POSTHOG_PROJECT_ID",),
        "api_base": ("POSTHOG_API_BASE",),
        "app_url": ("POSTHOG_APP_URL",),
    }

    api_key: str = ""
    project_id: str = ""
    api_base: str = DEFAULT_API_BASE
    app_url: str = DEFAULT_APP_URL

    def ensure_ready(self) -> None:
        if not self.api_key:
            raise CommandError(
                "missing_api_key",
                fix="export POSTHOG_KEY=phx_... or add POSTHOG_PERSONAL_API_KEY to .env",
            )
        if self.api_key.startswith("phc_"):
            raise CommandError(
                "wrong_key_type",
                message="Found project key (phc_), need personal key (phx_)",
                fix=f"{self.app_url}/settings/user-api-keys",
            )
        if not self.project_id:
            raise CommandError(
                "missing_project_id",
                fix="export POSTHOG_PROJECT_ID=... or add POSTHOG_PROJECT_ID to .env",
            )

    def describe(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "api_base": self.api_base,
            "app_url": self.app_url,
            "key_configured": bool(self.api_key),
        }

    @property
    def project_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/project/{self.project_id}"


def build_api_client(settings: PosthogSettings, app: AppSettings, *, transport: Any = None) -> ApiClient:
    base_url = f"{settings.api_base.rstrip('/')}/api/projects/{settings.project_id}"
    return ApiClient.create(app, base_url=base_url, token=settings.api_key, transport=transport)


class Verb(str, Enum):
    EVENTS = "events"
    TRENDS = "trends"
    RAW = "raw"
    DASHBOARDS = "dashboards"
    DASHBOARD = "dashboard"
    DASHBOARD_DETAIL = "dashboard-detail"
    INSIGHT = "insight"
    INSIGHT_TEST = "insight-test"
    INSIGHT_REFRESH = "insight-refresh"
    INSIGHT_SAVE = "insight-save"
    INSIGHT_DELETE = "insight-delete"
    TRIAGE = "triage"
    TRIAGE_FIX = "triage-fix"
    LLM = "llm"
    LLM_SLOW = "llm-slow"
    LLM_BY_TYPE = "llm-by-type"
    CONFIG = "config"


# -- Projections ---------------------------------------------------------------


def _props(event: dict[str, Any]) -> dict[str, Any]:
    return event.get("properties") or {}


def _number(event: dict[str, Any], key: str) -> float:
    value = _props(event).get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def _latency_summary(events: list[dict[str, Any]], *, extremes: bool) -> dict[str, float]:
    latencies = [_number(e, "$ai_latency") for e in events]
    summary = {
        "total": floor_to(sum(latencies)),
        "avg": floor_to(sum(latencies) / len(latencies)),
    }
    if extremes:
        summary["max"] = floor_to(max(latencies))
        summary["min"] = floor_to(min(latencies))
    return summary


def summarize_llm(events: list[dict[str, Any]], hours: int) -> dict[str, Any]:
    models = count_by(_props(e).get("$ai_model") for e in events)
    return {
        "period_hours": hours,
        "calls": len(events),
        "latency_sec": _latency_summary(events, extremes=True),
        "tokens": {
            "input": sum(_number(e, "$ai_input_tokens") for e in events),
            "output": sum(_number(e, "$ai_output_tokens") for e in events),
        },
        "cost_usd": floor_to(sum(_number(e, "$ai_total_cost_usd") for e in events), 5),
        "models": dict(sorted(models.items())),
    }


def slowest_llm_calls(events: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    ordered = sorted(events, key=lambda e: -_number(e, "$ai_latency"))
    return [
        {
            "latency_sec": floor_to(_number(e, "$ai_latency")),
            "span_name": _props(e).get("$ai_span_name"),
            "model": _props(e).get("$ai_model"),
            "input_tokens": _props(e).get("$ai_input_tokens"),
            "output_tokens": _props(e).get("$ai_output_tokens"),
            # Non-$ properties are whatever the app attached to the call.
            "custom": {k: v for k, v in _props(e).items() if not k.startswith("$")},
            "timestamp": second(e.get("timestamp")),
        }
        for e in ordered[:limit]
    ]


def llm_by_type(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    groups: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for event in events:
        groups[_props(event).get("$ai_span_name") or "unknown"].append(event)

    rows = [
        {
            "span_name": span_name,
            "calls": len(group),
            "latency_sec": _latency_summary(group, extremes=False),
            "tokens": sum(_number(e, "$ai_input_tokens") + _number(e, "$ai_output_tokens") for e in group),
            "cost_usd": floor_to(sum(_number(e, "$ai_total_cost_usd") for e in group), 5),
        }
        for span_name, group in sorted(groups.items())
    ]
    return sorted(rows, key=lambda row: -row["calls"])


def _on_dashboard(insight: dict[str, Any]) -> bool:
    return bool(insight.get("dashboards"))


def _query_kind(insight: dict[str, Any]) -> str | None:
    return (insight.get("query") or {}).get("kind")


def _is_not_saved(insight: dict[str, Any]) -> bool:
    return insight.get("saved") is False and _on_dashboard(insight)


def _is_wrong_wrapper(insight: dict[str, Any]) -> bool:
    kind = _query_kind(insight)
    return _on_dashboard(insight) and kind is not None and kind not in VALID_WRAPPERS


def _is_healthy(insight: dict[str, Any]) -> bool:
    kind = _query_kind(insight)
    return insight.get("saved") is True and _on_dashboard(insight) and (kind is None or kind in VALID_WRAPPERS)


def triage_insights(insights: list[dict[str, Any]]) -> dict[str, Any]:
    live = [i for i in insights if not i.get("deleted")]
    not_saved = [{"id": i.get("id"), "name": truncate(i.get("name"), LABEL_LIMIT)} for i in live if _is_not_saved(i)]
    wrong_wrapper = [
        {"id": i.get("id"), "name": truncate(i.get("name"), LABEL_LIMIT), "query_kind": _query_kind(i)}
        for i in live
        if _is_wrong_wrapper(i)
    ]
    return {
        "total": len(live),
        "issues": {"not_saved": not_saved, "wrong_wrapper": wrong_wrapper},
        "summary": {
            "not_saved_count": len(not_saved),
            "wrong_wrapper_count": len(wrong_wrapper),
            "healthy": sum(1 for i in live if _is_healthy(i)),
        },
    }


def query_test_result(raw: dict[str, Any], insight_id: int) -> dict[str, Any]:
    """Describe what an executed insight query returned."""

    results = raw.get("results") or []
    if "columns" in raw:
        row = results[0] if results and isinstance(results[0], list) else []
        return {
            "insight_id": insight_id,
            "query_type": "table",
            "has_data": bool(results) and any(value is not None for value in row),
            "row_count": len(results),
            "columns": raw.get("columns"),
            "sample_row": row,
            "has_nulls": any(value is None for value in row),
        }
    if isinstance(results, list) and results and isinstance(results[0], dict) and results[0].get("label") is not None:
        return {
            "insight_id": insight_id,
            "query_type": "trends",
            "has_data": True,
            "result_count": len(results),
            "results": [{"label": r.get("label"), "count": r.get("count"), "data": r.get("data")} for r in results[:10]],
        }
    return {
        "insight_id": insight_id,
        "has_data": bool(results),
        "result_count": len(results) if isinstance(results, list) else 0,
        "raw_response_keys": sorted(raw.keys()),
    }


def trends_query(event: str, hours: int, breakdown: str | None) -> dict[str, Any]:
    query: dict[str, Any] = {
        "kind": "TrendsQuery",
        "series": [{"kind": "EventsNode", "math": "total", "event": event}],
        "interval": "day",
        "dateRange": {"date_from": f"-{hours}h"},
    }
    if breakdown:
        query["breakdownFilter"] = {"breakdown": breakdown, "breakdown_type": "event"}
    return query


# -- Handlers ------------------------------------------------------------------


def _llm_events(ctx: CommandContext, hours: int) -> Any:
    params = {"event": "$ai_generation", "limit": EVENTS_PAGE_SIZE, "after": hours_ago(hours)}
    return ctx.client.get("/events/", params=params)


def cmd_llm(ctx: CommandContext, hours: int) -> dict[str, Any]:
    outcome = classify(_llm_events(ctx, hours), "results")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "period_hours": hours}
    return summarize_llm(outcome.items, hours)


def cmd_llm_slow(ctx: CommandContext, hours: int, limit: int) -> dict[str, Any]:
    outcome = classify(_llm_events(ctx, hours), "results")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "period_hours": hours}
    return {"period_hours": hours, "slowest": slowest_llm_calls(outcome.items, limit)}


def cmd_llm_by_type(ctx: CommandContext, hours: int) -> dict[str, Any]:
    outcome = classify(_llm_events(ctx, hours), "results")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "period_hours": hours}
    return {"period_hours": hours, "by_type": llm_by_type(outcome.items)}


def cmd_events(ctx: CommandContext, hours: int) -> dict[str, Any]:
    raw = ctx.client.get("/events/", params={"limit": EVENTS_PAGE_SIZE, "after": hours_ago(hours)})
    outcome = classify(raw, "results")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "period_hours": hours}
    events = outcome.items
    return {
        "period_hours": hours,
        "total": len(events),
        "by_event": count_by(e.get("event") for e in events),
        "unique_users": len({e["distinct_id"] for e in events if e.get("distinct_id") is not None}),
    }


def cmd_trends(ctx: CommandContext, event: str, breakdown: str | None, hours: int) -> dict[str, Any]:
    raw = ctx.client.post("/query/", {"query": trends_query(event, hours, breakdown)})
    outcome = classify(raw, "results")
    context = {"event": event, "period_hours": hours, "breakdown": breakdown or None}
    if isinstance(outcome, ApiError):
        return api_error_result(outcome, kind="query_failed")
    if isinstance(outcome, Empty):
        return {"status": "no_data", **context}
    return {
        **context,
        "total": sum(r.get("count") or 0 for r in outcome.items),
        "results": [{"label": r.get("label") or event, "count": r.get("count"), "data": r.get("data")} for r in outcome.items],
    }


def cmd_raw(ctx: CommandContext, event: str, limit: int, hours: int) -> dict[str, Any]:
    raw = ctx.client.get("/events/", params={"event": event, "limit": limit, "after": hours_ago(hours)})
    outcome = classify(raw, "results")
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "event": event, "period_hours": hours}
    return {
        "count": len(outcome.items),
        "events": [{"timestamp": second(e.get("timestamp")), "properties": e.get("properties")} for e in outcome.items],
    }


def _live_dashboards(ctx: CommandContext) -> list[dict[str, Any]]:
    outcome = classify(ctx.client.get("/dashboards/"), "results")
    if isinstance(outcome, ApiError):
        raise CommandError("api_error", message=truncate(outcome.message))
    if isinstance(outcome, Empty):
        return []
    return [d for d in outcome.items if not d.get("deleted")]


def find_dashboard_id(ctx: CommandContext, name: str) -> Any:
    """First live dashboard whose name contains `name` (case-insensitive)."""

    needle = name.lower()
    for dashboard in _live_dashboards(ctx):
        if needle in (dashboard.get("name") or "").lower():
            return dashboard.get("id")
    raise CommandError(
        "not_found",
        message=f"No dashboard matching: {name}",
        hint=f"Use: {ctx.prog} dashboards to list all",
    )


def cmd_dashboards(ctx: CommandContext) -> dict[str, Any]:
    base = f"{ctx.settings.project_url}/dashboard"
    dashboards = _live_dashboards(ctx)
    if not dashboards:
        return {"status": "no_data", "dashboards": []}
    return {"dashboards": [{"name": d.get("name"), "id": d.get("id"), "url": f"{base}/{d.get('id')}"} for d in dashboards]}


def cmd_dashboard(ctx: CommandContext, name: str | None) -> dict[str, Any]:
    if not name:
        return cmd_dashboards(ctx)

    dashboard_id = find_dashboard_id(ctx, name)
    outcome = classify(ctx.client.get(f"/dashboards/{dashboard_id}/"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, "Dashboard")
    dashboard = outcome.payload
    return {
        "name": dashboard.get("name"),
        "id": dashboard.get("id"),
        "url": f"{ctx.settings.project_url}/dashboard/{dashboard.get('id')}",
        "insights": [
            {"name": tile["insight"].get("name"), "id": tile["insight"].get("id")}
            for tile in dashboard.get("tiles") or []
            if tile.get("insight")
        ],
    }


def cmd_dashboard_detail(ctx: CommandContext, input: str) -> dict[str, Any]:
    dashboard_id = input if input.isdigit() else find_dashboard_id(ctx, input)
    outcome = classify(ctx.client.get(f"/dashboards/{dashboard_id}/"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, "Dashboard")

    base = ctx.settings.project_url
    dashboard = outcome.payload
    tiles = []
    for tile in dashboard.get("tiles") or []:
        insight = tile.get("insight")
        if not insight:
            continue
        tiles.append(
            {
                "insight_id": insight.get("id"),
                "insight_name": insight.get("name"),
                "insight_url": f"{base}/insights/{insight.get('id')}",
                "query_kind": _query_kind(insight),
                "last_refresh": insight.get("last_refresh"),
                "filters": insight.get("filters") or {},
            }
        )
    return {
        "id": dashboard.get("id"),
        "name": dashboard.get("name"),
        "url": f"{base}/dashboard/{dashboard.get('id')}",
        "filters": dashboard.get("filters") or {},
        "tiles": tiles,
    }


def cmd_insight(ctx: CommandContext, id: str) -> dict[str, Any]:
    outcome = classify(ctx.client.get(f"/insights/{id}/"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Insight {id}")

    insight = outcome.payload
    warnings = []
    if insight.get("saved") is False:
        warnings.append("NOT_SAVED: insight may not render on dashboard")
    if insight.get("deleted") is True:
        warnings.append("DELETED: insight is marked as deleted")
    return {
        "id": insight.get("id"),
        "name": insight.get("name"),
        "url": f"{ctx.settings.project_url}/insights/{insight.get('id')}",
        "saved": insight.get("saved"),
        "deleted": insight.get("deleted"),
        "last_refresh": insight.get("last_refresh"),
        "query_kind": _query_kind(insight),
        "query": insight.get("query"),
        "filters": insight.get("filters") or {},
        "dashboards": list(insight.get("dashboards") or []),
        "warnings": warnings,
    }


def cmd_insight_test(ctx: CommandContext, id: int) -> dict[str, Any]:
    outcome = classify(ctx.client.get(f"/insights/{id}/"))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Insight {id}")

    query = outcome.payload.get("query")
    if not query:
        return {"error": "no_query", "message": "Insight has no query defined", "insight_id": id}

    executed = classify(ctx.client.post("/query/", {"query": query}))
    if isinstance(executed, ApiError):
        return api_error_result(executed, kind="query_failed", insight_id=id)
    return query_test_result(executed.payload, id)


def cmd_insight_refresh(ctx: CommandContext, id: int) -> dict[str, Any]:
    outcome = classify(ctx.client.get(f"/insights/{id}/", params={"refresh": "true"}))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Insight {id}")
    insight = outcome.payload
    return {
        "insight_id": insight.get("id", id),
        "name": insight.get("name"),
        "status": "refreshed",
        "last_refresh": insight.get("last_refresh"),
    }


def _patch_insight(ctx: CommandContext, id: str, field: str) -> dict[str, Any]:
    outcome = classify(ctx.client.patch(f"/insights/{id}/", {field: True}))
    if isinstance(outcome, ApiError):
        return resource_error_result(outcome, f"Insight {id}")
    insight = outcome.payload
    return {"id": insight.get("id"), "name": insight.get("name"), field: insight.get(field)}


def cmd_insight_save(ctx: CommandContext, id: str) -> dict[str, Any]:
    return _patch_insight(ctx, id, "saved")


def cmd_insight_delete(ctx: CommandContext, id: str) -> dict[str, Any]:
    return _patch_insight(ctx, id, "deleted")


def _all_insights(ctx: CommandContext) -> Any:
    return classify(ctx.client.get("/insights/", params={"limit": INSIGHTS_PAGE_SIZE}), "results")


def cmd_triage(ctx: CommandContext) -> dict[str, Any]:
    ctx.note("Checking all insights for issues...")
    outcome = _all_insights(ctx)
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)
    if isinstance(outcome, Empty):
        return {"status": "no_data", "total": 0}
    return triage_insights(outcome.items)


def cmd_triage_fix(ctx: CommandContext) -> dict[str, Any]:
    ctx.note("Fixing all not_saved insights...")
    outcome = _all_insights(ctx)
    if isinstance(outcome, ApiError):
        return api_error_result(outcome)

    items = [] if isinstance(outcome, Empty) else outcome.items
    ids = [i.get("id") for i in items if not i.get("deleted") and _is_not_saved(i)]
    if not ids:
        return {"status": "ok", "message": "No unsaved insights found", "fixed": 0}

    failed = []
    for insight_id in ids:
        patched = classify(ctx.client.patch(f"/insights/{insight_id}/", {"saved": True}))
        if isinstance(patched, ApiError):
            failed.append({"id": insight_id, "message": truncate(patched.message)})

    result: dict[str, Any] = {"status": "fixed", "count": len(ids) - len(failed)}
    if failed:
        result["failed"] = failed
    return result


def cmd_config(ctx: CommandContext) -> dict[str, Any]:
    return ctx.settings.describe()


_HOURS_24 = Arg("hours", default=24, numeric=True)
_HOURS_1 = Arg("hours", default=1, numeric=True)
_ID_NUMERIC = Arg("id", required=True, numeric=True, invalid_message="Insight ID must be numeric")

COMMANDS: tuple[Command, ...] = (
    Command(Verb.EVENTS, cmd_events, "Event distribution (default: 24h)", "Explore", (_HOURS_24,)),
    Command(
        Verb.TRENDS,
        cmd_trends,
        "Trends query with optional breakdown (default: 24h)",
        "Explore",
        (Arg("event", required=True), Arg("breakdown"), _HOURS_24),
        hints={"example": "posthog-query trends $pageview $browser 24"},
    ),
    Command(
        Verb.RAW,
        cmd_raw,
        "Raw events (default: 20 events, 24h)",
        "Explore",
        (Arg("event", required=True), Arg("limit", default=20, numeric=True), _HOURS_24),
    ),
    Command(Verb.DASHBOARDS, cmd_dashboards, "List all dashboards with URLs", "Dashboards"),
    Command(Verb.DASHBOARD, cmd_dashboard, "Get dashboard by name (partial match)", "Dashboards", (Arg("name"),)),
    Command(
        Verb.DASHBOARD_DETAIL,
        cmd_dashboard_detail,
        "Full dashboard: filters, tiles, insight configs",
        "Dashboards",
        (Arg("input", required=True),),
        hints={"hint": "Use dashboard ID or partial name match"},
    ),
    Command(
        Verb.INSIGHT,
        cmd_insight,
        "Get insight config (query, filters, last_refresh)",
        "Insights",
        (Arg("id", required=True),),
        hints={"hint": "Get IDs from: posthog-query dashboard <name>"},
    ),
    Command(
        Verb.INSIGHT_TEST,
        cmd_insight_test,
        "Execute insight query, check if it returns data",
        "Insights",
        (_ID_NUMERIC,),
        hints={"hint": "Executes the insight query and returns results"},
    ),
    Command(Verb.INSIGHT_REFRESH, cmd_insight_refresh, "Force refresh insight cache", "Insights", (_ID_NUMERIC,)),
    Command(
        Verb.INSIGHT_SAVE,
        cmd_insight_save,
        "Set saved=true (required for dashboard render)",
        "Insights",
        (Arg("id", required=True),),
        hints={"hint": "Sets saved=true so insight renders on dashboard"},
    ),
    Command(Verb.INSIGHT_DELETE, cmd_insight_delete, "Delete an insight", "Insights", (Arg("id", required=True),)),
    Command(Verb.TRIAGE, cmd_triage, "Scan all insights for issues (not_saved, wrong_wrapper)", "Insights"),
    Command(Verb.TRIAGE_FIX, cmd_triage_fix, "Auto-fix all not_saved insights", "Insights"),
    Command(Verb.LLM, cmd_llm, "Summary: calls, latency, tokens, cost (default: 1h)", "LLM", (_HOURS_1,)),
    Command(
        Verb.LLM_SLOW,
        cmd_llm_slow,
        "Top N slowest calls (default: 1h, 10)",
        "LLM",
        (_HOURS_1, Arg("limit", default=10, numeric=True)),
    ),
    Command(Verb.LLM_BY_TYPE, cmd_llm_by_type, "Breakdown by span_name (default: 1h)", "LLM", (_HOURS_1,)),
    Command(Verb.CONFIG, cmd_config, "Show configuration", "Setup"),
)

FOOTER = """Setup:
  export POSTHOG_KEY=phx_...      # or POSTHOG_PERSONAL_API_KEY in .env
  export POSTHOG_PROJECT_ID=...   # or in .env"""


class PosthogIntegration:
    name = "posthog"
    prog = "posthog-query"
    summary = "Query PostHog analytics (agent-friendly)"
    settings_cls = PosthogSettings
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
            settings_factory=settings_factory or PosthogSettings,
            client_factory=partial(build_api_client, transport=transport),
            app_settings=app_settings,
            footer=FOOTER,
        )
