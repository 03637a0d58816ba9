"""Tests for the Trigger.dev integration."""

import pytest

from skillquery.adapters.integrations.trigger import (
    TriggerIntegration,
    TriggerSettings,
    normalize_run_id,
    run_stats,
)
from skillquery.core.domain.models import TriggerRun


@pytest.fixture
def trigger(fake_api):
    def _build(**overrides):
        values = {"secret_key": "tr_dev_abcdef123456"}
        values.update(overrides)
        return TriggerIntegration().build_dispatcher(
            settings_factory=lambda: TriggerSettings(**values),
            transport=fake_api.transport,
        )

    return _build


def run_record(run_id, status, task="sync-users", duration=1200, created="2024-05-02T09:30:00.000Z"):
    return {
        "id": run_id,
        "status": status,
        "taskIdentifier": task,
        "createdAt": created,
        "durationMs": duration,
        "isTest": False,
        "tags": [],
    }


class TestRunIds:
    @pytest.mark.parametrize(("value", "expected"), [("abc123", "run_abc123"), ("run_abc123", "run_abc123"), (" abc ", "run_abc")])
    def test_normalize(self, value, expected):
        assert normalize_run_id(value) == expected


class TestConfig:
    def test_missing_key(self, fake_api, run):
        dispatcher = TriggerIntegration().build_dispatcher(transport=fake_api.transport)
        code, result = run(dispatcher, "failed", "5")
        assert code == 1
        assert result["error"] == "missing_api_key"
        assert fake_api.requests == []

    def test_alias_variable(self, monkeypatch):
        monkeypatch.setenv("TRIGGER_API_KEY", "tr_prod_x")
        assert TriggerSettings().secret_key == "tr_prod_x"

    def test_config_masks_key(self, trigger, run):
        result = run(trigger(), "config")[1]
        assert result == {"api_base": "https://api.trigger.dev", "secret_key": "tr_d...3456", "environment": "dev"}


class TestRuns:
    def test_failed(self, trigger, fake_api, run):
        records = [run_record("run_1", "FAILED"), run_record("run_2", "CRASHED"), run_record("run_3", "FAILED")]
        fake_api.add("GET", "/api/v1/runs", {"data": records})
        code, result = run(trigger(), "failed", "5")
        assert code == 0
        assert result["count"] == 3
        assert len(result["failed_runs"]) == 3
        for row in result["failed_runs"]:
            assert {"id", "task", "status", "created", "duration_ms"} <= set(row)
        assert result["failed_runs"][0]["duration"] == "1.2s"

        params = fake_api.requests[0].url.params
        assert params["page[size]"] == "5"
        assert params["filter[status]"] == "FAILED,CRASHED,SYSTEM_FAILURE,TIMED_OUT"
        assert fake_api.requests[0].headers["Authorization"] == "Bearer tr_dev_abcdef123456"

    def test_runs_with_status(self, trigger, fake_api, run):
        fake_api.add("GET", "/api/v1/runs", {"data": [run_record("run_1", "COMPLETED")]})
        result = run(trigger(), "runs", "10", "completed")[1]
        assert result["runs"][0]["status"] == "COMPLETED"
        assert fake_api.requests[0].url.params["filter[status]"] == "COMPLETED"

    def test_runs_empty(self, trigger, fake_api, run):
        fake_api.add("GET", "/api/v1/runs", {"data": []})
        assert run(trigger(), "runs")[1]["status"] == "no_data"

    def test_null_fields_use_defaults(self, trigger, fake_api, run):
        record = run_record("run_1", "QUEUED", task=None, duration=None)
        fake_api.add("GET", "/api/v1/runs", {"data": [record]})
        row = run(trigger(), "runs")[1]["runs"][0]
        assert row["task"] == "unknown"
        assert row["duration_ms"] == 0

    def test_error_string_wins_over_data(self, trigger, fake_api, run):
        fake_api.add("GET", "/api/v1/runs", {"error": "Invalid API key", "data": []}, 401)
        code, result = run(trigger(), "runs")
        assert code == 1
        assert result == {"error": "api_error", "message": "Invalid API key"}

    def test_invalid_limit(self, trigger, run):
        assert run(trigger(), "failed", "ten")[1]["error"] == "invalid_limit"


class TestRun:
    def test_run_detail_normalizes_id(self, trigger, fake_api, run):
        record = run_record("run_abc", "COMPLETED")
        record["attemptCount"] = 2
        fake_api.add("GET", "/api/v3/runs/run_abc", record)
        result = run(trigger(), "run", "abc")[1]
        assert result["id"] == "run_abc"
        assert result["attempts"] == 2
        assert "error" not in result

    def test_run_not_found(self, trigger, fake_api, run):
        fake_api.add("GET", "/api/v3/runs/run_x", {"error": "Run not found"}, 404)
        code, result = run(trigger(), "run", "x")
        assert code == 1
        assert result == {"error": "not_found", "message": "Run run_x does not exist", "run_id": "run_x"}

    def test_error_null(self, trigger, fake_api, run):
        record = run_record("run_abc", "COMPLETED")
        record["error"] = None
        fake_api.add("GET", "/api/v3/runs/run_abc", record)
        code, result = run(trigger(), "error", "abc")
        assert code == 0
        assert result == {"status": "no_error", "run_id": "run_abc"}

    def test_error_details(self, trigger, fake_api, run):
        record = run_record("run_abc", "FAILED")
        record["error"] = {"name": "TypeError", "message": "x is undefined", "stackTrace": "at line 1"}
        fake_api.add("GET", "/api/v3/runs/run_abc", record)
        code, result = run(trigger(), "error", "run_abc")
        assert code == 0
        assert result["error"] == {"name": "TypeError", "message": "x is undefined", "stack_trace": "at line 1"}

    def test_failed_run_detail_is_not_an_api_error(self, trigger, fake_api, run):
        record = run_record("run_abc", "FAILED")
        record["error"] = {"name": "Error", "message": "boom"}
        fake_api.add("GET", "/api/v3/runs/run_abc", record)
        code, result = run(trigger(), "run", "abc")
        assert code == 0
        assert result["id"] == "run_abc"
        assert result["status"] == "FAILED"
        assert result["error"] == {"name": "Error", "message": "boom"}

    @pytest.mark.parametrize("verb", ["run", "error"])
    def test_unexpected_run_shape(self, trigger, fake_api, run, verb):
        fake_api.add("GET", "/api/v3/runs/run_abc", {})
        code, result = run(trigger(), verb, "abc")
        assert code == 1
        assert result["error"] == "api_error"
        assert result["run_id"] == "run_abc"

    def test_error_requires_id(self, trigger, run):
        assert run(trigger(), "error")[1]["error"] == "missing_run_id"


class TestActions:
    def test_replay(self, trigger, fake_api, run):
        fake_api.add("POST", "/api/v1/runs/run_abc/replay", {"id": "run_new"})
        assert run(trigger(), "replay", "abc")[1] == {"status": "replayed", "original_run_id": "run_abc", "new_run_id": "run_new"}

    def test_cancel(self, trigger, fake_api, run):
        fake_api.add("POST", "/api/v2/runs/run_abc/cancel", {"id": "run_abc"})
        assert run(trigger(), "cancel", "abc")[1] == {"status": "cancelled", "run_id": "run_abc"}


class TestStats:
    def test_run_stats(self):
        runs = [
            TriggerRun.model_validate(run_record("run_1", "COMPLETED", duration=1000)),
            TriggerRun.model_validate(run_record("run_2", "FAILED", task="send-email", duration=3000)),
            TriggerRun.model_validate(run_record("run_3", "COMPLETED", duration=None)),
        ]
        result = run_stats(runs, 24)
        assert result["total"] == 3
        assert result["failed"] == 1
        assert result["failure_rate"] == 33.3
        assert result["by_status"] == {"COMPLETED": 2, "FAILED": 1}
        assert result["by_task"] == {"sync-users": 2, "send-email": 1}
        assert result["duration"]["count"] == 2
        assert result["duration"]["avg_human"] == "2s"

    def test_stats_sends_window(self, trigger, fake_api, run):
        fake_api.add("GET", "/api/v1/runs", {"data": [run_record("run_1", "COMPLETED")]})
        run(trigger(), "stats", "6")
        params = fake_api.requests[0].url.params
        assert params["page[size]"] == "100"
        assert params["filter[createdAt][from]"].endswith("Z")
