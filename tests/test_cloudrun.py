"""Tests for the Cloud Run logs integration."""

import subprocess

import pytest

from conftest import request_json
from skillquery.adapters.integrations import cloudrun
from skillquery.adapters.integrations.cloudrun import (
    CloudRunIntegration,
    CloudRunSettings,
    entry_message,
    fetch_access_token,
    is_error,
)
from skillquery.core.config import read_env_file
from skillquery.core.errors import CommandError

SERVICE_PATH = "/v2/projects/proj/locations/us-east1/services/api"


def settings(**overrides):
    values = {"service": "api", "project": "proj", "region": "us-east1", "access_token": "ya29.test"}
    values.update(overrides)
    return CloudRunSettings(**values)


@pytest.fixture
def cloudrun_cli(fake_api):
    def _build(**overrides):
        return CloudRunIntegration().build_dispatcher(
            settings_factory=lambda: settings(**overrides),
            transport=fake_api.transport,
        )

    return _build


def entry(message, severity="DEFAULT", timestamp="2024-05-02T09:30:00.123Z", revision="api-00002-xyz"):
    return {
        "textPayload": message,
        "severity": severity,
        "timestamp": timestamp,
        "resource": {"labels": {"revision_name": revision}},
    }


class TestEntries:
    def test_message_sources(self):
        assert entry_message({"textPayload": "plain"}) == "plain"
        assert entry_message({"jsonPayload": {"message": "structured"}}) == "structured"
        assert entry_message({"httpRequest": {"requestMethod": "GET", "requestUrl": "/x", "status": 500}}) == "GET /x 500"
        assert entry_message({}) == ""

    @pytest.mark.parametrize(
        ("item", "expected"),
        [
            (entry("all good", "INFO"), False),
            (entry("quiet", "ERROR"), True),
            (entry("Traceback (most recent call last)", "DEFAULT"), True),
            (entry("Connection REFUSED by upstream", "INFO"), True),
        ],
    )
    def test_is_error(self, item, expected):
        assert is_error(item) is expected


class TestConfig:
    def test_not_configured(self, fake_api, run):
        dispatcher = CloudRunIntegration().build_dispatcher(transport=fake_api.transport)
        code, result = run(dispatcher, "errors")
        assert code == 1
        assert result["error"] == "missing_config"
        assert result["missing"] == ["service", "project", "region"]
        assert fake_api.requests == []

    def test_config_reports_file(self, isolated_env, run, fake_api):
        (isolated_env / ".cloudrun-logs").write_text('SERVICE="api"\nPROJECT="proj"\nREGION="us-east1"\n')
        dispatcher = CloudRunIntegration().build_dispatcher(transport=fake_api.transport)
        code, result = run(dispatcher, "config")
        assert code == 0
        assert result["service"] == "api"
        assert result["config_file"].endswith(".cloudrun-logs")


class TestAccessToken:
    def test_configured_token(self):
        assert fetch_access_token(settings()) == "ya29.test"

    def test_missing_gcloud(self, monkeypatch):
        monkeypatch.setattr(cloudrun.shutil, "which", lambda name: None)
        with pytest.raises(CommandError) as excinfo:
            fetch_access_token(settings(access_token=""))
        assert excinfo.value.to_result()["error"] == "missing_dependency"

    def test_gcloud_failure(self, monkeypatch):
        monkeypatch.setattr(cloudrun.shutil, "which", lambda name: "/usr/bin/gcloud")
        monkeypatch.setattr(
            cloudrun.subprocess,
            "run",
            lambda argv, **kwargs: subprocess.CompletedProcess(argv, 1, stdout="", stderr="You do not currently have an active account"),
        )
        with pytest.raises(CommandError) as excinfo:
            fetch_access_token(settings(access_token=""))
        result = excinfo.value.to_result()
        assert result["error"] == "auth_failed"
        assert "active account" in result["message"]

    def test_gcloud_account(self, monkeypatch):
        seen = {}

        def fake_run(argv, **kwargs):
            seen["argv"] = argv
            return subprocess.CompletedProcess(argv, 0, stdout="ya29.fresh\n", stderr="")

        monkeypatch.setattr(cloudrun.shutil, "which", lambda name: "/usr/bin/gcloud")
        monkeypatch.setattr(cloudrun.subprocess, "run", fake_run)
        assert fetch_access_token(settings(access_token="", account="me@example.com")) == "ya29.fresh"
        assert seen["argv"][-1] == "--account=me@example.com"


class TestLogs:
    def test_errors_found(self, cloudrun_cli, fake_api, run):
        entries = [entry("ok"), entry("boom", "ERROR"), entry("request timeout", "WARNING")]
        fake_api.add("POST", "/v2/entries:list", {"entries": entries})
        code, result = run(cloudrun_cli(), "errors")
        assert code == 0
        assert result["status"] == "errors_found"
        assert result["count"] == 2
        assert result["errors"][0] == {
            "time": "2024-05-02T09:30:00",
            "severity": "ERROR",
            "revision": "api-00002-xyz",
            "message": "boom",
        }

        body = request_json(fake_api.requests[0])
        assert body["resourceNames"] == ["projects/proj"]
        assert body["pageSize"] == 100
        assert 'resource.labels.service_name="api"' in body["filter"]
        assert fake_api.requests[0].headers["Authorization"] == "Bearer ya29.test"

    def test_no_errors(self, cloudrun_cli, fake_api, run):
        fake_api.add("POST", "/v2/entries:list", {"entries": [entry("started"), entry("ready")]})
        result = run(cloudrun_cli(), "errors")[1]
        assert result["status"] == "ok"
        assert result["latest_log"]["message"] == "started"

    def test_no_logs(self, cloudrun_cli, fake_api, run):
        fake_api.add("POST", "/v2/entries:list", {})
        assert run(cloudrun_cli(), "recent")[1]["status"] == "no_data"

    def test_recent_page_size(self, cloudrun_cli, fake_api, run):
        fake_api.add("POST", "/v2/entries:list", {"entries": [entry("hi")]})
        result = run(cloudrun_cli(), "recent")[1]
        assert result["count"] == 1
        assert request_json(fake_api.requests[0])["pageSize"] == 30

    def test_permission_denied(self, cloudrun_cli, fake_api, run):
        fake_api.add("POST", "/v2/entries:list", {"error": {"code": 403, "message": "Permission denied", "status": "PERMISSION_DENIED"}}, 403)
        code, result = run(cloudrun_cli(), "all")
        assert code == 1
        assert result == {"error": "api_error", "message": "Permission denied"}

    def test_rev_requires_name(self, cloudrun_cli, run):
        code, result = run(cloudrun_cli(), "rev")
        assert code == 1
        assert result["error"] == "missing_revision"
        assert result["hint"] == "List revisions with: cloudrun-logs revisions"


class TestRevisions:
    def _service(self, fake_api):
        fake_api.add(
            "GET",
            SERVICE_PATH,
            {
                "uri": "https://api-xyz.a.run.app",
                "latestReadyRevision": "projects/proj/locations/us-east1/services/api/revisions/api-00002-xyz",
                "terminalCondition": {"type": "Ready", "state": "CONDITION_SUCCEEDED"},
                "conditions": [{"type": "RoutesReady", "state": "CONDITION_SUCCEEDED"}],
                "trafficStatuses": [{"revision": "api-00002-xyz", "percent": 100}],
            },
        )
        fake_api.add(
            "GET",
            f"{SERVICE_PATH}/revisions",
            {
                "revisions": [
                    {"name": "projects/proj/locations/us-east1/services/api/revisions/api-00001-abc", "createTime": "2024-05-01T08:00:00Z"},
                    {"name": "projects/proj/locations/us-east1/services/api/revisions/api-00002-xyz", "createTime": "2024-05-02T08:00:00Z"},
                ]
            },
        )

    def test_revisions(self, cloudrun_cli, fake_api, run):
        self._service(fake_api)
        result = run(cloudrun_cli(), "revisions")[1]
        assert result["count"] == 2
        assert result["revisions"][0] == {
            "revision": "api-00002-xyz",
            "created": "2024-05-02 08:00",
            "traffic_percent": 100,
            "active": True,
        }
        assert result["revisions"][1]["active"] is False

    def test_since_uses_latest_revision(self, cloudrun_cli, fake_api, run):
        self._service(fake_api)
        fake_api.add("POST", "/v2/entries:list", {"entries": [entry("deployed"), entry("oops", "ERROR")]})
        result = run(cloudrun_cli(), "since")[1]
        assert result["revision"] == "api-00002-xyz"
        assert result["since"] == "2024-05-02T08:00:00Z"
        assert result["errors"] == 1
        log_filter = request_json(fake_api.calls("POST")[0])["filter"]
        assert 'timestamp>="2024-05-02T08:00:00Z"' in log_filter

    def test_status(self, cloudrun_cli, fake_api, run):
        self._service(fake_api)
        result = run(cloudrun_cli(), "status")[1]
        assert result["ready"] is True
        assert result["latest_revision"] == "api-00002-xyz"
        assert result["conditions"][0] == {"type": "Ready", "state": "CONDITION_SUCCEEDED"}

    def test_service_not_found(self, cloudrun_cli, fake_api, run):
        fake_api.add("GET", SERVICE_PATH, {"error": {"code": 404, "message": "Resource 'api' was not found", "status": "NOT_FOUND"}}, 404)
        code, result = run(cloudrun_cli(), "status")
        assert code == 1
        assert result["error"] == "service_not_found"
        assert result["region"] == "us-east1"


class TestInit:
    def test_init_discovers_region(self, isolated_env, fake_api, run):
        fake_api.add(
            "GET",
            "/v2/projects/proj/locations/-/services",
            {"services": [{"name": "projects/proj/locations/europe-west1/services/api"}]},
        )
        dispatcher = CloudRunIntegration().build_dispatcher(
            settings_factory=lambda: CloudRunSettings(access_token="ya29.test"),
            transport=fake_api.transport,
        )
        code, result = run(dispatcher, "init", "proj", "api")
        assert code == 0
        assert result == {"status": "configured", "service": "api", "project": "proj", "region": "europe-west1"}
        assert read_env_file(isolated_env / ".cloudrun-logs") == {"PROJECT": "proj", "REGION": "europe-west1", "SERVICE": "api"}

    def test_init_unknown_service(self, fake_api, run):
        fake_api.add("GET", "/v2/projects/proj/locations/-/services", {"services": [{"name": "projects/proj/locations/us-east1/services/web"}]})
        dispatcher = CloudRunIntegration().build_dispatcher(
            settings_factory=lambda: CloudRunSettings(access_token="ya29.test"),
            transport=fake_api.transport,
        )
        code, result = run(dispatcher, "init", "proj", "api")
        assert code == 1
        assert result["error"] == "service_not_found"
        assert result["available"] == ["web"]

    def test_init_with_region_skips_lookup(self, isolated_env, fake_api, run):
        dispatcher = CloudRunIntegration().build_dispatcher(
            settings_factory=lambda: CloudRunSettings(access_token="ya29.test"),
            transport=fake_api.transport,
        )
        run(dispatcher, "init", "proj", "api", "us-east1", "me@example.com")
        assert fake_api.requests == []
        assert read_env_file(isolated_env / ".cloudrun-logs")["ACCOUNT"] == "me@example.com"
