"""Shared fixtures: an isolated environment and fake upstream APIs."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from skillquery.adapters.integrations import ALL_INTEGRATIONS

APP_VARIABLES = (
    "SKILLQUERY_HTTP_TIMEOUT_SECONDS",
    "SKILLQUERY_WRITE_TIMEOUT_SECONDS",
    "SKILLQUERY_USER_AGENT",
    "SKILLQUERY_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """No real credentials, CWD and HOME inside tmp_path."""

    for integration in ALL_INTEGRATIONS:
        for aliases in integration.settings_cls.env_names.values():
            for name in aliases:
                monkeypatch.delenv(name, raising=False)
    for name in APP_VARIABLES:
        monkeypatch.delenv(name, raising=False)

    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.chdir(work)
    return work


class FakeApi:
    """Route table for `httpx.MockTransport`; records every request."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], Any]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, payload: Any = None, status: int = 200) -> None:
        self.routes[(method, path)] = lambda request: (status, payload)

    def on(self, method: str, path: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str | None = None) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and (path is None or r.url.path == path)]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"detail": "Not found."})
        status, payload = route(request)
        if isinstance(payload, (dict, list)):
            return httpx.Response(status, json=payload)
        return httpx.Response(status, content=payload or b"")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def run(capsys):
    """Dispatch argv and return (exit_code, parsed stdout JSON or text)."""

    def _run(dispatcher, *argv: str):
        code = dispatcher.dispatch(list(argv))
        out = capsys.readouterr().out
        try:
            return code, json.loads(out)
        except ValueError:
            return code, out

    return _run


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
