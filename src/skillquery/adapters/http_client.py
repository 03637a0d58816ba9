"""httpx wrapper.

- Standardizes timeouts, headers and logging for every integration.
- Never raises on transport problems: callers get a sentinel payload that the
  normalizer treats like any other upstream error.
- Tests swap the network for an `httpx.MockTransport`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from skillquery.core.config import AppSettings

logger = logging.getLogger(__name__)

TRANSPORT_FAILURE = "request_failed"


def failure_sentinel(reason: str) -> dict[str, str]:
    return {"detail": TRANSPORT_FAILURE, "reason": reason}


def build_client(
    settings: AppSettings | None = None,
    *,
    base_url: str = "",
    extra_headers: Mapping[str, str] | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create an `httpx.Client` with the tool's defaults."""

    settings = settings or AppSettings()
    headers: dict[str, str] = {
        "User-Agent": settings.user_agent,
        "Accept": "application/json",
    }
    if extra_headers:
        headers.update(extra_headers)
    return httpx.Client(
        base_url=base_url,
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
        headers=headers,
        transport=transport,
    )


class ApiClient:
    """Single-shot JSON requests against one API base.

    Every call issues exactly one request. Non-2xx responses are returned as
    decoded JSON; upstream error bodies are data, not exceptions.
    """

    def __init__(self, client: httpx.Client, *, write_timeout: float | None = None) -> None:
        self._client = client
        self._write_timeout = write_timeout

    @classmethod
    def create(
        cls,
        settings: AppSettings,
        *,
        base_url: str = "",
        token: str | None = None,
        extra_headers: Mapping[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> "ApiClient":
        headers = dict(extra_headers or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        client = build_client(settings, base_url=base_url, extra_headers=headers, transport=transport)
        return cls(client, write_timeout=settings.write_timeout_seconds)

    def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Any = None, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("POST", path, body=body, params=params)

    def patch(self, path: str, body: Any = None) -> Any:
        return self.request("PATCH", path, body=body)

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        if body is not None:
            kwargs["json"] = body
        if method != "GET" and self._write_timeout is not None:
            kwargs["timeout"] = httpx.Timeout(self._write_timeout)

        logger.debug("%s %s params=%s", method, path, kwargs.get("params"))
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            return failure_sentinel(f"{type(exc).__name__}: {exc}")

        logger.debug("%s %s -> HTTP %s", method, path, response.status_code)
        if not response.content:
            if response.is_success:
                return {}
            return failure_sentinel(f"HTTP {response.status_code} with empty body")
        try:
            return response.json()
        except ValueError:
            return failure_sentinel(f"HTTP {response.status_code}: non-JSON response")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
