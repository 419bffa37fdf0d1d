from __future__ import annotations

from typing import Any, Callable

import httpx
from fastapi.testclient import TestClient

import gmp_token_proxy.main as main_module
from gmp_token_proxy.main import app
from gmp_token_proxy.settings import get_settings

UpstreamHandler = Callable[[httpx.Request], httpx.Response]


def set_default_test_env(monkeypatch: Any) -> None:
    monkeypatch.setenv("REMOTE", "prometheus.example:9443")
    monkeypatch.setenv("PREFIX", "/api/v1")
    monkeypatch.setenv("TOKEN_SOURCE", "static")
    monkeypatch.setenv("STATIC_TOKEN", "static-test-token")
    monkeypatch.setenv("METRICS_ENABLED", "true")


def recording_upstream(
    captured: list[httpx.Request],
    response_factory: Callable[[httpx.Request], httpx.Response] | None = None,
) -> UpstreamHandler:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        if response_factory is not None:
            return response_factory(request)
        return httpx.Response(200, json={"status": "success"})

    return handler


def build_test_client(
    monkeypatch: Any,
    upstream: UpstreamHandler,
    **env: Any,
) -> TestClient:
    set_default_test_env(monkeypatch)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    monkeypatch.setattr(
        main_module,
        "_build_upstream_client",
        lambda settings: httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )
    return TestClient(app)
