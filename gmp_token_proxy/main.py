from __future__ import annotations

import logging
import platform
import time
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response

from gmp_token_proxy import __version__
from gmp_token_proxy.mint import TokenMint
from gmp_token_proxy.proxy import ProxyHandler, RewriteRule
from gmp_token_proxy.proxy_metrics import ProxyMetricsAccumulator
from gmp_token_proxy.settings import Settings, get_settings
from gmp_token_proxy.token_sources import build_token_source

METRICS_NAMESPACE = "gmp_token_proxy"
START_TIME = time.time()

# Interactive docs are disabled so that /docs and /openapi.json reach the upstream.
app = FastAPI(
    title="GMP Token Proxy",
    description="Reverse proxy that attaches a short-lived bearer token to metrics queries.",
    version=__version__,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

logger = logging.getLogger("uvicorn.error")


def _build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        verify=settings.upstream_verify_tls,
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, settings.upstream_connect_timeout_seconds),
            read=max(0.1, settings.upstream_read_timeout_seconds),
            write=max(0.1, settings.upstream_write_timeout_seconds),
            pool=max(0.1, settings.upstream_pool_timeout_seconds),
        ),
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
    )


def _build_token_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(max(0.1, settings.token_fetch_timeout_seconds))
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if not settings.remote.strip():
        raise ValueError("REMOTE must be provided and non-empty.")

    metrics = ProxyMetricsAccumulator()

    def audit_event_hook(event: dict[str, Any]) -> None:
        metrics.ingest(event)

    token_client = _build_token_client(settings)
    app.state.token_client = token_client
    token_source = build_token_source(settings, token_client)
    mint = TokenMint(
        token_source,
        expiry_margin_seconds=settings.token_expiry_margin_seconds,
        fetch_timeout_seconds=settings.token_fetch_timeout_seconds,
        audit_hook=audit_event_hook,
    )

    if not settings.upstream_verify_tls:
        logger.warning(
            "upstream_tls_verification_disabled remote=%s", settings.remote
        )
    upstream_client = _build_upstream_client(settings)
    app.state.upstream_client = upstream_client

    rule = RewriteRule(
        target_scheme=settings.target_scheme,
        target_host=settings.remote.strip(),
        path_prefix=settings.prefix,
        strip_query_params=settings.strip_query_params_set,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.mint = mint
    app.state.proxy_handler = ProxyHandler(
        rule=rule,
        mint=mint,
        client=upstream_client,
        audit_hook=audit_event_hook,
    )
    logger.info(
        (
            "startup complete remote=%s scheme=%s prefix=%s token_source=%s "
            "verify_tls=%s expiry_margin_seconds=%s"
        ),
        rule.target_host,
        rule.target_scheme,
        rule.path_prefix,
        settings.token_source,
        settings.upstream_verify_tls,
        settings.token_expiry_margin_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    for name in ("upstream_client", "token_client"):
        client: httpx.AsyncClient | None = getattr(app.state, name, None)
        if client is not None:
            await client.aclose()
    logger.info("shutdown complete")


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def _render_prometheus_metrics(
    *,
    metrics: ProxyMetricsAccumulator | None,
    settings: Settings,
) -> str:
    lines: list[str] = []
    declared: set[str] = set()

    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_build_info",
        metric_type="gauge",
        help_text="A metric with a constant '1' value labeled by build time, git commit, OS and Python versions.",
        value=1,
        labels={
            "build_time": settings.build_time,
            "git_commit": settings.git_commit,
            "os_version": settings.os_version or platform.release(),
            "python_version": platform.python_version(),
        },
    )
    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_start_time_seconds",
        metric_type="gauge",
        help_text="Start time of the proxy as a UNIX epoch.",
        value=START_TIME,
    )
    if metrics is None:
        return "\n".join(lines) + "\n"

    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_proxied_total",
        metric_type="counter",
        help_text="The total number of proxied requests.",
        value=metrics.proxied_total,
    )
    errors_by_kind = metrics.proxied_errors_by_kind
    if not errors_by_kind:
        _append_prometheus_metric(
            lines,
            declared,
            name=f"{METRICS_NAMESPACE}_proxied_error_total",
            metric_type="counter",
            help_text="The total number of proxied requests that errored.",
            value=0,
        )
    for kind, count in sorted(errors_by_kind.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name=f"{METRICS_NAMESPACE}_proxied_error_total",
            metric_type="counter",
            help_text="The total number of proxied requests that errored.",
            value=count,
            labels={"kind": kind},
        )
    for code, count in sorted(metrics.proxied_status_by_code.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name=f"{METRICS_NAMESPACE}_proxied_status_total",
            metric_type="counter",
            help_text="The total number of proxied requests that returned a status code.",
            value=count,
            labels={"code": code},
        )
    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_passthrough_auth_total",
        metric_type="counter",
        help_text="The total number of requests forwarded with a caller-supplied Authorization header.",
        value=metrics.passthrough_auth_total,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_tokens_total",
        metric_type="counter",
        help_text="The total number of token requests.",
        value=metrics.tokens_total,
    )
    _append_prometheus_metric(
        lines,
        declared,
        name=f"{METRICS_NAMESPACE}_tokens_error_total",
        metric_type="counter",
        help_text="The total number of token requests that failed.",
        value=metrics.tokens_error_total,
    )
    return "\n".join(lines) + "\n"


async def favicon(request: Request) -> Response:
    # Browsers request this on their own; proxying it would mint a token.
    return Response(status_code=200)


# Plain routes with methods=None match every HTTP method, including extensions.
app.add_route("/favicon.ico", favicon, methods=None, include_in_schema=False)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics endpoint is disabled.")

    payload = _render_prometheus_metrics(
        metrics=getattr(app.state, "metrics", None),
        settings=settings,
    )
    return PlainTextResponse(
        content=payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


async def proxy(request: Request) -> Response:
    handler: ProxyHandler = app.state.proxy_handler
    return await handler.handle(request)


app.add_route("/{path:path}", proxy, methods=None, include_in_schema=False)


def run(
    settings: Settings | None = None,
    *,
    host: str | None = None,
    port: int | None = None,
    log_level: str = "info",
) -> None:
    import uvicorn

    resolved = settings or get_settings()
    default_host, default_port = resolved.listen_host_port
    uvicorn.run(
        app,
        host=host or default_host,
        port=port or default_port,
        log_level=log_level,
        reload=False,
    )


if __name__ == "__main__":
    run()
