from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable
from urllib.parse import parse_qsl, urlencode

import httpx
from fastapi import status
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.requests import Request

from gmp_token_proxy.mint import TokenAcquisitionError, TokenMint

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
DEFAULT_STRIP_QUERY_PARAMS = frozenset({"refresh"})

logger = logging.getLogger("uvicorn.error")


class ProxyError(RuntimeError):
    """Base class for failures that abort a single proxied request."""

    outcome = "proxy_error"
    public_message = "unable to proxy request"


class RequestBuildError(ProxyError):
    """Raised when the outbound request cannot be constructed."""

    outcome = "request_build_failed"
    public_message = "unable to create proxied request"


class TokenUnavailableError(ProxyError):
    """Raised when no bearer token could be obtained for the outbound request."""

    outcome = "token_unavailable"
    public_message = "unable to obtain token"


class UpstreamUnreachableError(ProxyError):
    """Raised when the upstream could not be reached at the transport level."""

    outcome = "upstream_unreachable"
    public_message = "unable to execute proxied request"


@dataclass(frozen=True, slots=True)
class RewriteRule:
    target_scheme: str
    target_host: str
    path_prefix: str = ""
    strip_query_params: frozenset[str] = field(
        default_factory=lambda: DEFAULT_STRIP_QUERY_PARAMS
    )


def rewrite_path(prefix: str, path: str) -> str:
    # Literal concatenation; the prefix owns any separator.
    return f"{prefix}{path}"


def sanitize_query(query: str, strip_params: frozenset[str]) -> str:
    if not query:
        return ""
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode([(name, value) for name, value in pairs if name not in strip_params])


def rewrite_url(rule: RewriteRule, path: str, query: str = "") -> str:
    revised_path = rewrite_path(rule.path_prefix, path)
    if revised_path and not revised_path.startswith("/"):
        # An authority must be followed by "/" for the path to stay a path.
        revised_path = "/" + revised_path
    url = f"{rule.target_scheme}://{rule.target_host}{revised_path}"
    revised_query = sanitize_query(query, rule.strip_query_params)
    if revised_query:
        url = f"{url}?{revised_query}"
    return url


def _inbound_path(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if isinstance(raw_path, bytes) and raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


def _inbound_query(request: Request) -> str:
    raw_query = request.scope.get("query_string", b"")
    if isinstance(raw_query, bytes):
        return raw_query.decode("latin-1")
    return str(raw_query or "")


def _forwardable_request_headers(request: Request) -> list[tuple[bytes, bytes]]:
    headers: list[tuple[bytes, bytes]] = []
    for name, value in request.headers.raw:
        lowered = name.decode("latin-1").lower()
        if lowered == "host" or lowered in HOP_BY_HOP_HEADERS:
            continue
        headers.append((name, value))
    return headers


def _relay_response_headers(upstream: httpx.Response) -> list[tuple[bytes, bytes]]:
    headers: list[tuple[bytes, bytes]] = []
    for name, value in upstream.headers.raw:
        lowered = name.lower()
        if lowered.decode("latin-1") in HOP_BY_HOP_HEADERS:
            continue
        headers.append((lowered, value))
    return headers


def _has_request_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


class ProxyHandler:
    """Forwards inbound requests to the fixed upstream with a bearer token.

    ``forward`` raises a ``ProxyError`` subclass on failure; ``handle`` is the
    ASGI-facing boundary that turns those into a plain 500 response and emits
    exactly one ``proxy_outcome`` event per request.
    """

    def __init__(
        self,
        *,
        rule: RewriteRule,
        mint: TokenMint,
        client: httpx.AsyncClient,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.rule = rule
        self.mint = mint
        self.client = client
        self._audit_hook = audit_hook

    async def handle(self, request: Request) -> Response:
        try:
            response = await self.forward(request)
        except ProxyError as exc:
            self._audit(
                "proxy_outcome",
                outcome=exc.outcome,
                method=request.method,
                path=request.url.path,
            )
            return PlainTextResponse(
                exc.public_message,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        self._audit(
            "proxy_outcome",
            outcome="success",
            status=response.status_code,
            method=request.method,
            path=request.url.path,
        )
        return response

    async def forward(self, request: Request) -> Response:
        try:
            url = rewrite_url(self.rule, _inbound_path(request), _inbound_query(request))
            outbound = self.client.build_request(
                method=request.method,
                url=url,
                headers=_forwardable_request_headers(request),
                content=request.stream() if _has_request_body(request) else None,
            )
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            logger.error(
                "proxy_request_build_failed method=%s path=%s error_type=%s",
                request.method,
                request.url.path,
                type(exc).__name__,
            )
            raise RequestBuildError(RequestBuildError.public_message) from exc

        await self._inject_credentials(request, outbound)

        self._audit("proxy_forwarded", method=outbound.method)
        try:
            upstream = await self.client.send(outbound, stream=True)
        except httpx.RequestError as exc:
            logger.error(
                "proxy_upstream_error method=%s host=%s path=%s error_type=%s",
                outbound.method,
                self.rule.target_host,
                outbound.url.path,
                type(exc).__name__,
            )
            raise UpstreamUnreachableError(UpstreamUnreachableError.public_message) from exc

        logger.info(
            "proxy_response method=%s path=%s status=%d",
            outbound.method,
            outbound.url.path,
            upstream.status_code,
        )
        return self._relay(upstream)

    async def _inject_credentials(
        self, request: Request, outbound: httpx.Request
    ) -> None:
        if request.headers.getlist("authorization"):
            logger.info(
                "proxy_passthrough_auth leaving inbound Authorization header(s) unchanged"
            )
            self._audit("passthrough_auth_used")
            return

        try:
            token = await self.mint.get_access_token()
        except TokenAcquisitionError as exc:
            # Already logged by the mint.
            raise TokenUnavailableError(TokenUnavailableError.public_message) from exc

        outbound.headers["Authorization"] = f"Bearer {token}"

    @staticmethod
    def _relay(upstream: httpx.Response) -> StreamingResponse:
        async def relay_body() -> AsyncIterator[bytes]:
            try:
                if upstream.is_stream_consumed:
                    if upstream.content:
                        yield upstream.content
                else:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
            except httpx.HTTPError as exc:
                logger.warning(
                    "proxy_upstream_stream_error path=%s error_type=%s",
                    upstream.request.url.path,
                    type(exc).__name__,
                )
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            content=relay_body(),
            status_code=upstream.status_code,
        )
        response.raw_headers = _relay_response_headers(upstream)
        return response

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)
