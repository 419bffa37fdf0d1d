from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

logger = logging.getLogger("uvicorn.error")

AuditHook = Callable[[dict[str, Any]], None]


class TokenAcquisitionError(RuntimeError):
    """Raised when the token source could not produce a fresh token."""


@dataclass(frozen=True, slots=True)
class Token:
    value: str
    expiry: datetime | None = None

    def is_expired(self, now: datetime, margin: timedelta = timedelta(0)) -> bool:
        # No expiry reported by the source means the token never goes stale.
        if self.expiry is None:
            return False
        return self.expiry - margin <= now


class TokenSource(Protocol):
    async def fetch_token(self) -> Token: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenMint:
    """Caches one bearer token and mints a replacement when it goes stale.

    Readers that find a valid cached token return it directly. The first
    caller that finds the cache empty or expired starts a fetch task; callers
    arriving while it runs await the same task and share its token or its
    ``TokenAcquisitionError``. A burst of concurrent requests after expiry
    therefore results in a single call to the token source, whether that call
    succeeds or fails.
    """

    def __init__(
        self,
        source: TokenSource,
        *,
        expiry_margin_seconds: float = 0.0,
        fetch_timeout_seconds: float | None = None,
        audit_hook: AuditHook | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._expiry_margin = timedelta(seconds=max(0.0, float(expiry_margin_seconds)))
        self._fetch_timeout = (
            max(0.001, float(fetch_timeout_seconds))
            if fetch_timeout_seconds is not None
            else None
        )
        self._audit_hook = audit_hook
        self._clock = clock or _utcnow
        self._token: Token | None = None
        self._inflight: asyncio.Task[Token] | None = None

    @property
    def cached_token(self) -> Token | None:
        return self._token

    def _usable(self, token: Token) -> bool:
        return not token.is_expired(self._clock(), self._expiry_margin)

    async def get_access_token(self) -> str:
        token = self._token
        if token is not None and self._usable(token):
            return token.value

        inflight = self._inflight
        if inflight is None:
            if token is None:
                logger.info("token_cache_empty")
            else:
                logger.info(
                    "token_cache_expired expiry=%s",
                    token.expiry.isoformat() if token.expiry else None,
                )
            inflight = asyncio.create_task(self._mint())
            inflight.add_done_callback(self._finish_inflight)
            self._inflight = inflight

        # Shielded so one cancelled caller does not abort the shared fetch.
        fresh = await asyncio.shield(inflight)
        return fresh.value

    def _finish_inflight(self, task: asyncio.Task[Token]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Marks the failure retrieved when every waiter was cancelled.
            task.exception()

    async def _mint(self) -> Token:
        logger.info("token_fetch_start source=%s", type(self._source).__name__)
        self._audit("token_fetch_attempted")
        try:
            if self._fetch_timeout is None:
                fresh = await self._source.fetch_token()
            else:
                fresh = await asyncio.wait_for(
                    self._source.fetch_token(), timeout=self._fetch_timeout
                )
        except Exception as exc:
            self._audit("token_fetch_failed", error_type=type(exc).__name__)
            logger.warning(
                "token_fetch_failed source=%s error_type=%s",
                type(self._source).__name__,
                type(exc).__name__,
            )
            raise TokenAcquisitionError("unable to mint new token") from exc

        self._token = fresh
        logger.info(
            "token_fetch_success expiry=%s",
            fresh.expiry.isoformat() if fresh.expiry else None,
        )
        return fresh

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)
