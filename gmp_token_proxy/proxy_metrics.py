from __future__ import annotations

import threading
from typing import Any

from gmp_token_proxy.runtime.bounded_maps import BoundedCounterMap


class ProxyMetricsAccumulator:
    """Counts the events emitted by the mint and the proxy handler."""

    def __init__(
        self,
        *,
        status_code_max_keys: int = 128,
        error_kind_max_keys: int = 32,
    ) -> None:
        self._lock = threading.Lock()
        self._proxied_total = 0
        self._passthrough_auth_total = 0
        self._tokens_total = 0
        self._tokens_error_total = 0
        self._proxied_errors_by_kind: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=max(1, int(error_kind_max_keys))
        )
        self._proxied_status_by_code: BoundedCounterMap[str] = BoundedCounterMap(
            max_keys=max(1, int(status_code_max_keys))
        )

    @property
    def proxied_total(self) -> int:
        return self._proxied_total

    @property
    def proxied_error_total(self) -> int:
        return sum(self._proxied_errors_by_kind.to_dict().values())

    @property
    def proxied_errors_by_kind(self) -> dict[str, int]:
        return self._proxied_errors_by_kind.to_dict()

    @property
    def proxied_status_by_code(self) -> dict[str, int]:
        return self._proxied_status_by_code.to_dict()

    @property
    def passthrough_auth_total(self) -> int:
        return self._passthrough_auth_total

    @property
    def tokens_total(self) -> int:
        return self._tokens_total

    @property
    def tokens_error_total(self) -> int:
        return self._tokens_error_total

    def ingest(self, event: dict[str, Any]) -> None:
        name = event.get("event")
        if name == "token_fetch_attempted":
            self.record_token_fetch()
        elif name == "token_fetch_failed":
            self.record_token_error()
        elif name == "proxy_forwarded":
            self.record_forwarded()
        elif name == "passthrough_auth_used":
            self.record_passthrough_auth()
        elif name == "proxy_outcome":
            outcome = str(event.get("outcome") or "")
            if outcome == "success":
                self.record_response(int(event.get("status") or 0))
            elif outcome:
                self.record_error(outcome)

    def record_token_fetch(self) -> None:
        with self._lock:
            self._tokens_total += 1

    def record_token_error(self) -> None:
        with self._lock:
            self._tokens_error_total += 1

    def record_forwarded(self) -> None:
        with self._lock:
            self._proxied_total += 1

    def record_passthrough_auth(self) -> None:
        with self._lock:
            self._passthrough_auth_total += 1

    def record_response(self, status: int) -> None:
        with self._lock:
            self._proxied_status_by_code.increment(str(max(0, status)))

    def record_error(self, kind: str) -> None:
        with self._lock:
            self._proxied_errors_by_kind.increment(kind)
