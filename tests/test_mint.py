from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from gmp_token_proxy.mint import Token, TokenAcquisitionError, TokenMint

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _ScriptedSource:
    """Hands out tokens whose expiry is `lifetime` seconds after the clock."""

    def __init__(self, clock: _Clock, lifetime: float = 60.0, delay: float = 0.0) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.delay = delay
        self.calls = 0
        self.fail = False

    async def fetch_token(self) -> Token:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("identity provider unavailable")
        return Token(
            value=f"token-{self.calls}",
            expiry=self.clock() + timedelta(seconds=self.lifetime),
        )


def test_mint_fetches_once_per_expiry_window() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=60.0)
    mint = TokenMint(source, clock=clock)

    async def _run() -> list[str]:
        values = [await mint.get_access_token()]
        clock.advance(30)
        values.append(await mint.get_access_token())
        clock.advance(29.999)
        values.append(await mint.get_access_token())
        clock.advance(0.001)
        values.append(await mint.get_access_token())
        clock.advance(59)
        values.append(await mint.get_access_token())
        return values

    values = asyncio.run(_run())

    assert values == ["token-1", "token-1", "token-1", "token-2", "token-2"]
    assert source.calls == 2


def test_mint_failure_keeps_stale_token_and_next_success_replaces_it() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=10.0)
    mint = TokenMint(source, clock=clock)

    async def _run() -> None:
        assert await mint.get_access_token() == "token-1"
        stale = mint.cached_token
        clock.advance(10)
        source.fail = True
        with pytest.raises(TokenAcquisitionError) as exc_info:
            await mint.get_access_token()
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert mint.cached_token is stale

        source.fail = False
        assert await mint.get_access_token() == "token-3"
        assert mint.cached_token is not stale

    asyncio.run(_run())
    assert source.calls == 3


def test_mint_retries_on_every_call_while_source_is_failing() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock)
    source.fail = True
    mint = TokenMint(source, clock=clock)

    async def _run() -> None:
        for _ in range(3):
            with pytest.raises(TokenAcquisitionError):
                await mint.get_access_token()

    asyncio.run(_run())
    assert source.calls == 3
    assert mint.cached_token is None


def test_mint_collapses_concurrent_refreshes_into_one_fetch() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=60.0, delay=0.02)
    mint = TokenMint(source, clock=clock)

    async def _run() -> list[str]:
        first = await asyncio.gather(*(mint.get_access_token() for _ in range(25)))
        clock.advance(61)
        second = await asyncio.gather(*(mint.get_access_token() for _ in range(25)))
        return [*first, *second]

    values = asyncio.run(_run())

    assert source.calls == 2
    assert values[:25] == ["token-1"] * 25
    assert values[25:] == ["token-2"] * 25


def test_mint_concurrent_callers_share_one_failed_fetch() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, delay=0.05)
    source.fail = True
    mint = TokenMint(source, clock=clock)

    async def _run() -> list[Any]:
        results = await asyncio.gather(
            *(mint.get_access_token() for _ in range(10)), return_exceptions=True
        )
        source.fail = False
        results.append(await mint.get_access_token())
        return results

    results = asyncio.run(_run())

    assert all(isinstance(result, TokenAcquisitionError) for result in results[:10])
    assert results[10] == "token-2"
    assert source.calls == 2


def test_mint_expiry_margin_refreshes_early() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=60.0)
    mint = TokenMint(source, clock=clock, expiry_margin_seconds=15)

    async def _run() -> list[str]:
        values = [await mint.get_access_token()]
        clock.advance(44)
        values.append(await mint.get_access_token())
        clock.advance(1)
        values.append(await mint.get_access_token())
        return values

    assert asyncio.run(_run()) == ["token-1", "token-1", "token-2"]


def test_mint_token_without_expiry_is_never_refreshed() -> None:
    class _NoExpirySource:
        calls = 0

        async def fetch_token(self) -> Token:
            self.calls += 1
            return Token(value="forever")

    source = _NoExpirySource()
    clock = _Clock()
    mint = TokenMint(source, clock=clock)

    async def _run() -> None:
        assert await mint.get_access_token() == "forever"
        clock.advance(10**6)
        assert await mint.get_access_token() == "forever"

    asyncio.run(_run())
    assert source.calls == 1


def test_mint_fetch_timeout_raises_acquisition_error() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, delay=1.0)
    mint = TokenMint(source, clock=clock, fetch_timeout_seconds=0.01)

    async def _run() -> None:
        with pytest.raises(TokenAcquisitionError) as exc_info:
            await mint.get_access_token()
        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)

    asyncio.run(_run())
    assert mint.cached_token is None


def test_mint_emits_fetch_events() -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=5.0)
    events: list[dict[str, Any]] = []
    mint = TokenMint(source, clock=clock, audit_hook=events.append)

    async def _run() -> None:
        await mint.get_access_token()
        await mint.get_access_token()
        clock.advance(5)
        source.fail = True
        with pytest.raises(TokenAcquisitionError):
            await mint.get_access_token()

    asyncio.run(_run())

    assert [event["event"] for event in events] == [
        "token_fetch_attempted",
        "token_fetch_attempted",
        "token_fetch_failed",
    ]
    assert events[-1]["error_type"] == "RuntimeError"


def test_mint_failure_does_not_log_token_values(caplog: Any) -> None:
    clock = _Clock()
    source = _ScriptedSource(clock, lifetime=1.0)
    mint = TokenMint(source, clock=clock)

    async def _run() -> None:
        await mint.get_access_token()
        clock.advance(1)
        source.fail = True
        with pytest.raises(TokenAcquisitionError):
            await mint.get_access_token()

    with caplog.at_level("INFO", logger="uvicorn.error"):
        asyncio.run(_run())

    assert "token_fetch_failed" in caplog.text
    assert "token-1" not in caplog.text


def test_token_expiry_comparison_is_inclusive() -> None:
    token = Token(value="t", expiry=T0)

    assert token.is_expired(T0) is True
    assert token.is_expired(T0 - timedelta(microseconds=1)) is False
    assert token.is_expired(T0 - timedelta(seconds=5), timedelta(seconds=5)) is True
