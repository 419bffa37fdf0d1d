from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import google.auth
import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest

from gmp_token_proxy.mint import Token, TokenSource
from gmp_token_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


class TokenSourceError(RuntimeError):
    """Raised when a credential source returns an unusable token response."""


class TokenSourceConfigurationError(RuntimeError):
    """Raised when the configured token source is missing required settings."""


class GoogleDefaultTokenSource:
    """Access tokens from Google application default credentials."""

    def __init__(self, scopes: list[str]) -> None:
        self.scopes = list(scopes)
        self._credentials, self.project_id = google.auth.default(scopes=self.scopes)
        self._auth_request = GoogleAuthRequest()

    async def fetch_token(self) -> Token:
        # google-auth refreshes synchronously over `requests`.
        await asyncio.to_thread(self._credentials.refresh, self._auth_request)
        value = self._credentials.token
        if not value:
            raise TokenSourceError("Google credentials refreshed without a token.")
        return Token(value=value, expiry=_as_utc(self._credentials.expiry))


class OAuthRefreshTokenSource:
    def __init__(
        self,
        *,
        token_url: str,
        refresh_token: str,
        client: httpx.AsyncClient,
        client_id: str | None = None,
        client_secret: str | None = None,
    ) -> None:
        self.token_url = token_url
        self._refresh_token = refresh_token
        self._client = client
        self._client_id = client_id
        self._client_secret = client_secret

    async def fetch_token(self) -> Token:
        payload: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": self._refresh_token,
        }
        if self._client_id:
            payload["client_id"] = self._client_id
        if self._client_secret:
            payload["client_secret"] = self._client_secret

        try:
            response = await self._client.post(
                self.token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            raise TokenSourceError(
                f"Token endpoint request failed ({type(exc).__name__})."
            ) from exc

        if response.status_code >= 400:
            raise TokenSourceError(
                f"Token endpoint returned status {response.status_code}."
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TokenSourceError("Token endpoint returned invalid JSON.") from exc
        if not isinstance(body, dict):
            raise TokenSourceError("Token endpoint returned a non-object payload.")

        raw_access = body.get("access_token")
        access_token = str(raw_access).strip() if raw_access is not None else ""
        if not access_token:
            raise TokenSourceError("Token endpoint response has no access_token.")

        raw_refresh = body.get("refresh_token")
        if raw_refresh is not None and str(raw_refresh).strip():
            self._refresh_token = str(raw_refresh).strip()

        expires_at = _extract_expires_at(body)
        return Token(
            value=access_token,
            expiry=(
                datetime.fromtimestamp(expires_at, tz=timezone.utc)
                if expires_at is not None
                else None
            ),
        )


class StaticTokenSource:
    def __init__(self, value: str, expiry: datetime | None = None) -> None:
        self._token = Token(value=value, expiry=expiry)

    async def fetch_token(self) -> Token:
        return self._token


def build_token_source(settings: Settings, client: httpx.AsyncClient) -> TokenSource:
    kind = settings.token_source.strip().lower()
    if kind == "google":
        scopes = settings.token_scopes_list
        logger.info("token_source_init kind=google scopes=%s", ",".join(scopes))
        return GoogleDefaultTokenSource(scopes)
    if kind == "oauth_refresh":
        if not settings.oauth_token_url or not settings.oauth_refresh_token:
            raise TokenSourceConfigurationError(
                "TOKEN_SOURCE=oauth_refresh requires OAUTH_TOKEN_URL and "
                "OAUTH_REFRESH_TOKEN."
            )
        logger.info(
            "token_source_init kind=oauth_refresh token_url=%s",
            settings.oauth_token_url,
        )
        return OAuthRefreshTokenSource(
            token_url=settings.oauth_token_url,
            refresh_token=settings.oauth_refresh_token,
            client=client,
            client_id=settings.oauth_client_id,
            client_secret=settings.oauth_client_secret,
        )
    if kind == "static":
        if not settings.static_token:
            raise TokenSourceConfigurationError(
                "TOKEN_SOURCE=static requires STATIC_TOKEN."
            )
        logger.info("token_source_init kind=static")
        return StaticTokenSource(settings.static_token)
    raise TokenSourceConfigurationError(
        f"Unknown TOKEN_SOURCE '{settings.token_source}'. "
        "Expected one of: google, oauth_refresh, static."
    )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    # google-auth reports naive UTC datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _extract_expires_at(token_response: dict[str, Any]) -> int | None:
    now = int(time.time())

    raw_expires_in = token_response.get("expires_in")
    if raw_expires_in is not None:
        try:
            return now + int(float(raw_expires_in))
        except (TypeError, ValueError):
            pass

    raw_expires_at = token_response.get("expires_at")
    if raw_expires_at is not None:
        try:
            return int(float(raw_expires_at))
        except (TypeError, ValueError):
            pass

    return None
