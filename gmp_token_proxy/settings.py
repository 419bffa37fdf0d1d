from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_SCOPES = "https://www.googleapis.com/auth/cloud-platform"


class Settings(BaseSettings):
    proxy_listen_address: str = "0.0.0.0:7777"
    remote: str = "0.0.0.0:9090"
    prefix: str = ""
    target_scheme: str = "https"
    strip_query_params: str = "refresh"
    upstream_verify_tls: bool = True
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 60.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 5.0
    token_source: str = "google"
    token_scopes: str = DEFAULT_TOKEN_SCOPES
    token_expiry_margin_seconds: float = 0.0
    token_fetch_timeout_seconds: float = 30.0
    oauth_token_url: str | None = None
    oauth_refresh_token: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    static_token: str | None = None
    metrics_enabled: bool = True
    build_time: str = ""
    git_commit: str = ""
    os_version: str = ""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def token_scopes_list(self) -> list[str]:
        return _split_csv(self.token_scopes)

    @property
    def strip_query_params_set(self) -> frozenset[str]:
        return frozenset(_split_csv(self.strip_query_params))

    @property
    def listen_host_port(self) -> tuple[str, int]:
        return split_host_port(self.proxy_listen_address, default_port=7777)


def split_host_port(value: str, *, default_port: int) -> tuple[str, int]:
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        return value.strip() or "0.0.0.0", default_port
    if not port.isdigit():
        raise ValueError(f"Invalid port in address '{value}'.")
    return host.strip("[]") or "0.0.0.0", int(port)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
