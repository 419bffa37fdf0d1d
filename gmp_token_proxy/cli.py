from __future__ import annotations

import argparse
import os

from gmp_token_proxy.main import run
from gmp_token_proxy.settings import get_settings

# Flag dest -> settings environment variable.
FLAG_ENV_VARS = {
    "proxy": "PROXY_LISTEN_ADDRESS",
    "remote": "REMOTE",
    "prefix": "PREFIX",
    "scheme": "TARGET_SCHEME",
    "token_source": "TOKEN_SOURCE",
    "expiry_margin_seconds": "TOKEN_EXPIRY_MARGIN_SECONDS",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gmp-token-proxy",
        description=(
            "Reverse proxy that attaches a short-lived bearer token to every "
            "request forwarded to a metrics backend."
        ),
    )
    parser.add_argument(
        "--proxy",
        help="The endpoint of this proxy (host:port). Default: 0.0.0.0:7777.",
    )
    parser.add_argument(
        "--remote",
        help="host:port of the remote Prometheus server. Default: 0.0.0.0:9090.",
    )
    parser.add_argument(
        "--prefix",
        help="Prefix to be applied to the proxied path, concatenated as-is.",
    )
    parser.add_argument(
        "--scheme",
        choices=["https", "http"],
        help="Scheme used to reach the remote. Default: https.",
    )
    parser.add_argument(
        "--token-source",
        choices=["google", "oauth_refresh", "static"],
        help="Credential source used to mint bearer tokens. Default: google.",
    )
    parser.add_argument(
        "--expiry-margin-seconds",
        type=float,
        help="Refresh tokens this many seconds before they expire. Default: 0.",
    )
    parser.add_argument(
        "--insecure-skip-verify",
        action="store_true",
        help="Do not validate the remote's TLS certificate chain.",
    )
    parser.add_argument("--log-level", default="info")
    return parser


def apply_args_to_environment(args: argparse.Namespace) -> None:
    for dest, env_var in FLAG_ENV_VARS.items():
        value = getattr(args, dest, None)
        if value is not None:
            os.environ[env_var] = str(value)
    if args.insecure_skip_verify:
        os.environ["UPSTREAM_VERIFY_TLS"] = "false"
    get_settings.cache_clear()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.proxy is not None and not args.proxy.strip():
        parser.exit(2, "error: flag `--proxy` must be provided and non-empty\n")
    if args.remote is not None and not args.remote.strip():
        parser.exit(2, "error: flag `--remote` must be provided and non-empty\n")

    apply_args_to_environment(args)
    try:
        settings = get_settings()
        host, port = settings.listen_host_port
    except ValueError as exc:
        parser.exit(2, f"error: {exc}\n")

    run(settings, host=host, port=port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
