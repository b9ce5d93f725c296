"""CLI entrypoints for gate operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from keygate.config import get_settings
from keygate.core.api_keys import APIKeyCore
from keygate.core.counter_store import get_counter_store
from keygate.core.rate_limiter import WindowMode, get_rate_limiter


def _run_generate_key() -> int:
    """Print a new raw key with the values to persist on the credential row."""
    generated = APIKeyCore(prefix=get_settings().api_keys.prefix).generate()
    print(
        json.dumps(
            {
                "api_key": generated.raw_key,
                "key_hash": generated.key_hash,
                "key_prefix": generated.key_prefix,
            }
        )
    )
    return 0


async def _run_store_status() -> int:
    """Ping the counter store and print its availability flags."""
    store = get_counter_store()
    try:
        reachable = await store.ping() if store.is_available() else False
        status = store.status()
    finally:
        await store.aclose()

    print(
        json.dumps(
            {
                "enabled": status.enabled,
                "configured": status.configured,
                "healthy": status.healthy,
                "reachable": reachable,
            }
        )
    )
    return 0 if reachable or not status.enabled else 1


async def _run_reset_scope(scope: str, mode: WindowMode, window_ms: int | None) -> int:
    """Clear one rate-limit scope in both counter stores."""
    limiter = get_rate_limiter()
    try:
        await limiter.reset(scope, mode=mode, window_ms=window_ms)
    finally:
        await get_counter_store().aclose()
    print(json.dumps({"scope": scope, "mode": mode.value, "reset": True}))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="python -m keygate.cli")
    subcommands = parser.add_subparsers(dest="command", required=True)

    subcommands.add_parser("generate-key", help="Generate a new API key.")
    subcommands.add_parser("store-status", help="Report counter store availability.")

    reset_parser = subcommands.add_parser("reset-scope", help="Clear a rate-limit scope.")
    reset_parser.add_argument("scope", help="Scope such as 'apikey:<hash>' or 'login:<ip>'.")
    reset_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in WindowMode],
        default=WindowMode.ROLLING.value,
    )
    reset_parser.add_argument(
        "--window-ms",
        type=int,
        default=None,
        help="Window length; required to locate the current fixed bucket.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "generate-key":
        return _run_generate_key()
    if args.command == "store-status":
        return asyncio.run(_run_store_status())
    if args.command == "reset-scope":
        mode = WindowMode(args.mode)
        if mode is WindowMode.FIXED and args.window_ms is None:
            parser.error("--window-ms is required with --mode fixed")
        return asyncio.run(_run_reset_scope(args.scope, mode, args.window_ms))
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
