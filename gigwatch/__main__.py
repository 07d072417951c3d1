"""Gigwatch process entry-point.

Usage:
    python -m gigwatch [--log-level LEVEL] [--log-format FORMAT] COMMAND

Commands:
    tick                One guarded fetch attempt, then exit (cron / timers).
    run                 Continuous loop firing a tick every TICK_INTERVAL.
    status              Print the scheduler state and health verdict.
    tokens              Print the stored credential (masked) and its expiry.
    enable | disable    Flip the manual kill switch.
    reset               Re-enable and close the circuit; keeps run history.
    init                Create the scheduler-state document if absent.
    authorize           Print the OAuth authorization URL.
    exchange-code CODE  Exchange an authorization code and store the credential.

The orchestration logic lives in ``gigwatch.orchestrator``.  This module
calls ``configure_logging()`` first so that every subsequent import already
has a working logger, then hands off.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import secrets
import sys

from gigwatch.core import configure_logging
from gigwatch.core.exceptions import AuthError, ConfigError
from gigwatch.core.settings import Settings

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gigwatch",
        description="Resilient scheduled fetch of marketplace job listings.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    sub.add_parser("tick", help="Fire one guarded fetch attempt and exit.")
    sub.add_parser("run", help="Fire a tick every TICK_INTERVAL until stopped.")
    sub.add_parser("status", help="Show scheduler state and health verdict.")
    sub.add_parser("tokens", help="Show the stored credential (masked) and expiry.")
    sub.add_parser("enable", help="Turn the manual kill switch on.")
    sub.add_parser("disable", help="Turn the manual kill switch off.")
    sub.add_parser("reset", help="Re-enable and close the circuit breaker.")
    sub.add_parser("init", help="Create the scheduler-state document if absent.")
    sub.add_parser("authorize", help="Print the OAuth authorization URL.")
    exchange = sub.add_parser("exchange-code", help="Store the credential for an auth code.")
    exchange.add_argument("code", help="Authorization code from the redirect URL.")
    return parser


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------


async def _tick(settings: Settings) -> int:
    from gigwatch.orchestrator.runner import run_once  # noqa: PLC0415
    from gigwatch.orchestrator.trigger import OutcomeKind  # noqa: PLC0415

    report = await run_once(settings)
    print(report.format_report())  # noqa: T201
    return 1 if report.outcome is OutcomeKind.CONFIG_ERROR else 0


async def _admin_command(command: str, settings: Settings) -> int:
    from gigwatch.orchestrator.runner import build_admin, open_store  # noqa: PLC0415

    async with open_store(settings) as store:
        admin = build_admin(store, settings)
        if command == "status":
            print(await admin.summary())  # noqa: T201
        elif command == "tokens":
            print((await admin.token_status()).format())  # noqa: T201
        elif command in ("enable", "disable"):
            await admin.set_enabled(command == "enable")
            print(await admin.summary())  # noqa: T201
        elif command == "reset":
            await admin.reset()
            print(await admin.summary())  # noqa: T201
        elif command == "init":
            created = await admin.initialize()
            print(  # noqa: T201
                "Scheduler state created." if created else "Scheduler state already exists."
            )
    return 0


async def _exchange_code(code: str, settings: Settings) -> int:
    from gigwatch.auth.provider import OAuthTokenClient  # noqa: PLC0415
    from gigwatch.auth.tokens import install_credential, record_from_grant  # noqa: PLC0415
    from gigwatch.core.models import utc_now  # noqa: PLC0415
    from gigwatch.orchestrator.runner import open_store  # noqa: PLC0415

    async with OAuthTokenClient.from_settings(settings) as client:
        issued_at = utc_now()
        grant = await client.exchange_code(code)
    record = record_from_grant(grant, issued_at=issued_at)

    async with open_store(settings) as store:
        await install_credential(store, record, doc_id=settings.credential_document_id)
    print(f"Credential stored; access token expires {record.expires_at.isoformat()}.")  # noqa: T201
    return 0


def _authorize(settings: Settings) -> int:
    from gigwatch.auth.provider import OAuthTokenClient  # noqa: PLC0415

    client = OAuthTokenClient.from_settings(settings)
    if not settings.upwork_redirect_uri:
        raise ConfigError("UPWORK_REDIRECT_URI must be set for the authorization flow.")
    print("Open this URL, approve access, then run `gigwatch exchange-code CODE`:")  # noqa: T201
    print(client.authorization_url(state=secrets.token_urlsafe(16)))  # noqa: T201
    return 0


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    command: str = args.command
    if command == "tick":
        return asyncio.run(_tick(settings))
    if command == "run":
        from gigwatch.orchestrator.scheduler import run_continuous  # noqa: PLC0415

        logger.info("Running in continuous mode (Ctrl+C to stop).")
        asyncio.run(run_continuous(settings))
        return 0
    if command == "authorize":
        return _authorize(settings)
    if command == "exchange-code":
        return asyncio.run(_exchange_code(args.code, settings))
    return asyncio.run(_admin_command(command, settings))


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    # Configure logging BEFORE any other gigwatch imports so that every module
    # obtains a correctly-configured logger on first import.
    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"gigwatch: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    try:
        settings = Settings()
        sys.exit(_dispatch(args, settings))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except AuthError as exc:
        logger.critical("Authorization failed: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        sys.exit(0)
    except asyncio.CancelledError:
        # Raised when run_continuous() is stopped via SIGTERM; the scheduler
        # already logged the shutdown.
        logger.info("Shutdown complete, exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
