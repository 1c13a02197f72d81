#!/usr/bin/env python3
"""Command-line interface for the reconciliation sweeps.

Each command runs once and exits, so the sweeps can also be driven by cron
instead of the in-process scheduler.

Usage:
    python -m pos_payments.reconciliation.cli expire
    python -m pos_payments.reconciliation.cli match --output report.json
    python -m pos_payments.reconciliation.cli register-urls
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from ..config import GatewaySettings
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..exceptions import GatewayError
from ..gateway import GatewayTransport, PaymentGatewayClient, TokenCache
from .scheduler import SweepScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_command_async(
    command: str,
    output_file: Optional[str] = None,
    summary_only: bool = False,
) -> int:
    """Run one command against the configured database.

    Returns:
        Exit code (0 success, 1 completed with items needing review, 2 failure).
    """
    engine = create_async_engine(database_url=get_database_url())

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)
    scheduler = SweepScheduler(session_factory=session_factory)

    try:
        if command == "expire":
            count = await scheduler.run_expire_once()
            print(json.dumps({"expired": count}))
            return 0

        if command == "match":
            report = await scheduler.run_match_once()
            payload = report.to_summary_dict() if summary_only else report.to_full_dict()
            output = json.dumps(payload, indent=2, default=str)
            if output_file:
                with open(output_file, "w") as f:
                    f.write(output)
                logger.info(f"Report written to {output_file}")
            else:
                print(output)

            if report.errors:
                logger.error(f"Matcher pass finished with {len(report.errors)} errors")
                return 2
            if report.ambiguous or report.amount_mismatches:
                logger.warning(
                    f"Matcher pass needs review: {len(report.ambiguous)} ambiguous, "
                    f"{len(report.amount_mismatches)} amount mismatches"
                )
                return 1
            return 0

        if command == "register-urls":
            try:
                settings = GatewaySettings.from_env()
            except ValueError as e:
                logger.error(str(e))
                return 2
            transport = GatewayTransport(settings.timeout_seconds)
            token_cache = TokenCache(settings, session_factory=session_factory, transport=transport)
            client = PaymentGatewayClient(settings, token_cache, transport=transport)
            try:
                result = await client.register_callback_urls()
            except GatewayError as e:
                logger.error(f"URL registration failed: {e}")
                return 2
            print(json.dumps(result, indent=2, default=str))
            return 0

        logger.error(f"Unknown command: {command}")
        return 2

    finally:
        await engine.dispose()


def run_command(
    command: str,
    output_file: Optional[str] = None,
    summary_only: bool = False,
) -> int:
    """Run a command (sync wrapper)."""
    return asyncio.run(run_command_async(
        command=command,
        output_file=output_file,
        summary_only=summary_only,
    ))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="reconciliation",
        description="Mobile-money reconciliation sweeps and gateway setup.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "expire",
        help="Expire pending QR payments past their expiry",
    )

    match_parser = subparsers.add_parser(
        "match",
        help="Run one matcher pass over unmatched transactions",
    )
    match_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    match_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include summary statistics, not detailed records",
    )

    subparsers.add_parser(
        "register-urls",
        help="Register the C2B confirmation and validation URLs with the gateway",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    return run_command(
        command=parsed_args.command,
        output_file=getattr(parsed_args, "output", None),
        summary_only=getattr(parsed_args, "summary_only", False),
    )


if __name__ == "__main__":
    sys.exit(main())
