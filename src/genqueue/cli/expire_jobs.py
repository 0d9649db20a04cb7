"""CLI command for failing generation jobs stuck in an active state.

Jobs still IN_QUEUE or IN_PROGRESS after JOB_TIMEOUT_SECONDS are marked FAILED
and their reserved points are refunded (once; re-running is safe).

Usage:
    python -m genqueue.cli.expire_jobs [OPTIONS]

Examples:
    # Expire with the configured JOB_TIMEOUT_SECONDS
    python -m genqueue.cli.expire_jobs

    # Expire jobs older than one hour
    python -m genqueue.cli.expire_jobs --max-age 3600

    # List what would expire without writing
    python -m genqueue.cli.expire_jobs --dry-run

    # Verbose logging
    python -m genqueue.cli.expire_jobs -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genqueue.core import timezone  # noqa: F401
from genqueue.core.config import Settings, configure_logging
from genqueue.core.database import setup_db_session
from genqueue.services.orchestrator import GenerationOrchestrator
from genqueue.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail and refund generation jobs stuck in IN_QUEUE/IN_PROGRESS",
    )

    parser.add_argument(
        "--max-age",
        type=int,
        help="Job age in seconds after which it expires (default: JOB_TIMEOUT_SECONDS)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs to expire (default: 100)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List expired jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    max_age = args.max_age if args.max_age is not None else settings.job_timeout_seconds
    logger.info("cli.started", max_age_seconds=max_age, limit=args.limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = GenerationOrchestrator.from_settings(settings, uow_factory)

    try:
        job_ids = await orchestrator.expire_stale_jobs(
            max_age_seconds=max_age, dry_run=args.dry_run, limit=args.limit
        )

        print("\n" + "=" * 60)
        print("Stale Job Expiry Summary")
        print("=" * 60)
        print(f"Max job age: {max_age}s")
        print(f"Jobs expired: {len(job_ids)}")
        for job_id in job_ids[:10]:
            print(f"  - {job_id}")
        if len(job_ids) > 10:
            print(f"  ... and {len(job_ids) - 10} more")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")

        logger.info("cli.success", expired=len(job_ids))
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nExpiry interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
