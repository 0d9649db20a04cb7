"""CLI command for showing and switching the active provider per model.

Without options it prints the provider each model is sent to first. With
``--model`` and ``--provider`` it makes that provider the model's first choice;
the other providers serving the model stay as fallbacks.

Usage:
    python -m genqueue.cli.provider_settings [OPTIONS]

Examples:
    # Show the active provider for every model
    python -m genqueue.cli.provider_settings

    # Send nano-banana-pro to laozhang-ai first
    python -m genqueue.cli.provider_settings --model nano-banana-pro --provider laozhang-ai
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from genqueue.core import timezone  # noqa: F401
from genqueue.core.config import Settings, configure_logging
from genqueue.core.database import setup_db_session
from genqueue.models.generation_job import ModelType
from genqueue.models.provider_settings import GenerationProvider
from genqueue.services.orchestrator import GenerationOrchestrator
from genqueue.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Show or switch the active provider per model")

    parser.add_argument(
        "--model",
        choices=[m.value for m in ModelType],
        help="Model type to switch",
    )

    parser.add_argument(
        "--provider",
        choices=[p.value for p in GenerationProvider],
        help="Provider to try first for --model",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    args = parser.parse_args(argv)
    if (args.model is None) != (args.provider is None):
        parser.error("--model and --provider must be given together")
    return args


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

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = GenerationOrchestrator.from_settings(settings, uow_factory)

    try:
        if args.model:
            await orchestrator.set_active_provider(
                ModelType(args.model), GenerationProvider(args.provider)
            )

        rows = await orchestrator.get_provider_settings()

        print("\n" + "=" * 60)
        print("Active Provider per Model")
        print("=" * 60)
        for row in rows:
            print(f"  {row.model_type:<20} {row.active_provider}")
        print("=" * 60 + "\n")

        logger.info("cli.success", models=len(rows))
        return 0

    except ValueError as e:
        logger.warning("cli.invalid_provider", error=str(e))
        print(f"\nInvalid provider: {e}", file=sys.stderr)
        return 1

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
