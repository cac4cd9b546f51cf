"""
CLO Pipeline - Main Entry Point

Simulates asset-backed loans and their bundling into a collateralized loan
obligation against the in-memory ledger emulator.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Run the default scenario to completion and print the report
    python main.py --run --report

    # Run a custom scenario, pausing before phase 4 (Contract Execution)
    python main.py --config scenario.json --breakpoint 4

    # Simulate externally funded wallets
    python main.py --run --network preview

    # Show the latest checkpoint
    python main.py --status
"""

import argparse
import asyncio
from pathlib import Path
from typing import Dict, Optional

import structlog
from pydantic import ValidationError

from clo_pipeline.core.config import settings
from clo_pipeline.core.defaults import default_run_config
from clo_pipeline.core.engine import PipelineEngine
from clo_pipeline.core.exceptions import ConfigurationError
from clo_pipeline.core.models import RunConfig, RunState
from clo_pipeline.gateway.emulator import EmulatorGateway
from clo_pipeline.reporting.report import RunReport
from clo_pipeline.storage.database import Database
from clo_pipeline.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class ConsoleGateway(EmulatorGateway):
    """Emulator gateway that also echoes progress lines to the terminal."""

    async def log(self, message: str, level: str = "info") -> None:
        await super().log(message, level)
        print(f"\n▶ {message}" if level == "phase" else message)


def print_banner():
    """Print the startup banner."""
    banner = f"""
╔══════════════════════════════════════════════════════════════════╗
║                                                                  ║
║           {settings.system.app_name} v{settings.system.app_version:<42}║
║                                                                  ║
║     Loans -> Contracts -> Collateralized Loan Obligations        ║
║                                                                  ║
╚══════════════════════════════════════════════════════════════════╝
"""
    print(banner)


def check_configuration(run_config: Optional[RunConfig] = None) -> Dict:
    """
    Check settings and the run configuration.

    Returns:
        Dictionary with validation results
    """
    validation = settings.validate_configuration()
    issues = list(validation["issues"])
    if run_config is not None:
        issues.extend(run_config.validate_run())

    return {
        "valid": len(issues) == 0,
        "issues": issues,
        "network": run_config.network if run_config else settings.network.network,
        "database_url": settings.database.database_url,
        "wallets": len(run_config.wallets) if run_config else 0,
        "loans": len(run_config.loans) if run_config else 0,
    }


def load_run_config(path: Optional[str], network: Optional[str]) -> RunConfig:
    """Run configuration from a JSON file, or the default scenario."""
    if path:
        config = RunConfig.model_validate_json(Path(path).read_text())
    else:
        config = default_run_config(network or settings.network.network)
    if network:
        config.network = network
    return config


def ensure_database_dir(database_url: str):
    """Create the parent directory of a file-backed SQLite database."""
    prefix = "sqlite+aiosqlite:///"
    if database_url.startswith(prefix) and ":memory:" not in database_url:
        Path(database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


async def run_pipeline(run_config: RunConfig, breakpoint: Optional[int], report: bool) -> RunState:
    """Run the pipeline against the emulator with database persistence."""
    ensure_database_dir(settings.database.database_url)
    db = Database()
    await db.initialize()

    gateway = ConsoleGateway(database=db, network=run_config.network)
    engine = PipelineEngine(gateway, config=run_config, settings=settings)

    try:
        if breakpoint:
            state = await engine.run_to_breakpoint(breakpoint)
        else:
            state = await engine.run_to_completion()
    finally:
        await db.close()

    print("\n" + "=" * 60)
    print(f"Run {engine.run_id}: {state.value.upper()}")
    print("=" * 60)

    if report:
        run_report = RunReport(engine)
        run_report.print_full_report()
        report_path = Path("reports") / f"{engine.run_id}.md"
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(run_report.generate_markdown_report())
        print(f"\n📝 Report written to {report_path}")

    return state


async def show_status(db: Database):
    """Print the latest checkpoint."""
    checkpoint = await db.get_latest_checkpoint()
    if checkpoint is None:
        print("\nNo checkpoints saved yet")
        return

    snapshot = checkpoint["snapshot"]
    print(f"\nRun:     {checkpoint['run_id']}")
    print(f"State:   {checkpoint['run_state']}")
    print(f"Phases:  {checkpoint['phase']} of {len(snapshot.get('phases', []))} completed")
    print(f"Loans:   {len(snapshot.get('loan_contracts', []))}")
    print(f"Saved:   {checkpoint['created_at']}")


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="CLO Pipeline - loan and CLO lifecycle simulator"
    )

    parser.add_argument(
        "--network",
        choices=["emulator", "preview"],
        help="Ledger network (default from PIPELINE_NETWORK)",
    )
    parser.add_argument(
        "--config", metavar="PATH", help="JSON run configuration (default: built-in scenario)"
    )

    # Actions
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument("--run", action="store_true", help="Run the pipeline to completion")
    parser.add_argument(
        "--breakpoint",
        type=int,
        metavar="N",
        help="Pause the run before phase N (1-5)",
    )
    parser.add_argument(
        "--report", action="store_true", help="Print and save the run report"
    )
    parser.add_argument(
        "--status", action="store_true", help="Show the latest saved checkpoint and exit"
    )
    parser.add_argument(
        "--reset-wallets", action="store_true", help="Forget stored wallets and exit"
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()

    if not args.check:
        print_banner()

    try:
        run_config = load_run_config(args.config, args.network)
    except (OSError, ValidationError) as e:
        print(f"\n✗ Could not load run configuration: {e}")
        return

    config_check = check_configuration(run_config)

    # Handle --check
    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nNetwork: {config_check['network']}")
        print(f"Database: {config_check['database_url']}")
        print(f"Wallets: {config_check['wallets']}, Loans: {config_check['loans']}")

        print("\n" + "=" * 60)
        return

    # If config is invalid, exit early
    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and run configuration and try again.")
        return

    # Handle --init-db
    if args.init_db:
        print("\n📦 Initializing database...")
        ensure_database_dir(settings.database.database_url)
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if args.status or args.reset_wallets:
        ensure_database_dir(settings.database.database_url)
        db = Database()
        await db.initialize()
        try:
            if args.status:
                await show_status(db)
            if args.reset_wallets:
                removed = await db.delete_all_wallets()
                print(f"✓ Removed {removed} stored wallets")
        finally:
            await db.close()
        return

    if not (args.run or args.breakpoint):
        parser.print_help()
        return

    try:
        await run_pipeline(run_config, args.breakpoint, args.report)
    except ConfigurationError as e:
        print("\n✗ Configuration errors:")
        for issue in e.issues:
            print(f"   - {issue}")
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


def cli():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
