"""
Main entry point for the automation runner.

Loads an exported automation definition, wires the registry, browser,
storage, run store and notifier together, and runs it.
"""

import asyncio
import logging
import os
import signal
import sys
import uuid
from typing import Optional

import click
import structlog
from dotenv import load_dotenv

from .api.actions import API_ACTIONS
from .browser.actions import BROWSER_ACTIONS
from .browser.control import CONTROL_ACTIONS
from .browser.manager import BrowserLauncher
from .core.config import DefinitionLoader
from .core.errors import FrameworkError
from .core.models import AutomationRun, RunStatus
from .core.state import RunStateStore
from .engine.context import CancellationToken
from .engine.registry import ActionRegistry
from .orchestrator.runner import Runner
from .services.notification import LoggingNotificationService
from .services.storage import LocalFileStorage
from .storage.actions import STORAGE_ACTIONS


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stderr,
                        level=getattr(logging, level_name, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def build_registry() -> ActionRegistry:
    """Register every built-in action and freeze the registry."""
    registry = ActionRegistry()
    for action_cls in [*BROWSER_ACTIONS, *CONTROL_ACTIONS, *API_ACTIONS, *STORAGE_ACTIONS]:
        registry.register_plugin(action_cls)
    registry.freeze()
    return registry


async def run_definition(
    path: str,
    run_id: Optional[str] = None,
    headless: bool = True,
    db_path: str = "./data/runs.db",
    storage_dir: str = "./data/output",
) -> AutomationRun:
    """Load a definition file and run it to completion."""
    automation = DefinitionLoader().load(path)
    run = AutomationRun(id=run_id or str(uuid.uuid4()), automation_id=automation.id)

    store = RunStateStore(db_path)
    await store.initialize()
    launcher = BrowserLauncher(headless=headless)
    runner = Runner(
        registry=build_registry(),
        session_factory=launcher.session,
        storage=LocalFileStorage(storage_dir),
        store=store,
        notifier=LoggingNotificationService(),
    )

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, token.cancel, "shutdown signal received")

    try:
        await runner.run_automation(automation, run, cancel_token=token)
    except FrameworkError as e:
        logger.error("automation_failed", run_id=run.id, error=e.message)
    finally:
        await runner.wait_for_notifications()
        await launcher.shutdown()
        await store.close()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    return run


async def _recent_runs(db_path: str, automation_id: str, limit: int) -> list[AutomationRun]:
    store = RunStateStore(db_path)
    await store.initialize()
    try:
        return await store.list_runs(automation_id, limit)
    finally:
        await store.close()


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO).")
def cli(log_level: Optional[str]) -> None:
    """Run declarative browser and API automations."""
    configure_logging(log_level)


@cli.command("run")
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option("--run-id", default=None, help="Run identifier (default: random UUID).")
@click.option("--headed", is_flag=True, default=False, help="Show the browser window.")
@click.option("--db", "db_path", default=None, help="SQLite file for run records.")
@click.option("--storage-dir", default=None, help="Directory for screenshots and other outputs.")
def run_command(definition: str, run_id: Optional[str], headed: bool,
                db_path: Optional[str], storage_dir: Optional[str]) -> None:
    """Execute an exported automation definition."""
    headless = not headed and os.getenv("AUTORUNNER_HEADLESS", "true").lower() != "false"
    run = asyncio.run(run_definition(
        definition,
        run_id=run_id,
        headless=headless,
        db_path=db_path or os.getenv("AUTORUNNER_DB_PATH", "./data/runs.db"),
        storage_dir=storage_dir or os.getenv("AUTORUNNER_STORAGE_DIR", "./data/output"),
    ))

    click.echo(f"run {run.id}: {run.status.value}")
    for output_file in run.output_files:
        click.echo(f"  output: {output_file}")
    if run.error_message:
        click.echo(f"  error: {run.error_message}", err=True)
    if run.status != RunStatus.COMPLETED:
        click.get_current_context().exit(1)


@cli.command("actions")
def actions_command() -> None:
    """List registered action types."""
    for action_type in build_registry().list_actions():
        click.echo(action_type)


@cli.command("runs")
@click.argument("automation_id")
@click.option("--db", "db_path", default=None, help="SQLite file for run records.")
@click.option("--limit", default=20, show_default=True)
def runs_command(automation_id: str, db_path: Optional[str], limit: int) -> None:
    """Show recent runs of an automation."""
    runs = asyncio.run(_recent_runs(
        db_path or os.getenv("AUTORUNNER_DB_PATH", "./data/runs.db"), automation_id, limit
    ))
    for run in runs:
        started = run.start_time.isoformat() if run.start_time else "-"
        click.echo(f"{run.id}  {run.status.value:<9}  {started}  "
                   f"logs={len(run.logs)} files={len(run.output_files)}  {run.error_message}")


def main(argv: Optional[list[str]] = None) -> int:
    """Console script entry point."""
    load_dotenv()
    argv = argv if argv is not None else sys.argv[1:]
    try:
        # Without standalone mode click returns the exit code of ctx.exit()
        result = cli.main(args=list(argv), standalone_mode=False)
    except click.ClickException as exc:
        exc.show()
        return exc.exit_code
    except click.Abort:
        click.echo("Aborted.", err=True)
        return 1
    except FrameworkError as exc:
        click.echo(f"error: {exc.message}", err=True)
        return 1
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
