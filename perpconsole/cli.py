"""
CLI entrypoint for the perpetual-futures operator console.

Provides commands for the interactive console, script batches,
account reconciliation and a remote health check.
"""
import asyncio
import typer
import yaml
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from perpconsole import __version__
from perpconsole.config.config import ConsoleConfig, load_config
from perpconsole.config.dotenv_loader import load_dotenv_files
from perpconsole.monitoring.logger import setup_logging, get_logger
from perpconsole.exceptions import ConsoleError

app = typer.Typer(
    name="perp-console",
    help="Operator console for a perpetual-futures trading backend",
    add_completion=False,
)

logger = get_logger(__name__)
console = Console()


def _load(config_path: Optional[Path]) -> ConsoleConfig:
    """Load config and configure logging. Invalid config prints a banner and exits 1."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        # pydantic.ValidationError is a ValueError
        logger.critical("Configuration invalid", error=str(e), error_type=type(e).__name__)
        from perpconsole.cli_output import print_critical_error
        print_critical_error("Configuration Invalid", e, show_traceback=False)
        raise typer.Exit(1)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        config.monitoring.log_file,
    )
    return config


def _apply_overrides(runtime, market: Optional[str], actor: Optional[str], strict: bool) -> None:
    from perpconsole.console.commands import ActorSelector

    if market:
        runtime.session.market_id = market
    if actor:
        selector = ActorSelector.parse(actor)
        if selector is None:
            raise typer.BadParameter(f"invalid actor {actor!r}: expected @, DEPLOYER or U<n>")
        runtime.session.switch_actor(selector)
    runtime.session.strict = strict


@app.command()
def repl(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    market: Optional[str] = typer.Option(None, "--market", help="Initial market id"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Initial actor (@, U1, ...)"),
    strict: bool = typer.Option(False, "--strict", help="Start with STRICT ON"),
):
    """
    Start the interactive hack-mode console.

    Example:
        perp-console repl --market ETH-PERP --actor U1
    """
    config = _load(config_path)

    from perpconsole.console.repl import Repl
    from perpconsole.console.runtime import create_runtime

    async def run_repl() -> int:
        async with create_runtime(config) as runtime:
            _apply_overrides(runtime, market, actor, strict)
            await runtime.gateway.wait_until_healthy(
                timeout=config.gateway.health_timeout_seconds,
                interval=config.gateway.health_interval_seconds,
            )
            return await Repl(runtime.dispatcher, runtime.ledger, console=console).run()

    try:
        asyncio.run(run_repl())
    except KeyboardInterrupt:
        logger.info("Console stopped by user")
    except ConsoleError as e:
        logger.critical("Console failed", error=str(e), error_type=type(e).__name__)
        from perpconsole.cli_output import print_critical_error
        print_critical_error("Console Failed", e, show_traceback=False)
        raise typer.Exit(1)


@app.command()
def run(
    script: Path = typer.Argument(..., help="Script file to execute"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    market: Optional[str] = typer.Option(None, "--market", help="Initial market id"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Initial actor (@, U1, ...)"),
    strict: bool = typer.Option(False, "--strict", help="Start with STRICT ON"),
    fail_on_error: bool = typer.Option(True, "--fail-on-error/--no-fail-on-error", help="Exit 1 if any command failed"),
):
    """
    Execute a script file in batch mode.

    Example:
        perp-console run scenarios/open_close.txt --market ETH-PERP
    """
    config = _load(config_path)

    from perpconsole.cli_output import print_batch_summary, print_critical_error
    from perpconsole.console.runtime import create_runtime

    async def run_batch():
        async with create_runtime(config) as runtime:
            _apply_overrides(runtime, market, actor, strict)
            return await runtime.runner.run(script)

    try:
        summary = asyncio.run(run_batch())
    except KeyboardInterrupt:
        logger.info("Batch stopped by user")
        raise typer.Exit(130)
    except ConsoleError as e:
        logger.critical("Batch failed", error=str(e), error_type=type(e).__name__)
        print_critical_error("Batch Failed", e, show_traceback=False)
        raise typer.Exit(1)

    print_batch_summary(console, summary)
    if fail_on_error and summary.error_count:
        raise typer.Exit(1)


@app.command()
def reconcile(
    account: str = typer.Argument(..., help="Actor selector (@, U1, ...) or raw address"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    market_ids: List[str] = typer.Option([], "--market", help="Extra market id to cross-check (repeatable)"),
):
    """
    Reconcile one account's financial state across remote sources.

    Example:
        perp-console reconcile U1 --market ETH-PERP
    """
    config = _load(config_path)

    from perpconsole.cli_output import print_critical_error, print_reconciliation
    from perpconsole.console.commands import ActorSelector
    from perpconsole.console.runtime import create_runtime

    async def run_reconcile():
        async with create_runtime(config) as runtime:
            selector = ActorSelector.parse(account)
            address = runtime.session.actor_at(selector.index).address if selector else account
            markets = list(market_ids)
            if not markets and runtime.session.market_id:
                markets = [runtime.session.market_id]
            return await runtime.reconciler.reconcile(address, market_ids=markets)

    try:
        report = asyncio.run(run_reconcile())
    except ConsoleError as e:
        logger.critical("Reconciliation failed", error=str(e), error_type=type(e).__name__)
        print_critical_error("Reconciliation Failed", e, show_traceback=False)
        raise typer.Exit(1)

    print_reconciliation(console, report)
    if report.has_discrepancies:
        raise typer.Exit(2)


@app.command()
def health(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait (default from config)"),
):
    """
    Wait for the remote endpoint to answer a readiness probe.
    """
    config = _load(config_path)

    from perpconsole.console.runtime import create_runtime

    async def run_health() -> int:
        async with create_runtime(config) as runtime:
            return await runtime.gateway.wait_until_healthy(
                timeout=timeout or config.gateway.health_timeout_seconds,
                interval=config.gateway.health_interval_seconds,
            )

    try:
        attempts = asyncio.run(run_health())
    except ConsoleError as e:
        typer.secho(f"UNHEALTHY: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.secho(f"OK: {config.remote.rpc_url} healthy after {attempts} probe(s)", fg=typer.colors.GREEN)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    perp-console

    Hack-mode command console, batch runner and reconciliation tool for a
    perpetual-futures contract system.
    """
    if version:
        typer.echo(f"perp-console v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def entrypoint() -> None:
    """Console-script entry: load .env files (no-op in prod), then run the app."""
    load_dotenv_files()
    app()


if __name__ == "__main__":
    entrypoint()
