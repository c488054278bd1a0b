"""Provisioner CLI.

Usage:
    provisioner --spec site.yaml init             # Prepare the state store
    provisioner --spec site.yaml plan --out p.json
    provisioner apply p.json                     # Apply a saved plan
    provisioner show p.json                      # JSON report of a saved plan
"""

from __future__ import annotations

import asyncio
import functools
import json
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from .config import Config, ConfigurationError
from .engine import Engine, read_plan, write_plan
from .errors import ReconcileError
from .executor import ApplyResult
from .main import setup_logging
from .planner import Action, ChangeReason, Plan

DEFAULT_SPEC_FILE = "site.yaml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Plan symbols in the human-readable listing
ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NO_OP: " ",
}

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class CliContext:
    config: Config
    spec_path: Path | None


def handle_errors(fn: F) -> F:
    """Report engine errors as CLI errors (exit code 1)."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (ReconcileError, ConfigurationError) as e:
            raise click.ClickException(str(e)) from e

    return wrapper  # type: ignore[return-value]


def _engine(ctx: CliContext, spec_path: Path | None = None) -> Engine:
    return Engine(ctx.config, ctx.spec_path or spec_path or Path(DEFAULT_SPEC_FILE))


def _describe(plan: Plan) -> list[str]:
    lines = []
    for change in plan.actionable:
        symbol = ACTION_SYMBOLS[change.action]
        if change.reason == ChangeReason.REPLACE:
            symbol = "+/-" if change.create_before_destroy else "-/+"
        line = f"  {symbol} {change.address} ({change.reason.value})"
        if change.changed_attributes and change.action == Action.UPDATE:
            line += f" [{', '.join(change.changed_attributes)}]"
        lines.append(line)
    return lines


@click.group()
@click.version_option(version="0.1.0", prog_name="provisioner")
@click.option(
    "--spec",
    "spec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="PROVISIONER_SPEC",
    help=f"Declaration file (default: {DEFAULT_SPEC_FILE}, or the plan's source for apply)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Structured log level (logs go to stderr)",
)
@click.pass_context
def cli(ctx: click.Context, spec_path: Path | None, log_level: str) -> None:
    """Declarative resource provisioner.

    Builds a dependency graph from a declaration, plans the changes needed to
    reach it, and applies them against the configured providers.
    """
    setup_logging(log_level)
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = CliContext(config=config, spec_path=spec_path)


@cli.command()
@click.pass_obj
@handle_errors
def init(ctx: CliContext) -> None:
    """Prepare the state store and check provider configuration."""
    engine = _engine(ctx)
    engine.init()
    click.echo(f"Initialized state store in {engine.store.state_dir}")


@cli.command()
@click.option(
    "--out",
    "out_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Save the plan for a later apply",
)
@click.pass_obj
@handle_errors
def plan(ctx: CliContext, out_path: Path | None) -> None:
    """Compute the changes needed to reach the declaration."""
    engine = _engine(ctx)
    result = engine.plan()

    if not result.has_changes:
        click.echo("No changes. Resources match the declaration.")
    else:
        for line in _describe(result):
            click.echo(line)
        summary = result.summary()
        click.echo(
            f"\nPlan: {summary.create_count} to create, "
            f"{summary.update_count} to update, {summary.delete_count} to delete."
        )

    if out_path is not None:
        write_plan(result, out_path)
        click.echo(f"Saved plan to {out_path}")


async def _apply_with_signals(engine: Engine, saved: Plan) -> ApplyResult:
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        click.echo(f"Received {sig.name}, finishing in-flight changes", err=True)
        engine.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    try:
        return await engine.apply(saved)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


@cli.command()
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
@handle_errors
def apply(ctx: CliContext, plan_path: Path) -> None:
    """Apply a saved plan."""
    saved = read_plan(plan_path)
    source = Path(saved.source) if saved.source else None
    engine = _engine(ctx, source)

    result = asyncio.run(_apply_with_signals(engine, saved))
    if result.error is not None:
        if result.not_started:
            click.echo(f"{len(result.not_started)} changes were not started.", err=True)
        raise click.ClickException(f"Apply failed after {len(result.applied)} changes: {result.error}")

    click.echo(f"Apply complete: {len(result.applied)} changes applied.")


@cli.command()
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@handle_errors
def show(plan_path: Path) -> None:
    """Print a JSON report of a saved plan."""
    saved = read_plan(plan_path)
    click.echo(json.dumps(Engine.show(saved), indent=2, sort_keys=True))


if __name__ == "__main__":
    cli()
