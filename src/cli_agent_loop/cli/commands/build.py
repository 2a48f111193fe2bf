"""Build command for CLI Agent Loop CLI."""

import threading
from pathlib import Path

import click

from cli_agent_loop.clients.vcs import GitVcs, detect_git_root
from cli_agent_loop.config import load_config
from cli_agent_loop.errors import CliAgentLoopError
from cli_agent_loop.models.build_state import (
    DISPLAY_OUTPUT,
    DISPLAY_THINKING,
    DISPLAY_TOOL,
    DisplayEvent,
)
from cli_agent_loop.services.build_service import run_build
from cli_agent_loop.utils.signals import install_interrupt_handler


def echo_display_event(event: DisplayEvent) -> None:
    if event.kind == DISPLAY_OUTPUT:
        click.echo(event.text)
    elif event.kind == DISPLAY_TOOL:
        click.secho(f"  > {event.text}", fg="cyan")
    elif event.kind == DISPLAY_THINKING:
        click.secho(event.text, dim=True, italic=True)
    else:
        click.secho(f"  [tokens] {event.text}", dim=True)


@click.command()
@click.argument("plan", type=click.Path(exists=True, dir_okay=False))
@click.option("--once", is_flag=True, help="Run a single iteration, then stop")
@click.option("--dry-run", is_flag=True, help="Show what would run without spawning or writing")
@click.option("--live", is_flag=True, help="Stream worker output to the terminal as it arrives")
@click.pass_context
def build(ctx, plan, once, dry_run, live):
    """Work through the task list in PLAN until it is done."""
    options = ctx.obj or {}
    try:
        config = load_config(options.get("config_path"), options.get("overrides"))

        plan_path = Path(plan)
        vcs = None
        if config.auto_commit and not dry_run:
            git_root = detect_git_root(plan_path)
            if git_root is not None:
                vcs = GitVcs(git_root)

        cancel_event = threading.Event()
        restore_handlers = install_interrupt_handler(cancel_event)
        try:
            outcome = run_build(
                plan_path,
                config,
                cancel_event=cancel_event,
                once=once,
                dry_run=dry_run,
                display=echo_display_event if live else None,
                vcs=vcs,
            )
        finally:
            restore_handlers()
    except CliAgentLoopError as e:
        raise click.ClickException(str(e))
    except OSError as e:
        raise click.ClickException(f"Cannot access task document: {e}")

    if outcome.failed:
        raise click.ClickException(f"Build failed: {outcome.state.error}")
