"""Main CLI entry point for CLI Agent Loop."""

import logging

import click

from cli_agent_loop.cli.commands.build import build


@click.group()
@click.version_option(package_name="cli-agent-loop")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    help="TOML config file (default: ~/.config/cli-agent-loop/config.toml if present)",
)
@click.option("--worker-path", help="Worker executable (default: claude)")
@click.option("--max-iterations", type=click.IntRange(min=1), help="Stop after this many iterations")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log verbosity (logs go to stderr)",
)
@click.pass_context
def cli(ctx, config_path, worker_path, max_iterations, log_level):
    """CLI Agent Loop - drive a coding agent through a task list, one task per iteration."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["overrides"] = {"worker_path": worker_path, "max_iterations": max_iterations}


cli.add_command(build)


if __name__ == "__main__":
    cli()
