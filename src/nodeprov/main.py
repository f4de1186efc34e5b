"""CLI main entry point."""

import click

from . import __version__
from .commands.health import health
from .commands.provision import provision
from .shared.logging import configure_logging


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    show_default=True,
    help="Log level",
)
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
@click.pass_context
def cli(ctx: click.Context, log_level: str, json_logs: bool, log_file: str | None) -> None:
    """Provision K3s nodes and serve workload health."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["json_logs"] = json_logs
    ctx.obj["log_file"] = log_file
    configure_logging(level=log_level, log_file=log_file, json_output=json_logs)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"nodeprov version {__version__}")


cli.add_command(provision)
cli.add_command(health)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
