"""Main CLI entry point for runguard."""

import sys
from typing import Any

import click
from rich.console import Console

from runguard import __version__
from runguard.config import load_config
from runguard.core.context import RunGuardContext
from runguard.core.exceptions import ConfigError, ProcedureNotFound, RunGuardError, ValidationError
from runguard.core.exit_codes import EXIT_FAILED, EXIT_INVALID, exit_code_for_error
from runguard.core.output import OutputFormat
from runguard.core.suggestions import SuggestingGroup, format_suggestions


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def report_error(error: RunGuardError) -> None:
    """Print a runguard error, with its issues or suggestions, to stderr."""
    console = Console(stderr=True)
    console.print(f"[red]Error:[/red] {error}", highlight=False)
    if isinstance(error, ValidationError):
        for issue in error.issues:
            console.print(f"  - {issue}", highlight=False)
    if isinstance(error, ProcedureNotFound) and error.suggestions:
        console.print(format_suggestions(error.suggestions))


class RunGuardGroup(SuggestingGroup):
    """Root group that turns errors into runguard's exit codes."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID
            raise

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = EXIT_INVALID
            raise
        except RunGuardError as e:
            report_error(e)
            ctx.exit(exit_code_for_error(e))


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"runguard version {__version__}")
    ctx.exit()


@click.group(cls=RunGuardGroup, context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    envvar="RUNGUARD_CONFIG",
    help="Path to config file",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """RunGuard - gated, resumable operational procedures.

    Runs a procedure's steps strictly in order against one resource at a time,
    stopping at every gate until it is satisfied, checkpointing after every
    step and rolling back on failure.

    \b
    Examples:
        runguard start resize-db db-prod-1
        runguard confirm <run-id> "maintenance confirmed"
        runguard status <run-id>
        runguard resume

    \b
    Configuration:
        ~/.runguard/config.yaml    User configuration
        ./runguard.yaml            Project configuration
        RUNGUARD_*                 Environment variables
    """
    try:
        config = load_config(config_file)

        ctx.obj = RunGuardContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            color=not no_color,
        )

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        ctx.exit(EXIT_FAILED)


def register_commands() -> None:
    """Register all commands."""
    from runguard.commands import runs
    from runguard.commands.procedures import procedures

    cli.add_command(runs.start)
    cli.add_command(runs.status)
    cli.add_command(runs.confirm)
    cli.add_command(runs.resume)
    cli.add_command(runs.abort)
    cli.add_command(runs.rollback)
    cli.add_command(runs.list_runs)
    cli.add_command(runs.audit)
    cli.add_command(runs.cleanup)
    cli.add_command(procedures)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show the effective configuration."""
    rg_ctx: RunGuardContext = ctx.obj
    engine = rg_ctx.config.engine
    config_data = {
        "output_format": rg_ctx.output_format.value,
        "verbose": rg_ctx.verbose,
        "state_dir": str(rg_ctx.state_dir),
        "procedures_dir": str(rg_ctx.procedures_dir),
        "operator": engine.get_operator(),
        "lock_mode": engine.lock_mode,
        "lock_wait_timeout": engine.lock_wait_timeout,
        "auto_rollback": engine.auto_rollback,
        "retry": engine.retry.model_dump(),
        "gate": engine.gate.model_dump(),
    }
    rg_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except RunGuardError as e:
        report_error(e)
        sys.exit(exit_code_for_error(e))
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
