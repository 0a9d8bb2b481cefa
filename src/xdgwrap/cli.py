"""CLI commands for xdgwrap - an XDG dotfile relocating wrapper."""

import json
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from . import __version__
from .core import (
    WrapContext,
    derive_identity,
    exit_status,
    forget_program,
    get_config_value,
    get_home_dir,
    get_xdgwrap_paths,
    list_programs,
    load_config,
    reset_config,
    resolve_storage_root,
    set_config_value,
    wrap_program,
)
from .exceptions import XdgWrapError, XdgWrapRestoreCollisionError

# Global app and console instances
app = typer.Typer(
    help="xdgwrap - keep a program's dotfiles out of your home directory",
    add_completion=False,
)
config_app = typer.Typer(help="Manage xdgwrap configuration")
console = Console()

# Exit status the command line parser uses for usage errors
USAGE_ERROR_STATUS = 2
_command_started = False


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def get_version_string() -> str:
    try:
        return package_version("xdgwrap")
    except PackageNotFoundError:
        return __version__


def version_callback(value: bool) -> None:
    if value:
        typer.secho(f"xdgwrap version {get_version_string()}", fg=typer.colors.GREEN)
        raise typer.Exit()


def show_registry(registry: Dict[str, List[str]], storage_root: Path) -> None:
    """Print every wrapped program and the entries it owns."""
    if not registry:
        typer.secho(
            f"No programs registered in {storage_root}", fg=typer.colors.YELLOW
        )
        return

    table = Table(title=f"Programs in {storage_root}")
    table.add_column("Program", style="cyan", no_wrap=True)
    table.add_column("Entries", style="green")
    for identity in sorted(registry):
        table.add_row(identity, ", ".join(f".{key}" for key in registry[identity]))
    console.print(table)


# ============================================================================
# MAIN COMMAND
# ============================================================================


@app.command(
    context_settings={"allow_interspersed_args": False},
)
def main(
    program: Annotated[
        Optional[str],
        typer.Argument(help="Program to run, by name or path.", show_default=False),
    ] = None,
    args: Annotated[
        Optional[List[str]],
        typer.Argument(
            help="Arguments passed unchanged to PROGRAM.", show_default=False
        ),
    ] = None,
    name: Annotated[
        Optional[str],
        typer.Option(
            "--name", "-n", help="Store the program under this name instead."
        ),
    ] = None,
    storage_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--dir",
            "-d",
            help="Storage root for relocated dotfiles.",
            file_okay=False,
        ),
    ] = None,
    quiet: Annotated[
        bool, typer.Option("--quiet", "-q", help="Suppress informational output.")
    ] = False,
    list_registered: Annotated[
        bool, typer.Option("--list", help="List registered programs and exit.")
    ] = False,
    forget: Annotated[
        bool,
        typer.Option(
            "--forget",
            help="Forget the dotfiles registered for PROGRAM and exit. "
            "Stored files are left in place.",
        ),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="Show xdgwrap version and exit.",
        ),
    ] = None,
) -> None:
    """Run PROGRAM, keeping the dotfiles it creates out of your home directory.

    The first run records which dotfiles PROGRAM creates. After every run
    they are moved to the storage root, and before every later run they are
    moved back into place.
    """
    global _command_started
    _command_started = True
    config = load_config()

    try:
        storage_root = resolve_storage_root(storage_dir, config)

        if list_registered:
            show_registry(list_programs(storage_root), storage_root)
            return

        if program is None and name is None:
            typer.secho(
                "Error: Missing argument 'PROGRAM'.", fg=typer.colors.RED, err=True
            )
            raise typer.Exit(code=1)

        identity = name or derive_identity(program or "")
        ctx = WrapContext(
            home=get_home_dir(), storage_root=storage_root, identity=identity
        )

        if forget:
            if forget_program(ctx):
                if not quiet:
                    typer.secho(f"Forgot '{identity}'", fg=typer.colors.GREEN)
                    typer.echo(f"Stored files remain in {ctx.program_dir}")
            else:
                typer.secho(
                    f"'{identity}' is not registered", fg=typer.colors.YELLOW
                )
            return

        if program is None:
            typer.secho(
                "Error: Missing argument 'PROGRAM'.", fg=typer.colors.RED, err=True
            )
            raise typer.Exit(code=1)

        discovery = config.get("discovery", {})
        result = wrap_program(
            ctx,
            program,
            args or [],
            exclude_patterns=discovery.get("exclude", []),
            case_sensitive=discovery.get("case_sensitive", False),
            quiet=quiet,
        )
    except XdgWrapRestoreCollisionError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        typer.secho(
            f"Move or remove the existing entry and run again. "
            f"The stored copy is in {storage_root / identity}",
            fg=typer.colors.CYAN,
            err=True,
        )
        raise typer.Exit(code=1)
    except XdgWrapError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        typer.secho("Operation cancelled by user", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)

    if config.get("propagate_exit_code", True) and result.exit_code:
        raise typer.Exit(code=exit_status(result.exit_code))


def run() -> None:
    """Console entry point; usage errors exit with status 1."""
    global _command_started
    _command_started = False
    try:
        app()
    except SystemExit as e:
        # The parser reports usage errors with status 2 before main runs
        if e.code == USAGE_ERROR_STATUS and not _command_started:
            sys.exit(1)
        raise


# ============================================================================
# CONFIGURATION MANAGEMENT COMMANDS
# ============================================================================


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return json.dumps(value)


@config_app.command("show")
def config_show(
    key: Annotated[
        Optional[str],
        typer.Argument(help="Configuration key to show (e.g. 'discovery.exclude')"),
    ] = None,
) -> None:
    """Show current configuration."""
    try:
        if key:
            typer.echo(f"{key}: {_format_value(get_config_value(key))}")
        else:
            typer.echo(json.dumps(load_config(), indent=2))
    except XdgWrapError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Configuration key to set")],
    value: Annotated[str, typer.Argument(help="Value to set (JSON or plain text)")],
) -> None:
    """Set a configuration value."""
    try:
        set_config_value(key, value)
    except XdgWrapError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho(
        f"Set {key} = {_format_value(get_config_value(key))}", fg=typer.colors.GREEN
    )


@config_app.command("reset")
def config_reset(
    confirm: Annotated[
        bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")
    ] = False,
) -> None:
    """Reset configuration to defaults."""
    if not confirm and not typer.confirm("Reset xdgwrap configuration to defaults?"):
        typer.secho("Cancelled", fg=typer.colors.YELLOW)
        raise typer.Exit()
    try:
        reset_config()
    except XdgWrapError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.secho("Configuration reset to defaults", fg=typer.colors.GREEN)


@config_app.command("path")
def config_path() -> None:
    """Show where the configuration and storage root live."""
    paths = get_xdgwrap_paths()
    typer.echo(f"Config file:  {paths['config_file']}")
    typer.echo(f"Storage root: {resolve_storage_root()}")


if __name__ == "__main__":
    run()
