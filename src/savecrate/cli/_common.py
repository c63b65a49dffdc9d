"""Shared helpers for the CLI command modules.

Provides the Rich console, config loading from the Click context, and
the error-to-exit-code convention every command follows.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from rich.console import Console
from rich.markup import escape

from ..config import LauncherConfig, load_config
from ..errors import SaveCrateError, TransactionError

console = Console()


def get_config(ctx: click.Context) -> LauncherConfig:
    """Load the configuration named by the group's ``--config`` option."""
    path: Optional[str] = (ctx.obj or {}).get("config_path")
    with cli_errors():
        return load_config(Path(path) if path else None)


@contextmanager
def cli_errors() -> Iterator[None]:
    """Print savecrate errors in red and exit with status 1."""
    try:
        yield
    except TransactionError as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        if exc.manual_recovery_required:
            console.print("[bold red]Manual recovery required.[/]")
        elif exc.rolled_back:
            console.print("[yellow]Previous state was restored.[/]")
        raise SystemExit(1)
    except SaveCrateError as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        raise SystemExit(1)


def resolve_password(password: Optional[str], required: bool, confirm: bool = False) -> Optional[str]:
    """Prompt for a password when one is required but was not given."""
    if password or not required:
        return password
    return click.prompt("Password", hide_input=True, confirmation_prompt=confirm)
