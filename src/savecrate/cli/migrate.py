"""Migration commands: export, import, check."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ._common import cli_errors, console, get_config, resolve_password

from rich.markup import escape
from rich.panel import Panel


def register_migrate_commands(main: click.Group) -> None:
    """Register the migrate command group."""

    @main.group()
    def migrate():
        """Migration archives — carry save data to another machine.

        Bundles the profile's save files and the game's LocalLow data
        into one archive, optionally sealed with a password.
        """

    @migrate.command("export")
    @click.option("--output", "-o", default=None, type=click.Path(), help="Archive path.")
    @click.option("--encrypt", is_flag=True, help="Seal the archive with a password.")
    @click.option("--password", default=None, help="Password (prompted if omitted).")
    @click.pass_context
    def migrate_export(ctx: click.Context, output: Optional[str], encrypt: bool, password: Optional[str]):
        """Export profile and LocalLow save data.

        Examples:

            savecrate migrate export

            savecrate migrate export --encrypt -o ~/usb/snr.snrmig
        """
        from ..migration import export_migration_data

        cfg = get_config(ctx)
        password = resolve_password(password, required=encrypt, confirm=True)
        with cli_errors():
            summary = export_migration_data(
                cfg,
                output_path=Path(output).expanduser() if output else None,
                encrypt=encrypt,
                password=password,
            )

        console.print(Panel(
            f"[bold green]Migration archive written[/]\n"
            f"Profile files: {summary.profile_files}\n"
            f"LocalLow files: {summary.locallow_files}\n"
            f"Encrypted: {'yes' if summary.encrypted else 'no'}\n"
            f"Path: [cyan]{escape(str(summary.archive_path))}[/]",
            title="Export Complete",
            border_style="green",
        ))

    @migrate.command("import")
    @click.argument("archive", type=click.Path(dir_okay=False))
    @click.option("--password", default=None, help="Password for encrypted archives.")
    @click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
    @click.pass_context
    def migrate_import(ctx: click.Context, archive: str, password: Optional[str], yes: bool):
        """Replace the current save data with an archive's contents.

        Existing save files are backed up first and restored if the
        import fails part way.

        Examples:

            savecrate migrate import snr-migration-1700000000.snrmig
        """
        from ..errors import PasswordRequiredError
        from ..migration import import_migration_data

        cfg = get_config(ctx)
        archive_path = Path(archive).expanduser()
        if not yes and not click.confirm(
            "Existing save data will be replaced. Continue?", default=False
        ):
            console.print("[dim]Aborted.[/]")
            return

        with cli_errors():
            try:
                summary = import_migration_data(cfg, archive_path, password=password)
            except PasswordRequiredError as exc:
                console.print(f"[yellow]{escape(str(exc))}[/]")
                password = resolve_password(None, required=True)
                summary = import_migration_data(cfg, archive_path, password=password)

        console.print(Panel(
            f"[bold green]Migration imported[/]\n"
            f"Profile files: {summary.profile_files}\n"
            f"LocalLow files: {summary.locallow_files}\n"
            f"Encrypted: {'yes' if summary.encrypted else 'no'}",
            title="Import Complete",
            border_style="green",
        ))

    @migrate.command("check")
    @click.argument("archive", type=click.Path(dir_okay=False))
    @click.option("--password", default=None, help="Password for encrypted archives.")
    @click.pass_context
    def migrate_check(ctx: click.Context, archive: str, password: Optional[str]):
        """Verify that an archive opens (and decrypts) without importing it."""
        from ..migration import validate_migration_archive_password

        cfg = get_config(ctx)
        with cli_errors():
            summary = validate_migration_archive_password(
                cfg, Path(archive).expanduser(), password=password
            )
        state = "encrypted, password OK" if summary.encrypted else "not encrypted"
        console.print(f"[green]Archive is readable[/] ({state})")
