"""Preset commands: list, export, inspect, import, merge."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ._common import cli_errors, console, get_config

from rich.markup import escape
from rich.table import Table


def _preset_table(title: str, presets) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Name")
    table.add_column("Data", justify="center")
    for entry in presets:
        table.add_row(
            str(entry.id),
            escape(entry.name),
            "[green]yes[/]" if entry.has_data_file else "[red]missing[/]",
        )
    return table


def _parse_renames(values: tuple[str, ...]) -> dict[int, str]:
    renames: dict[int, str] = {}
    for value in values:
        raw_id, sep, name = value.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected ID=NAME, got '{value}'", param_hint="--rename")
        try:
            renames[int(raw_id)] = name.strip()
        except ValueError:
            raise click.BadParameter(f"'{raw_id}' is not a preset id", param_hint="--rename")
    return renames


def register_presets_commands(main: click.Group) -> None:
    """Register the presets command group."""

    @main.group()
    def presets():
        """Option presets — share and merge game configuration presets."""

    @presets.command("list")
    @click.pass_context
    def presets_list(ctx: click.Context):
        """List the presets in the current profile."""
        from ..presets import list_local_presets

        cfg = get_config(ctx)
        with cli_errors():
            entries = list_local_presets(cfg)
        if not entries:
            console.print("[dim]No presets in the profile.[/]")
            return
        console.print(_preset_table("Profile presets", entries))

    @presets.command("export")
    @click.argument("preset_ids", nargs=-1, type=int, required=True)
    @click.option("--output", "-o", default=None, type=click.Path(), help="Archive path.")
    @click.pass_context
    def presets_export(ctx: click.Context, preset_ids: tuple[int, ...], output: Optional[str]):
        """Export the selected presets into an archive.

        Examples:

            savecrate presets export 0 2 5

            savecrate presets export 3 -o ~/share/tournament.snrpresets
        """
        from ..presets import export_selected_presets

        cfg = get_config(ctx)
        with cli_errors():
            summary = export_selected_presets(
                cfg, preset_ids, output_path=Path(output).expanduser() if output else None
            )
        console.print(
            f"[green]Exported {summary.exported_presets} preset(s)[/] to "
            f"[cyan]{escape(str(summary.archive_path))}[/]"
        )

    @presets.command("inspect")
    @click.argument("archive", type=click.Path(dir_okay=False))
    @click.pass_context
    def presets_inspect(ctx: click.Context, archive: str):
        """Show the presets contained in an archive."""
        from ..presets import inspect_preset_archive

        cfg = get_config(ctx)
        with cli_errors():
            entries = inspect_preset_archive(cfg, Path(archive).expanduser())
        console.print(_preset_table(Path(archive).name, entries))

    @presets.command("import")
    @click.argument("archive", type=click.Path(dir_okay=False))
    @click.option("--id", "preset_ids", multiple=True, type=int, help="Preset id to import (repeatable; default all).")
    @click.option("--rename", multiple=True, help="Rename on import, as ID=NAME (repeatable).")
    @click.pass_context
    def presets_import(
        ctx: click.Context, archive: str, preset_ids: tuple[int, ...], rename: tuple[str, ...]
    ):
        """Merge presets from an archive into the profile.

        Imported presets get fresh ids; clashing names get a numeric
        suffix. Existing presets are never overwritten.

        Examples:

            savecrate presets import shared.snrpresets

            savecrate presets import shared.snrpresets --id 2 --rename 2="Ranked"
        """
        from ..presets import (
            PresetImportSelection,
            import_presets_from_archive,
            inspect_preset_archive,
        )

        cfg = get_config(ctx)
        archive_path = Path(archive).expanduser()
        renames = _parse_renames(rename)
        with cli_errors():
            ids = list(preset_ids) or [
                entry.id for entry in inspect_preset_archive(cfg, archive_path) if entry.has_data_file
            ]
            selections = [PresetImportSelection(source_id=i, name=renames.get(i)) for i in ids]
            summary = import_presets_from_archive(cfg, archive_path, selections)

        table = Table(title=f"Imported {summary.imported_presets} preset(s)")
        table.add_column("Source ID", justify="right")
        table.add_column("New ID", justify="right", style="cyan")
        table.add_column("Name")
        for item in summary.imported:
            table.add_row(str(item.source_id), str(item.target_id), escape(item.name))
        console.print(table)

    @presets.command("merge")
    @click.argument("game_dir", type=click.Path(file_okay=False))
    @click.pass_context
    def presets_merge(ctx: click.Context, game_dir: str):
        """Add the presets of an existing game installation to the profile.

        Examples:

            savecrate presets merge "C:/Games/Among Us"
        """
        from ..install import merge_savedata_presets

        cfg = get_config(ctx)
        with cli_errors():
            result = merge_savedata_presets(cfg, game_dir)
        console.print(
            f"[green]Merged {result.imported_presets} preset(s)[/] from "
            f"[cyan]{escape(str(result.source_save_data_path))}[/]"
        )
