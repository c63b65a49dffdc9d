"""Profile commands: releases, install, uninstall, preserved, savedata."""

from __future__ import annotations

import click

from ._common import cli_errors, console, get_config

from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table


def register_profile_commands(main: click.Group) -> None:
    """Register the profile command group."""

    @main.group()
    def profile():
        """Profile lifecycle — install releases and move SaveData around.

        Installs are staged next to the live profile and swapped in only
        after the required files check out.
        """

    @profile.command("releases")
    @click.pass_context
    def profile_releases(ctx: click.Context):
        """List installable releases."""
        from ..install import list_releases

        cfg = get_config(ctx)
        with cli_errors():
            releases = list_releases(cfg)
        if not releases:
            console.print("[dim]No installable releases found.[/]")
            return

        table = Table(title=cfg.distribution.github_repo)
        table.add_column("Tag", style="cyan")
        table.add_column("Name")
        table.add_column("Published", style="dim")
        for release in releases:
            table.add_row(escape(release.tag), escape(release.name), release.published_at)
        console.print(table)

    @profile.command("install")
    @click.argument("tag")
    @click.option(
        "--platform", "platform_name", default="steam",
        type=click.Choice(["steam", "epic"], case_sensitive=False), help="Game storefront.",
    )
    @click.option("--restore-preserved", is_flag=True, help="Restore save data kept by uninstall.")
    @click.pass_context
    def profile_install(ctx: click.Context, tag: str, platform_name: str, restore_preserved: bool):
        """Download a release and install it into the profile.

        Examples:

            savecrate profile install v2.4.0

            savecrate profile install v2.4.0 --platform epic --restore-preserved
        """
        from ..install import install_release

        cfg = get_config(ctx)
        progress = Progress(
            TextColumn("[bold cyan]{task.fields[stage]:<11}"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            TextColumn("[dim]{task.description}"),
            console=console,
        )
        task = progress.add_task("", total=100.0, stage="resolving")

        def on_progress(event) -> None:
            progress.update(
                task,
                completed=event.progress,
                description=escape(event.message),
                stage=event.stage.value,
            )

        with progress, cli_errors():
            result = install_release(
                cfg,
                tag,
                platform_name,
                restore_preserved=restore_preserved,
                on_progress=on_progress,
            )

        lines = [
            "[bold green]Release installed[/]",
            f"Tag: {result.tag} ({result.platform.value})",
            f"Asset: {escape(result.asset_name)}",
            f"Restored save files: {result.restored_save_files}",
            f"Profile: [cyan]{escape(str(result.profile_path))}[/]",
        ]
        if result.skipped_patchers:
            skipped = escape(", ".join(result.skipped_patchers))
            lines.append(f"[yellow]Skipped patchers: {skipped}[/]")
        console.print(Panel("\n".join(lines), title="Install Complete", border_style="green"))

    @profile.command("uninstall")
    @click.option("--preserve/--discard", default=True, help="Keep save data for the next install.")
    @click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
    @click.pass_context
    def profile_uninstall(ctx: click.Context, preserve: bool, yes: bool):
        """Remove the installed profile."""
        from ..install import uninstall_profile

        cfg = get_config(ctx)
        if not yes and not click.confirm(
            f"Remove the profile at {cfg.profile_root}?", default=False
        ):
            console.print("[dim]Aborted.[/]")
            return

        with cli_errors():
            result = uninstall_profile(cfg, preserve_save_data=preserve)

        state = "removed" if result.removed_profile else "was already empty"
        console.print(f"[green]Profile {state}[/]: {escape(str(result.profile_path))}")
        if preserve:
            console.print(f"Preserved {result.preserved_files} save file(s)")

    @profile.command("preserved")
    @click.pass_context
    def profile_preserved(ctx: click.Context):
        """Show whether preserved save data is available."""
        from ..install import preserved_save_data_status

        cfg = get_config(ctx)
        with cli_errors():
            status = preserved_save_data_status(cfg)
        if status.available:
            console.print(f"[green]Preserved save data available[/] ({status.files} files)")
        else:
            console.print("[dim]No preserved save data.[/]")

    @profile.command("merge-preserved")
    @click.pass_context
    def profile_merge_preserved(ctx: click.Context):
        """Add presets kept by a preserving uninstall to the profile."""
        from ..install import merge_preserved_presets

        cfg = get_config(ctx)
        with cli_errors():
            result = merge_preserved_presets(cfg)
        console.print(f"[green]Merged {result.imported_presets} preset(s)[/]")

    @profile.group("savedata")
    def savedata():
        """Bring SaveData over from an existing game installation."""

    @savedata.command("preview")
    @click.argument("game_dir", type=click.Path(file_okay=False))
    @click.pass_context
    def savedata_preview(ctx: click.Context, game_dir: str):
        """Show what a game directory's SaveData contains."""
        from ..install import preview_savedata

        cfg = get_config(ctx)
        with cli_errors():
            preview = preview_savedata(cfg, game_dir)

        source = escape(str(preview.source_save_data_path))
        console.print(f"SaveData: [cyan]{source}[/] ({preview.file_count} files)")
        table = Table(title="Presets")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Name")
        for entry in preview.presets:
            table.add_row(str(entry.id), escape(entry.name))
        console.print(table)

    @savedata.command("import")
    @click.argument("game_dir", type=click.Path(file_okay=False))
    @click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
    @click.pass_context
    def savedata_import(ctx: click.Context, game_dir: str, yes: bool):
        """Replace the profile's SaveData with a game directory's copy.

        To keep the profile's presets and only add the game's, use
        `savecrate presets merge` instead.

        Examples:

            savecrate profile savedata import "C:/Games/Among Us"
        """
        from ..install import import_savedata_into_profile

        cfg = get_config(ctx)
        if not yes and not click.confirm(
            "The profile's SaveData will be replaced. Continue?", default=False
        ):
            console.print("[dim]Aborted.[/]")
            return

        with cli_errors():
            result = import_savedata_into_profile(cfg, game_dir)
        console.print(
            f"[green]Imported {result.imported_files} file(s)[/] "
            f"({result.imported_presets} preset(s)) into "
            f"[cyan]{escape(str(result.target_save_data_path))}[/]"
        )
