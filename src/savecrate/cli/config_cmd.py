"""Config commands: show, init."""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from ._common import console, get_config

from rich.markup import escape
from rich.panel import Panel


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group("config")
    def config_group():
        """Inspect or write the launcher configuration."""

    @config_group.command("show")
    @click.pass_context
    def config_show(ctx: click.Context):
        """Print the effective configuration as YAML."""
        cfg = get_config(ctx)
        text = yaml.safe_dump(cfg.model_dump(mode="json"), default_flow_style=False)
        console.print(Panel(text.rstrip(), title="savecrate config", border_style="cyan"))

    @config_group.command("init")
    @click.option("--force", is_flag=True, help="Overwrite an existing config file.")
    @click.pass_context
    def config_init(ctx: click.Context, force: bool):
        """Write the default configuration to disk.

        Examples:

            savecrate config init

            savecrate --config ./launcher.yaml config init --force
        """
        from ..config import CONFIG_FILE_NAME, LauncherConfig, save_config

        cfg = LauncherConfig()
        path_opt = (ctx.obj or {}).get("config_path")
        target = Path(path_opt).expanduser() if path_opt else cfg.home_path / CONFIG_FILE_NAME
        if target.exists() and not force:
            console.print(
                f"[yellow]Config already exists:[/] {escape(str(target))} (use --force)"
            )
            raise SystemExit(1)

        try:
            written = save_config(cfg, target)
        except OSError as exc:
            console.print(
                f"[red]Failed to write config '{escape(str(target))}': {escape(str(exc))}[/]"
            )
            raise SystemExit(1)
        console.print(f"[green]Wrote[/] {escape(str(written))}")
