"""
savecrate CLI — archive, migrate, and install mod launcher profiles.

Each command group lives in its own module and is attached to the main
Click group through a register function. Commands are thin: they load
the configuration, call one orchestrator, and render the summary.

Entry point: savecrate.cli:main
"""

from __future__ import annotations

import logging
from typing import Optional

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="savecrate")
@click.option(
    "--config", "config_path", default=None, type=click.Path(dir_okay=False),
    help="Config file (default: $SAVECRATE_HOME/config.yaml).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool):
    """savecrate — staged archives for mod launcher profiles.

    Move save data between machines, exchange presets, and install
    releases without ever leaving a half-written profile behind.
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    ctx.ensure_object(dict)["config_path"] = config_path


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .config_cmd import register_config_commands
from .migrate import register_migrate_commands
from .presets import register_presets_commands
from .profile import register_profile_commands

register_config_commands(main)
register_migrate_commands(main)
register_presets_commands(main)
register_profile_commands(main)
