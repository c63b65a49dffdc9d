"""
savecrate — staged-mutation archive engine for mod launcher profiles.

Backs up and moves save data, exchanges configuration presets, and
installs releases into a profile. Every destructive change goes
through stage, validate, commit, and rollback on failure.
"""

import os

__version__ = "0.1.0"
__author__ = "savecrate contributors"

SAVECRATE_HOME = os.environ.get("SAVECRATE_HOME", "~/.savecrate")
