"""CLI command modules for protech.

Each module holds the handlers for one top-level subcommand.
"""

from protech.cli.commands.migrate import cmd_migrate
from protech.cli.commands.sync import cmd_sync

__all__ = ["cmd_migrate", "cmd_sync"]
