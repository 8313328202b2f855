"""CLI package: Typer-based command-line interface.

Usage:
    clinical-toolkit --help
    clinical-toolkit --key-path keys/clinical.key export --out backup.json
"""

from clinical_toolkit.cli._app import app

# Register command modules (side-effect imports)
import clinical_toolkit.cli.cmd_keygen  # noqa: F401
import clinical_toolkit.cli.cmd_migrate  # noqa: F401
import clinical_toolkit.cli.cmd_backup  # noqa: F401
import clinical_toolkit.cli.cmd_stats  # noqa: F401

__all__ = ["app"]
