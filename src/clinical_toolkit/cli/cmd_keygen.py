"""Keygen command: create a new encryption key file."""

from pathlib import Path

import typer

from clinical_toolkit.cli._app import app
from clinical_toolkit.cli._common import setup_logging
from clinical_toolkit.cli._console import print_err, print_ok
from clinical_toolkit.services.compliance.crypto import generate_key_file


@app.command("keygen", help="Generate a 256-bit key file for the encrypted store.")
def keygen_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Where to write the key file"),
    key_format: str = typer.Option(
        "raw", "--format", "-f", help="Key encoding: raw, base64 or hex"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing key file"),
):
    """Generate a new key file. Existing keys are never overwritten without --force."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    if path.exists() and not force:
        print_err(f"Key file already exists: {path} (use --force to overwrite)")
        raise SystemExit(1)

    try:
        generate_key_file(path, format=key_format)
    except ValueError as e:
        print_err(str(e))
        raise SystemExit(1)

    print_ok(f"Wrote {key_format} key to {path}")
