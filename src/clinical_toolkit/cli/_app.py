"""Root Typer application with global options."""

from pathlib import Path

import typer

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug-level logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Warnings and errors only"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON to stdout"),
    storage_dir: Path = typer.Option(
        None,
        "--storage-dir",
        help="Directory of the encrypted store (default: $CLINICAL_TOOLKIT_STORAGE_DIR)",
    ),
    key_path: Path = typer.Option(
        None,
        "--key-path",
        help="Encryption key file (default: $CLINICAL_TOOLKIT_KEY_PATH)",
    ),
):
    """Manage the encrypted local clinical data store."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["json"] = json_output
    ctx.obj["storage_dir"] = storage_dir
    ctx.obj["key_path"] = key_path
