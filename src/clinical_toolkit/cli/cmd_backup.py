"""Export and import commands: patient exports and whole-store backups."""

import json
import logging
from pathlib import Path

import typer

from clinical_toolkit.cli._app import app
from clinical_toolkit.cli._common import open_store, setup_logging
from clinical_toolkit.cli._console import output_result, print_err, print_ok
from clinical_toolkit.services.errors import ExportTooLargeError
from clinical_toolkit.services.export import write_export

logger = logging.getLogger(__name__)


@app.command("export", help="Export one patient or the whole store to a JSON file.")
def export_cmd(
    ctx: typer.Context,
    out: Path = typer.Option(..., "--out", "-o", help="Output JSON file"),
    patient_id: str = typer.Option(
        None, "--patient", "-p", help="Export only this patient (default: whole store)"
    ),
    masked_only: bool = typer.Option(
        False, "--masked-only", help="Write only the de-identified view"
    ),
):
    """Export clinical data. Every export is recorded as an audit entry."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])
    store = open_store(ctx)

    if patient_id:
        payload = store.export_patient(patient_id)
        if payload is None:
            print_err(f"Patient not found: {patient_id}")
            raise SystemExit(1)
    else:
        payload = store.export_all()

    try:
        size = write_export(
            payload, out, store.config.max_file_size, masked_only=masked_only
        )
    except (ExportTooLargeError, IOError) as e:
        print_err(str(e))
        raise SystemExit(1)

    if ctx.obj["json"]:
        output_result(payload.masked_view(), ctx=ctx)
    print_ok(f"Exported {size} bytes to {out}")


@app.command("import", help="Replace the store contents with a backup JSON file.")
def import_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Backup file written by 'export'"),
):
    """Import a whole-store backup. Invalid records are skipped with a warning."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        print_err(f"Backup file not found: {path}")
        raise SystemExit(1)
    except ValueError as e:
        print_err(f"Backup file is not valid JSON: {e}")
        raise SystemExit(1)

    store = open_store(ctx)
    if not store.import_backup(data):
        print_err("Backup must be a JSON object")
        raise SystemExit(1)

    print_ok(f"Imported backup with {len(store.get_all_patients())} patients")
