"""Migrate command: import legacy unencrypted data into the store."""

from dataclasses import asdict

import typer

from clinical_toolkit.cli._app import app
from clinical_toolkit.cli._common import open_store, setup_logging
from clinical_toolkit.cli._console import output_result, output_table, print_err, print_ok, print_warn
from clinical_toolkit.services.migration import LegacyMigrationImporter


@app.command("migrate", help="Migrate legacy unencrypted records into the encrypted store.")
def migrate_cmd(
    ctx: typer.Context,
    status: bool = typer.Option(False, "--status", help="Only report migration status"),
):
    """Run the legacy migration (or report its status)."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    store = open_store(ctx, run_migrations=not status)

    if status:
        importer = LegacyMigrationImporter(
            store, store.medium, target_patient_id=store.legacy_patient_id
        )
        rows = [
            {"source": source, **asdict(state)}
            for source, state in importer.status().items()
        ]
        output_table(rows, ctx=ctx, title="Legacy migration status")
        return

    result = store.last_migration
    if ctx.obj["json"]:
        output_result(asdict(result), ctx=ctx)
    for error in result.errors:
        print_warn(error)

    if not result.success:
        print_err("Legacy migration failed; legacy data was left in place")
        raise SystemExit(1)

    print_ok(f"Migrated {result.migrated_count} legacy records")
