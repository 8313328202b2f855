"""Stats and clear commands."""

import typer

from clinical_toolkit.cli._app import app
from clinical_toolkit.cli._common import open_store, setup_logging
from clinical_toolkit.cli._console import output_result, output_table, print_err, print_ok
from clinical_toolkit.services.clinical_store import Collection


@app.command("stats", help="Show record counts and storage usage.")
def stats_cmd(ctx: typer.Context):
    """Show per-collection record counts and medium usage against the quota."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])
    store = open_store(ctx)

    counts = {c.value: len(store.list(c)) for c in Collection}
    usage = store.get_storage_stats()

    if ctx.obj["json"]:
        output_result({"records": counts, "storage": usage}, ctx=ctx)
        return

    output_table(
        [{"collection": name, "records": count} for name, count in counts.items()],
        ctx=ctx,
        title="Clinical records",
    )
    output_table(
        [
            {
                "used (bytes)": usage["used"],
                "total (bytes)": usage["total"],
                "used (%)": f"{usage['percentage']:.2f}",
            }
        ],
        ctx=ctx,
        title="Storage usage",
    )


@app.command("clear", help="Delete all clinical data from the store.")
def clear_cmd(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", help="Confirm deletion of all data"),
):
    """Delete every record, the config and onboarding flags."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    if not yes:
        print_err("Refusing to clear the store without --yes")
        raise SystemExit(1)

    store = open_store(ctx, run_migrations=False)
    store.clear_all_data()
    print_ok("Cleared all clinical data")
