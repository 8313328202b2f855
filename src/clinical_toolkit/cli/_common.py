"""Shared CLI utilities: logging, settings and store construction."""

import logging

import typer
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.logging import RichHandler

from clinical_toolkit.cli._console import console
from clinical_toolkit.services.clinical_store import ClinicalDataStore
from clinical_toolkit.services.compliance.config import ClinicalStorageSettings
from clinical_toolkit.services.compliance.crypto import CryptoError
from clinical_toolkit.services.store_factory import ClinicalStoreFactory

logger = logging.getLogger(__name__)


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging with Rich handler."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def load_settings(ctx: typer.Context, run_migrations: bool = None) -> ClinicalStorageSettings:
    """Build store settings from .env, the environment and global CLI options.

    Raises:
        SystemExit: If the settings are invalid.
    """
    load_dotenv()

    try:
        settings = ClinicalStorageSettings.from_env()
        updates = {}
        if ctx.obj.get("storage_dir") is not None:
            updates["storage_dir"] = ctx.obj["storage_dir"]
        if ctx.obj.get("key_path") is not None:
            updates["encryption_key_path"] = ctx.obj["key_path"]
        if run_migrations is not None:
            updates["run_migrations"] = run_migrations
        if updates:
            settings = ClinicalStorageSettings(**{**settings.model_dump(), **updates})
        settings.validate_for_medium()
    except (ValidationError, ValueError) as e:
        logger.error(f"Invalid storage settings: {e}")
        raise SystemExit(1)

    return settings


def open_store(ctx: typer.Context, run_migrations: bool = None) -> ClinicalDataStore:
    """Open the configured clinical store.

    Raises:
        SystemExit: If the settings are invalid or the key cannot be loaded.
    """
    settings = load_settings(ctx, run_migrations=run_migrations)
    try:
        return ClinicalStoreFactory.create_store(settings)
    except CryptoError as e:
        logger.error(f"Cannot open clinical store: {e}")
        raise SystemExit(1)
