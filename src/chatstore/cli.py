"""CLI for chatstore administration.

Options are read from a YAML file given with --config, otherwise from the
environment (CHATSTORE_DB, TURSO_URL, CHATSTORE_MAX_RESULTS, ...).
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone

import cyclopts

from .errors import SchemaVersionError, StoreConfigError
from .options import StoreOptions

app = cyclopts.App(
    name="chatstore",
    help="Storage layer administration for the chat service",
)

db_app = cyclopts.App(name="db", help="Schema management")
files_app = cyclopts.App(name="files", help="File upload maintenance")

app.command(db_app)
app.command(files_app)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def open_store(config: str | None, init: bool = False) -> StoreOptions:
    """Load options and point the database layer at them, or exit with error."""
    from . import db

    try:
        options = StoreOptions.load(config) if config else StoreOptions()
    except StoreConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    db.open_store(options, init=init)
    return options


@app.command
def config(*, config: str | None = None):
    """Show the effective store configuration."""
    options = open_store(config)
    print_json(options.to_dict())


# --- Schema Commands ---


@db_app.command
def init(*, reset: bool = False, config: str | None = None):
    """Create the schema, or drop and recreate it with --reset.

    --reset: Drop every table first. All data is lost.
    """
    from . import db

    options = open_store(config)
    if reset:
        db.reset_db()
    else:
        db.init_db()
    print(f"Schema version {db.get_schema_version()} ready at {options.resolved_path()}")


@db_app.command
def version(*, config: str | None = None):
    """Print the stored schema version and whether it matches this release."""
    from . import db

    open_store(config)
    try:
        current = db.check_schema_version()
    except SchemaVersionError as e:
        print(f"Schema version {e.actual} (expected {e.expected})")
        sys.exit(1)
    print(f"Schema version {current} (up to date)")


# --- File Commands ---


@files_app.command
def gc(*, older_than_hours: float = 24.0, limit: int = 0, config: str | None = None):
    """Delete upload records no message refers to and print their locations.

    --older-than-hours: Only uploads untouched for this long
    --limit: Maximum number of uploads to delete (0 = no limit)
    """
    from .files import file_delete_unused

    open_store(config)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
    locations = file_delete_unused(older_than=cutoff, limit=limit)
    print_json(locations)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
