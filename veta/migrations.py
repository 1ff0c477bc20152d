"""
Versioned schema migrations.

The applied version is kept in the ``_veta_meta`` table under the
``schema_version`` key. Every migration must be safe to apply to a database
that already has the change (for example one created by ``create_all`` from the
current models), because version 1 builds tables from today's models.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List

from sqlalchemy import Column, Table, Text, inspect, select, text
from sqlalchemy.engine import Connection, Engine

from veta.db import Base
from veta.models import Note, Tag, note_tags

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

meta_table = Table(
    "_veta_meta",
    Base.metadata,
    Column("key", Text, primary_key=True),
    Column("value", Text, nullable=False),
)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _initial_schema(conn: Connection) -> None:
    Base.metadata.create_all(bind=conn, tables=[Note.__table__, Tag.__table__, note_tags])


def _add_references(conn: Connection) -> None:
    columns = {column["name"] for column in inspect(conn).get_columns("notes")}
    if "references" in columns:
        return
    conn.execute(text("ALTER TABLE notes ADD COLUMN \"references\" TEXT NOT NULL DEFAULT '[]'"))


MIGRATIONS: List[Migration] = [
    Migration(version=1, name="initial_schema", apply=_initial_schema),
    Migration(version=2, name="add_references", apply=_add_references),
]


# PUBLIC_INTERFACE
def pending_migrations(current_version: int) -> List[Migration]:
    """Migrations newer than current_version, oldest first."""
    return [m for m in MIGRATIONS if m.version > current_version]


def _current_version(conn: Connection) -> int:
    raw = conn.execute(select(meta_table.c.value).where(meta_table.c.key == "schema_version")).scalar()
    try:
        return int(raw) if raw is not None else 0
    except ValueError:
        logger.warning("Ignoring unparseable schema_version %r", raw)
        return 0


# PUBLIC_INTERFACE
def current_version(engine: Engine) -> int:
    """Return the schema version recorded in the database, 0 for a fresh one."""
    with engine.connect() as conn:
        if not inspect(conn).has_table(meta_table.name):
            return 0
        return _current_version(conn)


# PUBLIC_INTERFACE
def run_migrations(engine: Engine) -> int:
    """
    Apply pending migrations in a single transaction and return the resulting version.

    A failing migration rolls the whole run back and re-raises.
    """
    with engine.begin() as conn:
        meta_table.create(bind=conn, checkfirst=True)
        version = _current_version(conn)
        if version >= SCHEMA_VERSION:
            return version

        for migration in pending_migrations(version):
            logger.info("Applying migration %s (%s)", migration.version, migration.name)
            migration.apply(conn)

        conn.execute(meta_table.delete().where(meta_table.c.key == "schema_version"))
        conn.execute(meta_table.insert().values(key="schema_version", value=str(SCHEMA_VERSION)))

    logger.info("Database schema now at version %s", SCHEMA_VERSION)
    return SCHEMA_VERSION
