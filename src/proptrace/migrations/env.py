"""Alembic environment for the trace record, bulk job and wallet tables.

Migrations resolve their database exactly as the stores do
(``PROPTRACE_DATABASE_URL``, then ``storage.database_url``, then the local
SQLite file), so ``alembic upgrade head`` always targets the database the
engine writes to.
"""

from __future__ import annotations

from logging.config import fileConfig
from typing import Any, Dict

from alembic import context
from sqlalchemy import engine_from_config, pool

from proptrace.store.sql import METADATA, _resolve_database_url

VERSION_TABLE = "proptrace_alembic_version"

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _include_object(obj: Any, name: str | None, type_: str, reflected: bool, compare_to: Any) -> bool:
    # Autogenerate only diffs tables the engine owns.
    if type_ == "table":
        return name in METADATA.tables
    return True


def _configure_options(url: str) -> Dict[str, Any]:
    return {
        "target_metadata": METADATA,
        "version_table": VERSION_TABLE,
        "include_object": _include_object,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline(url: str) -> None:
    """Emit SQL for the ledger schema without connecting."""

    context.configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_configure_options(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_options(url))
        with context.begin_transaction():
            context.run_migrations()


def main() -> None:
    url = _resolve_database_url()
    if context.is_offline_mode():
        run_migrations_offline(url)
    else:
        run_migrations_online(url)


main()
