# Overview: Ledger schema check; verifies the tables and columns the engine writes exist.

from __future__ import annotations

from sqlalchemy import inspect

from ..extensions import db


class SchemaError(Exception):
    """Raised when the database is missing ledger tables or columns."""

    def __init__(self, message: str, missing: list[str]):
        super().__init__(message)
        self.missing = missing


def missing_schema_objects() -> list[str]:
    """Return 'table' or 'table.column' entries the ORM expects but the database lacks."""
    inspector = inspect(db.engine)
    existing_tables = set(inspector.get_table_names())

    missing = []
    for table in db.metadata.sorted_tables:
        if table.name not in existing_tables:
            missing.append(table.name)
            continue
        columns = {col["name"] for col in inspector.get_columns(table.name)}
        missing.extend(f"{table.name}.{col.name}" for col in table.columns if col.name not in columns)
    return missing


def verify_schema() -> None:
    missing = missing_schema_objects()
    if missing:
        raise SchemaError(
            "Ledger schema is missing objects; run 'flask db upgrade' or 'flask system init'",
            missing,
        )
