from __future__ import annotations

import logging
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import Table, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.core.db import Base
from portal.services.permission_store import BackendError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "full_name", "email")


class UnknownSourceTableError(LookupError):
    pass


class RecordNotFoundError(LookupError):
    pass


def _source_table(source_table: str) -> Table:
    if source_table not in settings.EMAIL_SOURCE_TABLES:
        raise UnknownSourceTableError(f"'{source_table}' is not an allowed template source")
    table = Base.metadata.tables.get(source_table)
    if table is None:
        raise UnknownSourceTableError(f"'{source_table}' is not a known table")
    return table


def _profile_columns(table: Table) -> dict[str, str]:
    """Map ``<name>_id`` columns that reference users to their nested key."""

    users = Base.metadata.tables["users"]
    nested: dict[str, str] = {}
    for column in table.columns:
        if not column.name.endswith("_id"):
            continue
        if any(fk.column.table is users for fk in column.foreign_keys):
            nested[column.name] = column.name[: -len("_id")]
    return nested


def _load_profile(db: Session, user_id: Any) -> dict[str, Any] | None:
    if user_id is None:
        return None
    users = Base.metadata.tables["users"]
    row = db.execute(
        select(users.c.first_name, users.c.last_name, users.c.email).where(users.c.id == user_id)
    ).mappings().first()
    if row is None:
        return None
    first_name = row["first_name"] or ""
    last_name = row["last_name"] or ""
    return {
        "first_name": first_name,
        "last_name": last_name,
        "full_name": f"{first_name} {last_name}".strip(),
        "email": row["email"],
    }


def fetch_record(db: Session, source_table: str, record_id: Any) -> dict[str, Any]:
    """Load one row as a JSON-compatible mapping usable as template context."""

    table = _source_table(source_table)
    primary_key = list(table.primary_key.columns)[0]
    try:
        row = db.execute(select(table).where(primary_key == record_id)).mappings().first()
        if row is None:
            raise RecordNotFoundError(f"{source_table} record {record_id} not found")
        record: dict[str, Any] = dict(row)
        for column_name, key in _profile_columns(table).items():
            record[key] = _load_profile(db, record.get(column_name))
    except SQLAlchemyError as exc:
        logger.warning("record_fetch_failed", extra={"source_table": source_table, "record_id": record_id})
        raise BackendError(f"Unable to load {source_table} record") from exc
    return jsonable_encoder(record)


def list_source_variables(source_table: str) -> list[str]:
    table = _source_table(source_table)
    variables = [column.name for column in table.columns]
    for key in _profile_columns(table).values():
        variables.extend(f"{key}.{field}" for field in PROFILE_FIELDS)
    return variables
