from __future__ import annotations

import re
from uuid import UUID

from taxrouter.core.errors import MalformedInput


# Bare lowercase SQL identifier: nothing that needs quoting, nothing that can inject.
_SCHEMA_PREFIX_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_TABLE_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def is_valid_schema_prefix(value: str | None) -> bool:
    return bool(value) and _SCHEMA_PREFIX_RE.fullmatch(value) is not None


def require_schema_prefix(value: str | None) -> str:
    if not is_valid_schema_prefix(value):
        raise MalformedInput("schema prefix must be a lowercase bare SQL identifier")
    return value  # type: ignore[return-value]


def qualify(schema_prefix: str, table: str) -> str:
    # Every tenant table reference is built here so the prefix is checked once per statement.
    require_schema_prefix(schema_prefix)
    if not _TABLE_RE.fullmatch(table):
        raise MalformedInput(f"invalid table name: {table}")
    if table == "user":
        # "user" is a reserved word in Postgres.
        return f'{schema_prefix}."user"'
    return f"{schema_prefix}.{table}"


def require_uuid(value: str, *, field: str) -> str:
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError) as exc:
        raise MalformedInput(f"{field} must be a UUID") from exc
