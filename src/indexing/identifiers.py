"""SQL identifier validation for user-supplied sink table names.

Table names come from job config, so they are never interpolated into SQL without passing
validate_table_name() first. Values are always bound as query parameters.
"""

import re

from src.indexing.errors import ConfigurationError

# Unquoted PostgreSQL identifier, limited to NAMEDATALEN - 1 bytes
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


def validate_identifier(name: str) -> str:
    if not IDENTIFIER_PATTERN.fullmatch(name):
        raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
    return name


def quote_identifier(name: str) -> str:
    return f'"{validate_identifier(name)}"'


def validate_table_name(table_name: object) -> str:
    """Validate a table name, optionally schema-qualified (`schema.table`).

    Raises:
        ConfigurationError: if the name is missing or not a plain identifier
    """
    if not isinstance(table_name, str) or not table_name:
        raise ConfigurationError("Indexing job config is missing tableName")

    parts = table_name.split(".")
    if len(parts) > 2:
        raise ConfigurationError(f"Invalid table name: {table_name!r}")
    for part in parts:
        if not IDENTIFIER_PATTERN.fullmatch(part):
            raise ConfigurationError(f"Invalid table name: {table_name!r}")
    return table_name


def quote_table_name(table_name: object) -> str:
    """Validate and double-quote a (possibly schema-qualified) table name."""
    return ".".join(f'"{part}"' for part in validate_table_name(table_name).split("."))
