"""Validation helpers used across the project."""

from __future__ import annotations

import re
from typing import Final

# Table and column names are interpolated into SQL, so only plain identifiers
# are accepted. Names starting with "__" are reserved for lodestore's own tables.
IDENTIFIER_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")

# "module.sub:function" paths accepted for transaction methods and worker middleware
IMPORT_PATH_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*(:[A-Za-z_][A-Za-z0-9_]*)?$"
)


def is_valid_identifier(name: str) -> bool:
    """
    Checks if a string can be used as a table or column name.
    - Starts with a letter or underscore
    - At most 64 characters
    - Contains only A-Z, a-z, 0-9, and underscores
    - Does not start with the reserved "__" prefix
    """
    if not isinstance(name, str):
        return False
    return bool(IDENTIFIER_PATTERN.match(name)) and not name.startswith("__")


def quote_identifier(name: str) -> str:
    """Return *name* double-quoted for SQL, after validating it."""
    if not is_valid_identifier(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def is_valid_import_path(path: str) -> bool:
    return isinstance(path, str) and bool(IMPORT_PATH_PATTERN.match(path))
