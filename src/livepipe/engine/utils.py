"""Shared utility functions for the livepipe engine layer."""

from __future__ import annotations

import re

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Validate that a value is a safe SQL identifier.

    Only allows alphanumeric characters and underscores, starting with a letter
    or underscore. Raises ValueError if the identifier is unsafe.

    Dataset names, schemas and constraint names all pass through here before
    they are interpolated into SQL.
    """
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r} (must match [A-Za-z_][A-Za-z0-9_]*)")
    return value


def quote_literal(value: str) -> str:
    """Render a string as a single-quoted SQL literal."""
    return "'" + value.replace("'", "''") + "'"


def qualified(schema: str, name: str) -> str:
    return f'"{schema}"."{name}"'
