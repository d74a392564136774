"""Raw source listing and reading.

A source is a file or a directory of files. Each file is one unit; its
fingerprint is a hash of the content. Units are staged into a temp table that
the query sees as ``_source``; every row carries a ``_metadata`` struct with
the file path and name it came from.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Protocol

import duckdb

from livepipe.engine.utils import quote_literal

from .models import SourceDescriptor, SourceUnit

logger = logging.getLogger("livepipe.sources")

_CHUNK = 1 << 20

# read_files option -> DuckDB read_csv parameter
_CSV_OPTIONS = {
    "header": "header",
    "delimiter": "delim",
    "sep": "delim",
    "quote": "quote",
    "escape": "escape",
    "dateformat": "dateformat",
    "timestampformat": "timestampformat",
}


class SourceLister(Protocol):
    def list_units(self, path: str) -> list[SourceUnit]: ...


def _fingerprint(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]


class FileSourceLister:
    """Lists the files under a local path as source units.

    Hidden files and files starting with ``_`` (e.g. ``_SUCCESS`` markers) are
    ignored. Raises FileNotFoundError when the path does not exist.
    """

    def list_units(self, path: str) -> list[SourceUnit]:
        root = Path(path)
        if not root.exists():
            raise FileNotFoundError(f"Source path does not exist: {path}")
        if root.is_file():
            files = [root]
        else:
            files = sorted(
                p for p in root.rglob("*")
                if p.is_file() and not p.name.startswith((".", "_"))
            )
        return [SourceUnit(unit_id=str(p), fingerprint=_fingerprint(p)) for p in files]


def _render_value(value: str) -> str:
    if value.lower() in ("true", "false"):
        return value.lower()
    return quote_literal(value)


def reader_sql(source: SourceDescriptor, file_path: str) -> str:
    """DuckDB table function call that reads one unit of the source."""
    path = quote_literal(file_path)
    if source.format == "parquet":
        return f"read_parquet({path})"
    if source.format == "json":
        args = [path]
        if source.read_mode == "DROPMALFORMED":
            args.append("ignore_errors = true")
        return f"read_json_auto({', '.join(args)})"

    args = [path]
    for key, value in source.options:
        if key in _CSV_OPTIONS:
            args.append(f"{_CSV_OPTIONS[key]} = {_render_value(value)}")
    if source.read_mode == "PERMISSIVE":
        args.append("null_padding = true")
    elif source.read_mode == "DROPMALFORMED":
        args.append("ignore_errors = true")
    return f"read_csv_auto({', '.join(args)})"


def stage_units(
    conn: duckdb.DuckDBPyConnection,
    source: SourceDescriptor,
    units: list[SourceUnit],
    table: str,
) -> int:
    """Read the given units into a temp table. Returns the staged row count."""
    if not units:
        raise ValueError(f"No input files to read at {source.path}")
    selects = []
    for unit in units:
        file_name = Path(unit.unit_id).name
        metadata = (
            f"struct_pack(file_path := {quote_literal(unit.unit_id)}, "
            f"file_name := {quote_literal(file_name)})"
        )
        selects.append(f"SELECT *, {metadata} AS _metadata FROM {reader_sql(source, unit.unit_id)}")
    conn.execute(f"CREATE OR REPLACE TEMP TABLE {table} AS\n" + "\nUNION ALL BY NAME\n".join(selects))
    row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    count = row[0] if row else 0
    logger.debug("Staged %d unit(s), %d row(s) from %s", len(units), count, source.path)
    return count
