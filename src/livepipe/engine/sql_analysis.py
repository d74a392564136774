"""SQL analysis for dataset definitions.

Splits definition files into statements, parses the ``CREATE OR REFRESH``
header (kind, name, constraints, comment), lifts ``read_files(...)`` calls out
of the query into a source descriptor, and extracts ``LIVE.<name>`` references
with sqlglot. The output is a plain record per dataset, the same shape the YAML
definition format uses, so the registry has a single validation path.
"""

from __future__ import annotations

import re
from typing import Any

import sqlglot
from sqlglot import exp

from livepipe.errors import DefinitionError, MalformedConstraintError

# Reserved relation name the raw input of a dataset is bound to
SOURCE_RELATION = "_source"

# Namespace that marks a reference to another dataset
LIVE_NAMESPACE = "live"

CREATE_PATTERN = re.compile(
    r"^\s*CREATE\s+(?:OR\s+REFRESH\s+|OR\s+REPLACE\s+)?"
    r"(STREAMING\s+(?:LIVE\s+)?TABLE|LIVE\s+TABLE|MATERIALIZED\s+VIEW|TABLE)\s+"
    r"(?:LIVE\.)?([A-Za-z_]\w*)",
    re.IGNORECASE,
)
COMMENT_PATTERN = re.compile(r"COMMENT\s+([\"'])(.*?)\1", re.IGNORECASE | re.DOTALL)
SKIPPED_CLAUSE_PATTERN = re.compile(r"(TBLPROPERTIES|PARTITIONED\s+BY|CLUSTER\s+BY)\s*\(", re.IGNORECASE)
AS_PATTERN = re.compile(r"AS\b", re.IGNORECASE)
CONSTRAINT_PATTERN = re.compile(r"CONSTRAINT\s+([A-Za-z_]\w*)\s+EXPECT\s*\(", re.IGNORECASE)
VIOLATION_PATTERN = re.compile(r"ON\s+VIOLATION\s+(DROP\s+ROW|FAIL\s+UPDATE)\s*$", re.IGNORECASE)
READ_FILES_PATTERN = re.compile(r"(STREAM\s*\(\s*)?read_files\s*\(", re.IGNORECASE)
STREAM_REF_PATTERN = re.compile(r"STREAM\s*\(\s*(LIVE\s*\.\s*[A-Za-z_]\w*)\s*\)", re.IGNORECASE)
LIVE_REF_PATTERN = re.compile(r"\bLIVE\s*\.\s*([A-Za-z_]\w*)", re.IGNORECASE)
SOURCE_REF_PATTERN = re.compile(rf"\b{SOURCE_RELATION}\b")

_EXTENSION_FORMATS = {".csv": "csv", ".json": "json", ".jsonl": "json", ".ndjson": "json", ".parquet": "parquet"}


# --- Lexical helpers ---


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments that are not inside string literals."""
    out: list[str] = []
    i, n = 0, len(sql)
    quote: str | None = None
    while i < n:
        ch = sql[i]
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            i = n if end == -1 else end
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end == -1 else end + 2
            out.append(" ")
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def split_statements(sql: str) -> list[str]:
    """Split SQL text on top-level semicolons. Comments are removed first."""
    text = strip_comments(sql)
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == ";":
            stmt = "".join(current).strip()
            if stmt:
                statements.append(stmt)
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def matching_paren(text: str, open_idx: int) -> int:
    """Index of the parenthesis closing the one at ``open_idx``."""
    depth = 0
    quote: str | None = None
    for i in range(open_idx, len(text)):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    raise DefinitionError(f"Unbalanced parenthesis near: {text[open_idx:open_idx + 40]!r}")


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on ``sep`` outside of parentheses and string literals."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1].replace(value[0] * 2, value[0])
    return value


# --- Definition parsing ---


def parse_constraints(block: str, origin: str = "") -> list[dict[str, str]]:
    """Parse the parenthesized block after the dataset name.

    Column declarations in the same block are ignored; only
    ``CONSTRAINT name EXPECT (predicate) [ON VIOLATION ...]`` items are kept.
    """
    constraints: list[dict[str, str]] = []
    for item in split_top_level(block):
        if not item.upper().startswith("CONSTRAINT"):
            continue
        m = CONSTRAINT_PATTERN.match(item)
        if not m:
            raise MalformedConstraintError(f"Cannot parse constraint: {item!r}", origin)
        close = matching_paren(item, m.end() - 1)
        predicate = item[m.end():close].strip()
        trailer = item[close + 1:].strip()
        policy = "warn"
        if trailer:
            vm = VIOLATION_PATTERN.match(trailer)
            if not vm:
                raise MalformedConstraintError(
                    f"Unknown violation clause for constraint {m.group(1)!r}: {trailer!r}", origin
                )
            policy = "drop" if vm.group(1).upper().startswith("DROP") else "fail"
        constraints.append({"name": m.group(1), "predicate": predicate, "policy": policy})
    return constraints


def _parse_read_files_args(args: str, origin: str) -> dict[str, Any]:
    parts = split_top_level(args)
    if not parts or parts[0][:1] not in ("'", '"'):
        raise DefinitionError("read_files() needs a quoted path as its first argument", origin)
    path = _unquote(parts[0])
    options: dict[str, str] = {}
    for part in parts[1:]:
        m = re.match(r"([A-Za-z_]\w*)\s*(?:=>|:=)\s*(.+)$", part, re.DOTALL)
        if not m:
            raise DefinitionError(f"Cannot parse read_files option: {part!r}", origin)
        options[m.group(1).lower()] = _unquote(m.group(2))

    suffix = "." + path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    fmt = options.pop("format", _EXTENSION_FORMATS.get(suffix, "csv")).lower()
    mode = options.pop("mode", "PERMISSIVE").upper()
    return {"path": path, "format": fmt, "read_mode": mode, "options": options}


def extract_source(query: str, origin: str = "") -> tuple[str, dict[str, Any] | None]:
    """Replace a ``[STREAM(]read_files(...)[)]`` call with the source relation.

    Returns the rewritten query and the source record, or the query unchanged
    and ``None`` when the dataset reads no raw files.
    """
    matches = list(READ_FILES_PATTERN.finditer(query))
    if not matches:
        return query, None
    if len(matches) > 1:
        raise DefinitionError("A dataset may read from at most one read_files() source", origin)
    m = matches[0]
    open_idx = m.end() - 1
    close = matching_paren(query, open_idx)
    source = _parse_read_files_args(query[open_idx + 1:close], origin)
    end = close + 1
    if m.group(1):
        # Consume the closing paren of the STREAM( wrapper
        rest = query[end:]
        stripped = rest.lstrip()
        if not stripped.startswith(")"):
            raise DefinitionError("Unclosed STREAM( around read_files()", origin)
        end += len(rest) - len(stripped) + 1
    return query[:m.start()] + SOURCE_RELATION + query[end:], source


def normalize_query(query: str) -> str:
    """Drop ``STREAM()`` wrappers around dataset references."""
    return STREAM_REF_PATTERN.sub(lambda m: re.sub(r"\s+", "", m.group(1)), query).strip()


def parse_definition(statement: str, origin: str = "") -> dict[str, Any]:
    """Parse one ``CREATE OR REFRESH ... AS <query>`` statement into a record."""
    m = CREATE_PATTERN.match(statement)
    if not m:
        raise DefinitionError(f"Expected a CREATE ... TABLE statement, got: {statement[:60]!r}", origin)
    kind = "incremental" if m.group(1).upper().startswith("STREAMING") else "recomputed"
    name = m.group(2)
    constraints: list[dict[str, str]] = []
    comment = ""
    pos = m.end()

    while True:
        while pos < len(statement) and statement[pos].isspace():
            pos += 1
        if pos >= len(statement):
            raise DefinitionError(f"Definition of {name!r} has no AS <query>", origin)
        if statement[pos] == "(":
            close = matching_paren(statement, pos)
            constraints.extend(parse_constraints(statement[pos + 1:close], origin))
            pos = close + 1
            continue
        cm = COMMENT_PATTERN.match(statement, pos)
        if cm:
            comment = cm.group(2)
            pos = cm.end()
            continue
        sm = SKIPPED_CLAUSE_PATTERN.match(statement, pos)
        if sm:
            pos = matching_paren(statement, sm.end() - 1) + 1
            continue
        am = AS_PATTERN.match(statement, pos)
        if am:
            query = statement[am.end():]
            break
        raise DefinitionError(
            f"Unexpected text in definition of {name!r}: {statement[pos:pos + 40]!r}", origin
        )

    query, source = extract_source(query, origin)
    record: dict[str, Any] = {
        "name": name,
        "kind": kind,
        "query": normalize_query(query),
        "constraints": constraints,
        "comment": comment,
    }
    if source:
        record["source"] = source
    return record


def parse_sql_definitions(sql: str, origin: str = "") -> list[dict[str, Any]]:
    """Parse every definition statement in a SQL file."""
    return [parse_definition(stmt, origin) for stmt in split_statements(sql)]


# --- Reference extraction ---


def extract_references(query: str, *, exclude: str | None = None) -> list[str]:
    """Extract ``LIVE.<name>`` dataset references using the sqlglot AST.

    CTE names are skipped. Falls back to a regex scan when sqlglot cannot
    parse the query.

    Returns:
        Sorted list of unique, lower-cased dataset names.
    """
    try:
        parsed = sqlglot.parse_one(query, read="duckdb")
    except sqlglot.errors.SqlglotError:
        return _fallback_extract_references(query, exclude=exclude)
    if parsed is None:
        return []

    cte_names: set[str] = set()
    for cte in parsed.find_all(exp.CTE):
        if cte.alias:
            cte_names.add(cte.alias.lower())

    refs: set[str] = set()
    for table in parsed.find_all(exp.Table):
        schema = (table.db or "").lower()
        name = (table.name or "").lower()
        if schema != LIVE_NAMESPACE or not name or name in cte_names:
            continue
        if exclude and name == exclude.lower():
            continue
        refs.add(name)
    return sorted(refs)


def _fallback_extract_references(query: str, *, exclude: str | None = None) -> list[str]:
    """Regex fallback for extracting references when sqlglot fails."""
    clean = strip_comments(query)
    refs = {m.group(1).lower() for m in LIVE_REF_PATTERN.finditer(clean)}
    if exclude:
        refs.discard(exclude.lower())
    return sorted(refs)


def _parse_query(query: str) -> exp.Expression | None:
    """Parse a query, returning None when sqlglot cannot handle it."""
    try:
        return sqlglot.parse_one(query, read="duckdb")
    except sqlglot.errors.SqlglotError:
        return None


def _is_source_table(table: exp.Table) -> bool:
    return not table.db and (table.name or "").lower() == SOURCE_RELATION


def reads_source(query: str) -> bool:
    parsed = _parse_query(query)
    if parsed is None:
        return bool(SOURCE_REF_PATTERN.search(strip_comments(query)))
    return any(_is_source_table(table) for table in parsed.find_all(exp.Table))


def validate_predicate(predicate: str) -> None:
    """Raise ValueError if the predicate is not a parseable SQL expression."""
    if not predicate.strip():
        raise ValueError("empty predicate")
    try:
        parsed = sqlglot.parse_one(predicate, read="duckdb")
    except sqlglot.errors.SqlglotError as e:
        raise ValueError(str(e)) from e
    if isinstance(parsed, (exp.Select, exp.Union)):
        raise ValueError("predicate must be an expression, not a query")


def bind_query(query: str, bindings: dict[str, str]) -> str:
    """Substitute dataset references and the source relation with bound relations.

    ``bindings`` maps lower-cased dataset names (and ``_source``) to the SQL
    relation that holds their rows for this evaluation. Only table references
    in the syntax tree are replaced; string literals and CTE names are left
    alone. A bound relation keeps the original alias, or the dataset name when
    there was none, so qualified columns like ``a.id`` still resolve.
    """
    parsed = _parse_query(query)
    if parsed is None:
        return _fallback_bind_query(query, bindings)

    cte_names = {cte.alias.lower() for cte in parsed.find_all(exp.CTE) if cte.alias}

    def _bind(node: exp.Expression) -> exp.Expression:
        if not isinstance(node, exp.Table):
            return node
        name = (node.name or "").lower()
        if (node.db or "").lower() == LIVE_NAMESPACE and name and name not in cte_names:
            if name not in bindings:
                raise KeyError(f"No input bound for LIVE.{name}")
            key = name
        elif _is_source_table(node) and SOURCE_RELATION in bindings:
            key = SOURCE_RELATION
        else:
            return node
        bound = exp.to_table(bindings[key], dialect="duckdb")
        alias = node.args.get("alias")
        bound.set("alias", alias.copy() if alias else exp.TableAlias(this=exp.to_identifier(node.name)))
        return bound

    return parsed.transform(_bind).sql(dialect="duckdb")


def _fallback_bind_query(query: str, bindings: dict[str, str]) -> str:
    """Regex substitution for queries sqlglot cannot parse."""

    def _ref(m: re.Match) -> str:
        name = m.group(1).lower()
        if name not in bindings:
            raise KeyError(f"No input bound for LIVE.{name}")
        return bindings[name]

    bound = LIVE_REF_PATTERN.sub(_ref, query)
    if SOURCE_RELATION in bindings:
        bound = SOURCE_REF_PATTERN.sub(lambda _: bindings[SOURCE_RELATION], bound)
    return bound
