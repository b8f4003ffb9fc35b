"""SQLite database client wrapper with CRUD operations and transactional units.

A single connection is cached per thread, event loop and database path. Every
statement runs under that connection's write lock unless the calling task is
already inside ``transaction()``, so a transaction opened by one coroutine is
never interleaved with statements issued by another.
"""

import asyncio
import json
import logging
import re
import sqlite3
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from choreledger.core.config import settings


logger = logging.getLogger(__name__)


# Columns stored as JSON text and decoded on read
JSON_FIELDS = {"photo_urls", "recurring_config", "data", "metadata"}


class DatabaseError(RuntimeError):
    """Raised when a database operation fails."""


class RecordNotFoundError(KeyError):
    """Raised when a record does not exist."""


class DuplicateRecordError(DatabaseError):
    """Raised when an insert or update violates a uniqueness constraint."""


def _validate_collection_name(collection: str) -> None:
    """Validate that a collection name contains only alphanumeric characters and underscores."""
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", collection):
        msg = f"Invalid collection name: {collection}. Only alphanumeric characters and underscores are allowed."
        raise ValueError(msg)


def _validate_field_name(field: str) -> None:
    if not re.match(r"^[a-zA-Z_][a-zA-Z0-9_]*$", field):
        msg = f"Invalid field name: {field}"
        raise ValueError(msg)


def sanitize_param(value: str | int | float | bool | None) -> str:
    """Escape a value for safe embedding in SQL queries via json.dumps."""
    return json.dumps(str(value))[1:-1]


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the storage format for timestamps)."""
    return datetime.now(UTC).isoformat()


def _convert_record(record: dict[str, Any]) -> dict[str, Any]:
    """Convert integer ID and foreign key fields to strings and decode JSON columns."""
    converted = record.copy()
    for key, value in converted.items():
        if isinstance(value, int) and not isinstance(value, bool) and (key == "id" or key.endswith("_id")):
            converted[key] = str(value)
        elif key in JSON_FIELDS and isinstance(value, str):
            try:
                converted[key] = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Undecodable JSON column", extra={"field": key})
    return converted


def _encode_value(val: Any) -> Any:
    if isinstance(val, datetime):
        return val.isoformat()
    if isinstance(val, dict | list):
        return json.dumps(val)
    return val


def get_db_path(db_path: str | None = None) -> Path:
    """Get the resolved SQLite database file path."""
    path_str = db_path or settings.sqlite_db_path
    return Path(path_str).resolve()


def _parse_value(value: str, *, is_like: bool = False) -> str | int | float | bool | None:
    """Parse a string value to the appropriate Python type for SQLite."""
    if is_like:
        return value.replace("%", "\\%").replace("_", "\\_")

    if value.isdigit():
        return int(value)
    if value.replace(".", "", 1).isdigit():
        return float(value)

    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False

    return value


def _get_sql_operator(op: str) -> str:
    """Map filter operator to SQL operator."""
    op_map = {
        "=": "=",
        "!=": "!=",
        ">": ">",
        "<": "<",
        ">=": ">=",
        "<=": "<=",
        "~": "LIKE",
    }
    sql_op = op_map.get(op)
    if not sql_op:
        msg = f"Unsupported operator: {op}"
        raise ValueError(msg)
    return sql_op


def _parse_single_comparison(comparison: str) -> tuple[str, str | int | float | bool | None]:
    """Parse a single comparison expression into a SQL condition and parameter."""
    match = re.match(
        r"""(\w+)\s*(=|!=|>=|<=|>|<|~)\s*(['"])([^'"]*)\3""",
        comparison,
    )
    if not match:
        msg = f"Invalid filter syntax: {comparison}"
        raise ValueError(msg)

    field = match.group(1)
    op = match.group(2)
    raw_value = match.group(4)

    sql_op = _get_sql_operator(op)
    is_like = sql_op == "LIKE"
    value = _parse_value(raw_value, is_like=is_like)

    if is_like:
        return f"{field} LIKE ? ESCAPE '\\'", f"%{value}%"
    return f"{field} {sql_op} ?", value


def _parse_or_group(or_group: str) -> tuple[str, list[str | int | float | bool | None]]:
    """Parse a parenthesized OR group into a SQL condition and parameters."""
    inner = or_group[1:-1]
    or_parts = [p.strip() for p in inner.split("||")]
    or_conditions = []
    or_params = []

    for part in or_parts:
        cond, value = _parse_single_comparison(part)
        or_conditions.append(cond)
        or_params.append(value)

    return f"({' OR '.join(or_conditions)})", or_params


def _split_and_conditions(filter_query: str) -> list[str]:
    """Split filter query by && while preserving parenthesized groups."""
    parts = []
    current = ""
    paren_depth = 0

    for char in filter_query:
        if char == "(":
            paren_depth += 1
        elif char == ")":
            paren_depth -= 1

        current += char

        if paren_depth == 0 and current.endswith("&&"):
            parts.append(current[:-2].strip())
            current = ""

    if current.strip():
        parts.append(current.strip())

    return parts


def parse_filter(filter_query: str) -> tuple[str, list[str | int | float | bool | None]]:
    """Parse filter syntax into a SQL WHERE clause and parameter list.

    Syntax: ``field = "value" && (a = "1" || a = "2")``. Supported operators
    are ``= != > < >= <= ~`` (``~`` is a substring match).
    """
    if not filter_query:
        return "", []

    parts = _split_and_conditions(filter_query)
    conditions = []
    params: list[str | int | float | bool | None] = []

    for raw_part in parts:
        part = raw_part.strip()

        if part.startswith("(") and part.endswith(")"):
            cond, cond_params = _parse_or_group(part)
            conditions.append(cond)
            params.extend(cond_params)
        else:
            cond, value = _parse_single_comparison(part)
            conditions.append(cond)
            params.append(value)

    return " AND ".join(conditions), params


def build_order_by(sort: str) -> str:
    """Translate a sort string into a safe ORDER BY clause.

    Accepts comma-separated terms, each either ``column [ASC|DESC]`` or
    ``+column`` / ``-column``. Invalid specs fall back to ``id ASC``.
    """
    if not sort:
        return "id ASC"

    terms = []
    for raw_term in sort.split(","):
        term = raw_term.strip()
        if term.startswith(("+", "-")):
            direction = "DESC" if term[0] == "-" else "ASC"
            term = f"{term[1:]} {direction}"
        match = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)\s*(ASC|DESC)?$", term, re.IGNORECASE)
        if not match:
            logger.warning("Invalid sort parameter, using default", extra={"sort": sort})
            return "id ASC"
        terms.append(f"{match.group(1)} {(match.group(2) or 'ASC').upper()}")
    return ", ".join(terms)


_db_connections: dict[tuple[int, int, str], aiosqlite.Connection] = {}
_write_locks: dict[tuple[int, int, str], asyncio.Lock] = {}
_db_lock = asyncio.Lock()
_in_transaction: ContextVar[bool] = ContextVar("choreledger_in_transaction", default=False)


def _cache_key(db_path: str | None) -> tuple[int, int, str]:
    loop = asyncio.get_running_loop()
    return (threading.get_ident(), id(loop), str(get_db_path(db_path)))


async def get_connection(*, db_path: str | None = None) -> aiosqlite.Connection:
    """Get or create a cached connection for the current thread, loop, and db path."""
    cache_key = _cache_key(db_path)

    if cache_key in _db_connections:
        return _db_connections[cache_key]

    async with _db_lock:
        if cache_key in _db_connections:
            return _db_connections[cache_key]

        path = get_db_path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly by transaction()
        conn = await aiosqlite.connect(str(path), isolation_level=None)
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute("PRAGMA journal_mode = WAL")
        await conn.execute("PRAGMA busy_timeout = 5000")

        _db_connections[cache_key] = conn
        _write_locks[cache_key] = asyncio.Lock()

        logger.info("Created new SQLite connection", extra={"db_path": str(path)})
        return conn


async def close_connection(*, db_path: str | None = None) -> None:
    """Close the cached SQLite connection for the current thread, loop, and db path."""
    cache_key = _cache_key(db_path)

    if cache_key not in _db_connections:
        return

    async with _db_lock:
        conn = _db_connections.pop(cache_key, None)
        _write_locks.pop(cache_key, None)
        if conn is not None:
            try:
                await conn.close()
                logger.info("Closed SQLite connection", extra={"db_path": cache_key[2]})
            except sqlite3.Error as e:
                logger.warning("Error closing SQLite connection", extra={"error": str(e)})


@asynccontextmanager
async def _session() -> AsyncIterator[aiosqlite.Connection]:
    """Yield the connection, holding its lock unless already inside transaction()."""
    conn = await get_connection()
    if _in_transaction.get():
        yield conn
        return

    async with _write_locks[_cache_key(None)]:
        yield conn


@asynccontextmanager
async def transaction() -> AsyncIterator[None]:
    """Run the enclosed statements as one atomic unit (``BEGIN IMMEDIATE``).

    Nested use joins the outer transaction. Any exception rolls the whole unit
    back and is re-raised.
    """
    if _in_transaction.get():
        yield
        return

    conn = await get_connection()
    async with _write_locks[_cache_key(None)]:
        await conn.execute("BEGIN IMMEDIATE")
        token = _in_transaction.set(True)
        try:
            yield
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        else:
            await conn.execute("COMMIT")
        finally:
            _in_transaction.reset(token)


def in_transaction() -> bool:
    """True when the calling task is inside transaction()."""
    return _in_transaction.get()


async def init_db(*, db_path: str | None = None) -> None:
    """Initialize the database schema by delegating to schema.init_db()."""
    from choreledger.core import schema

    await schema.init_db(db_path=db_path)


def _raise_for_integrity(e: sqlite3.IntegrityError, collection: str) -> None:
    if "UNIQUE constraint failed" in str(e):
        msg = f"Duplicate record in {collection}: {e}"
        raise DuplicateRecordError(msg) from e
    msg = f"Constraint violation in {collection}: {e}"
    raise DatabaseError(msg) from e


async def _fetch_by_id(conn: aiosqlite.Connection, collection: str, record_id: str) -> dict[str, Any]:
    query = f"SELECT * FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
    cursor = await conn.execute(query, (int(record_id),))
    row = await cursor.fetchone()

    if row is None:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)

    columns = [description[0] for description in cursor.description]
    return _convert_record(dict(zip(columns, row, strict=True)))


async def create_record(*, collection: str, data: dict[str, Any]) -> dict[str, Any]:
    """Insert a new record and return it with its assigned id."""
    _validate_collection_name(collection)
    stamp = now_iso()
    payload = {"created": stamp, "updated": stamp, **data}

    columns = list(payload.keys())
    for column in columns:
        _validate_field_name(column)
    columns_str = ", ".join(columns)
    placeholders_str = ", ".join("?" for _ in columns)
    values = [_encode_value(payload[key]) for key in columns]

    query = f"INSERT INTO {collection} ({columns_str}) VALUES ({placeholders_str})"  # noqa: S608 - collection is validated
    try:
        async with _session() as conn:
            cursor = await conn.execute(query, values)
            result = await _fetch_by_id(conn, collection, str(cursor.lastrowid))
    except sqlite3.IntegrityError as e:
        _raise_for_integrity(e, collection)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e):
            msg = f"Table '{collection}' does not exist. Call init_db() first."
            logger.error("Table not found", extra={"collection": collection})
            raise DatabaseError(msg) from e
        logger.error("create_record_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to create record in {collection}: {e}"
        raise DatabaseError(msg) from e

    logger.debug("Created record", extra={"collection": collection, "record_id": result["id"]})
    return result


async def get_record(*, collection: str, record_id: str) -> dict[str, Any]:
    """Fetch a single record by ID, raising RecordNotFoundError if not found."""
    _validate_collection_name(collection)
    try:
        async with _session() as conn:
            return await _fetch_by_id(conn, collection, record_id)
    except ValueError as e:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg) from e
    except sqlite3.Error as e:
        logger.error("get_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to get record from {collection}: {e}"
        raise DatabaseError(msg) from e


async def update_record(
    *,
    collection: str,
    record_id: str,
    data: dict[str, Any],
    filter_query: str = "",
) -> dict[str, Any] | None:
    """Update a record by ID and return the updated record.

    When ``filter_query`` is given the update is conditional (compare-and-set):
    it only applies if the row still matches, and ``None`` is returned when it
    does not. Without a filter a missing row raises RecordNotFoundError.
    """
    if not data:
        msg = "Empty update payload"
        raise ValueError(msg)

    _validate_collection_name(collection)
    payload = {**data, "updated": now_iso()}
    for key in payload:
        _validate_field_name(key)

    set_clause = ", ".join(f"{key} = ?" for key in payload)
    values: list[Any] = [_encode_value(val) for val in payload.values()]
    values.append(int(record_id))

    where_clause = "id = ?"
    if filter_query:
        extra_clause, extra_params = parse_filter(filter_query)
        where_clause = f"{where_clause} AND {extra_clause}"
        values.extend(extra_params)

    query = f"UPDATE {collection} SET {set_clause} WHERE {where_clause}"  # noqa: S608 - collection is validated
    try:
        async with _session() as conn:
            cursor = await conn.execute(query, values)
            if cursor.rowcount == 0:
                if filter_query:
                    return None
                msg = f"Record not found in {collection}: {record_id}"
                raise RecordNotFoundError(msg)
            result = await _fetch_by_id(conn, collection, record_id)
    except sqlite3.IntegrityError as e:
        _raise_for_integrity(e, collection)
    except sqlite3.Error as e:
        logger.error("update_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to update record in {collection}: {e}"
        raise DatabaseError(msg) from e

    logger.debug("Updated record", extra={"collection": collection, "record_id": record_id})
    return result


async def update_records(*, collection: str, data: dict[str, Any], filter_query: str) -> int:
    """Update every record matching the filter and return the affected row count."""
    if not data:
        msg = "Empty update payload"
        raise ValueError(msg)
    if not filter_query:
        msg = "Bulk update requires a filter"
        raise ValueError(msg)

    _validate_collection_name(collection)
    payload = {**data, "updated": now_iso()}
    for key in payload:
        _validate_field_name(key)

    where_clause, params = parse_filter(filter_query)
    set_clause = ", ".join(f"{key} = ?" for key in payload)
    values = [_encode_value(val) for val in payload.values()] + params

    query = f"UPDATE {collection} SET {set_clause} WHERE {where_clause}"  # noqa: S608 - collection is validated
    try:
        async with _session() as conn:
            cursor = await conn.execute(query, values)
            return cursor.rowcount
    except sqlite3.IntegrityError as e:
        _raise_for_integrity(e, collection)
    except sqlite3.Error as e:
        logger.error("update_records_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to update records in {collection}: {e}"
        raise DatabaseError(msg) from e
    return 0


async def increment_field(
    *,
    collection: str,
    record_id: str,
    field: str,
    max_field: str | None = None,
    filter_query: str = "",
) -> bool:
    """Atomically add one to ``field``, guarded by ``field < max_field`` and the filter.

    Returns True if the row was incremented, False if the guard rejected it.
    """
    _validate_collection_name(collection)
    _validate_field_name(field)

    conditions = ["id = ?"]
    params: list[Any] = [now_iso(), int(record_id)]
    if max_field:
        _validate_field_name(max_field)
        conditions.append(f"{field} < {max_field}")
    if filter_query:
        extra_clause, extra_params = parse_filter(filter_query)
        conditions.append(extra_clause)
        params.extend(extra_params)

    query = (
        f"UPDATE {collection} SET {field} = {field} + 1, updated = ? "  # noqa: S608 - names are validated
        f"WHERE {' AND '.join(conditions)}"
    )
    try:
        async with _session() as conn:
            cursor = await conn.execute(query, params)
    except sqlite3.IntegrityError as e:
        _raise_for_integrity(e, collection)
    except sqlite3.Error as e:
        logger.error("increment_field_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to increment {field} in {collection}: {e}"
        raise DatabaseError(msg) from e

    return cursor.rowcount == 1


async def delete_record(*, collection: str, record_id: str) -> None:
    """Delete a record by ID, raising RecordNotFoundError if not found."""
    _validate_collection_name(collection)

    query = f"DELETE FROM {collection} WHERE id = ?"  # noqa: S608 - collection is validated
    try:
        async with _session() as conn:
            cursor = await conn.execute(query, (int(record_id),))
    except sqlite3.IntegrityError as e:
        _raise_for_integrity(e, collection)
    except sqlite3.Error as e:
        logger.error("delete_record_failed", extra={"collection": collection, "record_id": record_id, "error": str(e)})
        msg = f"Failed to delete record from {collection}: {e}"
        raise DatabaseError(msg) from e

    if cursor.rowcount == 0:
        msg = f"Record not found in {collection}: {record_id}"
        raise RecordNotFoundError(msg)

    logger.debug("Deleted record", extra={"collection": collection, "record_id": record_id})


async def list_records(
    *,
    collection: str,
    page: int = 1,
    per_page: int = 50,
    filter_query: str = "",
    sort: str = "",
) -> list[dict[str, Any]]:
    """List records with optional filtering, sorting, and pagination."""
    _validate_collection_name(collection)

    where_clause = ""
    params: list[Any] = []
    if filter_query:
        where_clause, params = parse_filter(filter_query)
        where_clause = f"WHERE {where_clause}"

    order_by = build_order_by(sort)
    offset = (page - 1) * per_page

    query = f"SELECT * FROM {collection} {where_clause} ORDER BY {order_by} LIMIT ? OFFSET ?"  # noqa: S608 - collection is validated
    params.extend([per_page, offset])

    try:
        async with _session() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
    except sqlite3.Error as e:
        logger.error("list_records_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to list records from {collection}: {e}"
        raise DatabaseError(msg) from e

    columns = [description[0] for description in cursor.description]
    return [_convert_record(dict(zip(columns, row, strict=True))) for row in rows]


async def get_first_record(*, collection: str, filter_query: str, sort: str = "") -> dict[str, Any] | None:
    """Return the first record matching the filter (in ``sort`` order), or None."""
    records = await list_records(collection=collection, filter_query=filter_query, sort=sort, per_page=1)
    return records[0] if records else None


async def count_records(*, collection: str, filter_query: str = "") -> int:
    """Count records matching the filter."""
    _validate_collection_name(collection)

    where_clause, params = parse_filter(filter_query)
    query = f"SELECT COUNT(*) FROM {collection}"  # noqa: S608 - collection is validated
    if where_clause:
        query = f"{query} WHERE {where_clause}"

    try:
        async with _session() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
    except sqlite3.Error as e:
        logger.error("count_records_failed", extra={"collection": collection, "error": str(e)})
        msg = f"Failed to count records in {collection}: {e}"
        raise DatabaseError(msg) from e

    return int(row[0]) if row else 0
