from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping

import pendulum
import psycopg2.extensions
import psycopg2.extras as extras

from pg_bisync.deadline import NO_DEADLINE, Deadline
from pg_bisync.query_builder import PostgresQueryBuilder
from pg_bisync.TableMetadata import TableMetadata

LOG = logging.getLogger(__name__)

_BUILDER = PostgresQueryBuilder()

# ============================== Keys and versions ===============================

def pk_key(row: Mapping[str, Any], primary_key: Iterable[str]) -> str:
    """Stable string key of a row: each pk value JSON-encoded in pk order, joined by '|'."""
    return "|".join(json.dumps(row.get(col), default=str, sort_keys=True) for col in primary_key)


def to_epoch_ms(value: Any) -> int | None:
    """
    Milliseconds since the epoch, or None when the value is absent or not a timestamp.
    Naive datetimes (timestamp without time zone) are read as UTC.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, datetime):
            dt = pendulum.instance(value, tz="UTC")
        elif isinstance(value, date):
            dt = pendulum.datetime(value.year, value.month, value.day, tz="UTC")
        else:
            text = str(value).strip()
            if not text:
                return None
            parsed = pendulum.parse(text, tz="UTC")
            if not isinstance(parsed, datetime):
                if isinstance(parsed, date):
                    parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
                else:
                    return None
            dt = parsed
    except (ValueError, TypeError, OverflowError):
        return None
    return dt.int_timestamp * 1000 + dt.microsecond // 1000

# ============================== Version index ===============================

def build_version_index(
    conn,
    metadata: TableMetadata,
    schema: str = "public",
    deadline: Deadline = NO_DEADLINE,
) -> Dict[str, Any]:
    """
    Map pk_key -> version value for every row of the target table, or pk_key -> True
    when the table has no version column. Only pk (+ version) columns are read.
    """
    t0 = time.perf_counter()
    selected = list(metadata.primary_key)
    if metadata.version_column:
        selected.append(metadata.version_column)
    sql = _BUILDER.select_sql(schema, metadata.table_name, selected)

    index: Dict[str, Any] = {}
    with conn.cursor(cursor_factory=extras.RealDictCursor) as c:
        deadline.guard(c, f"version index {schema}.{metadata.table_name}")
        c.execute(sql, ())
        for row in c:
            index[pk_key(row, metadata.primary_key)] = (
                row[metadata.version_column] if metadata.version_column else True
            )
    LOG.info(
        "Version index for %s.%s: %d keys (version=%s) (%.3fs)",
        schema, metadata.table_name, len(index), metadata.version_column, time.perf_counter() - t0,
    )
    return index

# ============================== Row selection ===============================

def should_apply(row: Mapping[str, Any], version_index: Mapping[str, Any], metadata: TableMetadata) -> bool:
    key = pk_key(row, metadata.primary_key)
    if key not in version_index:
        return True
    if not metadata.version_column:
        return False

    source_version = to_epoch_ms(row.get(metadata.version_column))
    target_version = to_epoch_ms(version_index[key])
    if source_version is None:
        return False
    if target_version is None:
        return True
    return source_version > target_version


def select_rows(
    rows: Iterable[Mapping[str, Any]],
    version_index: Mapping[str, Any],
    metadata: TableMetadata,
    counter: Dict[str, int] | None = None,
) -> Iterator[Mapping[str, Any]]:
    """
    Lazily yield the source rows that must be written to the target.
    When given, counter['examined'] is incremented for every row seen.
    """
    for row in rows:
        if counter is not None:
            counter["examined"] = counter.get("examined", 0) + 1
        if should_apply(row, version_index, metadata):
            yield row


def stream_source_rows(
    conn,
    metadata: TableMetadata,
    schema: str = "public",
    fetch_size: int = 2_000,
    deadline: Deadline = NO_DEADLINE,
    column_types: Mapping[str, str] | None = None,
) -> Iterator[Dict[str, Any]]:
    """
    Read every common column of the source table through a server-side cursor,
    fetch_size rows per round trip. json/jsonb columns (by the source's
    column_types, default metadata.column_types) come back as JSON text. The
    cursor is closed and the read transaction committed when the generator is
    exhausted or closed.
    """
    with conn.cursor() as c:
        deadline.guard(c, f"read source {schema}.{metadata.table_name}")
    cur = conn.cursor(name=f"bisync_src_{uuid.uuid4().hex[:8]}", cursor_factory=extras.RealDictCursor)
    cur.itersize = fetch_size
    try:
        sql = _BUILDER.select_sql(schema, metadata.table_name, metadata.columns, column_types or metadata.column_types)
        cur.execute(sql, ())
        for row in cur:
            yield row
    finally:
        if conn.get_transaction_status() == psycopg2.extensions.TRANSACTION_STATUS_INERROR:
            conn.rollback()
        else:
            cur.close()
            conn.commit()

# ============================== Row ordering ===============================

def order_rows(table: str, rows: List[Mapping[str, Any]], self_references: Mapping[str, str]) -> List[Mapping[str, Any]]:
    """
    For a self-referencing table, rows without a self reference go first so a
    child never reaches the database before the parent it points at. Stable.
    """
    column = self_references.get(table)
    if not column:
        return rows
    ordered = sorted(rows, key=lambda r: r.get(column) is not None)
    LOG.info(
        "Ordered %d rows of %s by %s (%d roots first)",
        len(ordered), table, column, sum(1 for r in ordered if r.get(column) is None),
    )
    return ordered
