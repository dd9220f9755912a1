from __future__ import annotations

import logging
import time
from typing import Any, Iterable, List, Mapping, Sequence, Tuple

import psycopg2.extras as extras

from pg_bisync.deadline import NO_DEADLINE, Deadline
from pg_bisync.query_builder import JSON_TYPES, PostgresQueryBuilder
from pg_bisync.TableMetadata import TableMetadata

LOG = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

# ============================== Value adaptation ===============================

def _adapt_value(value: Any, sql_type: str | None) -> Any:
    """
    json/jsonb values arrive as JSON text (see select_expr) and go out unchanged for
    the ::jsonb cast to parse. Any already-decoded value (dict, list, number, bool)
    is JSON-encoded; None stays SQL NULL, JSON null is the text 'null'.
    """
    if value is None or sql_type not in JSON_TYPES or isinstance(value, str):
        return value
    return extras.Json(value)


def row_values(row: Mapping[str, Any], columns: Sequence[str], column_types: Mapping[str, str]) -> Tuple[Any, ...]:
    return tuple(_adapt_value(row.get(c), column_types.get(c)) for c in columns)


def _batches(rows: Iterable[Mapping[str, Any]], size: int) -> Iterable[List[Mapping[str, Any]]]:
    page: List[Mapping[str, Any]] = []
    for row in rows:
        page.append(row)
        if len(page) >= size:
            yield page
            page = []
    if page:
        yield page

# ============================== Batch applier ===============================

class BatchApplier:
    """
    Writes rows into the target table with multi-row INSERT ... ON CONFLICT
    statements, batch_size rows per statement, one commit per statement.

    Every placeholder is cast to the *target's* column type, so values coming from
    a similar-but-not-identical schema are coerced by the target database.
    """

    def __init__(
        self,
        schema: str = "public",
        batch_size: int = DEFAULT_BATCH_SIZE,
        builder: PostgresQueryBuilder | None = None,
        logger: logging.Logger | None = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.schema = schema
        self.batch_size = batch_size
        self.builder = builder or PostgresQueryBuilder()
        self.log = logger or LOG

    def apply(
        self,
        conn,
        metadata: TableMetadata,
        target_types: Mapping[str, str],
        rows: Iterable[Mapping[str, Any]],
        mode: str,
        deadline: Deadline = NO_DEADLINE,
    ) -> int:
        """Returns the number of rows sent to the target."""
        columns = list(metadata.columns)
        sql = self.builder.upsert_sql(self.schema, metadata.table_name, columns, metadata.primary_key, mode)
        template = self.builder.row_template(columns, target_types)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Row template for %s: %s", metadata.table_name, template)

        applied = 0
        batches = 0
        for page in _batches(rows, self.batch_size):
            t_batch = time.perf_counter()
            values = [row_values(r, columns, target_types) for r in page]
            with conn.cursor() as d:
                deadline.guard(d, f"apply batch {batches + 1} to {self.schema}.{metadata.table_name}")
                extras.execute_values(d, sql, values, template=template, page_size=len(values))
            conn.commit()
            applied += len(page)
            batches += 1
            self.log.info(
                "Batch committed on %s.%s (mode=%s, batches=%d, rows=%d, took %.3fs)",
                self.schema, metadata.table_name, mode, batches, applied, time.perf_counter() - t_batch,
            )
        return applied


def apply_rows(
    conn,
    metadata: TableMetadata,
    target_types: Mapping[str, str],
    rows: Iterable[Mapping[str, Any]],
    mode: str,
    schema: str = "public",
    batch_size: int = DEFAULT_BATCH_SIZE,
    deadline: Deadline = NO_DEADLINE,
) -> int:
    return BatchApplier(schema=schema, batch_size=batch_size).apply(conn, metadata, target_types, rows, mode, deadline)
