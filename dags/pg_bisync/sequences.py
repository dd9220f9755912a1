from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from pg_bisync.deadline import NO_DEADLINE, Deadline
from pg_bisync.query_builder import PostgresQueryBuilder

LOG = logging.getLogger(__name__)

# serial and identity columns both resolve through pg_get_serial_sequence
_SEQUENCE_COLUMNS_SQL = """
    SELECT
        c.relname AS table_name,
        a.attname AS column_name,
        pg_get_serial_sequence(format('%%I.%%I', n.nspname, c.relname), a.attname) AS sequence_name
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_attribute a ON a.attrelid = c.oid
    WHERE n.nspname = %s
      AND c.relkind = 'r'
      AND a.attnum > 0
      AND NOT a.attisdropped
      AND pg_get_serial_sequence(format('%%I.%%I', n.nspname, c.relname), a.attname) IS NOT NULL
    ORDER BY c.relname, a.attnum
"""


def list_sequence_columns(conn, schema: str = "public", deadline: Deadline = NO_DEADLINE) -> List[Dict[str, str]]:
    with conn.cursor() as c:
        deadline.guard(c, f"list sequences in {schema}")
        c.execute(_SEQUENCE_COLUMNS_SQL, (schema,))
        rows = c.fetchall()
    return [{"table": r[0], "column": r[1], "sequence": r[2]} for r in rows]


def reconcile_sequences(
    conn,
    schema: str = "public",
    deadline: Deadline = NO_DEADLINE,
    label: str = "database",
) -> List[Dict[str, Any]]:
    """
    Move every sequence-backed column's sequence past MAX(column) so the next
    nextval() never collides with a key that arrived through sync.
    """
    t0 = time.perf_counter()
    builder = PostgresQueryBuilder()
    seq_columns = list_sequence_columns(conn, schema, deadline)
    LOG.info("Reconciling %d sequence(s) on %s", len(seq_columns), label)

    done: List[Dict[str, Any]] = []
    with conn.cursor() as c:
        for item in seq_columns:
            deadline.guard(c, f"setval {item['sequence']} on {label}")
            c.execute(builder.setval_sql(schema, item["table"], item["column"]), (item["sequence"],))
            next_value = c.fetchone()[0]
            done.append({**item, "next_value": next_value})
            if LOG.isEnabledFor(logging.DEBUG):
                LOG.debug("setval(%s) -> %s on %s", item["sequence"], next_value, label)
    conn.commit()
    LOG.info("Sequences reconciled on %s: %d (%.3fs)", label, len(done), time.perf_counter() - t0)
    return done
