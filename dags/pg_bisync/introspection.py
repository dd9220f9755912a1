from __future__ import annotations

import logging
import time
from typing import Iterable, List, Set, Tuple

from pg_bisync.deadline import NO_DEADLINE, Deadline
from pg_bisync.TableMetadata import TableMetadata, pick_version_column

LOG = logging.getLogger(__name__)

# ============================== Catalog queries ===============================

_TABLES_SQL = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = %s
      AND table_type = 'BASE TABLE'
"""

# format_type() keeps typmods (numeric(10,2), timestamp(3)) and quotes enum names
_COLUMNS_SQL = """
    SELECT
        c.column_name,
        format_type(a.atttypid, a.atttypmod) AS sql_type
    FROM information_schema.columns c
    JOIN pg_class t ON t.relname = c.table_name
    JOIN pg_namespace n ON n.oid = t.relnamespace AND n.nspname = c.table_schema
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attname = c.column_name
    WHERE c.table_schema = %s
      AND c.table_name = %s
      AND c.is_generated = 'NEVER'
    ORDER BY c.ordinal_position
"""

# Ordered by position inside the constraint, not by table column order
_PRIMARY_KEY_SQL = """
    SELECT a.attname AS column_name
    FROM pg_constraint c
    JOIN pg_class t ON t.oid = c.conrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(c.conkey)
    WHERE n.nspname = %s
      AND t.relname = %s
      AND c.contype = 'p'
    ORDER BY array_position(c.conkey, a.attnum)
"""

_FOREIGN_KEYS_SQL = """
    SELECT DISTINCT child.relname AS child_table, parent.relname AS parent_table
    FROM pg_constraint c
    JOIN pg_class child ON child.oid = c.conrelid
    JOIN pg_class parent ON parent.oid = c.confrelid
    JOIN pg_namespace cn ON cn.oid = child.relnamespace
    JOIN pg_namespace pn ON pn.oid = parent.relnamespace
    WHERE c.contype = 'f'
      AND cn.nspname = %s
      AND pn.nspname = %s
"""

# ============================== Introspection ===============================

def list_tables(conn, schema: str = "public", excluded: Iterable[str] = (), deadline: Deadline = NO_DEADLINE) -> Set[str]:
    t0 = time.perf_counter()
    excluded_set = set(excluded)
    with conn.cursor() as c:
        deadline.guard(c, f"list tables in {schema}")
        c.execute(_TABLES_SQL, (schema,))
        names = {r[0] for r in c.fetchall()}
    tables = names - excluded_set
    LOG.info(
        "Found %d base tables in schema %s (%d excluded) (%.3fs)",
        len(tables), schema, len(names) - len(tables), time.perf_counter() - t0,
    )
    return tables


def get_table_metadata(conn, table: str, schema: str = "public", deadline: Deadline = NO_DEADLINE) -> TableMetadata | None:
    """
    Columns (in ordinal order, generated columns excluded), their full SQL types and
    the ordered primary key of one table. Returns None when the table has no
    introspectable columns, which includes a table that does not exist.
    """
    t0 = time.perf_counter()
    with conn.cursor() as c:
        deadline.guard(c, f"introspect {schema}.{table}")
        c.execute(_COLUMNS_SQL, (schema, table))
        column_rows = c.fetchall()
        if not column_rows:
            LOG.warning("No introspectable columns for %s.%s", schema, table)
            return None
        c.execute(_PRIMARY_KEY_SQL, (schema, table))
        pk_rows = c.fetchall()

    columns = tuple(r[0] for r in column_rows)
    column_types = {r[0]: r[1] for r in column_rows}
    primary_key = tuple(r[0] for r in pk_rows)
    meta = TableMetadata(
        table_name=table,
        columns=columns,
        primary_key=primary_key,
        version_column=pick_version_column(columns),
        column_types=column_types,
    )
    LOG.info(
        "Metadata for %s.%s: %d columns, pk=%s, version=%s (%.3fs)",
        schema, table, len(columns), list(primary_key), meta.version_column, time.perf_counter() - t0,
    )
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Column types for %s.%s: %s", schema, table, column_types)
    return meta


def list_foreign_keys(conn, schema: str = "public", deadline: Deadline = NO_DEADLINE) -> List[Tuple[str, str]]:
    """(child_table, parent_table) pairs for every foreign key inside the schema."""
    with conn.cursor() as c:
        deadline.guard(c, f"list foreign keys in {schema}")
        c.execute(_FOREIGN_KEYS_SQL, (schema, schema))
        edges = [(r[0], r[1]) for r in c.fetchall()]
    LOG.info("Found %d foreign-key edges in schema %s", len(edges), schema)
    return edges
