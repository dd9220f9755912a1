from __future__ import annotations

import logging
from typing import List, Mapping, Sequence

from pg_bisync.TableMetadata import INSERT_MISSING, LAST_WRITE_WINS

LOG = logging.getLogger(__name__)

JSON_TYPES = ("json", "jsonb")

# ============================== Postgres dialect ===============================

class PostgresQueryBuilder:
    """
    Every piece of generated SQL text goes through here: identifier quoting,
    explicitly cast placeholders and the upsert statement itself.

    The statements are written for psycopg2 (pyformat placeholders) and for
    extras.execute_values, which expands the single 'VALUES %s' with one
    rendered template per row.
    """

    placeholder_token = "%s"

    def quote_ident(self, ident: str) -> str:
        # '%' is doubled because the text is passed through pyformat interpolation
        q = '"' + ident.replace('"', '""').replace("%", "%%") + '"'
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Quoted identifier: raw=%r quoted=%r", ident, q)
        return q

    def quote_table(self, schema: str, table: str) -> str:
        return f"{self.quote_ident(schema)}.{self.quote_ident(table)}"

    def column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote_ident(c) for c in columns)

    def placeholder(self, column: str, sql_type: str | None) -> str:
        if not sql_type:
            LOG.warning("No SQL type known for column %r; binding without cast", column)
            return self.placeholder_token
        return f"{self.placeholder_token}::{sql_type.replace('%', '%%')}"

    def row_template(self, columns: Sequence[str], column_types: Mapping[str, str]) -> str:
        return "(" + ", ".join(self.placeholder(c, column_types.get(c)) for c in columns) + ")"

    def select_expr(self, column: str, sql_type: str | None = None) -> str:
        q = self.quote_ident(column)
        if sql_type in JSON_TYPES:
            # read as text: psycopg2 would decode it and lose the JSON null vs SQL NULL difference
            return f"{q}::text AS {q}"
        return q

    def select_sql(
        self,
        schema: str,
        table: str,
        columns: Sequence[str],
        column_types: Mapping[str, str] | None = None,
    ) -> str:
        types = column_types or {}
        select_list = ", ".join(self.select_expr(c, types.get(c)) for c in columns)
        return f"SELECT {select_list} FROM {self.quote_table(schema, table)}"

    def upsert_sql(
        self,
        schema: str,
        table: str,
        columns: Sequence[str],
        primary_key: Sequence[str],
        mode: str,
    ) -> str:
        if mode not in (LAST_WRITE_WINS, INSERT_MISSING):
            raise ValueError(f"Unknown sync mode: {mode}")
        pk_list = self.column_list(primary_key)
        head = f"INSERT INTO {self.quote_table(schema, table)} ({self.column_list(columns)}) VALUES %s"

        update_columns: List[str] = [c for c in columns if c not in primary_key]
        if mode == INSERT_MISSING or not update_columns:
            sql = f"{head} ON CONFLICT ({pk_list}) DO NOTHING"
        else:
            set_list = ", ".join(
                f"{self.quote_ident(c)} = EXCLUDED.{self.quote_ident(c)}" for c in update_columns
            )
            sql = f"{head} ON CONFLICT ({pk_list}) DO UPDATE SET {set_list}"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Generated UPSERT SQL (%s): %s", mode, sql)
        return sql

    def setval_sql(self, schema: str, table: str, column: str) -> str:
        return (
            "SELECT setval(%s, GREATEST(COALESCE((SELECT MAX("
            f"{self.quote_ident(column)}) FROM {self.quote_table(schema, table)}), 0) + 1, 1), false)"
        )
