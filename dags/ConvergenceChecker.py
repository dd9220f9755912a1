import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import psycopg2
from psycopg2 import sql

from pg_bisync.connections import pg_conn
from pg_bisync.introspection import get_table_metadata
from pg_bisync.reconcile import reconcile_metadata
from pg_bisync.SyncConfig import SyncConfig
from pg_bisync.TableMetadata import LAST_WRITE_WINS

logger = logging.getLogger(__name__)

# ----------------------------- JSON/XCom helper -----------------------------
def _json_sanitize(val: Any) -> Any:
    """Ensure value is JSON-serializable (safe for Airflow XCom via SDK API)."""
    return json.loads(json.dumps(val, default=str))

_EMPTY_MD5 = "d41d8cd98f00b204e9800998ecf8427e"

# ============================== ConvergenceChecker ===============================

class ConvergenceChecker:
    """
    Compare the local and peer copy of synced tables after a pass.

    Only the columns and primary key both sides share are compared, ordered by
    primary key: row count first, then a whole-table md5, then per-column md5s
    to name the columns that still differ.
    """

    def __init__(self, schema: str = "public"):
        self.schema = schema
        self.mismatched_data: Dict[str, List[str]] = {}
        self.is_consistent = True

    # ---------- Counting / hashing ----------
    def get_row_count(self, cursor, table: str) -> int:
        q = sql.SQL("SELECT COUNT(*) FROM {sch}.{tbl}").format(
            sch=sql.Identifier(self.schema),
            tbl=sql.Identifier(table),
        )
        cursor.execute(q)
        row = cursor.fetchone()
        return int(row[0]) if row else 0

    def set_timezone(self, cursor, tz: str = "UTC") -> None:
        cursor.execute(sql.SQL("SET TIME ZONE {}").format(sql.Literal(tz)))

    def _concat_text_exprs(self, columns: Sequence[str]) -> sql.Composed:
        parts = [
            sql.SQL("COALESCE({}::text, 'NULL')").format(sql.Identifier(c))
            for c in columns
        ]
        return sql.SQL(" || '||' || ").join(parts)

    def generate_table_hash(self, cursor, table: str, columns: Sequence[str],
                            order_by_cols: Sequence[str]) -> str:
        q = sql.SQL(
            "SELECT md5(string_agg(md5({concat_cols}), '' ORDER BY {ob})) FROM {sch}.{tbl}"
        ).format(
            concat_cols=self._concat_text_exprs(columns),
            ob=sql.SQL(", ").join(sql.Identifier(c) for c in order_by_cols),
            sch=sql.Identifier(self.schema),
            tbl=sql.Identifier(table),
        )
        cursor.execute(q)
        row = cursor.fetchone()
        return row[0] if row and row[0] else _EMPTY_MD5

    def generate_column_hash(self, cursor, table: str, column_to_hash: str,
                             order_by_cols: Sequence[str]) -> str:
        q = sql.SQL(
            "SELECT md5(string_agg(COALESCE({col}::text, 'NULL'), '' ORDER BY {ob})) FROM {sch}.{tbl}"
        ).format(
            col=sql.Identifier(column_to_hash),
            ob=sql.SQL(", ").join(sql.Identifier(c) for c in order_by_cols),
            sch=sql.Identifier(self.schema),
            tbl=sql.Identifier(table),
        )
        cursor.execute(q)
        row = cursor.fetchone()
        return row[0] if row and row[0] else _EMPTY_MD5

    # ---------- One table ----------
    def compare_table(self, local_conn, peer_conn, table: str) -> List[str]:
        local_meta = get_table_metadata(local_conn, table, self.schema)
        peer_meta = get_table_metadata(peer_conn, table, self.schema)
        if local_meta is None or peer_meta is None:
            return ["Table missing in one database"]
        meta = reconcile_metadata(local_meta, peer_meta)
        if meta is None:
            return ["Primary key differs between databases"]

        columns = list(meta.columns)
        order_by_cols = list(meta.primary_key)
        with local_conn.cursor() as main_cur, peer_conn.cursor() as peer_cur:
            self.set_timezone(main_cur)
            self.set_timezone(peer_cur)
            local_cnt = self.get_row_count(main_cur, table)
            peer_cnt = self.get_row_count(peer_cur, table)
            logger.info("Row counts for %s -> local: %s, peer: %s", table, local_cnt, peer_cnt)
            if local_cnt != peer_cnt:
                return [f"Row count mismatch (local={local_cnt}, peer={peer_cnt})"]

            local_hash = self.generate_table_hash(main_cur, table, columns, order_by_cols)
            peer_hash = self.generate_table_hash(peer_cur, table, columns, order_by_cols)
            if local_hash == peer_hash:
                logger.info("✅ %s is consistent.", table)
                return []

            logger.error("❌ MISMATCH at table level for %s. Checking column hashes ...", table)
            mismatches = [
                col for col in columns
                if self.generate_column_hash(main_cur, table, col, order_by_cols)
                != self.generate_column_hash(peer_cur, table, col, order_by_cols)
            ]
            return mismatches or ["Unknown mismatch despite equal counts"]

    # ---------- Orchestration ----------
    def run_comparison(self, local_conn, peer_conn, tables: Iterable[str]) -> Dict[str, Any]:
        """
        Returns {"mismatched_data": {table: [issues...]}, "is_consistent": bool}.
        A query error on one table is reported as an issue of that table.
        """
        self.mismatched_data = {}
        for table in tables:
            try:
                issues = self.compare_table(local_conn, peer_conn, table)
            except psycopg2.Error as e:
                logger.error("Error comparing %s: %s", table, e)
                issues = [f"ERROR: {e}"]
            finally:
                # read-only: end the transaction (and SET TIME ZONE) either way
                local_conn.rollback()
                peer_conn.rollback()
            self.mismatched_data[table] = issues
        self.is_consistent = not any(self.mismatched_data.values())
        return _json_sanitize({
            "mismatched_data": self.mismatched_data,
            "is_consistent": self.is_consistent,
        })

# =====================================================================================
# Helper: run ConvergenceChecker for the tables of one sync result
# =====================================================================================

def tables_to_verify(result: Dict[str, Any]) -> List[str]:
    """
    Synced tables expected to be identical after a pass (a BidirectionalSyncResult.to_dict()
    payload). insert-missing tables keep each side's copy of a shared key, so they are left out.
    """
    tables = [t["table"] for t in result.get("tables", []) or []
              if (t.get("local_to_peer") or {}).get("mode") == LAST_WRITE_WINS]
    left_out = len(result.get("tables", []) or []) - len(tables)
    if left_out:
        logger.info("Not verifying %d insert-missing table(s)", left_out)
    return tables

def run_convergence_check_callable(config: SyncConfig, tables: Iterable[str]) -> Dict[str, Any]:
    with pg_conn(config.local_url, "local", config.application_name) as local, \
            pg_conn(config.peer_url, "peer", config.application_name) as peer:
        return ConvergenceChecker(config.schema).run_comparison(local, peer, list(tables))

def summarize_results_callable(payload: Dict[str, Any]) -> str:
    """
    Accepts either:
      A) {"mismatched_data": {table: [details...]}, "is_consistent": bool, ...}
      B) {table: [details...]}
    Returns a one-line summary string.
    """
    payload = _json_sanitize(payload)
    mismatched = payload.get("mismatched_data", payload)
    if not isinstance(mismatched, dict):
        raise ValueError("Invalid mismatched_data payload (expected dict)")

    inconsistent: Dict[str, List[str]] = {}
    for tbl, details in mismatched.items():
        if isinstance(details, (list, tuple, set)):
            vals = [str(d) for d in details if d not in (None, "", False, True)]
        elif details not in (None, "", False, True):
            vals = [str(details)]
        else:
            vals = []
        if vals:
            inconsistent[str(tbl)] = sorted(set(vals))

    if not inconsistent:
        logger.info("🎉 All checked tables are consistent!")
        return "0 table(s) mismatched"

    logger.warning("🚨 Found inconsistencies in %d table(s):", len(inconsistent))
    for table, details in sorted(inconsistent.items()):
        logger.warning("  - Table: '%s'  (%d issue%s)", table, len(details), "" if len(details) == 1 else "s")
        for d in details:
            logger.warning("    • %s", d)
    return f"{len(inconsistent)} table(s) mismatched"
