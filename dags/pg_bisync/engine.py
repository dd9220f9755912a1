from __future__ import annotations

import logging
import time
from contextlib import closing
from typing import List

import pendulum

from pg_bisync.applier import BatchApplier
from pg_bisync.connections import mask_connection_url, pg_conn
from pg_bisync.deadline import Deadline, SyncDeadlineExceeded
from pg_bisync.introspection import get_table_metadata, list_foreign_keys, list_tables
from pg_bisync.reconcile import reconcile_metadata
from pg_bisync.selection import build_version_index, order_rows, select_rows, stream_source_rows
from pg_bisync.sequences import reconcile_sequences
from pg_bisync.SyncConfig import SyncConfig
from pg_bisync.SyncResult import (
    INCOMPATIBLE_PRIMARY_KEY_OR_COLUMNS,
    METADATA_UNAVAILABLE,
    MISSING_PRIMARY_KEY,
    BidirectionalSyncResult,
    DirectionSyncStats,
    FailedTable,
    SkippedTable,
    TableSyncStats,
)
from pg_bisync.table_order import order_by_priority, order_tables
from pg_bisync.TableMetadata import TableMetadata

LOG = logging.getLogger(__name__)


def _rollback_quietly(conn, label: str) -> None:
    try:
        conn.rollback()
    except Exception:
        LOG.warning("Rollback on %s failed", label, exc_info=True)

# ============================== Engine (single class) ===============================

class BidirectionalSyncEngine:
    """
    One convergence pass between a local and a peer Postgres database.

    Rows flow in both directions for every table the two sides share. Tables with
    a version column (updated_at, else created_at) resolve conflicts with
    last-write-wins; tables without one only receive rows they are missing.
    Deletes are never propagated.
    """

    def __init__(self, config: SyncConfig, logger: logging.Logger | None = None):
        self.config = config.validate()
        self.log = logger or logging.getLogger(__name__)
        self.applier = BatchApplier(schema=config.schema, batch_size=config.batch_size, logger=self.log)
        self.log.debug("BidirectionalSyncEngine initialized with logger=%r", self.log.name)

    # ------------------------ Entry points ------------------------

    def run(self) -> BidirectionalSyncResult:
        """Open both connections, run one pass, always close both connections."""
        cfg = self.config
        with pg_conn(cfg.local_url, "local", cfg.application_name) as local, \
                pg_conn(cfg.peer_url, "peer", cfg.application_name) as peer:
            return self.run_with_connections(local, peer)

    def run_with_connections(self, local, peer) -> BidirectionalSyncResult:
        cfg = self.config
        started = pendulum.now("UTC")
        t0 = time.perf_counter()
        deadline = Deadline(cfg.deadline_seconds)
        peer_label = mask_connection_url(cfg.peer_url)
        self.log.info("Bidirectional sync started: schema=%s peer=%s fail_fast=%s", cfg.schema, peer_label, cfg.fail_fast)

        local_tables = list_tables(local, cfg.schema, cfg.excluded_tables, deadline)
        peer_tables = list_tables(peer, cfg.schema, cfg.excluded_tables, deadline)
        common = local_tables & peer_tables
        only_local = sorted(local_tables - peer_tables)
        only_peer = sorted(peer_tables - local_tables)
        if only_local or only_peer:
            self.log.info("Tables not shared (ignored): local-only=%s peer-only=%s", only_local, only_peer)

        ordered = self.order_tables(common, local, peer, deadline)
        local.commit()
        peer.commit()
        self.log.info("Syncing %d common table(s): %s", len(ordered), ordered)

        skipped: List[SkippedTable] = []
        failed: List[FailedTable] = []
        stats: List[TableSyncStats] = []

        for table in ordered:
            try:
                outcome = self.sync_table(table, local, peer, deadline)
            except SyncDeadlineExceeded:
                raise
            except Exception as e:
                if cfg.fail_fast:
                    self.log.error("Sync of %s failed; aborting run (fail_fast)", table, exc_info=True)
                    raise
                self.log.error("Sync of %s failed; continuing with next table", table, exc_info=True)
                _rollback_quietly(local, "local")
                _rollback_quietly(peer, "peer")
                failed.append(FailedTable(table=table, error=f"{type(e).__name__}: {e}"))
                continue
            if isinstance(outcome, SkippedTable):
                skipped.append(outcome)
            else:
                stats.append(outcome)

        sequences = {
            "local": reconcile_sequences(local, cfg.schema, deadline, "local"),
            "peer": reconcile_sequences(peer, cfg.schema, deadline, "peer"),
        }

        finished = pendulum.now("UTC")
        result = BidirectionalSyncResult(
            started_at=started.isoformat(),
            finished_at=finished.isoformat(),
            duration_ms=int((finished - started).total_seconds() * 1000),
            peer=peer_label,
            skipped_tables=skipped,
            failed_tables=failed,
            tables=stats,
            sequences=sequences,
        )
        self.log.info("Bidirectional sync finished: totals=%s (%.3fs)", result.totals, time.perf_counter() - t0)
        if skipped:
            self.log.warning("Skipped tables: %s", [(s.table, s.reason) for s in skipped])
        if failed:
            self.log.warning("Failed tables: %s", [(f.table, f.error) for f in failed])
        return result

    # ------------------------ Table ordering ------------------------

    def order_tables(self, tables, local, peer, deadline: Deadline) -> List[str]:
        cfg = self.config
        if not cfg.use_foreign_key_order:
            return order_by_priority(tables, cfg.table_priority)
        edges = list_foreign_keys(local, cfg.schema, deadline) + list_foreign_keys(peer, cfg.schema, deadline)
        return order_tables(tables, cfg.table_priority, edges)

    # ------------------------ One table, both directions ------------------------

    def sync_table(self, table: str, local, peer, deadline: Deadline) -> TableSyncStats | SkippedTable:
        cfg = self.config
        t0 = time.perf_counter()
        local_meta = get_table_metadata(local, table, cfg.schema, deadline)
        peer_meta = get_table_metadata(peer, table, cfg.schema, deadline)
        local.commit()
        peer.commit()

        if local_meta is None or peer_meta is None:
            self.log.warning("Skipping %s: metadata unavailable (local=%s peer=%s)", table, bool(local_meta), bool(peer_meta))
            return SkippedTable(table, METADATA_UNAVAILABLE)
        if not local_meta.primary_key and not peer_meta.primary_key:
            self.log.warning("Skipping %s: no primary key on either side (local=%s peer=%s)", table,
                             list(local_meta.primary_key), list(peer_meta.primary_key))
            return SkippedTable(table, MISSING_PRIMARY_KEY)

        metadata = reconcile_metadata(local_meta, peer_meta)
        if metadata is None:
            self.log.warning("Skipping %s: incompatible primary key or columns", table)
            return SkippedTable(table, INCOMPATIBLE_PRIMARY_KEY_OR_COLUMNS)

        local_to_peer = self.sync_direction(
            local, peer, metadata, peer_meta.column_types, deadline, "local->peer", local_meta.column_types,
        )
        peer_to_local = self.sync_direction(
            peer, local, metadata, local_meta.column_types, deadline, "peer->local", peer_meta.column_types,
        )

        self.log.info(
            "✅ %s synced: local->peer %d/%d, peer->local %d/%d (mode=%s, %.3fs)",
            table, local_to_peer.applied, local_to_peer.examined,
            peer_to_local.applied, peer_to_local.examined, metadata.mode, time.perf_counter() - t0,
        )
        return TableSyncStats(table=table, local_to_peer=local_to_peer, peer_to_local=peer_to_local)

    # ------------------------ One direction ------------------------

    def sync_direction(
        self,
        source,
        target,
        metadata: TableMetadata,
        target_types,
        deadline: Deadline,
        label: str = "",
        source_types=None,
    ) -> DirectionSyncStats:
        cfg = self.config
        mode = metadata.mode
        index = build_version_index(target, metadata, cfg.schema, deadline)
        target.commit()

        counter = {"examined": 0}
        with closing(stream_source_rows(
            source, metadata, cfg.schema, cfg.fetch_size, deadline, column_types=source_types,
        )) as rows:
            selected = select_rows(rows, index, metadata, counter)
            if metadata.table_name in cfg.self_references:
                # ordering needs the whole selection; only done for self-referencing tables
                selected = order_rows(metadata.table_name, list(selected), cfg.self_references)
            applied = self.applier.apply(target, metadata, target_types, selected, mode, deadline)

        self.log.info(
            "%s %s: examined=%d applied=%d mode=%s",
            metadata.table_name, label, counter["examined"], applied, mode,
        )
        return DirectionSyncStats(examined=counter["examined"], applied=applied, mode=mode)


def run_bidirectional_sync(config: SyncConfig, logger: logging.Logger | None = None) -> BidirectionalSyncResult:
    return BidirectionalSyncEngine(config, logger).run()
