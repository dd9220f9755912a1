from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

# ============================== Skip / failure reasons ===============================

METADATA_UNAVAILABLE = "metadata-unavailable"
INCOMPATIBLE_PRIMARY_KEY_OR_COLUMNS = "incompatible-primary-key-or-columns"
MISSING_PRIMARY_KEY = "missing-primary-key"
SKIP_REASONS = (METADATA_UNAVAILABLE, INCOMPATIBLE_PRIMARY_KEY_OR_COLUMNS, MISSING_PRIMARY_KEY)

SYNC_FAILED = "sync-failed"

# ============================== Stats / result model ===============================

@dataclass(frozen=True)
class DirectionSyncStats:
    examined: int
    applied: int
    mode: str


@dataclass(frozen=True)
class TableSyncStats:
    table: str
    local_to_peer: DirectionSyncStats
    peer_to_local: DirectionSyncStats


@dataclass(frozen=True)
class SkippedTable:
    table: str
    reason: str


@dataclass(frozen=True)
class FailedTable:
    table: str
    error: str
    reason: str = SYNC_FAILED


@dataclass
class BidirectionalSyncResult:
    started_at: str
    finished_at: str
    duration_ms: int
    peer: str
    skipped_tables: List[SkippedTable] = field(default_factory=list)
    failed_tables: List[FailedTable] = field(default_factory=list)
    tables: List[TableSyncStats] = field(default_factory=list)
    sequences: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "local_to_peer": sum(t.local_to_peer.applied for t in self.tables),
            "peer_to_local": sum(t.peer_to_local.applied for t in self.tables),
            "tables": len(self.tables),
            "skipped_tables": len(self.skipped_tables),
            "failed_tables": len(self.failed_tables),
        }

    @property
    def ok(self) -> bool:
        return not self.failed_tables

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe view of the result (safe for XCom push or an audit Variable)."""
        payload = asdict(self)
        payload["totals"] = self.totals
        return json.loads(json.dumps(payload, default=str))
