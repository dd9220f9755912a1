from dataclasses import dataclass, field
from typing import Dict, Tuple

# ============================== Sync modes ===============================

LAST_WRITE_WINS = "last-write-wins"
INSERT_MISSING = "insert-missing"

VERSION_COLUMN_CANDIDATES: Tuple[str, ...] = ("updated_at", "created_at")

# ============================== Metadata model ===============================

@dataclass(frozen=True)
class TableMetadata:
    table_name: str
    columns: Tuple[str, ...]
    primary_key: Tuple[str, ...]
    version_column: str | None = None
    column_types: Dict[str, str] = field(default_factory=dict)   # column -> format_type() string

    @property
    def mode(self) -> str:
        return LAST_WRITE_WINS if self.version_column else INSERT_MISSING


def pick_version_column(columns) -> str | None:
    for candidate in VERSION_COLUMN_CANDIDATES:
        if candidate in columns:
            return candidate
    return None
