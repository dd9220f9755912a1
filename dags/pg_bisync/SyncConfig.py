from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

from dotenv import load_dotenv

from pg_bisync.connections import mask_connection_url

# ============================== Defaults ===============================

DEFAULT_EXCLUDED_TABLES: Tuple[str, ...] = ("_prisma_migrations",)

# Parent/reference tables first, dependents after. Tables not listed sort
# alphabetically after every listed one.
DEFAULT_TABLE_PRIORITY: Tuple[str, ...] = (
    "users",
    "verification_tokens",
    "accounts",
    "sessions",
    "tours",
    "tour_packages",
    "activities",
    "activity_images",
    "tour_images",
    "tour_itineraries",
    "highlights",
    "inclusions",
    "exclusions",
    "tour_inclusions",
    "tour_exclusions",
    "additional_infos",
    "drivers",
    "categories",
    "partners",
    "service_items",
    "service_item_partners",
    "service_item_drivers",
    "tour_cost_patterns",
    "tour_cost_pattern_items",
    "email_inbox",
    "email_jobs",
    "bookings",
    "booking_emails",
    "booking_finances",
    "booking_finance_items",
    "reviews",
    "company_reviews",
    "notifications",
    "audit_logs",
    "system_settings",
)

DEFAULT_SELF_REFERENCES: Dict[str, str] = {"booking_finance_items": "related_item_id"}

# ============================== Config model ===============================

@dataclass(frozen=True)
class SyncConfig:
    local_url: str
    peer_url: str
    schema: str = "public"
    batch_size: int = 100                       # rows per INSERT statement
    fetch_size: int = 2_000                     # rows per server-side cursor round trip
    excluded_tables: Tuple[str, ...] = DEFAULT_EXCLUDED_TABLES
    table_priority: Tuple[str, ...] = DEFAULT_TABLE_PRIORITY
    self_references: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_SELF_REFERENCES))
    use_foreign_key_order: bool = True
    fail_fast: bool = False
    deadline_seconds: float | None = None
    application_name: str = "pg_bisync"

    def validate(self) -> "SyncConfig":
        if not self.local_url or not self.peer_url:
            raise ValueError("Both local_url and peer_url must be configured")
        if mask_connection_url(self.local_url) == mask_connection_url(self.peer_url):
            raise ValueError("Local and peer database URL point to the same database")
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.fetch_size <= 0:
            raise ValueError(f"fetch_size must be positive, got {self.fetch_size}")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ValueError(f"deadline_seconds must be positive, got {self.deadline_seconds}")
        return self

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], **overrides: Any) -> "SyncConfig":
        """
        Build a config from a catalog-style dict (e.g. parsed JSON).
        Unknown keys are ignored; list values are frozen into tuples.
        """
        values: Dict[str, Any] = {k: raw[k] for k in _FIELD_NAMES if k in raw}
        values.update(overrides)
        for key in ("excluded_tables", "table_priority"):
            if key in values and values[key] is not None:
                values[key] = tuple(values[key])
        if values.get("self_references") is not None:
            values["self_references"] = dict(values["self_references"])
        return cls(**values)

    @classmethod
    def from_env(cls, dotenv_path: str | None = None, **overrides: Any) -> "SyncConfig":
        """
        DATABASE_URL / SYNC_DATABASE_URL plus optional SYNC_* tuning variables.
        A .env file is loaded first; variables already set in the shell win.
        """
        load_dotenv(dotenv_path)
        raw: Dict[str, Any] = {
            "local_url": os.environ.get("DATABASE_URL", ""),
            "peer_url": os.environ.get("SYNC_DATABASE_URL", ""),
        }
        if os.environ.get("SYNC_SCHEMA"):
            raw["schema"] = os.environ["SYNC_SCHEMA"]
        if os.environ.get("SYNC_BATCH_SIZE"):
            raw["batch_size"] = int(os.environ["SYNC_BATCH_SIZE"])
        if os.environ.get("SYNC_FETCH_SIZE"):
            raw["fetch_size"] = int(os.environ["SYNC_FETCH_SIZE"])
        if os.environ.get("SYNC_FAIL_FAST"):
            raw["fail_fast"] = os.environ["SYNC_FAIL_FAST"].strip().lower() in ("1", "true", "yes", "on")
        if os.environ.get("SYNC_DEADLINE_SECONDS"):
            raw["deadline_seconds"] = float(os.environ["SYNC_DEADLINE_SECONDS"])
        if os.environ.get("SYNC_EXCLUDED_TABLES"):
            raw["excluded_tables"] = [t.strip() for t in os.environ["SYNC_EXCLUDED_TABLES"].split(",") if t.strip()]
        return cls.from_mapping(raw, **overrides)


_FIELD_NAMES = tuple(SyncConfig.__dataclass_fields__)
