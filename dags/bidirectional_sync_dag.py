from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

import pendulum

from airflow.decorators import dag, task
from airflow.exceptions import AirflowException, AirflowFailException
from airflow.hooks.base import BaseHook
from airflow.models import Variable

from ConvergenceChecker import run_convergence_check_callable, summarize_results_callable, tables_to_verify
from pg_bisync.alerts import format_sync_alert, send_discord_alert
from pg_bisync.connections import mask_connection_url, same_database
from pg_bisync.engine import run_bidirectional_sync
from pg_bisync.SyncConfig import SyncConfig

log = logging.getLogger(__name__)

STATUS_VARIABLE = "DATABASE_SYNC_STATUS"

# ------------------------ Settings helpers (DAG-layer) ------------------------
def _load_settings() -> Dict[str, Any]:
    """Optional JSON settings file named by the Airflow Variable 'BISYNC_CONFIG_PATH'."""
    config_path = Variable.get("BISYNC_CONFIG_PATH", default_var="").strip()
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Sync settings file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        return {}
    try:
        settings = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in sync settings file {path}: {e}") from e
    if not isinstance(settings, dict):
        raise AirflowException(f"Sync settings file {path} must contain a JSON object.")
    return settings

def _build_config() -> SyncConfig:
    settings = _load_settings()
    local_url = BaseHook.get_connection(settings.get("local_conn_id", "bisync_local")).get_uri()
    peer_url = BaseHook.get_connection(settings.get("peer_conn_id", "bisync_peer")).get_uri()
    if same_database(local_url, peer_url):
        raise AirflowFailException(
            f"Local and peer connections point to the same database ({mask_connection_url(local_url)})"
        )
    try:
        return SyncConfig.from_mapping(settings, local_url=local_url, peer_url=peer_url).validate()
    except (TypeError, ValueError) as e:
        raise AirflowFailException(f"Invalid sync settings: {e}") from e

def _store_status(status: str, **payload: Any) -> None:
    record = {"status": status, "at": pendulum.now("UTC").isoformat(), **payload}
    Variable.set(STATUS_VARIABLE, record, serialize_json=True)
    log.info("Stored %s sync status in Variable %s", status, STATUS_VARIABLE)

# ------------------------ DAG ------------------------
@dag(
    dag_id="pg_bidirectional_sync",
    schedule="0 * * * *",
    start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
    catchup=False,
    max_active_runs=1,          # a second run never starts while one is in progress
    tags=["pg2pg", "bidirectional"],
    description="Bidirectional last-write-wins sync between the local and peer Postgres databases",
)
def bidirectional_sync_dag():

    @task
    def run_sync() -> Dict[str, Any]:
        cfg = _build_config()
        log.info("Running bidirectional sync against peer %s", mask_connection_url(cfg.peer_url))
        try:
            result = run_bidirectional_sync(cfg).to_dict()
        except Exception as e:
            _store_status("failed", error=f"{type(e).__name__}: {e}")
            raise
        _store_status("success", **result)
        return result

    @task
    def verify_convergence(result: Dict[str, Any]) -> Dict[str, Any]:
        tables = tables_to_verify(result)
        if not tables:
            log.info("No last-write-wins tables to verify.")
            return {"mismatched_data": {}, "is_consistent": True}
        payload = run_convergence_check_callable(_build_config(), tables)
        log.info("Convergence check: %s", summarize_results_callable(payload))
        return payload

    @task(do_xcom_push=False)
    def alert_if_needed(result: Dict[str, Any], consistency: Dict[str, Any]) -> None:
        message = format_sync_alert(result, consistency)
        if message is None:
            log.info("🎉 Sync clean; no alert.")
            return
        webhook_url = Variable.get("DISCORD_WEBHOOK", default_var="")
        send_discord_alert(message, webhook_url)

    result = run_sync()
    consistency = verify_convergence(result)
    alert_if_needed(result, consistency)


dag_obj = bidirectional_sync_dag()
