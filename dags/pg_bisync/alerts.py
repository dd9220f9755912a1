import logging
from typing import Any, Dict, List, Optional

import requests

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)

def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    # Keep a small suffix to show truncation
    return text[: limit - 20] + "\n… (truncated)"

def format_sync_alert(result: Dict[str, Any], consistency: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """
    Render the problems of one sync run (a BidirectionalSyncResult.to_dict() payload and,
    optionally, a convergence-check payload) as a Discord message.
    Returns None when there is nothing worth alerting about.
    """
    lines: List[str] = []
    for item in result.get("failed_tables", []) or []:
        lines.append(f"- ❌ `{item.get('table')}` failed: {item.get('error')}")
    for item in result.get("skipped_tables", []) or []:
        lines.append(f"- ⚠️ `{item.get('table')}` skipped: {item.get('reason')}")
    if consistency and not consistency.get("is_consistent", True):
        for tbl, issues in sorted((consistency.get("mismatched_data") or {}).items()):
            if issues:
                issues_txt = " | ".join(map(str, issues[:10])) + ("" if len(issues) <= 10 else " | …")
                lines.append(f"- 🔀 `{tbl}` still differs: {issues_txt}")
    if not lines:
        return None

    totals = result.get("totals", {}) or {}
    header = (
        f"❗️ **Database sync needs attention** (peer `{result.get('peer')}`)\n"
        f"local→peer={totals.get('local_to_peer', 0)} peer→local={totals.get('peer_to_local', 0)} "
        f"tables={totals.get('tables', 0)}"
    )
    return header + "\n" + "\n".join(lines)

def send_discord_alert(message: str, webhook_url: Optional[str], username: Optional[str] = "Database Sync Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Sends a simple Discord webhook message. Returns True when Discord accepted it.
    If you want a JSON response (200), append '?wait=true' to your webhook URL; otherwise Discord returns 204.
    """
    if not webhook_url:
        log.warning("No Discord webhook URL configured, skipping alert.")
        return False

    safe_message = _truncate_for_discord(message)

    payload = {
        "content": safe_message,
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    # Discord returns 204 No Content for non-waiting calls; 200 OK if '?wait=true'
    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
