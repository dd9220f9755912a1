from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlsplit

import psycopg2
import psycopg2.extensions

LOG = logging.getLogger(__name__)


def mask_connection_url(url: str) -> str:
    """
    Reduce a connection URL to scheme, host, port and path.
    Credentials never survive; anything that is not a URL becomes '<invalid-url>'.
    """
    try:
        parsed = urlsplit(url)
        host = parsed.hostname
        port = parsed.port or 5432
    except (ValueError, TypeError, AttributeError):
        return "<invalid-url>"
    if not parsed.scheme or not host:
        return "<invalid-url>"
    return f"{parsed.scheme}://***:***@{host}:{port}{parsed.path}"


def same_database(url_a: str, url_b: str) -> bool:
    return mask_connection_url(url_a) == mask_connection_url(url_b)


def close_quietly(conn, label: str) -> None:
    """Best-effort disconnect; a failing close is logged, never raised."""
    if conn is None:
        return
    try:
        if not conn.closed:
            status = conn.get_transaction_status()
            if status != psycopg2.extensions.TRANSACTION_STATUS_IDLE:
                LOG.warning("%s connection not idle (status=%s). Rolling back before close.", label, status)
                conn.rollback()
        conn.close()
        LOG.debug("%s connection closed", label)
    except Exception:
        LOG.warning("Could not close %s connection cleanly", label, exc_info=True)


@contextmanager
def pg_conn(url: str, label: str = "database", application_name: str = "pg_bisync") -> Iterator[psycopg2.extensions.connection]:
    t0 = time.perf_counter()
    LOG.info("Connecting to %s (%s)", label, mask_connection_url(url))
    conn = psycopg2.connect(url, application_name=application_name)
    LOG.info("Connected to %s (%.3fs)", label, time.perf_counter() - t0)
    try:
        yield conn
    finally:
        close_quietly(conn, label)
