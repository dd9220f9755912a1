from __future__ import annotations

import logging

from pg_bisync.TableMetadata import TableMetadata

LOG = logging.getLogger(__name__)


def reconcile_metadata(local: TableMetadata, peer: TableMetadata) -> TableMetadata | None:
    """
    Largest safely-overlapping contract of two introspections of the same table.

    - columns: intersection, in local column order
    - primary key: must be identical (membership, length and order) and non-empty
    - version column: local's if it survives the intersection, else peer's, else None
    Returns None when the primary keys are incompatible.
    """
    peer_columns = set(peer.columns)
    common_columns = tuple(c for c in local.columns if c in peer_columns)

    peer_pk = set(peer.primary_key)
    common_pk = tuple(c for c in local.primary_key if c in peer_pk)

    if (
        not common_pk
        or len(common_pk) != len(local.primary_key)
        or len(common_pk) != len(peer.primary_key)
        or common_pk != tuple(peer.primary_key)
    ):
        LOG.warning(
            "Primary keys of %s are not compatible: local=%s peer=%s",
            local.table_name, list(local.primary_key), list(peer.primary_key),
        )
        return None

    if any(c not in common_columns for c in common_pk):
        LOG.warning("Primary key of %s is not part of the common columns", local.table_name)
        return None

    if local.version_column and local.version_column in common_columns:
        version_column = local.version_column
    elif peer.version_column and peer.version_column in common_columns:
        version_column = peer.version_column
    else:
        version_column = None

    dropped = sorted((set(local.columns) | peer_columns) - set(common_columns))
    if dropped:
        LOG.info("Columns of %s not present on both sides (not synced): %s", local.table_name, dropped)

    return TableMetadata(
        table_name=local.table_name,
        columns=common_columns,
        primary_key=common_pk,
        version_column=version_column,
        column_types={c: local.column_types.get(c) for c in common_columns},
    )
