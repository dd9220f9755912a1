from __future__ import annotations

import heapq
import logging
from typing import Dict, Iterable, List, Sequence, Set, Tuple

LOG = logging.getLogger(__name__)


def _sort_key(priority: Sequence[str]):
    index = {name: i for i, name in enumerate(priority)}

    def key(table: str) -> Tuple[int, int, str]:
        # prioritized tables first (in list order), everything else alphabetically
        if table in index:
            return (0, index[table], table)
        return (1, 0, table)

    return key


def order_by_priority(tables: Iterable[str], priority: Sequence[str]) -> List[str]:
    return sorted(tables, key=_sort_key(priority))


def order_tables(
    tables: Iterable[str],
    priority: Sequence[str],
    foreign_keys: Iterable[Tuple[str, str]] = (),
) -> List[str]:
    """
    Parents before children according to the (child, parent) foreign-key edges,
    using the priority order as tie-breaker. Self references are ignored; tables
    caught in a cycle are appended in priority order.
    """
    table_set: Set[str] = set(tables)
    key = _sort_key(priority)

    parents_of: Dict[str, Set[str]] = {t: set() for t in table_set}
    children_of: Dict[str, Set[str]] = {t: set() for t in table_set}
    for child, parent in foreign_keys:
        if child == parent or child not in table_set or parent not in table_set:
            continue
        parents_of[child].add(parent)
        children_of[parent].add(child)

    pending = {t: len(p) for t, p in parents_of.items()}
    ready = [(key(t), t) for t, n in pending.items() if n == 0]
    heapq.heapify(ready)

    ordered: List[str] = []
    while ready:
        _, table = heapq.heappop(ready)
        ordered.append(table)
        for child in children_of[table]:
            pending[child] -= 1
            if pending[child] == 0:
                heapq.heappush(ready, (key(child), child))

    if len(ordered) < len(table_set):
        cyclic = order_by_priority(table_set - set(ordered), priority)
        LOG.warning("Foreign-key cycle between %s; falling back to priority order for them", cyclic)
        ordered.extend(cyclic)
    return ordered
