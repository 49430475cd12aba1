"""Coarse conflict merge for stale canvas saves.

The merge is a union by id: every node and edge that either side knew about
survives, and for an id present on both sides the local (incoming) copy wins.
Conflicting edits to the same id are not reconciled field by field.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

Entity = dict[str, Any]
MergeResult = tuple[list[Entity], list[Entity]]
Merger = Callable[[list[Entity], list[Entity], list[Entity], list[Entity]], MergeResult]


def union_by_id(local: Iterable[Entity], remote: Iterable[Entity]) -> list[Entity]:
    merged = list(local)
    seen = {str(item["id"]) for item in merged}
    for item in remote:
        item_id = str(item["id"])
        if item_id in seen:
            continue
        merged.append(item)
        seen.add(item_id)
    return merged


def merge_by_id(
    local_nodes: list[Entity],
    local_edges: list[Entity],
    remote_nodes: list[Entity],
    remote_edges: list[Entity],
) -> MergeResult:
    return union_by_id(local_nodes, remote_nodes), union_by_id(local_edges, remote_edges)
