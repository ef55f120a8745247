"""Decide which cached client queries a data change event makes stale.

Query keys follow the tRPC/React Query shape: the first segment is either a
path sequence (``[["items", "list"], {...}]``) or a dot-joined string
(``["items.list", {...}]``). Matching is on the leading router name only, so
filtered queries are invalidated even though the event carries no filter.
False positives are accepted; false negatives are not.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence

from kbsync.models import DataChangeEvent, EntityType

# Check-ins are a view over item records, and items also feed the query router.
ROUTER_PATHS: dict[EntityType, tuple[str, ...]] = {
    EntityType.ITEMS: ("items", "query"),
    EntityType.CHECKINS: ("items", "query"),
    EntityType.PEOPLE: ("people",),
    EntityType.PROJECTS: ("projects",),
    EntityType.ORGANIZATIONS: ("organizations",),
    EntityType.ROUTINES: ("routines",),
    EntityType.MEETINGS: ("meetings",),
}

_missing = set(EntityType) - set(ROUTER_PATHS)
if _missing:
    raise RuntimeError(f"ROUTER_PATHS has no entry for: {sorted(e.value for e in _missing)}")


def router_paths(entity: EntityType | str) -> tuple[str, ...]:
    return ROUTER_PATHS[EntityType(entity)]


def key_segments(cached_key: Any) -> Optional[tuple[str, ...]]:
    """Return the path segments of a query key, or None if it has no path."""
    if not isinstance(cached_key, (list, tuple)) or not cached_key:
        return None
    first = cached_key[0]
    if isinstance(first, str):
        segments = tuple(first.split("."))
    elif isinstance(first, (list, tuple)) and first:
        if not all(isinstance(segment, str) for segment in first):
            return None
        segments = tuple(first)
    else:
        return None
    return segments if segments and segments[0] else None


def should_invalidate(cached_key: Sequence[Any], event: DataChangeEvent) -> bool:
    segments = key_segments(cached_key)
    if segments is None:
        return False
    return segments[0] in router_paths(event.entity)
