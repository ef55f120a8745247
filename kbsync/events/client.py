"""Client side of the change stream: frame parsing and cache invalidation."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import requests
from pydantic import ValidationError

from kbsync.events.invalidation import should_invalidate
from kbsync.models import AIContentEvent, DataChangeEvent

logger = logging.getLogger("kbsync.events.client")


def _cache_id(key: Any) -> str:
    return json.dumps(key, sort_keys=True, default=str)


@dataclass
class CachedQuery:
    key: Any
    data: Any = None
    stale: bool = False
    invalidations: int = 0


@dataclass
class QueryCache:
    """Minimal keyed query cache with stale tracking."""

    entries: dict[str, CachedQuery] = field(default_factory=dict)

    def set(self, key: Any, data: Any) -> None:
        self.entries[_cache_id(key)] = CachedQuery(key=key, data=data)

    def get(self, key: Any) -> CachedQuery | None:
        return self.entries.get(_cache_id(key))

    def is_stale(self, key: Any) -> bool:
        entry = self.get(key)
        return bool(entry and entry.stale)

    def invalidate(self, event: DataChangeEvent) -> list[Any]:
        """Mark matching fresh entries stale and return their keys.

        An entry that is already stale is not returned again, so one refetch
        is scheduled per entry until it is refreshed with :meth:`set`.
        """
        newly_stale: list[Any] = []
        for entry in self.entries.values():
            if entry.stale or not should_invalidate(entry.key, event):
                continue
            entry.stale = True
            entry.invalidations += 1
            newly_stale.append(entry.key)
        return newly_stale


class RealtimeSync:
    """Applies NDJSON frames from the event stream to a :class:`QueryCache`.

    `ai:content` notices never touch the cache; they are kept in ``notices``
    and handed to ``on_ai_content``.

    Malformed frames are dropped and never raised to the caller.
    """

    def __init__(
        self,
        cache: QueryCache,
        on_invalidate: Optional[Callable[[Any], None]] = None,
        on_ai_content: Optional[Callable[[AIContentEvent], None]] = None,
    ):
        self.cache = cache
        self.on_invalidate = on_invalidate
        self.on_ai_content = on_ai_content
        self.recent: list[DataChangeEvent] = []
        self.notices: list[AIContentEvent] = []
        self.dropped_frames = 0

    def handle_frame(self, line: str | bytes) -> list[Any]:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.strip()
        if not line:
            return []
        try:
            frame = json.loads(line)
        except json.JSONDecodeError:
            return self._drop("not JSON", line)
        if not isinstance(frame, dict):
            return self._drop("not an object", line)

        frame_type = frame.get("type")
        if frame_type == "init":
            self.recent = self._parse_events(frame.get("events"))
            return []
        if frame_type == "data:changed":
            try:
                event = DataChangeEvent.model_validate(frame.get("event"))
            except ValidationError:
                return self._drop("invalid event", line)
            return self._apply(event)
        if frame_type == "ai:content":
            try:
                notice = AIContentEvent.model_validate(frame.get("event"))
            except ValidationError:
                return self._drop("invalid AI content notice", line)
            self._notice(notice)
            return []
        if frame_type == "ping":
            return []
        return self._drop(f"unknown frame type {frame_type!r}", line)

    def consume(self, lines: Iterable[str | bytes]) -> int:
        """Handle every frame; returns how many cache entries went stale."""
        total = 0
        for line in lines:
            total += len(self.handle_frame(line))
        return total

    def _parse_events(self, raw: Any) -> list[DataChangeEvent]:
        events: list[DataChangeEvent] = []
        if not isinstance(raw, list):
            return events
        for item in raw:
            try:
                events.append(DataChangeEvent.model_validate(item))
            except ValidationError:
                self.dropped_frames += 1
        return events

    def _apply(self, event: DataChangeEvent) -> list[Any]:
        keys = self.cache.invalidate(event)
        if self.on_invalidate:
            for key in keys:
                try:
                    self.on_invalidate(key)
                except Exception as exc:
                    logger.warning("Refetch callback failed for %s: %s", key, exc)
        return keys

    def _notice(self, notice: AIContentEvent) -> None:
        self.notices.append(notice)
        if self.on_ai_content:
            try:
                self.on_ai_content(notice)
            except Exception as exc:
                logger.warning("AI content callback failed for %s: %s", notice.filePath, exc)

    def _drop(self, reason: str, line: str) -> list[Any]:
        self.dropped_frames += 1
        logger.debug("Dropped frame (%s): %s", reason, line[:200])
        return []


def listen(url: str, sync: RealtimeSync, timeout: float | None = None) -> None:
    """Stream frames from ``url`` into ``sync`` until the server closes."""
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        for line in response.iter_lines():
            if line:
                sync.handle_frame(line)
