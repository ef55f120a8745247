"""Turn successful mutations into data change events.

Every write path (API routes and the project sync) reports here after its
commit returned, so this is the one place where state changes become
notifications.

Mutation kinds are declared per procedure with :func:`mutation`. For a
procedure that was never declared the kind is guessed from its name
("create"/"add" → create, "delete"/"remove" → delete, anything else →
update). The guess is logged because it misclassifies names such as
``updateOrCreate``.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from pydantic import ValidationError

from kbsync.models import AIContentEvent, ContentType, DataChangeEvent, EntityType, MutationKind

logger = logging.getLogger("kbsync.events")

F = TypeVar("F", bound=Callable[..., Any])

# Router segment of a procedure path → entity. Routers not listed here
# (sync, query, files, ...) never produce events.
ROUTER_ENTITIES: dict[str, EntityType] = {
    "items": EntityType.ITEMS,
    "people": EntityType.PEOPLE,
    "projects": EntityType.PROJECTS,
    "organizations": EntityType.ORGANIZATIONS,
    "routines": EntityType.ROUTINES,
}

_DECLARED_KINDS: dict[str, MutationKind] = {}


def declare_mutation(path: str, kind: MutationKind) -> None:
    existing = _DECLARED_KINDS.get(path)
    if existing is not None and existing != kind:
        raise ValueError(f"Procedure {path} already declared as {existing.value}")
    _DECLARED_KINDS[path] = kind


def mutation(path: str, kind: MutationKind) -> Callable[[F], F]:
    """Decorator declaring the mutation kind of a procedure at its definition."""
    declare_mutation(path, kind)

    def decorator(func: F) -> F:
        func.__mutation__ = (path, kind)  # type: ignore[attr-defined]
        return func

    return decorator


def declared_kind(path: str) -> MutationKind | None:
    return _DECLARED_KINDS.get(path)


def infer_mutation_kind(procedure: str) -> MutationKind:
    name = (procedure or "").lower()
    if "create" in name or "add" in name:
        return MutationKind.CREATE
    if "delete" in name or "remove" in name:
        return MutationKind.DELETE
    return MutationKind.UPDATE


def split_path(path: str) -> tuple[str, str]:
    router, _, procedure = (path or "").partition(".")
    return router, procedure


def _read(result: Any, key: str) -> Any:
    if result is None:
        return None
    if isinstance(result, dict):
        return result.get(key)
    return getattr(result, key, None)


def _as_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def extract_ids(result: Any) -> tuple[Optional[int], Optional[list[int]]]:
    """Pull ``id`` / ``ids`` from a mutation result when present."""
    single = _as_id(_read(result, "id"))
    raw_many = _read(result, "ids")
    many: Optional[list[int]] = None
    if isinstance(raw_many, (list, tuple)):
        many = [v for v in (_as_id(item) for item in raw_many) if v is not None] or None
    return single, many


def derive_event(path: str, result: Any = None, kind: MutationKind | None = None) -> DataChangeEvent | None:
    """Build the event for a procedure path, or None for unmapped routers."""
    router, procedure = split_path(path)
    entity = ROUTER_ENTITIES.get(router)
    if entity is None:
        return None

    resolved = kind or declared_kind(path)
    if resolved is None:
        resolved = infer_mutation_kind(procedure)
        logger.warning(
            "Procedure %s has no declared mutation kind; guessed %s from its name",
            path,
            resolved.value,
        )

    event_id, event_ids = extract_ids(result)
    return DataChangeEvent(entity=entity, mutation=resolved, id=event_id, ids=event_ids)


class ChangeEmitter:
    """Publishes one event per committed mutation. Never raises."""

    def __init__(self, bus):
        self.bus = bus

    def after_mutation(
        self,
        path: str,
        result: Any = None,
        kind: MutationKind | None = None,
    ) -> DataChangeEvent | None:
        """Call only after the wrapped operation succeeded and committed."""
        try:
            event = derive_event(path, result, kind)
        except Exception as exc:
            logger.warning("Could not derive change event for %s: %s", path, exc)
            return None
        if event is None:
            logger.debug("No entity mapping for %s; nothing emitted", path)
            return None
        self.emit(event)
        return event

    def notify_ai_content(
        self,
        content_type: ContentType | str,
        title: str,
        file_path: str,
        message: Optional[str] = None,
    ) -> AIContentEvent | None:
        """Ask live clients to review content an agent wrote into the KB.

        Not for routine writes such as diary entries or memory updates.
        """
        try:
            event = AIContentEvent(contentType=content_type, title=title, filePath=file_path, message=message)
        except ValidationError as exc:
            logger.warning("Invalid AI content notification for %s: %s", file_path, exc)
            return None
        try:
            self.bus.notify(event)
        except Exception as exc:
            logger.warning("Failed to publish AI content notice for %s: %s", file_path, exc)
            return None
        logger.info("[notify] %s %s (%s)", event.contentType, event.title, event.filePath)
        return event

    def emit(self, event: DataChangeEvent) -> None:
        try:
            self.bus.publish(event)
        except Exception as exc:
            # Transport problems never reach the mutation caller
            logger.warning("Failed to publish %s/%s: %s", event.entity, event.mutation, exc)
            return
        logger.info(
            "[emit] %s.%s%s%s",
            event.entity,
            event.mutation,
            f" id={event.id}" if event.id is not None else "",
            f" ids={event.ids}" if event.ids else "",
        )
