"""Data change notifications: publish, fan out, invalidate."""

from kbsync.events.bus import EventBus, Subscription
from kbsync.events.emitter import ChangeEmitter, derive_event, mutation
from kbsync.events.invalidation import should_invalidate

__all__ = [
    "EventBus",
    "Subscription",
    "ChangeEmitter",
    "derive_event",
    "mutation",
    "should_invalidate",
]
