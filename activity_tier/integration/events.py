"""
Change notifications for off-chain consumers.

Events are observational only: they are published after the state commit, and
a failing listener is logged and never rolls anything back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, unique
from typing import Callable, List, Optional


logger = logging.getLogger(__name__)


@unique
class Event(Enum):
    PARAMETERS_UPDATED = "ParametersUpdated"
    TIER_UPDATED = "TierUpdated"
    AUTHORITY_CHANGED = "AuthorityChanged"
    ADMIN_CHANGED = "AdminChanged"
    STATE_RESET = "StateReset"
    AGGREGATE_RECORDED = "AggregateRecorded"


@unique
class TierSource(Enum):
    """Which write path produced a TIER_UPDATED event."""
    ENGINE = "engine"
    OVERRIDE = "override"
    RESET = "reset"


@dataclass(frozen=True)
class TierEvent:
    event: Event
    key: Optional[str] = None
    timestamp: int = 0
    old_tier: Optional[int] = None
    new_tier: Optional[int] = None
    source: Optional[TierSource] = None
    detail: Optional[str] = None


Listener = Callable[[TierEvent], None]


class EventBus:
    """Synchronous fan-out to registered listeners, in registration order."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def publish(self, event: TierEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("listener %r failed on %s for %s", listener, event.event.value, event.key)
