"""Data-changed notifications.

LocalStore stamps every committed write or merge with a generation number.
``ChangeBus`` fans those out to subscribers. A subscriber that compares the
generation it last saw with ``ChangeBus.generation`` can tell it missed a
transition even if deliveries were coalesced.

Usage::

    with bus.subscribed(on_change):
        ...  # handler is removed on exit, even on error
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

logger = logging.getLogger("workoutsync.events")


@dataclass(frozen=True)
class DataChanged:
    """One committed change to LocalStore.

    Attributes:
        generation: Store-wide counter, strictly increasing per commit.
        record_id:  The record that changed, or None for a full reset.
        reason:     'write', 'merge' or 'reset'.
    """

    generation: int
    record_id: uuid.UUID | None
    reason: str


ChangeHandler = Callable[[DataChanged], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``ChangeBus.subscribe``."""

    bus: ChangeBus
    handler: ChangeHandler
    last_seen: int = 0
    active: bool = field(default=True)

    def missed(self) -> bool:
        """True if the bus moved past the last generation delivered here."""
        return self.bus.generation > self.last_seen

    def unsubscribe(self) -> None:
        if self.active:
            self.bus._remove(self)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class ChangeBus:
    """Observer registry for data-changed notifications."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, handler: ChangeHandler) -> Subscription:
        sub = Subscription(bus=self, handler=handler, last_seen=self._generation)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    @contextmanager
    def subscribed(self, handler: ChangeHandler) -> Iterator[Subscription]:
        sub = self.subscribe(handler)
        try:
            yield sub
        finally:
            sub.unsubscribe()

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: DataChanged) -> None:
        """Deliver an event to every subscriber.

        A failing handler is logged and skipped; it never stops delivery to
        the others or reaches the writer that committed the change.
        """
        with self._lock:
            self._generation = max(self._generation, event.generation)
            targets = list(self._subscriptions)
        for sub in targets:
            try:
                sub.handler(event)
            except Exception as exc:
                logger.warning("Change handler %r failed: %s", sub.handler, exc)
            sub.last_seen = max(sub.last_seen, event.generation)
