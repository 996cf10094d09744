"""Async pub/sub event bus for real-time run events.

Subscribers may narrow what they receive to one run and/or a set of event
types. ``subscribe`` and ``subscribe_sync`` return a callable that removes
the subscription again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Coroutine, Iterable, Optional

from workforge.observe.tracer import EventType, TraceEvent

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Subscription:
    callback: Callable
    is_async: bool
    run_id: Optional[str] = None
    event_types: Optional[frozenset[EventType]] = None

    def wants(self, event: TraceEvent) -> bool:
        if self.run_id is not None and event.run_id != self.run_id:
            return False
        return self.event_types is None or event.event_type in self.event_types


class EventBus:

    def __init__(self):
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        callback: Callable[[TraceEvent], Coroutine],
        run_id: str | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> Callable[[], None]:
        return self._add(_Subscription(callback, True, run_id, _types(event_types)))

    def subscribe_sync(
        self,
        callback: Callable[[TraceEvent], None],
        run_id: str | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> Callable[[], None]:
        return self._add(_Subscription(callback, False, run_id, _types(event_types)))

    def _add(self, subscription: _Subscription) -> Callable[[], None]:
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe

    async def emit(self, event: TraceEvent):
        # Sync subscribers first; subscriber errors never break execution.
        targets = [s for s in self._subscriptions if s.wants(event)]
        for sub in sorted(targets, key=lambda s: s.is_async):
            try:
                if sub.is_async:
                    await sub.callback(event)
                else:
                    sub.callback(event)
            except Exception:
                _log.exception(
                    "Event subscriber failed on %s", event.event_type.value,
                    extra={"run_id": event.run_id, "step_id": event.step_id},
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def clear(self):
        self._subscriptions.clear()


def _types(event_types: Iterable[EventType] | None) -> Optional[frozenset[EventType]]:
    return frozenset(event_types) if event_types is not None else None
