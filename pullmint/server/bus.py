"""In-process event bus with (source, detail-type) routing and at-least-once delivery."""

from __future__ import annotations

import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from pullmint.shared.errors import EventPublishError

logger = logging.getLogger(__name__)

MAX_DETAIL_BYTES = 256 * 1024
DEFAULT_MAX_RECEIVE_COUNT = 3


@dataclass(frozen=True)
class BusEvent:
    event_id: str
    bus_name: str
    source: str
    detail_type: str
    detail: dict[str, Any]


@dataclass(frozen=True)
class PublishResult:
    failed_entry_count: int
    entries: list[dict[str, Any]]


@dataclass
class Subscription:
    name: str
    source: str
    detail_types: frozenset[str]
    handler: Callable[[BusEvent], None]

    def matches(self, event: BusEvent) -> bool:
        return event.source == self.source and event.detail_type in self.detail_types


@dataclass
class _Delivery:
    event: BusEvent
    subscription: Subscription
    attempts: int = 0


@dataclass
class DeadLetter:
    event: BusEvent
    subscription: str
    attempts: int
    error: str


class EventBus(Protocol):
    def put_events(self, entries: list[dict[str, Any]]) -> PublishResult: ...


@dataclass
class InMemoryEventBus:
    """Queue-backed bus; ``dispatch_pending`` drives delivery to subscribers.

    A handler that raises is redelivered until ``max_receive_count`` attempts
    have been made, after which the delivery lands in ``dead_letters``.
    """

    max_receive_count: int = DEFAULT_MAX_RECEIVE_COUNT
    subscriptions: list[Subscription] = field(default_factory=list)
    published: list[BusEvent] = field(default_factory=list)
    dead_letters: list[DeadLetter] = field(default_factory=list)
    _queue: deque[_Delivery] = field(default_factory=deque)

    def subscribe(
        self,
        name: str,
        source: str,
        detail_types: Iterable[str],
        handler: Callable[[BusEvent], None],
    ) -> Subscription:
        subscription = Subscription(
            name=name, source=source, detail_types=frozenset(detail_types), handler=handler
        )
        self.subscriptions.append(subscription)
        return subscription

    def put_events(self, entries: list[dict[str, Any]]) -> PublishResult:
        results: list[dict[str, Any]] = []
        failed = 0
        for entry in entries:
            try:
                encoded = json.dumps(entry["Detail"])
            except (KeyError, TypeError, ValueError) as exc:
                failed += 1
                results.append({"ErrorCode": "MalformedDetail", "ErrorMessage": str(exc)})
                continue
            if len(encoded.encode("utf-8")) > MAX_DETAIL_BYTES:
                failed += 1
                results.append({"ErrorCode": "EntryTooLarge", "ErrorMessage": "detail over 256 KiB"})
                continue
            event = BusEvent(
                event_id=str(uuid.uuid4()),
                bus_name=str(entry.get("EventBusName", "")),
                source=str(entry.get("Source", "")),
                detail_type=str(entry.get("DetailType", "")),
                detail=json.loads(encoded),
            )
            self.published.append(event)
            for subscription in self.subscriptions:
                if subscription.matches(event):
                    self._queue.append(_Delivery(event=event, subscription=subscription))
            results.append({"EventId": event.event_id})
        return PublishResult(failed_entry_count=failed, entries=results)

    def pending_count(self) -> int:
        return len(self._queue)

    def dispatch_pending(self, max_deliveries: int | None = None) -> int:
        """Deliver queued events, including ones enqueued by handlers along the way."""

        delivered = 0
        while self._queue and (max_deliveries is None or delivered < max_deliveries):
            delivery = self._queue.popleft()
            delivery.attempts += 1
            delivered += 1
            try:
                delivery.subscription.handler(delivery.event)
            except Exception as exc:
                if delivery.attempts >= self.max_receive_count:
                    logger.error(
                        "Dead-lettered %s for %s after %d attempts: %s",
                        delivery.event.detail_type,
                        delivery.subscription.name,
                        delivery.attempts,
                        exc,
                    )
                    self.dead_letters.append(
                        DeadLetter(
                            event=delivery.event,
                            subscription=delivery.subscription.name,
                            attempts=delivery.attempts,
                            error=str(exc),
                        )
                    )
                else:
                    logger.warning(
                        "Redelivering %s to %s (attempt %d failed): %s",
                        delivery.event.detail_type,
                        delivery.subscription.name,
                        delivery.attempts,
                        exc,
                    )
                    self._queue.append(delivery)
        return delivered

    def redeliver(self, event: BusEvent) -> None:
        """Queue a second copy of an already published event, as a duplicate delivery would."""

        for subscription in self.subscriptions:
            if subscription.matches(event):
                self._queue.append(_Delivery(event=event, subscription=subscription))


def publish_event(
    bus: EventBus,
    bus_name: str,
    source: str,
    detail_type: str,
    detail: dict[str, Any],
) -> str:
    result = bus.put_events(
        [
            {
                "EventBusName": bus_name,
                "Source": source,
                "DetailType": detail_type,
                "Detail": detail,
            }
        ]
    )
    if result.failed_entry_count > 0:
        raise EventPublishError(
            f"Failed to publish {result.failed_entry_count} event(s): {json.dumps(result.entries)}",
            failed_entry_count=result.failed_entry_count,
            entries=result.entries,
        )
    return str(result.entries[0].get("EventId", ""))
