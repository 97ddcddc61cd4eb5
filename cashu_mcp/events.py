"""Typed wallet event channel.

The engine emits events on an ``EventBus``. The ``EventObserver`` attaches to
that bus, pushes every event onto a queue and lets one background task log
and dispatch them, so nothing on the business-logic path waits for a logger
or a subscriber.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol, get_args

from .types import ErrorCode, WalletApiError

logger = logging.getLogger(__name__)

EventName = Literal[
    "mint:added",
    "mint:updated",
    "counter:updated",
    "proofs:saved",
    "proofs:state-changed",
    "proofs:deleted",
    "proofs:wiped",
    "mint-quote:created",
    "mint-quote:added",
    "mint-quote:state-changed",
    "mint-quote:requeue",
    "mint-quote:redeemed",
    "melt-quote:created",
    "melt-quote:state-changed",
    "melt-quote:paid",
    "send:created",
    "receive:created",
    "history:updated",
]
EVENT_NAMES: tuple[EventName, ...] = get_args(EventName)

Handler = Callable[[Any], "Awaitable[None] | None"]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class WalletEvent:
    name: EventName
    payload: Any
    timestamp: float = field(default_factory=time.time)

    @property
    def iso_timestamp(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()


class EventSource(Protocol):
    def on(self, name: EventName, handler: Handler) -> Unsubscribe: ...


# ──────────────────────────────────────────────────────────────────────────────
# Bus
# ──────────────────────────────────────────────────────────────────────────────


class EventBus:
    """In-process publish/subscribe keyed by event name."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, name: EventName, handler: Handler) -> Unsubscribe:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, name: EventName, payload: Any) -> None:
        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler for %s failed", name)

    def clear(self) -> None:
        self._handlers.clear()


# ──────────────────────────────────────────────────────────────────────────────
# Observer
# ──────────────────────────────────────────────────────────────────────────────


def _describe(payload: Any) -> str:
    if isinstance(payload, dict):
        fields = [
            f"{key}={value}"
            for key, value in payload.items()
            if isinstance(value, (str, int, float, bool)) and key != "token"
        ]
        return ", ".join(fields)
    if isinstance(payload, list):
        return f"{len(payload)} item(s)"
    return repr(payload)


class EventObserver:
    """Log engine events and let callers subscribe to or wait for them.

    The observer never changes wallet state. Events are queued as they are
    emitted and handled in order by a single consumer task.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[WalletEvent] = asyncio.Queue()
        self._subscribers: dict[str, list[Callable[[Any], None]]] = {}
        self._detach: list[Unsubscribe] = []
        self._consumer: asyncio.Task[None] | None = None
        self._attached = False
        self._closed = False

    @property
    def attached(self) -> bool:
        return self._attached and not self._closed

    def attach(self, source: EventSource) -> None:
        """Subscribe to every event of ``source`` and start the consumer."""
        if self._closed:
            raise WalletApiError(ErrorCode.SERVICE_NOT_READY, "Event observer is closed")
        if self._attached:
            return
        for name in EVENT_NAMES:
            self._detach.append(source.on(name, self._make_enqueue(name)))
        self._consumer = asyncio.create_task(self._consume(), name="wallet-event-observer")
        self._attached = True
        logger.debug("Event observer attached to %d events", len(EVENT_NAMES))

    def _make_enqueue(self, name: EventName) -> Handler:
        def enqueue(payload: Any) -> None:
            self._queue.put_nowait(WalletEvent(name, payload))

        return enqueue

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                logger.info("[%s] %s %s", event.iso_timestamp, event.name, _describe(event.payload))
                for callback in list(self._subscribers.get(event.name, [])):
                    try:
                        callback(event.payload)
                    except Exception:
                        logger.exception("Subscriber for %s failed", event.name)
            finally:
                self._queue.task_done()

    def _ensure_usable(self) -> None:
        if self._closed:
            raise WalletApiError(ErrorCode.SERVICE_NOT_READY, "Event observer is closed")
        if not self._attached:
            raise WalletApiError(
                ErrorCode.SERVICE_NOT_INITIALIZED, "Event observer is not attached"
            )

    def subscribe(self, name: EventName, callback: Callable[[Any], None]) -> Unsubscribe:
        """Call ``callback`` with the payload of every ``name`` event."""
        self._ensure_usable()
        self._subscribers.setdefault(name, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def wait_for_event(
        self,
        name: EventName,
        predicate: Callable[[Any], bool] | None = None,
        timeout: float = 30.0,
    ) -> Any:
        """Wait for the next ``name`` event matching ``predicate``.

        Raises:
            TimeoutError: If no matching event arrives within ``timeout`` seconds.
        """
        self._ensure_usable()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def on_event(payload: Any) -> None:
            if future.done():
                return
            if predicate is None or predicate(payload):
                future.set_result(payload)

        unsubscribe = self.subscribe(name, on_event)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Timeout waiting for event {name} after {timeout}s") from None
        finally:
            unsubscribe()

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for detach in self._detach:
            detach()
        self._detach.clear()
        self._subscribers.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.debug("Event observer closed")
