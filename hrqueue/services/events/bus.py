"""In-process event bus for job and notification lifecycle events.

Producers (job processor, notification service) emit named events; consumers
(dashboards, the in-app feed, the job notification bridge) register listeners.
Delivery is synchronous and in registration order. The bus is constructed
once per process by the service container and passed to its collaborators.

Limitations:
- Events only reach listeners in the same process
- No persistence or replay
"""

import asyncio
import inspect
import threading
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[dict[str, Any]], Any]


class EventBus:
    """Named-event publish/subscribe hub with per-listener fault isolation."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.RLock()
        self._pending: set[asyncio.Task] = set()

    def on(self, event_type: str, listener: Listener) -> None:
        """Register a listener. Registering the same listener twice is a no-op."""
        with self._lock:
            listeners = self._listeners.setdefault(event_type, [])
            if listener not in listeners:
                listeners.append(listener)

    def off(self, event_type: str, listener: Listener) -> bool:
        """Remove a listener. Returns False if it was not registered."""
        with self._lock:
            listeners = self._listeners.get(event_type)
            if not listeners or listener not in listeners:
                return False
            listeners.remove(listener)
            if not listeners:
                del self._listeners[event_type]
            return True

    def emit(self, event_type: str, event: dict[str, Any]) -> int:
        """
        Deliver an event to every listener registered for event_type.

        Listeners are snapshotted before delivery so a listener may subscribe
        or unsubscribe during emit without affecting this round. A listener
        that raises is logged and skipped.

        Args:
            event_type: Event name (e.g., "job_completed")
            event: Event payload

        Returns:
            Number of listeners that handled the event without raising.
        """
        with self._lock:
            listeners = list(self._listeners.get(event_type, ()))

        delivered = 0
        for listener in listeners:
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    self._schedule(event_type, listener, result)
                delivered += 1
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    event_type=event_type,
                    listener=_listener_name(listener),
                    error=str(e),
                    exc_info=True,
                )
        return delivered

    def clear(self) -> None:
        """Remove every listener."""
        with self._lock:
            self._listeners.clear()

    def listener_count(self, event_type: str | None = None) -> int:
        """Return the listener count for one event type, or across all."""
        with self._lock:
            if event_type is not None:
                return len(self._listeners.get(event_type, ()))
            return sum(len(v) for v in self._listeners.values())

    async def wait_idle(self) -> None:
        """Wait for coroutine listeners scheduled by emit to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event_type: str, listener: Listener, awaitable) -> None:
        """Run an async listener on the current loop, logging its failure."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: the coroutine can never run
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(
                "event_listener_no_loop",
                event_type=event_type,
                listener=_listener_name(listener),
            )
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "event_listener_failed",
                    event_type=event_type,
                    listener=_listener_name(listener),
                    error=str(exc),
                )

        task.add_done_callback(_done)


def _listener_name(listener: Listener) -> str:
    return getattr(listener, "__qualname__", None) or repr(listener)
