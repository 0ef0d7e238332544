"""Progress channel between the setup pipeline and its observers."""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from notesetup.models import InstallationStage

logger = logging.getLogger(__name__)

INSTALL_LOG = "install-log"
WORKLOAD_LOG = "workload-log"

_CLOSED = object()


class StageOrderError(RuntimeError):
    """A stage was published out of canonical order."""


class Subscription:
    """Async iterator over the events published after subscribing."""

    def __init__(self, tracker: "StageTracker", loop: asyncio.AbstractEventLoop):
        self._tracker = tracker
        self._loop = loop
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def _deliver(self, item: Any):
        if self._is_loop_thread():
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _is_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def pending(self) -> List[Dict[str, Any]]:
        """Drains already-queued events without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            events.append(item)
        return events

    def cancel(self):
        self._tracker.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self

    async def __anext__(self) -> Dict[str, Any]:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class StageTracker:
    """Publishes stage changes and log lines to every current observer.

    Publishing only enqueues, so it never waits on a slow observer. The
    tracker enforces that stages of one run are published in canonical
    order; a new run starts with :meth:`begin_run`.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._close_callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._current: Optional[InstallationStage] = None
        self._history: List[InstallationStage] = []
        self._closed = False

    @property
    def current_stage(self) -> Optional[InstallationStage]:
        return self._current

    @property
    def history(self) -> List[InstallationStage]:
        return list(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, asyncio.get_running_loop())
        with self._lock:
            if self._closed:
                subscription._deliver(_CLOSED)
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription._deliver(_CLOSED)

    def on_close(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Registers ``callback`` for :meth:`close`; returns a remover."""
        with self._lock:
            self._close_callbacks.append(callback)

        def remove():
            with self._lock:
                if callback in self._close_callbacks:
                    self._close_callbacks.remove(callback)

        return remove

    def begin_run(self):
        with self._lock:
            self._current = None
            self._history = []
        self.publish(InstallationStage.NOT_STARTED)

    def publish(self, stage: InstallationStage):
        with self._lock:
            if self._current is not None and stage.order < self._current.order:
                raise StageOrderError(
                    f"Cannot move from {self._current.value} back to {stage.value}."
                )
            self._current = stage
            self._history.append(stage)
        logger.debug("Stage: %s", stage.value)
        self._broadcast({"type": "stage", "stage": stage.value})

    def log(self, topic: str, line: str, stream: str = "stdout"):
        self._broadcast({"type": "log", "topic": topic, "stream": stream, "line": line})

    def notify(self, event: Dict[str, Any]):
        self._broadcast(dict(event))

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
            callbacks = list(self._close_callbacks)
            self._close_callbacks.clear()

        for subscription in subscriptions:
            subscription._deliver(_CLOSED)
        for callback in callbacks:
            callback()

    def _broadcast(self, event: Dict[str, Any]):
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._deliver(event)
