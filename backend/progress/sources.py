"""
Progress sources.

Two producers feed the same reducers:
- StreamProgressSource: EventBus subscription (push, best effort)
- PollingProgressSource: Operation Store reads (pull, authoritative)

OperationWatcher wires both for one operation or one batch group and
polls immediately whenever the stream reports a disconnect or a
lifecycle event.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from event_bus import Event, EventBus, EventType, ProgressEvent, get_event_bus
from progress.reducer import OperationProgressReducer, ProgressSummary, combine_summaries
from updates.operation_store import OperationStore

logger = logging.getLogger(__name__)

_LIFECYCLE_EVENTS = (EventType.OPERATION_STARTED, EventType.OPERATION_COMPLETED, EventType.OPERATION_FAILED)


class StreamProgressSource:
    """
    Push side: forwards OPERATION_PROGRESS events to a callback.

    Lifecycle events and disconnects are reported through on_wakeup so the
    owner can reconcile from the store right away.
    """

    def __init__(
        self,
        event_bus: EventBus,
        on_progress: Callable[[ProgressEvent], Awaitable[None]],
        on_wakeup: Callable[[str], None],
    ):
        self.event_bus = event_bus
        self.on_progress = on_progress
        self.on_wakeup = on_wakeup
        self.connected = False

    def start(self):
        if self.connected:
            return
        self.event_bus.subscribe(EventType.OPERATION_PROGRESS, self._handle_progress)
        for event_type in _LIFECYCLE_EVENTS:
            self.event_bus.subscribe(event_type, self._handle_lifecycle)
        self.connected = True

    def stop(self):
        if not self.connected:
            return
        self.event_bus.unsubscribe(EventType.OPERATION_PROGRESS, self._handle_progress)
        for event_type in _LIFECYCLE_EVENTS:
            self.event_bus.unsubscribe(event_type, self._handle_lifecycle)
        self.connected = False

    def disconnect(self, reason: str = "stream disconnected"):
        """Drop the subscription and ask for an immediate poll"""
        logger.warning(f"Progress stream disconnected: {reason}")
        self.stop()
        self.on_wakeup(reason)

    async def _handle_progress(self, event: Event):
        progress = event.progress
        if progress is not None:
            await self.on_progress(progress)

    async def _handle_lifecycle(self, event: Event):
        self.on_wakeup(f"{event.event_type.value} {event.operation_id}")


class PollingProgressSource:
    """Pull side: reads operations from the Operation Store"""

    def __init__(self, store: OperationStore, interval: Optional[float] = None):
        if interval is None:
            from config.settings import AppConfig
            interval = AppConfig.POLL_INTERVAL
        self.store = store
        self.interval = interval

    def fetch(self, operation_id: str) -> Optional[Dict]:
        return self.store.get_operation(operation_id)

    def fetch_group(self, batch_group_id: str) -> List[Dict]:
        return self.store.get_group(batch_group_id)


class OperationWatcher:
    """
    Follows one operation (or every operation of a batch group) to the end.

    Usage:
        watcher = OperationWatcher(store, operation_id=op_id)
        summary = await watcher.watch(timeout=600)
    """

    def __init__(
        self,
        store: OperationStore,
        operation_id: Optional[str] = None,
        batch_group_id: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
        poll_interval: Optional[float] = None,
    ):
        if (operation_id is None) == (batch_group_id is None):
            raise ValueError("Watch exactly one of operation_id or batch_group_id")

        self.operation_id = operation_id
        self.batch_group_id = batch_group_id
        self.reducers: Dict[str, OperationProgressReducer] = {}
        if operation_id:
            self.reducers[operation_id] = OperationProgressReducer(operation_id)

        self.poller = PollingProgressSource(store, poll_interval)
        self.stream = StreamProgressSource(event_bus or get_event_bus(), self._on_progress, self._wakeup)
        self._wakeup_event = asyncio.Event()
        self._listeners: List[Callable[[OperationProgressReducer], Awaitable[None]]] = []

    def add_listener(self, listener: Callable[[OperationProgressReducer], Awaitable[None]]):
        """Called with the reducer after every change"""
        self._listeners.append(listener)

    async def _notify(self, reducer: OperationProgressReducer):
        for listener in self._listeners:
            try:
                await listener(reducer)
            except Exception as e:
                logger.error(f"Progress listener failed: {e}", exc_info=True)

    def _wakeup(self, reason: str):
        logger.debug(f"Watcher wakeup: {reason}")
        self._wakeup_event.set()

    async def _on_progress(self, event: ProgressEvent):
        reducer = self.reducers.get(event.operation_id)
        if reducer is not None and reducer.apply_event(event):
            await self._notify(reducer)

    async def poll_now(self):
        """Reconcile every watched operation from the store"""
        if self.batch_group_id:
            snapshots = self.poller.fetch_group(self.batch_group_id)
        else:
            snapshot = self.poller.fetch(self.operation_id)
            snapshots = [snapshot] if snapshot else []

        for snapshot in snapshots:
            op_id = snapshot['operation_id']
            reducer = self.reducers.setdefault(op_id, OperationProgressReducer(op_id))
            if reducer.apply_snapshot(snapshot):
                await self._notify(reducer)

    @property
    def is_done(self) -> bool:
        return bool(self.reducers) and all(r.is_terminal for r in self.reducers.values())

    def summary(self) -> ProgressSummary:
        return combine_summaries(r.summary() for r in self.reducers.values())

    async def watch(self, timeout: Optional[float] = None) -> ProgressSummary:
        """
        Consume both sources until every watched operation is terminal.

        Raises:
            asyncio.TimeoutError: when timeout elapses first
        """
        self.stream.start()
        try:
            await asyncio.wait_for(self._loop(), timeout=timeout)
        finally:
            self.stream.stop()
        return self.summary()

    async def _loop(self):
        while True:
            await self.poll_now()
            if self.is_done:
                return
            if not self.stream.connected:
                # Reconnect after a reported disconnect; the poll above covered the gap
                self.stream.start()
            try:
                await asyncio.wait_for(self._wakeup_event.wait(), timeout=self.poller.interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup_event.clear()
