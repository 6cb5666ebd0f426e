"""
Change propagation between session instances.

Every write made through a ``CredentialStore`` is published on the bus. The
bus hands the change to its transports:

* ``InProcessTransport`` delivers it synchronously to every other subscriber
  in this process.
* ``StorageWatchTransport`` watches the shared storage area for writes made by
  *other* processes. It never reports this process's own writes.

Subscribers never receive their own writes, and a change whose value equals
the last value a subscriber saw for that key is dropped.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from session_shared.interfaces import IKeyValueStorage
from session_shared.models import StorageChange
from session_client.scheduling import ScheduledTask

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[StorageChange], None]

_MISSING = object()


class SyncTransport(ABC):
    """One way of moving storage changes to subscribers."""

    def attach(self, bus: 'SyncBus') -> None:
        self.bus = bus

    @abstractmethod
    def on_local_write(self, change: StorageChange) -> None:
        """Called by the bus right after this process wrote ``change``."""
        pass

    def close(self) -> None:
        pass


class InProcessTransport(SyncTransport):
    """Synchronous fan-out to the other subscribers of this process."""

    def on_local_write(self, change: StorageChange) -> None:
        self.bus.dispatch(change)


class StorageWatchTransport(SyncTransport):
    """
    Reports writes made to the storage area by other processes.

    The transport keeps a baseline copy of the storage area. Local writes
    update the baseline directly, so only foreign writes show up as a
    difference when the area is polled.
    """

    def __init__(self, storage: IKeyValueStorage, interval: float = 2.0):
        self.storage = storage
        self.interval = interval
        self._baseline: Dict[str, str] = {}
        self._task: Optional[ScheduledTask] = None

    def attach(self, bus: 'SyncBus') -> None:
        super().attach(bus)
        self._baseline = self.storage.items()

    @property
    def watching(self) -> bool:
        return self._task is not None and self._task.active

    def start(self) -> None:
        """Start polling. Needs a running event loop."""
        if self.watching:
            return
        self._task = ScheduledTask(self.poll, self.interval, repeat=True, name="storage-watch")
        self._task.start()
        logger.debug(f"Watching shared storage every {self.interval}s")

    def on_local_write(self, change: StorageChange) -> None:
        if change.value is None:
            self._baseline.pop(change.key, None)
        else:
            self._baseline[change.key] = change.value

    def poll(self) -> List[StorageChange]:
        """Compare the storage area with the baseline and deliver the differences."""
        current = self.storage.items()
        changes = []
        for key, value in current.items():
            if self._baseline.get(key) != value:
                changes.append(StorageChange(key=key, value=value, origin=None))
        for key in self._baseline:
            if key not in current:
                changes.append(StorageChange(key=key, value=None, origin=None))
        self._baseline = current

        for change in changes:
            logger.debug(f"Storage changed by another process: {change.key}")
            self.bus.dispatch(change)
        return changes

    def close(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None


class SyncBus:
    """Publish/subscribe hub for storage changes."""

    def __init__(self, transports: Optional[List[SyncTransport]] = None):
        self._subscribers: Dict[str, ChangeHandler] = {}
        self._last_seen: Dict[Tuple[str, str], Optional[str]] = {}
        self._transports: List[SyncTransport] = []
        for transport in transports if transports is not None else [InProcessTransport()]:
            self.attach(transport)

    def attach(self, transport: SyncTransport) -> SyncTransport:
        transport.attach(self)
        self._transports.append(transport)
        return transport

    def transport(self, transport_type: type) -> Optional[SyncTransport]:
        for transport in self._transports:
            if isinstance(transport, transport_type):
                return transport
        return None

    def subscribe(self, subscriber_id: str, handler: ChangeHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        if subscriber_id in self._subscribers:
            raise ValueError(f"Subscriber {subscriber_id} already registered")
        self._subscribers[subscriber_id] = handler

        def unsubscribe() -> None:
            self.unsubscribe(subscriber_id)

        return unsubscribe

    def unsubscribe(self, subscriber_id: str) -> None:
        self._subscribers.pop(subscriber_id, None)
        for seen in [k for k in self._last_seen if k[0] == subscriber_id]:
            del self._last_seen[seen]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, key: str, value: Optional[str], origin: Optional[str] = None) -> None:
        """Announce a write that has already been applied to storage."""
        change = StorageChange(key=key, value=value, origin=origin)
        if origin is not None:
            self._last_seen[(origin, key)] = value
        for transport in self._transports:
            transport.on_local_write(change)

    def dispatch(self, change: StorageChange) -> None:
        """Deliver a change to every subscriber except its origin."""
        for subscriber_id, handler in list(self._subscribers.items()):
            if subscriber_id == change.origin or subscriber_id not in self._subscribers:
                continue
            seen_key = (subscriber_id, change.key)
            if self._last_seen.get(seen_key, _MISSING) == change.value:
                logger.debug(f"Dropping duplicate change of {change.key} for {subscriber_id}")
                continue
            self._last_seen[seen_key] = change.value
            try:
                handler(change)
            except Exception as e:
                logger.error(f"Storage change handler {subscriber_id} failed for {change.key}: {e}",
                             exc_info=True)

    def close(self) -> None:
        for transport in self._transports:
            transport.close()
        self._subscribers.clear()
        self._last_seen.clear()
