"""
Process-wide state shared by every session instance.

One ``SharedSessionContext`` exists per process. It is created on first use
(or explicitly by the host application), is handed to each
``SessionController`` at construction and lives until the process exits.
It owns the shared storage area, the sync bus and the advisory guards that
instances use to avoid duplicate work.
"""

import itertools
import logging
import time
from pathlib import Path
from typing import Callable, Optional

from session_shared.interfaces import IKeyValueStorage
from session_client.auth.sync_bus import InProcessTransport, StorageWatchTransport, SyncBus
from session_client.auth.token_storage import EncryptedFileStorage, MemoryStorage
from session_client.config import ClientConfiguration

logger = logging.getLogger(__name__)


class SharedSessionContext:
    """Storage, sync bus, refresh/fetch cooldowns and the prompt guard for one process."""

    _instance: Optional['SharedSessionContext'] = None

    def __init__(
        self,
        storage: Optional[IKeyValueStorage] = None,
        bus: Optional[SyncBus] = None,
        clock: Callable[[], float] = time.time,
        refresh_cooldown: float = 5.0,
        profile_fetch_cooldown: float = 5.0,
        watch_interval: Optional[float] = None
    ):
        self.storage = storage if storage is not None else MemoryStorage()
        self.bus = bus if bus is not None else SyncBus([InProcessTransport()])
        self.clock = clock
        self.refresh_cooldown = refresh_cooldown
        self.profile_fetch_cooldown = profile_fetch_cooldown
        self.watch_interval = watch_interval

        self._last_refresh_attempt: Optional[float] = None
        self._last_profile_fetch: Optional[float] = None
        self._watch: Optional[StorageWatchTransport] = None
        self._prompt_owner: Optional[str] = None
        self._instance_ids = itertools.count(1)

    @classmethod
    def instance(cls) -> 'SharedSessionContext':
        """Return the process-wide context, creating a memory-backed one if needed."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def install(cls, context: 'SharedSessionContext') -> 'SharedSessionContext':
        """Make ``context`` the process-wide context."""
        if cls._instance is not None and cls._instance is not context:
            cls._instance.close()
        cls._instance = context
        return context

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None

    @classmethod
    def from_config(cls, config: ClientConfiguration) -> 'SharedSessionContext':
        if config.get_storage_backend() == 'memory':
            storage: IKeyValueStorage = MemoryStorage()
            watch_interval = None
        else:
            path = config.get_storage_path()
            storage = EncryptedFileStorage(
                path=Path(path) if path else None,
                service_name=config.get_storage_service_name()
            )
            watch_interval = config.get_storage_watch_interval()

        return cls(
            storage=storage,
            refresh_cooldown=config.get_refresh_cooldown(),
            profile_fetch_cooldown=config.get_profile_fetch_cooldown(),
            watch_interval=watch_interval
        )

    def next_instance_id(self) -> str:
        return f"session-{next(self._instance_ids)}"

    def try_begin_refresh(self) -> bool:
        """Claim the shared refresh slot unless an attempt was made within the cooldown."""
        now = self.clock()
        if self._last_refresh_attempt is not None and now - self._last_refresh_attempt < self.refresh_cooldown:
            logger.debug(f"Refresh attempted {now - self._last_refresh_attempt:.1f}s ago, within cooldown")
            return False
        self._last_refresh_attempt = now
        return True

    def try_begin_profile_fetch(self) -> bool:
        """Claim the shared profile fetch slot unless a fetch started within the cooldown."""
        now = self.clock()
        if self._last_profile_fetch is not None and now - self._last_profile_fetch < self.profile_fetch_cooldown:
            logger.debug("Profile fetched recently by another instance, skipping")
            return False
        self._last_profile_fetch = now
        return True

    @property
    def last_refresh_attempt(self) -> Optional[float]:
        return self._last_refresh_attempt

    def ensure_cross_process_watch(self) -> bool:
        """Start watching the storage area for other processes' writes, once per process."""
        if self.watch_interval is None:
            return False
        if self._watch is None:
            self._watch = StorageWatchTransport(self.storage, interval=self.watch_interval)
            self.bus.attach(self._watch)
        if not self._watch.watching:
            self._watch.start()
        return True

    def claim_prompt(self, owner: str) -> bool:
        """Reserve the reconciliation prompt. Only one may be open per process."""
        if self._prompt_owner is not None and self._prompt_owner != owner:
            return False
        self._prompt_owner = owner
        return True

    def release_prompt(self, owner: str) -> None:
        if self._prompt_owner == owner:
            self._prompt_owner = None

    @property
    def prompt_open(self) -> bool:
        return self._prompt_owner is not None

    def close(self) -> None:
        self.bus.close()
        self._watch = None
