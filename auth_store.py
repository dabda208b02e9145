"""Storage for clients, codes, tokens and sessions.

Business logic talks to the ``AuthStore`` interface only, so the in-memory
implementation below can be swapped for a shared backing store without
touching the OAuth or session code.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, Iterable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class AuthStore(ABC, Generic[T]):
    """Keyed store of records that may expire."""

    name = 'store'

    @abstractmethod
    def put(self, key: str, value: T) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def get(self, key: str) -> Optional[T]:
        """Return a live record; expired records are evicted and reported missing."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a record; return whether it existed."""

    @abstractmethod
    def pop(self, key: str) -> Optional[T]:
        """Atomically remove and return a live record."""

    @abstractmethod
    def items(self) -> List[Tuple[str, T]]:
        """Snapshot of live records."""

    @abstractmethod
    def sweep_expired(self) -> int:
        """Remove every expired record; return how many were removed."""

    def values(self) -> List[T]:
        return [value for _, value in self.items()]

    @abstractmethod
    def __len__(self) -> int:
        pass


def _expired(value, now: float) -> bool:
    is_expired = getattr(value, 'is_expired', None)
    return bool(is_expired and is_expired(now))


class InMemoryAuthStore(AuthStore[T]):
    """Process-local store guarded by a re-entrant lock."""

    def __init__(self, name: str, clock: Callable[[], float] = time.time):
        self.name = name
        self._clock = clock
        self._items: Dict[str, T] = {}
        self._lock = threading.RLock()

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._items[key] = value

    def get(self, key: str) -> Optional[T]:
        if not key:
            return None
        with self._lock:
            value = self._items.get(key)
            if value is None:
                return None
            if _expired(value, self._clock()):
                del self._items[key]
                logger.debug(f"Evicted expired {self.name} entry on access")
                return None
            return value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def pop(self, key: str) -> Optional[T]:
        if not key:
            return None
        with self._lock:
            value = self._items.pop(key, None)
            if value is None or _expired(value, self._clock()):
                return None
            return value

    def items(self) -> List[Tuple[str, T]]:
        now = self._clock()
        with self._lock:
            return [(key, value) for key, value in self._items.items()
                    if not _expired(value, now)]

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, value in self._items.items() if _expired(value, now)]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class StoreSweeper:
    """Background thread that periodically drops expired records.

    Expiry is already enforced lazily on every lookup; the sweeper only keeps
    memory bounded for records nobody looks up again.
    """

    def __init__(self, stores: Iterable[AuthStore], interval: float = 300.0):
        self.stores = list(stores)
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> Dict[str, int]:
        counts = {}
        for store in self.stores:
            try:
                counts[store.name] = store.sweep_expired()
            except Exception as e:
                logger.error(f"Sweep of {store.name} failed: {e}")
        removed = sum(counts.values())
        if removed:
            logger.info(f"Swept {removed} expired records: {counts}")
        return counts

    def _run(self):
        while not self._stop.wait(self.interval):
            self.sweep_once()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='auth-store-sweeper', daemon=True)
        self._thread.start()
        logger.debug(f"Store sweeper started (interval={self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
