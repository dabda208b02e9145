"""Server-Sent Events heartbeat channel.

Each stream is a generator that emits a connection event and then a ping
every ``interval`` seconds until it is cancelled. Cancellation comes from the
peer disconnecting (Flask closes the response), from the MCP session being
terminated, or from shutdown. Waiting happens on a ``threading.Event`` so a
cancelled stream wakes immediately and leaves no timer behind.
"""
import json
import logging
import threading
import time
from typing import Dict, Iterator, Optional, Set

import config

logger = logging.getLogger(__name__)


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class Heartbeat:
    """One cancellable keep-alive stream."""

    def __init__(self, interval: float = config.SSE_KEEPALIVE_INTERVAL, session_id: Optional[str] = None):
        self.interval = interval
        self.session_id = session_id
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def events(self) -> Iterator[str]:
        try:
            yield format_sse({'type': 'connection', 'status': 'established'})
            while not self._cancelled.wait(self.interval):
                yield format_sse({'type': 'ping', 'timestamp': time.time()})
        finally:
            self._cancelled.set()
            logger.debug(f"Heartbeat stream closed (session={self.session_id})")


class StreamRegistry:
    """Tracks open heartbeat streams so they can be cancelled together."""

    def __init__(self, interval: float = config.SSE_KEEPALIVE_INTERVAL):
        self.interval = interval
        self._streams: Dict[Optional[str], Set[Heartbeat]] = {}
        self._lock = threading.Lock()

    def open(self, session_id: Optional[str] = None) -> Heartbeat:
        heartbeat = Heartbeat(self.interval, session_id)
        with self._lock:
            self._streams.setdefault(session_id, set()).add(heartbeat)
        logger.info(f"SSE stream opened (session={session_id})")
        return heartbeat

    def close(self, heartbeat: Heartbeat) -> None:
        heartbeat.cancel()
        with self._lock:
            streams = self._streams.get(heartbeat.session_id)
            if streams is not None:
                streams.discard(heartbeat)
                if not streams:
                    del self._streams[heartbeat.session_id]

    def cancel_session(self, session_id: str) -> int:
        with self._lock:
            streams = self._streams.pop(session_id, set())
        for heartbeat in streams:
            heartbeat.cancel()
        return len(streams)

    def cancel_all(self) -> int:
        with self._lock:
            streams = [hb for group in self._streams.values() for hb in group]
            self._streams.clear()
        for heartbeat in streams:
            heartbeat.cancel()
        return len(streams)

    def __len__(self):
        with self._lock:
            return sum(len(group) for group in self._streams.values())
