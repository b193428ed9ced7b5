"""Live-reload fan-out for preview viewers.

Every browser showing a preview keeps one Server-Sent Events connection open
on /events. After a publish, ``broadcast`` writes one ``reload`` event to each
of them. Delivery is best effort: a client whose write fails is skipped, and
it is only removed when its own handler unsubscribes on disconnect.
"""

import json
import logging
import time
from threading import Event, Lock
from typing import Any, BinaryIO, Dict, List, Optional

logger = logging.getLogger(__name__)


def format_event(event: str, data: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


class SSEClient:
    """One open event stream. Writes are serialized per connection."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self._lock = Lock()

    def _write(self, payload: bytes) -> None:
        with self._lock:
            self.stream.write(payload)
            self.stream.flush()

    def send(self, event: str, data: Any) -> None:
        self._write(format_event(event, data))

    def comment(self, text: str) -> None:
        self._write(f": {text}\n\n".encode("utf-8"))


class LiveReloadBroadcaster:
    """Set of open SSE clients."""

    def __init__(self):
        self._clients: List[SSEClient] = []
        self._lock = Lock()
        self._closed = Event()

    def subscribe(self, client: SSEClient) -> None:
        with self._lock:
            if client not in self._clients:
                self._clients.append(client)

    def unsubscribe(self, client: SSEClient) -> None:
        with self._lock:
            if client in self._clients:
                self._clients.remove(client)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait_closed(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; True once the broadcaster is shut down."""
        return self._closed.wait(timeout)

    def close(self) -> None:
        """Ask every open stream handler to finish."""
        self._closed.set()

    def broadcast(self, info: Optional[Dict[str, Any]] = None, event: str = "reload") -> int:
        """Send ``event`` to every client. Returns how many writes succeeded."""
        payload = {"at": int(time.time() * 1000), **(info or {})}
        with self._lock:
            clients = list(self._clients)

        delivered = 0
        for client in clients:
            try:
                client.send(event, payload)
                delivered += 1
            except (OSError, ValueError):
                # Closed socket; the client's handler unsubscribes it.
                continue
        logger.debug("broadcast %s to %d/%d clients", event, delivered, len(clients))
        return delivered
