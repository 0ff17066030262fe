"""Connection pooling and rate limiting for the network scanner."""
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..config import Config

logger = logging.getLogger("talm.network")

Dialer = Callable[[str, str, float], socket.socket]


def tcp_dial(network: str, addr: str, timeout: float) -> socket.socket:
    """Open a TCP connection to ``host:port``."""
    host, _, port = addr.rpartition(":")
    return socket.create_connection((host.strip("[]"), int(port)), timeout=timeout)


@dataclass
class PoolMetrics:
    created: int = 0
    reused: int = 0
    closed: int = 0
    active: int = 0
    get_calls: int = 0
    put_calls: int = 0


class PooledConnection:
    """A pooled socket with its creation and last-use times."""

    def __init__(self, conn: socket.socket, network: str, addr: str):
        self.conn = conn
        self.network = network
        self.addr = addr
        self.created = time.monotonic()
        self.last_used = self.created

    @property
    def key(self) -> str:
        return f"{self.network}:{self.addr}"

    def close(self) -> None:
        try:
            self.conn.close()
        except OSError as e:
            logger.debug(f"Failed to close connection to {self.addr}: {e}")


class ConnectionPool:
    """Thread-safe connection pool guarded by a single coarse lock.

    Entries idle for longer than ``max_idle`` are closed on the next ``get``
    for the same address; entries older than ``max_lifetime`` are closed
    when returned with ``put``.
    """

    def __init__(
        self,
        max_idle: float = 30.0,
        max_lifetime: float = 300.0,
        timeout: float = Config.PROBE_TIMEOUT,
        dialer: Dialer = tcp_dial,
    ):
        self.max_idle = max_idle
        self.max_lifetime = max_lifetime
        self.timeout = timeout
        self.dialer = dialer
        self.connections: Dict[str, PooledConnection] = {}
        self.metrics = PoolMetrics()
        self.lock = threading.Lock()

    def get(self, network: str, addr: str) -> PooledConnection:
        key = f"{network}:{addr}"
        with self.lock:
            self.metrics.get_calls += 1
            entry = self.connections.get(key)
            if entry is not None:
                now = time.monotonic()
                if now - entry.last_used < self.max_idle and now - entry.created < self.max_lifetime:
                    self.metrics.reused += 1
                    entry.last_used = now
                    return entry
                entry.close()
                del self.connections[key]
                self.metrics.closed += 1
                self.metrics.active -= 1

        # Dial without the lock so probes of different hosts run in parallel
        conn = self.dialer(network, addr, self.timeout)
        fresh = PooledConnection(conn, network, addr)
        with self.lock:
            self.metrics.created += 1
            entry = self.connections.get(key)
            if entry is not None:
                # Another caller connected to the same address meanwhile
                fresh.close()
                self.metrics.closed += 1
                self.metrics.reused += 1
                entry.last_used = time.monotonic()
                return entry
            self.connections[key] = fresh
            self.metrics.active += 1
        logger.debug(f"Opened connection to {key}")
        return fresh

    def put(self, entry: PooledConnection) -> None:
        with self.lock:
            self.metrics.put_calls += 1
            if time.monotonic() - entry.created > self.max_lifetime:
                entry.close()
                if self.connections.get(entry.key) is entry:
                    del self.connections[entry.key]
                    self.metrics.active -= 1
                self.metrics.closed += 1
                return
            entry.last_used = time.monotonic()
            self.connections[entry.key] = entry

    def discard(self, entry: PooledConnection) -> None:
        """Close a broken connection instead of returning it."""
        with self.lock:
            entry.close()
            if self.connections.get(entry.key) is entry:
                del self.connections[entry.key]
                self.metrics.active -= 1
            self.metrics.closed += 1

    def close_all(self) -> None:
        with self.lock:
            for entry in self.connections.values():
                entry.close()
                self.metrics.closed += 1
            self.connections.clear()
            self.metrics.active = 0

    def get_metrics(self) -> PoolMetrics:
        with self.lock:
            return PoolMetrics(**vars(self.metrics))

    def size(self) -> int:
        with self.lock:
            return len(self.connections)


class RateLimiter:
    """Token bucket refilled at ``rate`` tokens per second."""

    def __init__(self, capacity: int, rate: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.rate = rate
        self.tokens = float(capacity)
        self.clock = clock
        self.last_refill = clock()
        self.lock = threading.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)
            self.last_refill = now

    def allow(self) -> bool:
        with self.lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return True
            return False

    def wait(self, cancel: Optional[threading.Event] = None, poll: float = 0.05) -> bool:
        """Block until a token is available; False when cancelled first."""
        while not self.allow():
            if cancel is not None and cancel.wait(poll):
                return False
            if cancel is None:
                time.sleep(poll)
        return True
