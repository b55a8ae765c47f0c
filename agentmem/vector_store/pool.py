"""Connection pool shared by the networked adapters.

Adapters that point at the same server (same backend, host, port,
credentials and TLS setting) share one vendor client even when they serve
different collections or dimensions. Clients are reference counted: each
``connect()`` acquires, each ``disconnect()`` releases, and a client whose
count drops to zero stays cached until idle eviction or ``shutdown()`` so
rapid connect/disconnect cycles do not churn connections.

With ``health_check_interval`` set, a background task started on the first
``acquire()`` periodically probes every client that was acquired with a
``probe`` and evicts idle ones; ``shutdown()`` cancels it.

The pool is a plain object: whoever builds the storage system creates one and
passes it to every adapter (see ``agentmem.vector_store.factory``).
"""

import asyncio
import hashlib
import inspect
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import structlog

logger = structlog.get_logger("vector_store.pool")

DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_IDLE_TTL = 300.0
DEFAULT_HEALTH_CHECK_INTERVAL = 60.0

ClientFactory = Callable[[], Union[Any, Awaitable[Any]]]
ClientProbe = Callable[[Any], Any]


@dataclass(frozen=True)
class ConnectionKey:
    """Canonical identity of a server connection.

    Credentials are kept only as a SHA-256 digest so keys can be logged.
    """

    backend: str
    host: str
    port: Optional[int] = None
    credentials_digest: Optional[str] = None
    tls: bool = False

    def __str__(self) -> str:
        scheme = f"{self.backend}+tls" if self.tls else self.backend
        port = f":{self.port}" if self.port is not None else ""
        auth = f"#{self.credentials_digest[:12]}" if self.credentials_digest else ""
        return f"{scheme}://{self.host}{port}{auth}"


def make_connection_key(
    backend: str,
    host: str,
    port: Optional[int] = None,
    credentials: Optional[Iterable[Optional[str]]] = None,
    tls: bool = False
) -> ConnectionKey:
    """Build a ``ConnectionKey`` from raw connection parameters.

    Parameters
    - backend: Backend type tag (``qdrant``, ``chroma``...)
    - host: Hostname or URL; compared case-insensitively
    - port: Port with the backend default already applied
    - credentials: API keys, user names, passwords, tokens (``None`` entries ignored)
    - tls: Whether the connection uses TLS
    """
    digest = None
    parts = [part for part in (credentials or ()) if part]
    if parts:
        digest = hashlib.sha256("\x00".join(parts).encode("utf-8")).hexdigest()
    return ConnectionKey(
        backend=backend,
        host=host.strip().lower().rstrip("/"),
        port=port,
        credentials_digest=digest,
        tls=tls,
    )


@dataclass
class PooledConnection:
    key: ConnectionKey
    client: Any
    ref_count: int = 0
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    last_health_check: Optional[float] = None
    is_healthy: bool = True
    probe: Optional[ClientProbe] = None


class ConnectionPool:
    """Reference-counted cache of vendor clients.

    Parameters
    - max_connections: Soft cap; idle clients are evicted LRU-first to stay under it
    - idle_ttl: Seconds an unreferenced client is kept before ``evict_idle`` closes it
    - health_check_interval: Seconds between maintenance passes; ``None`` disables them
    - metrics: Optional ``MetricsCollector`` receiving the pooled connection count
    """

    def __init__(
        self,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        idle_ttl: float = DEFAULT_IDLE_TTL,
        health_check_interval: Optional[float] = None,
        metrics: Any = None
    ):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.max_connections = max_connections
        self.idle_ttl = idle_ttl
        self.health_check_interval = health_check_interval
        self.metrics = metrics
        self._connections: Dict[ConnectionKey, PooledConnection] = {}
        self._lock = asyncio.Lock()
        self._maintenance_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, key: ConnectionKey) -> bool:
        return key in self._connections

    async def acquire(self, key: ConnectionKey, factory: ClientFactory, probe: Optional[ClientProbe] = None) -> Any:
        """Return the client for ``key``, building it with ``factory`` on first use.

        ``probe`` is kept with the connection for the maintenance task.
        """
        self._start_maintenance()
        async with self._lock:
            entry = self._connections.get(key)

            if entry is not None and not entry.is_healthy and entry.ref_count == 0:
                logger.info("Rebuilding unhealthy pooled connection", key=str(key))
                await self._discard(entry)
                entry = None

            if entry is None:
                if len(self._connections) >= self.max_connections:
                    await self._evict_lru()
                client = factory()
                if inspect.isawaitable(client):
                    client = await client
                entry = PooledConnection(key=key, client=client)
                self._connections[key] = entry
                logger.info("Created pooled connection", key=str(key), total=len(self._connections))
                self._report_size()

            entry.ref_count += 1
            entry.last_used = time.monotonic()
            if probe is not None:
                entry.probe = probe
            logger.debug("Acquired pooled connection", key=str(key), ref_count=entry.ref_count)
            return entry.client

    async def release(self, key: ConnectionKey) -> None:
        """Drop one reference; the client is kept (idle) at zero."""
        async with self._lock:
            entry = self._connections.get(key)
            if entry is None:
                logger.warning("Release of unknown pooled connection", key=str(key))
                return
            if entry.ref_count == 0:
                logger.warning("Release of pooled connection with no references", key=str(key))
                return
            entry.ref_count -= 1
            entry.last_used = time.monotonic()
            logger.debug("Released pooled connection", key=str(key), ref_count=entry.ref_count)

    async def evict_idle(self, max_idle: Optional[float] = None) -> int:
        """Close unreferenced clients idle for longer than ``max_idle`` (defaults to ``idle_ttl``)."""
        ttl = self.idle_ttl if max_idle is None else max_idle
        now = time.monotonic()
        async with self._lock:
            stale = [
                entry for entry in self._connections.values()
                if entry.ref_count == 0 and now - entry.last_used >= ttl
            ]
            for entry in stale:
                await self._discard(entry)
            if stale:
                logger.info("Evicted idle pooled connections", count=len(stale))
            return len(stale)

    async def health_check(self, key: ConnectionKey, probe: Callable[[Any], Any]) -> bool:
        """Probe the client for ``key`` and record the outcome.

        ``probe`` receives the client and may be sync or async; a falsy result
        or an exception marks the connection unhealthy. Unhealthy idle clients
        are discarded right away; referenced ones are rebuilt once released.
        """
        entry = self._connections.get(key)
        if entry is None:
            return False

        try:
            result = probe(entry.client)
            if inspect.isawaitable(result):
                result = await result
            healthy = bool(result)
        except Exception as e:
            logger.warning("Pooled connection health check failed", key=str(key), error=str(e))
            healthy = False

        async with self._lock:
            entry.last_health_check = time.monotonic()
            entry.is_healthy = healthy
            if not healthy and entry.ref_count == 0 and self._connections.get(key) is entry:
                await self._discard(entry)
        return healthy

    async def run_maintenance(self) -> Dict[str, int]:
        """One maintenance pass: probe clients that carry a probe, then evict idle ones."""
        probes = [(entry.key, entry.probe) for entry in list(self._connections.values()) if entry.probe is not None]
        unhealthy = 0
        for key, probe in probes:
            if key in self._connections and not await self.health_check(key, probe):
                unhealthy += 1
        evicted = await self.evict_idle()
        logger.debug(
            "Connection pool maintenance pass",
            checked=len(probes),
            unhealthy=unhealthy,
            evicted=evicted
        )
        return {"checked": len(probes), "unhealthy": unhealthy, "evicted": evicted}

    def _start_maintenance(self) -> None:
        if not self.health_check_interval or self.health_check_interval <= 0:
            return
        if self._maintenance_task is not None and not self._maintenance_task.done():
            return
        self._maintenance_task = asyncio.create_task(self._maintain())
        logger.info("Connection pool maintenance started", interval=self.health_check_interval)

    async def _maintain(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error("Connection pool maintenance failed", error=str(e))

    async def shutdown(self) -> None:
        """Stop maintenance and close every client regardless of references."""
        task, self._maintenance_task = self._maintenance_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        async with self._lock:
            entries = list(self._connections.values())
            for entry in entries:
                if entry.ref_count:
                    logger.warning(
                        "Closing pooled connection still in use",
                        key=str(entry.key),
                        ref_count=entry.ref_count
                    )
                await self._discard(entry)
            logger.info("Connection pool shut down", closed=len(entries))

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of pool occupancy keyed by ``str(ConnectionKey)``."""
        return {
            "total_connections": len(self._connections),
            "max_connections": self.max_connections,
            "per_connection": {
                str(key): {
                    "ref_count": entry.ref_count,
                    "is_healthy": entry.is_healthy,
                    "last_used": entry.last_used,
                    "last_health_check": entry.last_health_check,
                }
                for key, entry in self._connections.items()
            },
        }

    def ref_count(self, key: ConnectionKey) -> int:
        entry = self._connections.get(key)
        return entry.ref_count if entry else 0

    async def _evict_lru(self) -> None:
        idle: List[PooledConnection] = sorted(
            (entry for entry in self._connections.values() if entry.ref_count == 0),
            key=lambda entry: entry.last_used,
        )
        if not idle:
            logger.warning(
                "Connection pool at capacity with no idle connections",
                max_connections=self.max_connections
            )
            return
        logger.info("Evicting least recently used pooled connection", key=str(idle[0].key))
        await self._discard(idle[0])

    async def _discard(self, entry: PooledConnection) -> None:
        self._connections.pop(entry.key, None)
        self._report_size()
        await close_client(entry.client)

    def _report_size(self) -> None:
        if self.metrics is not None:
            self.metrics.set_pooled_connections(len(self._connections))


async def close_client(client: Any) -> None:
    """Close a vendor client, awaiting ``close()`` when it is a coroutine."""
    close = getattr(client, "close", None)
    if not callable(close):
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Failed to close client", client=type(client).__name__, error=str(e))
