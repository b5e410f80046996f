"""Bounded per-router connection pool.

Connections are keyed by router identity. Each key holds at most
``max_size`` connections; callers beyond that wait for a release until
``acquire_timeout`` elapses. Opening a connection happens outside the
pool lock so a slow router never blocks callers for other routers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class PoolExhaustedError(TimeoutError):
    pass


@dataclass(eq=False)
class PooledConnection:
    client: Any = None
    in_use: bool = False
    created_at: float = 0.0
    last_used: float = 0.0
    uses: int = 0


@dataclass
class _KeyPool:
    entries: list[PooledConnection] = field(default_factory=list)


def _close_client(client: Any) -> None:
    close = getattr(client, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as exc:
        logger.debug("Error closing pooled connection: %s", exc)


class RouterConnectionPool:
    def __init__(
        self,
        max_size: int = 3,
        idle_timeout: float = 300,
        acquire_timeout: float = 30,
        is_alive: Callable[[Any], bool] | None = None,
        closer: Callable[[Any], None] = _close_client,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.idle_timeout = idle_timeout
        self.acquire_timeout = acquire_timeout
        self._is_alive = is_alive or (lambda client: True)
        self._closer = closer
        self._clock = clock
        self._cond = threading.Condition()
        self._pools: dict[str, _KeyPool] = {}

    def acquire(self, key: str, connect: Callable[[], Any]) -> PooledConnection:
        """Hand out an idle connection for ``key`` or open a new one.

        Raises:
            PoolExhaustedError: if every slot stays busy past acquire_timeout
        """
        deadline = self._clock() + self.acquire_timeout
        stale: list[PooledConnection] = []
        reserved: PooledConnection | None = None
        with self._cond:
            while True:
                pool = self._pools.setdefault(key, _KeyPool())
                stale.extend(self._evict_idle(pool))
                reserved = self._take_idle(pool, stale)
                if reserved is None and len(pool.entries) < self.max_size:
                    now = self._clock()
                    # Slot is claimed under the lock, filled outside it.
                    reserved = PooledConnection(
                        in_use=True, created_at=now, last_used=now, uses=1
                    )
                    pool.entries.append(reserved)
                if reserved is not None:
                    break
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"No free connection for {key} after {self.acquire_timeout}s"
                    )
                self._cond.wait(remaining)

        for entry in stale:
            self._closer(entry.client)

        if reserved.client is not None:
            return reserved
        try:
            reserved.client = connect()
        except BaseException:
            with self._cond:
                self._remove(key, reserved)
                self._cond.notify()
            raise
        logger.debug("Opened pooled connection for %s", key)
        return reserved

    def release(self, key: str, entry: PooledConnection) -> None:
        with self._cond:
            pool = self._pools.get(key)
            if pool is None or entry not in pool.entries:
                orphan = True
            else:
                orphan = False
                entry.in_use = False
                entry.last_used = self._clock()
            self._cond.notify()
        if orphan:
            self._closer(entry.client)

    def discard(self, key: str, entry: PooledConnection) -> None:
        """Drop a connection that failed mid-use."""
        with self._cond:
            self._remove(key, entry)
            self._cond.notify()
        self._closer(entry.client)

    @contextmanager
    def connection(self, key: str, connect: Callable[[], Any]) -> Iterator[Any]:
        entry = self.acquire(key, connect)
        try:
            yield entry.client
        except BaseException:
            self.discard(key, entry)
            raise
        else:
            self.release(key, entry)

    def clear(self, key: str | None = None) -> int:
        """Close idle connections and forget busy ones for ``key`` (or all keys)."""
        with self._cond:
            keys = [key] if key is not None else list(self._pools)
            dropped: list[PooledConnection] = []
            for pool_key in keys:
                pool = self._pools.pop(pool_key, None)
                if pool is not None:
                    dropped.extend(pool.entries)
            self._cond.notify_all()
        for entry in dropped:
            if not entry.in_use:
                self._closer(entry.client)
        return len(dropped)

    def stats(self, key: str | None = None) -> dict[str, dict[str, int]]:
        with self._cond:
            keys = [key] if key is not None else list(self._pools)
            result = {}
            for pool_key in keys:
                pool = self._pools.get(pool_key)
                entries = pool.entries if pool else []
                busy = sum(1 for entry in entries if entry.in_use)
                result[pool_key] = {
                    "total": len(entries),
                    "in_use": busy,
                    "idle": len(entries) - busy,
                    "max_size": self.max_size,
                }
            return result

    def _evict_idle(self, pool: _KeyPool) -> list[PooledConnection]:
        now = self._clock()
        expired = [
            entry
            for entry in pool.entries
            if not entry.in_use and now - entry.last_used > self.idle_timeout
        ]
        for entry in expired:
            pool.entries.remove(entry)
        return expired

    def _take_idle(
        self, pool: _KeyPool, stale: list[PooledConnection]
    ) -> PooledConnection | None:
        for entry in list(pool.entries):
            if entry.in_use or entry.client is None:
                continue
            if not self._is_alive(entry.client):
                pool.entries.remove(entry)
                stale.append(entry)
                continue
            entry.in_use = True
            entry.last_used = self._clock()
            entry.uses += 1
            return entry
        return None

    def _remove(self, key: str, entry: PooledConnection) -> None:
        pool = self._pools.get(key)
        if pool is not None and entry in pool.entries:
            pool.entries.remove(entry)
