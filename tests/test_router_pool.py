"""Tests for the per-router connection pool."""

import threading

import pytest

from app.services.router_pool import PoolExhaustedError, RouterConnectionPool


class Conn:
    def __init__(self, name):
        self.name = name
        self.closed = False
        self.alive = True

    def close(self):
        self.closed = True


def _factory():
    counter = {"n": 0}

    def connect():
        counter["n"] += 1
        return Conn(f"c{counter['n']}")

    return connect, counter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_released_connection_is_reused():
    pool = RouterConnectionPool(max_size=2)
    connect, counter = _factory()

    with pool.connection("r1", connect) as first:
        pass
    with pool.connection("r1", connect) as second:
        pass

    assert first is second
    assert counter["n"] == 1


def test_busy_connection_never_handed_out_twice():
    pool = RouterConnectionPool(max_size=2)
    connect, _ = _factory()

    a = pool.acquire("r1", connect)
    b = pool.acquire("r1", connect)

    assert a.client is not b.client
    assert pool.stats("r1")["r1"] == {"total": 2, "in_use": 2, "idle": 0, "max_size": 2}


def test_exhausted_pool_times_out():
    pool = RouterConnectionPool(max_size=1, acquire_timeout=0.05)
    connect, _ = _factory()
    pool.acquire("r1", connect)

    with pytest.raises(PoolExhaustedError):
        pool.acquire("r1", connect)


def test_keys_are_independent():
    pool = RouterConnectionPool(max_size=1, acquire_timeout=0.05)
    connect, _ = _factory()
    pool.acquire("r1", connect)

    assert pool.acquire("r2", connect).client.name == "c2"


def test_waiter_gets_released_connection():
    pool = RouterConnectionPool(max_size=1, acquire_timeout=2)
    connect, counter = _factory()
    held = pool.acquire("r1", connect)
    got = {}

    def waiter():
        got["entry"] = pool.acquire("r1", connect)

    thread = threading.Thread(target=waiter)
    thread.start()
    pool.release("r1", held)
    thread.join(timeout=3)

    assert got["entry"].client is held.client
    assert counter["n"] == 1


def test_idle_connections_expire():
    clock = FakeClock()
    pool = RouterConnectionPool(max_size=2, idle_timeout=300, clock=clock)
    connect, counter = _factory()

    with pool.connection("r1", connect) as old:
        pass
    clock.now += 301
    with pool.connection("r1", connect) as new:
        pass

    assert old.closed is True
    assert new is not old
    assert counter["n"] == 2


def test_dead_connection_replaced():
    pool = RouterConnectionPool(max_size=2, is_alive=lambda conn: conn.alive)
    connect, _ = _factory()

    with pool.connection("r1", connect) as first:
        pass
    first.alive = False
    with pool.connection("r1", connect) as second:
        pass

    assert second is not first
    assert first.closed is True


def test_error_inside_block_discards_connection():
    pool = RouterConnectionPool(max_size=1)
    connect, _ = _factory()

    with pytest.raises(OSError):
        with pool.connection("r1", connect) as conn:
            raise OSError("connection reset")

    assert conn.closed is True
    assert pool.stats("r1")["r1"]["total"] == 0


def test_failed_connect_frees_slot():
    pool = RouterConnectionPool(max_size=1, acquire_timeout=0.05)

    def refuse():
        raise OSError("refused")

    with pytest.raises(OSError):
        pool.acquire("r1", refuse)

    connect, _ = _factory()
    assert pool.acquire("r1", connect).client.name == "c1"


def test_clear_closes_idle():
    pool = RouterConnectionPool(max_size=2)
    connect, _ = _factory()
    with pool.connection("r1", connect) as conn:
        pass

    assert pool.clear() == 1
    assert conn.closed is True
    assert pool.stats() == {}


def test_zero_size_rejected():
    with pytest.raises(ValueError):
        RouterConnectionPool(max_size=0)
