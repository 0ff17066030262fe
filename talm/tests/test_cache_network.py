import threading

import pytest

from talm.modules.cache import Cache, HardwareCache, NodeCache
from talm.modules.network import ConnectionPool, RateLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeSocket:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_cache_hits_misses_and_expiry():
    clock = FakeClock()
    cache = Cache(ttl=10, clock=clock)
    assert cache.get("a") == (None, False)
    cache.set("a", 1)
    assert cache.get("a") == (1, True)
    clock.now = 11
    assert cache.get("a") == (None, False)
    assert cache.stats() == (1, 2, 1, 0)


def test_cache_cleanup():
    clock = FakeClock()
    cache = Cache(ttl=5, clock=clock)
    cache.set("old", 1)
    clock.now = 3
    cache.set("new", 2)
    clock.now = 6
    assert cache.cleanup() == 1
    assert cache.size() == 1
    cache.clear()
    assert cache.size() == 0


def test_node_and_hardware_caches():
    nodes = NodeCache()
    nodes.set_node_info("10.0.0.2", "node")
    assert nodes.get_node_info("10.0.0.2") == "node"
    nodes.invalidate("10.0.0.2")
    assert nodes.get_node_info("10.0.0.2") is None

    hardware = HardwareCache(ttl=1, clock=FakeClock(5))
    hardware.set_hardware("10.0.0.2", {"cpu": 4})
    assert hardware.get_hardware("10.0.0.2") == {"cpu": 4}


def test_pool_reuses_connections():
    dialed = []

    def dialer(network, addr, timeout):
        dialed.append(addr)
        return FakeSocket()

    pool = ConnectionPool(dialer=dialer)
    first = pool.get("tcp", "10.0.0.2:50000")
    pool.put(first)
    second = pool.get("tcp", "10.0.0.2:50000")
    assert second is first
    assert dialed == ["10.0.0.2:50000"]
    metrics = pool.get_metrics()
    assert (metrics.created, metrics.reused, metrics.active) == (1, 1, 1)

    pool.close_all()
    assert first.conn.closed
    assert pool.size() == 0
    assert pool.get_metrics().active == 0


def test_pool_drops_idle_connections():
    pool = ConnectionPool(max_idle=0, dialer=lambda network, addr, timeout: FakeSocket())
    first = pool.get("tcp", "10.0.0.2:50000")
    pool.put(first)
    second = pool.get("tcp", "10.0.0.2:50000")
    assert second is not first
    assert first.conn.closed
    assert pool.get_metrics().closed == 1


def test_pool_discard():
    pool = ConnectionPool(dialer=lambda network, addr, timeout: FakeSocket())
    entry = pool.get("tcp", "10.0.0.2:50000")
    pool.discard(entry)
    assert entry.conn.closed
    assert pool.size() == 0


def test_pool_dial_failure_propagates():
    def dialer(network, addr, timeout):
        raise ConnectionRefusedError("refused")

    pool = ConnectionPool(dialer=dialer)
    with pytest.raises(OSError):
        pool.get("tcp", "10.0.0.2:50000")
    assert pool.get_metrics().created == 0


def test_rate_limiter_refills():
    clock = FakeClock()
    limiter = RateLimiter(capacity=2, rate=1.0, clock=clock)
    assert limiter.allow()
    assert limiter.allow()
    assert not limiter.allow()
    clock.now = 1.5
    assert limiter.allow()
    assert not limiter.allow()


def test_rate_limiter_wait_honours_cancel():
    limiter = RateLimiter(capacity=1, rate=0.0001)
    assert limiter.wait()
    cancel = threading.Event()
    cancel.set()
    assert not limiter.wait(cancel)


def test_pool_dials_different_hosts_in_parallel():
    barrier = threading.Barrier(3, timeout=2)

    def dialer(network, addr, timeout):
        barrier.wait()
        return FakeSocket()

    pool = ConnectionPool(dialer=dialer)
    errors = []

    def connect(addr):
        try:
            pool.get("tcp", addr)
        except threading.BrokenBarrierError as e:
            errors.append(e)

    threads = [threading.Thread(target=connect, args=(f"10.0.0.{i}:50000",)) for i in (2, 3, 4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    assert errors == []
    assert pool.size() == 3
    assert pool.get_metrics().created == 3


def test_close_all_does_not_wait_for_a_slow_dial():
    dialing = threading.Event()
    release = threading.Event()
    failures = []

    def dialer(network, addr, timeout):
        dialing.set()
        release.wait(5)
        raise ConnectionRefusedError("refused")

    def connect():
        try:
            pool.get("tcp", "10.0.0.2:50000")
        except OSError as e:
            failures.append(e)

    pool = ConnectionPool(dialer=dialer)
    worker = threading.Thread(target=connect)
    worker.start()
    try:
        assert dialing.wait(2)
        closer = threading.Thread(target=pool.close_all)
        closer.start()
        closer.join(timeout=1)
        assert not closer.is_alive()
    finally:
        release.set()
        worker.join(timeout=5)
    assert len(failures) == 1
