import threading
import time

import pytest

from talm.errors import DiscoveryUnavailable, OperationTimeout, ValidationError
from talm.modules.network import ConnectionPool
from talm.modules.scanner import (
    NetworkScanner,
    NodeInfo,
    ProgressChannel,
    ScanCancelled,
    dedupe_nodes,
    describe_node,
    enumerate_hosts,
    filter_and_sort_nodes,
    summarize_nodes,
)
from talm.modules.talosctl import TalosctlClient

from .conftest import FakeTalosctl, node_resources


def make_scanner(reachable, collector=None, **kwargs):
    kwargs.setdefault("scan_timeout", 10)
    return NetworkScanner(
        prober=lambda ip: ip in reachable,
        checker=lambda ip, cancel: True,
        collector=collector or (lambda ip, cancel: NodeInfo(ip=ip, hostname=f"host-{ip}", type="worker")),
        **kwargs,
    )


def test_enumerate_hosts():
    assert enumerate_hosts("10.0.0.0/30") == ["10.0.0.1", "10.0.0.2"]
    assert enumerate_hosts("10.0.0.5/32") == ["10.0.0.5"]
    assert enumerate_hosts("10.0.0.5") == ["10.0.0.5"]
    with pytest.raises(ValidationError) as exc:
        enumerate_hosts("not-a-network")
    assert exc.value.code == "VAL_002"
    with pytest.raises(ValidationError):
        enumerate_hosts("10.0.0.0/8")


def test_dedupe_by_mac_then_ip():
    nodes = [
        NodeInfo(ip="10.0.0.2", mac="AA:BB:CC:00:00:01"),
        NodeInfo(ip="10.0.0.9", mac="aa:bb:cc:00:00:01"),
        NodeInfo(ip="10.0.0.3"),
        NodeInfo(ip="10.0.0.3"),
    ]
    assert [n.ip for n in dedupe_nodes(nodes)] == ["10.0.0.2", "10.0.0.3"]


def test_filter_and_sort_puts_control_planes_first():
    nodes = [
        NodeInfo(ip="10.0.0.10", type="worker"),
        NodeInfo(ip="", type="controlplane"),
        NodeInfo(ip="10.0.0.9", type="worker"),
        NodeInfo(ip="10.0.0.20", type="controlplane"),
    ]
    assert [n.ip for n in filter_and_sort_nodes(nodes)] == ["10.0.0.20", "10.0.0.9", "10.0.0.10"]


def test_summary_and_description():
    nodes = [NodeInfo(ip="10.0.0.2", type="controlplane", cpu=4, ram=8), NodeInfo(ip="10.0.0.3")]
    summary = summarize_nodes(nodes)
    assert summary["total"] == 2
    assert summary["controlplane"] == 1
    assert summary["unknown"] == 1
    assert summary["cpu"] == 4
    assert describe_node(nodes[0]) == "10.0.0.2 (10.0.0.2) 4 CPU 8 GiB RAM"


def test_scan_finds_nodes_in_address_order():
    scanner = make_scanner({"10.0.0.6", "10.0.0.2"})
    nodes = scanner.scan("10.0.0.0/29")
    assert [n.ip for n in nodes] == ["10.0.0.2", "10.0.0.6"]


def test_scan_without_responders():
    assert make_scanner(set()).scan("10.0.0.0/29") == []


def test_failed_hosts_are_skipped():
    def prober(ip):
        if ip == "10.0.0.1":
            raise OSError("network unreachable")
        return ip in ("10.0.0.2", "10.0.0.3")

    def collector(ip, cancel):
        if ip == "10.0.0.3":
            raise DiscoveryUnavailable("node went away", path="hostname")
        return NodeInfo(ip=ip)

    scanner = NetworkScanner(prober=prober, checker=lambda ip, cancel: True, collector=collector, scan_timeout=10)
    assert [n.ip for n in scanner.scan("10.0.0.0/29")] == ["10.0.0.2"]


def test_scan_stops_at_target_count():
    scanner = make_scanner({"10.0.0.2", "10.0.0.3", "10.0.0.4"}, target_count=1, workers=1)
    nodes = scanner.scan("10.0.0.0/29")
    assert [n.ip for n in nodes] == ["10.0.0.2"]


def test_cancel_keeps_processed_nodes():
    cancel = threading.Event()
    release = threading.Event()

    def collector(ip, worker_cancel):
        if ip == "10.0.0.3":
            time.sleep(0.3)
            cancel.set()
            release.wait(5)
        return NodeInfo(ip=ip)

    scanner = make_scanner({"10.0.0.2", "10.0.0.3", "10.0.0.4"}, collector=collector, workers=1)
    try:
        with pytest.raises(ScanCancelled) as exc:
            scanner.scan("10.0.0.0/29", cancel=cancel)
    finally:
        release.set()
    assert [n.ip for n in exc.value.nodes] == ["10.0.0.2"]
    assert exc.value.exit_code == 5


def test_scan_deadline():
    release = threading.Event()

    def prober(ip):
        release.wait(5)
        return False

    scanner = NetworkScanner(prober=prober, scan_timeout=0.2)
    try:
        with pytest.raises(OperationTimeout):
            scanner.scan("10.0.0.0/30")
    finally:
        release.set()


def test_progress_channel_is_monotonic():
    received = []
    channel = ProgressChannel(received.append)
    for value in (10, 5, 20, 20, 150):
        channel.send(value)
    channel.close()
    channel.thread.join(timeout=2)
    assert received == [10, 20, 100]


def test_collect_node_info_from_admin_api():
    runner = FakeTalosctl(node_resources())
    scanner = NetworkScanner(client=TalosctlClient(insecure=True, runner=runner))
    assert scanner.is_talos_node("10.0.0.2")
    node = scanner.collect_node_info("10.0.0.2")
    assert node.hostname == "talos-abc"
    assert node.cpu == 4
    assert node.ram == 4
    assert node.mac == "aa:bb:cc:dd:ee:01"
    assert [d.dev_path for d in node.disks] == ["/dev/sda"]

    calls = len(runner.calls)
    assert scanner.collect_node_info("10.0.0.2") is node
    assert len(runner.calls) == calls


def test_unreachable_node_is_not_talos():
    runner = FakeTalosctl(returncode=1, stderr="connection refused")
    scanner = NetworkScanner(client=TalosctlClient(insecure=True, runner=runner))
    assert not scanner.is_talos_node("10.0.0.2")


def test_port_checks_run_concurrently():
    lock = threading.Lock()
    state = {"current": 0, "peak": 0}

    def dialer(network, addr, timeout):
        with lock:
            state["current"] += 1
            state["peak"] = max(state["peak"], state["current"])
        time.sleep(0.3)
        with lock:
            state["current"] -= 1
        raise ConnectionRefusedError("refused")

    scanner = NetworkScanner(workers=10, scan_timeout=3)
    scanner.pool = ConnectionPool(dialer=dialer)
    started = time.monotonic()
    assert scanner.scan("10.0.0.0/28") == []
    assert time.monotonic() - started < 2.5
    assert state["peak"] > 1


def test_progress_close_does_not_wait_for_a_slow_callback():
    release = threading.Event()
    received = []

    def callback(value):
        received.append(value)
        release.wait(5)

    channel = ProgressChannel(callback, maxsize=1)
    for value in (10, 20, 30):
        channel.send(value)
    started = time.monotonic()
    channel.close()
    assert time.monotonic() - started < 1
    release.set()
    channel.thread.join(timeout=2)
    assert not channel.thread.is_alive()
    assert received[0] == 10
