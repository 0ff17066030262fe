"""Subnet scanner feeding the init wizard.

A scan runs in two phases over a bounded thread pool:

1. probe every address of the CIDR for the admin port (progress 10 -> 20)
2. for each responder, confirm it is a Talos node and collect its facts
   (progress 20 -> 100), stopping early once ``target_count`` nodes are found

Failed probes are logged and skipped. Only an invalid CIDR, the scan
deadline or cancellation fail the scan as a whole.
"""
import ipaddress
import logging
import queue
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..config import Config
from ..errors import Cancelled, DiscoveryUnavailable, OperationTimeout, TalmError, ValidationError
from .cache import HardwareCache, NodeCache
from .discovery import DiscoveryClient, Disk, Interface, Memory, Processor
from .network import ConnectionPool, RateLimiter
from .talosctl import TalosctlClient

logger = logging.getLogger("talm.scanner")

# Refuse to enumerate anything larger than a /16
MAX_SCAN_HOSTS = 65536

_WAIT_SLICE = 0.1


@dataclass
class Hardware:
    processors: List[Processor] = field(default_factory=list)
    memory: Memory = field(default_factory=Memory)
    disks: List[Disk] = field(default_factory=list)
    interfaces: List[Interface] = field(default_factory=list)


@dataclass
class NodeInfo:
    """A node found on the network."""
    ip: str
    name: str = ""
    hostname: str = ""
    mac: str = ""
    type: str = ""
    configured: bool = False
    manufacturer: str = ""
    cpu: int = 0
    ram: int = 0  # GiB
    disks: List[Disk] = field(default_factory=list)
    hardware: Hardware = field(default_factory=Hardware)


class ScanCancelled(Cancelled):
    """Cancellation of a scan; ``nodes`` holds the nodes fully processed before it."""

    def __init__(self, message: str, nodes: Optional[List[NodeInfo]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.nodes = nodes or []


class ProgressChannel:
    """One-way, non-blocking progress delivery.

    Workers ``send`` integers 0-100; a daemon thread hands them to the
    callback. Values are made monotonic and dropped when the queue is full,
    so a slow callback never stalls the scan.
    """

    def __init__(self, callback: Optional[Callable[[int], None]], maxsize: int = 64):
        self.callback = callback
        self.queue: "queue.Queue[Optional[int]]" = queue.Queue(maxsize=maxsize)
        self.last = -1
        self.lock = threading.Lock()
        self.closed = threading.Event()
        self.thread: Optional[threading.Thread] = None
        if callback is not None:
            self.thread = threading.Thread(target=self._deliver, name="talm-scan-progress", daemon=True)
            self.thread.start()

    def _deliver(self) -> None:
        while True:
            value = self.queue.get()
            if value is None:
                return
            try:
                self.callback(value)
            except Exception as e:  # noqa: BLE001 - a broken UI callback must not kill the scan
                logger.warning(f"Progress callback failed: {e}")
            if self.closed.is_set() and self.queue.empty():
                return

    def send(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        with self.lock:
            if value <= self.last:
                return
            self.last = value
        if self.callback is None:
            return
        try:
            self.queue.put_nowait(value)
        except queue.Full:
            logger.debug(f"Dropped progress update {value}")

    def close(self) -> None:
        if self.thread is None:
            return
        self.closed.set()
        try:
            self.queue.put_nowait(None)
        except queue.Full:
            # The delivery thread stops once it drains the queue
            logger.debug("Progress queue full at close")


def enumerate_hosts(cidr: str) -> List[str]:
    """Addresses to probe for a CIDR (or a single address)."""
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as e:
        raise ValidationError(f"invalid network {cidr!r}", details="expected CIDR like 192.168.1.0/24", code="VAL_002", original=e) from e
    if network.num_addresses > MAX_SCAN_HOSTS:
        raise ValidationError(f"network {cidr} is too large to scan", details=f"at most {MAX_SCAN_HOSTS} addresses")
    if network.num_addresses == 1:
        return [str(network.network_address)]
    return [str(ip) for ip in network.hosts()]


def dedupe_nodes(nodes: List[NodeInfo]) -> List[NodeInfo]:
    """Drop duplicates by MAC when known, by IP otherwise; first occurrence wins."""
    seen = set()
    out = []
    for node in nodes:
        key = ("mac", node.mac.lower()) if node.mac else ("ip", node.ip)
        if key in seen:
            logger.debug(f"Skipping duplicate node {node.ip} ({key[1]})")
            continue
        seen.add(key)
        out.append(node)
    return out


def _ip_key(ip: str):
    try:
        addr = ipaddress.ip_address(ip)
        return (addr.version, int(addr))
    except ValueError:
        return (99, 0)


def filter_and_sort_nodes(nodes: List[NodeInfo]) -> List[NodeInfo]:
    """Nodes with an address, control planes first, then by IP."""
    valid = [n for n in nodes if n.ip]
    return sorted(valid, key=lambda n: (n.type != "controlplane", _ip_key(n.ip)))


def summarize_nodes(nodes: List[NodeInfo]) -> Dict[str, int]:
    summary = {"total": len(nodes), "controlplane": 0, "worker": 0, "unknown": 0, "cpu": 0, "ram": 0, "disks": 0}
    for node in nodes:
        kind = node.type if node.type in ("controlplane", "worker") else "unknown"
        summary[kind] += 1
        summary["cpu"] += node.cpu
        summary["ram"] += node.ram
        summary["disks"] += len(node.disks)
    return summary


def describe_node(node: NodeInfo) -> str:
    """One-line description used in node lists."""
    parts = [node.hostname or node.ip, f"({node.ip})"]
    if node.manufacturer:
        parts.append(node.manufacturer)
    if node.cpu:
        parts.append(f"{node.cpu} CPU")
    if node.ram:
        parts.append(f"{node.ram} GiB RAM")
    if node.disks:
        parts.append(f"{len(node.disks)} disk(s)")
    return " ".join(parts)


class NetworkScanner:
    """Discovers Talos nodes in a subnet."""

    def __init__(
        self,
        client: Optional[TalosctlClient] = None,
        prober: Optional[Callable[[str], bool]] = None,
        checker: Optional[Callable[[str, Optional[threading.Event]], bool]] = None,
        collector: Optional[Callable[[str, Optional[threading.Event]], NodeInfo]] = None,
        workers: int = Config.SCAN_WORKERS,
        target_count: int = Config.SCAN_TARGET_COUNT,
        probe_timeout: float = Config.PROBE_TIMEOUT,
        scan_timeout: float = Config.SCAN_TIMEOUT,
        port: int = Config.ADMIN_PORT,
        node_cache: Optional[NodeCache] = None,
        hardware_cache: Optional[HardwareCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        observer: Optional[logging.Logger] = None,
    ):
        self.client = client or TalosctlClient(insecure=True)
        self.workers = max(1, min(workers, 10))
        self.target_count = target_count
        self.probe_timeout = probe_timeout
        self.scan_timeout = scan_timeout
        self.port = port
        self.pool = ConnectionPool(timeout=probe_timeout)
        self.node_cache = node_cache or NodeCache()
        self.hardware_cache = hardware_cache or HardwareCache()
        self.rate_limiter = rate_limiter or RateLimiter(capacity=self.workers * 2, rate=20.0)
        self.log = observer or logger
        self._prober = prober or self.probe
        self._checker = checker or self.is_talos_node
        self._collector = collector or self.collect_node_info

    # Per-host operations

    def probe(self, ip: str) -> bool:
        """Admin-port reachability within the probe deadline."""
        addr = f"[{ip}]:{self.port}" if ":" in ip else f"{ip}:{self.port}"
        try:
            entry = self.pool.get("tcp", addr)
        except OSError as e:
            self.log.debug(f"Probe of {ip} failed: {e}")
            return False
        self.pool.put(entry)
        return True

    def is_talos_node(self, ip: str, cancel: Optional[threading.Event] = None) -> bool:
        if not self.rate_limiter.wait(cancel):
            return False
        try:
            self.client.get("machinestatus", ip, cancel=cancel, timeout=self.probe_timeout * 2)
        except (DiscoveryUnavailable, OperationTimeout) as e:
            self.log.debug(f"{ip} is not a Talos node: {e}")
            return False
        return True

    def collect_node_info(self, ip: str, cancel: Optional[threading.Event] = None) -> NodeInfo:
        cached = self.node_cache.get_node_info(ip)
        if cached is not None:
            return cached
        discovery = DiscoveryClient(ip, self.client, cancel=cancel, observer=self.log)
        node = NodeInfo(ip=ip, name=ip)
        node.hostname = discovery.partial(discovery.hostname, "") or ip

        hardware = self.hardware_cache.get_hardware(ip)
        if hardware is None:
            hardware = Hardware(
                processors=discovery.partial(discovery.processors, []),
                memory=discovery.partial(discovery.memory, Memory()),
                disks=discovery.partial(discovery.disks, []),
                interfaces=discovery.partial(discovery.interfaces, []),
            )
            self.hardware_cache.set_hardware(ip, hardware)
        node.hardware = hardware
        node.cpu = sum(p.threads for p in hardware.processors)
        node.ram = hardware.memory.total // 1024
        node.disks = list(hardware.disks)
        if hardware.processors:
            node.manufacturer = hardware.processors[0].vendor or hardware.processors[0].product
        if hardware.interfaces:
            node.mac = hardware.interfaces[0].mac
        self.node_cache.set_node_info(ip, node)
        return node

    # Scan

    def _run_pool(
        self,
        items: List[str],
        task: Callable[[str], object],
        on_done: Callable[[str, "Future[object]"], bool],
        cancel: threading.Event,
        deadline: float,
        found: Callable[[], List[NodeInfo]],
    ) -> None:
        """Run ``task`` over ``items``; ``on_done`` returns False to stop early."""
        executor = ThreadPoolExecutor(max_workers=min(self.workers, max(1, len(items))), thread_name_prefix="talm-scan")
        try:
            pending = {executor.submit(task, item): item for item in items}
            while pending:
                if cancel.is_set():
                    raise ScanCancelled("scan cancelled", nodes=found())
                if time.monotonic() > deadline:
                    raise OperationTimeout(f"scan did not finish within {self.scan_timeout:g}s")
                done, _ = wait(list(pending), timeout=_WAIT_SLICE, return_when=FIRST_COMPLETED)
                for future in done:
                    item = pending.pop(future)
                    if not on_done(item, future):
                        return
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def scan(
        self,
        cidr: str,
        progress: Optional[Callable[[int], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[NodeInfo]:
        """Scan ``cidr`` and return the Talos nodes found, deduplicated, in address order.

        Raises:
            ValidationError: invalid CIDR
            ScanCancelled: when ``cancel`` trips; carries the nodes already processed
            OperationTimeout: when the whole scan exceeds its deadline
        """
        channel = ProgressChannel(progress)
        cancel = cancel or threading.Event()
        # Workers get their own token so early termination can stop them
        stop = threading.Event()
        deadline = time.monotonic() + self.scan_timeout
        started = time.monotonic()
        try:
            channel.send(5)
            ips = enumerate_hosts(cidr)
            self.log.info(f"🔍 Scanning {len(ips)} addresses in {cidr}")
            channel.send(10)

            reachable: List[str] = []
            processed: List[NodeInfo] = []

            def probe_task(ip: str) -> bool:
                if cancel.is_set() or stop.is_set():
                    return False
                return self._prober(ip)

            def probe_done(ip: str, future: "Future[object]") -> bool:
                try:
                    if future.result():
                        reachable.append(ip)
                except OSError as e:
                    self.log.debug(f"Probe of {ip} failed: {e}")
                return True

            self._run_pool(ips, probe_task, probe_done, cancel, deadline, lambda: list(processed))
            channel.send(20)
            if not reachable:
                self.log.warning(f"⚠️  No hosts with port {self.port} open in {cidr}")
                channel.send(100)
                return []

            reachable.sort(key=_ip_key)
            total = len(reachable)
            completed = [0]

            def collect_task(ip: str) -> Optional[NodeInfo]:
                if cancel.is_set() or stop.is_set():
                    return None
                worker_cancel = _AnyEvent(cancel, stop)
                if not self._checker(ip, worker_cancel):
                    return None
                return self._collector(ip, worker_cancel)

            def collect_done(ip: str, future: "Future[object]") -> bool:
                completed[0] += 1
                try:
                    node = future.result()
                except Cancelled:
                    node = None
                except TalmError as e:
                    self.log.warning(f"⚠️  Failed to collect facts from {ip}: {e}")
                    node = None
                if node is not None:
                    processed.append(node)
                    self.log.info(f"✅ Found node {node.hostname or ip} ({ip})")
                channel.send(20 + completed[0] * 80 // total)
                if len(dedupe_nodes(processed)) >= self.target_count:
                    self.log.info(f"Reached target of {self.target_count} nodes, stopping scan")
                    stop.set()
                    return False
                return True

            self._run_pool(reachable, collect_task, collect_done, cancel, deadline, lambda: dedupe_nodes(processed))
            nodes = dedupe_nodes(sorted(processed, key=lambda n: _ip_key(n.ip)))
            channel.send(100)
            self.log.info(f"Scan finished in {time.monotonic() - started:.1f}s, found {len(nodes)} node(s)")
            return nodes
        finally:
            stop.set()
            channel.close()
            self.pool.close_all()


class _AnyEvent:
    """Read-only view that is set when any of its events is set."""

    def __init__(self, *events: threading.Event):
        self.events = events

    def is_set(self) -> bool:
        return any(e.is_set() for e in self.events)

    def wait(self, timeout: Optional[float] = None) -> bool:
        end = None if timeout is None else time.monotonic() + timeout
        while not self.is_set():
            if end is not None and time.monotonic() >= end:
                return False
            time.sleep(min(0.05, timeout or 0.05))
        return True
