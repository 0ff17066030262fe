"""Live node inventory.

``DiscoveryClient`` queries one node's admin API lazily, one request per
resource, and caches each answer for the lifetime of the client (one
render). ``OfflineDiscovery`` stands in when rendering offline: every
accessor fails with ``OfflineFactRequired`` and no request is ever made.
"""
import ipaddress
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import DiscoveryUnavailable, OfflineFactRequired
from .talosctl import TalosctlClient

logger = logging.getLogger("talm.discovery")

GIB = 1024 ** 3
MIN_DISK_SIZE = 3 * GIB

DISK_EXCLUDED_PREFIXES = ("loop", "ram", "zd", "drbd", "sr")
LINK_USABLE_PREFIXES = ("eno", "eth", "enp", "enx", "ens", "bond")
LINK_EXCLUDED_NAMES = ("lo", "docker0")
LINK_EXCLUDED_PREFIXES = ("br-", "veth", "cali")
ZERO_MAC = "00:00:00:00:00:00"

DEFAULT_RESOLVERS = ("1.1.1.1", "8.8.8.8")

DEFAULT_V4 = "0.0.0.0/0"
DEFAULT_V6 = "::/0"


@dataclass
class Processor:
    vendor: str = ""
    product: str = ""
    threads: int = 0


@dataclass
class Memory:
    total: int = 0  # MiB


@dataclass
class Disk:
    id: str
    dev_path: str
    size_bytes: int
    model: str = ""
    transport: str = ""


@dataclass
class Interface:
    name: str
    mac: str = ""
    ips: List[str] = field(default_factory=list)
    operational_state: str = ""
    kind: str = ""


@dataclass
class Address:
    link: str
    cidr: str


@dataclass
class Route:
    dest: str
    gateway: str
    link: str
    metric: int = 0


@dataclass
class DefaultRoute:
    link: str
    gateway: str


def fact_to_data(value: Any) -> Any:
    """Convert fact records (and lists of them) to plain data for YAML output."""
    if isinstance(value, list):
        return [fact_to_data(v) for v in value]
    if hasattr(value, "__dataclass_fields__"):
        return asdict(value)
    return value


def is_usable_link(name: str, mac: str = "") -> bool:
    """Interface filter shared by templates and the wizard."""
    if name in LINK_EXCLUDED_NAMES or name.startswith(LINK_EXCLUDED_PREFIXES):
        return False
    mac = (mac or "").lower()
    if mac == ZERO_MAC:
        return False
    if name.startswith(LINK_USABLE_PREFIXES):
        return True
    return bool(mac)


def is_usable_disk(name: str, size_bytes: int, cdrom: bool = False) -> bool:
    if cdrom or name.startswith(DISK_EXCLUDED_PREFIXES):
        return False
    return size_bytes >= MIN_DISK_SIZE


def _is_ipv4(cidr: str) -> bool:
    try:
        return ipaddress.ip_interface(cidr).version == 4
    except ValueError:
        return False


def _spec(item: Dict[str, Any]) -> Dict[str, Any]:
    return item.get("spec") or {}


def _id(item: Dict[str, Any]) -> str:
    return (item.get("metadata") or {}).get("id", "")


def _normalize_destination(dest: str, family: str, gateway: str) -> str:
    if dest:
        return dest
    if family == "inet6" or ":" in (gateway or ""):
        return DEFAULT_V6
    return DEFAULT_V4


class DiscoveryClient:
    """Lazily computed facts of one node."""

    def __init__(
        self,
        node: str,
        client: Optional[TalosctlClient] = None,
        cancel: Optional[threading.Event] = None,
        fallback_resolvers: Sequence[str] = DEFAULT_RESOLVERS,
        observer: Optional[logging.Logger] = None,
    ):
        self.node = node
        self.client = client or TalosctlClient()
        self.cancel = cancel
        self.fallback_resolvers = list(fallback_resolvers)
        self.log = observer or logger
        self._cache: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _resources(self, resource: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        cache_key = f"{namespace or ''}/{resource}"
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]
        self.log.debug(f"Fetching {resource} from {self.node}")
        items = self.client.get(resource, self.node, namespace=namespace, cancel=self.cancel)
        with self._lock:
            self._cache[cache_key] = items
        return items

    def partial(self, accessor: Callable[[], Any], default: Any) -> Any:
        """Call a non-required accessor, downgrading an unavailable node to ``default``."""
        try:
            return accessor()
        except DiscoveryUnavailable as e:
            self.log.warning(f"⚠️  Partial facts for {self.node}: {e}")
            return default

    def resource(self, kind: str, namespace: str = "", resource_id: str = "") -> Dict[str, Any]:
        """Raw resource query backing the ``lookup`` template function.

        A single match by id returns the resource itself; several matches are
        wrapped in a ``List`` keyed ``_0``, ``_1``...
        """
        items = self.client.get(
            kind, self.node, resource_id=resource_id or None,
            namespace=namespace or None, cancel=self.cancel,
        )
        if not items:
            return {}
        if resource_id and len(items) == 1:
            return items[0]
        return {
            "apiVersion": "v1",
            "kind": "List",
            "items": {f"_{i}": item for i, item in enumerate(items)},
        }

    def hostname(self) -> str:
        for item in self._resources("hostname"):
            name = _spec(item).get("hostname")
            if name:
                return name
        return ""

    def memory(self) -> Memory:
        total = 0
        for item in self._resources("memorymodules"):
            spec = _spec(item)
            total += int(spec.get("sizeMiB") or spec.get("size") or 0)
        return Memory(total=total)

    def processors(self) -> List[Processor]:
        return [
            Processor(
                vendor=_spec(item).get("manufacturer", ""),
                product=_spec(item).get("productName", ""),
                threads=int(_spec(item).get("threadCount") or 0),
            )
            for item in self._resources("cpu")
        ]

    def disks(self) -> List[Disk]:
        disks = []
        for item in self._resources("disks"):
            spec = _spec(item)
            name = _id(item)
            size = int(spec.get("size") or 0)
            if spec.get("readonly") or not is_usable_disk(name, size, bool(spec.get("cdrom"))):
                continue
            disks.append(Disk(
                id=name,
                dev_path=spec.get("dev_path") or f"/dev/{name}",
                size_bytes=size,
                model=spec.get("model", ""),
                transport=spec.get("transport", ""),
            ))
        disks.sort(key=lambda d: d.id)
        return disks

    def addresses(self) -> List[Address]:
        addresses = []
        for item in self._resources("addresses"):
            spec = _spec(item)
            cidr = spec.get("address")
            if not cidr:
                continue
            addresses.append(Address(link=spec.get("linkName", ""), cidr=cidr))
        return addresses

    def _link_macs(self) -> Dict[str, str]:
        macs = {}
        for item in self._resources("links"):
            spec = _spec(item)
            macs[_id(item) or spec.get("name", "")] = spec.get("hardwareAddr", "")
        return macs

    def interfaces(self) -> List[Interface]:
        ips_by_link: Dict[str, List[str]] = {}
        for address in self.addresses():
            ips_by_link.setdefault(address.link, []).append(address.cidr)
        interfaces = []
        for item in self._resources("links"):
            spec = _spec(item)
            name = _id(item) or spec.get("name", "")
            mac = spec.get("hardwareAddr", "")
            if not is_usable_link(name, mac):
                continue
            interfaces.append(Interface(
                name=name,
                mac=mac,
                ips=ips_by_link.get(name, []),
                operational_state=spec.get("operationalState", ""),
                kind=spec.get("kind", ""),
            ))
        interfaces.sort(key=lambda i: (not any(_is_ipv4(ip) for ip in i.ips), i.name))
        return interfaces

    def routes(self) -> List[Route]:
        routes = []
        for item in self._resources("routes"):
            spec = _spec(item)
            gateway = spec.get("gateway", "")
            routes.append(Route(
                dest=_normalize_destination(spec.get("destination", spec.get("dst", "")), spec.get("family", ""), gateway),
                gateway=gateway,
                link=spec.get("outLinkName", ""),
                metric=int(spec.get("priority") or 0),
            ))
        return routes

    def default_route(self) -> Optional[DefaultRoute]:
        """Lowest-metric default route, IPv4 preferred; IPv6 only when no IPv4 one exists.

        Routes out of links the interface filter drops (bridges, veth pairs,
        ``docker0``...) never count as the default route.
        """
        routes = self.routes()
        macs = self._link_macs()
        for dest in (DEFAULT_V4, DEFAULT_V6):
            candidates = [
                r for r in routes
                if r.dest == dest and r.link and is_usable_link(r.link, macs.get(r.link, ""))
            ]
            if candidates:
                best = min(candidates, key=lambda r: (r.metric, r.link))
                return DefaultRoute(link=best.link, gateway=best.gateway)
        return None

    def default_link_name_by_gateway(self) -> str:
        route = self.default_route()
        return route.link if route else ""

    def default_addresses_by_gateway(self) -> List[str]:
        link = self.default_link_name_by_gateway()
        if not link:
            return []
        cidrs = [a.cidr for a in self.addresses() if a.link == link]
        return sorted(cidrs, key=lambda c: not _is_ipv4(c))

    def default_resolvers(self) -> List[str]:
        for item in self._resources("resolvers"):
            servers = _spec(item).get("dnsServers") or []
            if servers:
                return list(servers)
        return list(self.fallback_resolvers)


class OfflineDiscovery:
    """Discovery capability for offline renders: every fact is refused."""

    ACCESSORS = (
        "hostname", "memory", "processors", "disks", "interfaces", "addresses",
        "routes", "default_route", "default_addresses_by_gateway",
        "default_link_name_by_gateway", "default_resolvers", "resource",
    )

    def __init__(self, node: str = ""):
        self.node = node

    def __getattr__(self, name: str):
        if name in self.ACCESSORS:
            def refuse(*args, **kwargs):
                raise OfflineFactRequired(
                    f"discovery fact {name!r} is not available offline",
                    details="render without --offline or remove the discovered.* call",
                )
            return refuse
        raise AttributeError(name)

    def partial(self, accessor: Callable[[], Any], default: Any) -> Any:
        return accessor()
