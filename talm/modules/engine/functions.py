"""Function library available to chart templates.

Globals: ``lookup``, ``discovered``, ``secrets``, ``modeline`` plus the plain
helpers below. Most helpers are registered both as globals and as filters,
so ``{{ toYaml(x) }}`` and ``{{ x | toYaml }}`` are equivalent.
"""
import base64
import datetime
import hashlib
import ipaddress
import json
import posixpath
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml
from jinja2 import Undefined

from ...errors import SecretPathMissing, SecretsMissing, TemplateEvalError, ValidationError
from ..discovery import DEFAULT_RESOLVERS, fact_to_data
from ..modeline import generate as generate_modeline
from ..secrets import SecretsBundle
from ..values import get_path


def to_plain(value: Any) -> Any:
    """Strip wrappers (value trees, fact records, tuples) down to YAML-safe data."""
    if isinstance(value, Undefined):
        # Raises with the value path of the missing key
        str(value)
    if hasattr(value, "__dataclass_fields__"):
        return to_plain(fact_to_data(value))
    if isinstance(value, Mapping):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


# YAML / JSON

def to_yaml(value: Any) -> str:
    if value is None:
        return "null"
    text = yaml.safe_dump(to_plain(value), default_flow_style=False, sort_keys=False, indent=2)
    if text.endswith("\n...\n"):
        text = text[:-5]
    return text.rstrip("\n")


def from_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TemplateEvalError("fromYaml: invalid YAML", original=e) from e


def to_json(value: Any) -> str:
    return json.dumps(to_plain(value), separators=(",", ":"))


def from_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as e:
        raise TemplateEvalError("fromJson: invalid JSON", original=e) from e


# Strings

def indent(text: Any, spaces: int) -> str:
    pad = " " * int(spaces)
    return "\n".join(pad + line for line in str(text).split("\n"))


def nindent(text: Any, spaces: int) -> str:
    return "\n" + indent(text, spaces)


def trim(text: Any) -> str:
    return str(text).strip()


def quote(value: Any) -> str:
    return json.dumps("" if value is None else str(value))


def squote(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def trim_prefix(text: str, prefix: str) -> str:
    return text[len(prefix):] if text.startswith(prefix) else text


def trim_suffix(text: str, suffix: str) -> str:
    return text[:-len(suffix)] if suffix and text.endswith(suffix) else text


def regex_match(pattern: str, text: str) -> bool:
    return re.search(pattern, str(text)) is not None


def regex_replace_all(pattern: str, text: str, repl: str) -> str:
    return re.sub(pattern, repl, str(text))


def b64enc(text: str) -> str:
    return base64.b64encode(str(text).encode()).decode()


def b64dec(text: str) -> str:
    return base64.b64decode(str(text)).decode()


def sha256sum(text: str) -> str:
    return hashlib.sha256(str(text).encode()).hexdigest()


def path_join(*parts: str) -> str:
    return posixpath.join(*[str(p) for p in parts])


# Collections and control

def default(fallback: Any, value: Any = None) -> Any:
    """Helm argument order: ``default(fallback, value)``."""
    if value is None or isinstance(value, Undefined) or value in ("", [], {}, 0, False):
        return fallback
    return value


def empty(value: Any) -> bool:
    return value is None or isinstance(value, Undefined) or value in ("", [], {}, 0, False)


def coalesce(*values: Any) -> Any:
    for value in values:
        if not empty(value):
            return value
    return None


def required(value: Any, message: str = "required value is missing") -> Any:
    if empty(value) and value not in (0, False):
        raise TemplateEvalError(message)
    return value


def fail(message: str) -> None:
    raise TemplateEvalError(message)


def ternary(true_value: Any, false_value: Any, condition: Any) -> Any:
    return true_value if condition else false_value


def make_dict(*pairs: Any) -> Dict[Any, Any]:
    if len(pairs) % 2:
        raise TemplateEvalError("dict expects an even number of arguments")
    return {pairs[i]: pairs[i + 1] for i in range(0, len(pairs), 2)}


def make_list(*items: Any) -> List[Any]:
    return list(items)


def has_key(mapping: Mapping, key: Any) -> bool:
    return isinstance(mapping, Mapping) and key in mapping


def uniq(items: Iterable[Any]) -> List[Any]:
    out: List[Any] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


# CIDR arithmetic

def _network(cidr: str):
    try:
        return ipaddress.ip_network(str(cidr), strict=False)
    except ValueError as e:
        raise ValidationError(f"invalid CIDR {cidr!r}", original=e) from e


def _networks(cidrs: Any) -> List[Any]:
    if isinstance(cidrs, str):
        cidrs = [cidrs]
    return [_network(c) for c in cidrs]


def _collapse(networks: List[Any]) -> List[str]:
    out = []
    for version in (4, 6):
        family = [n for n in networks if n.version == version]
        out.extend(str(n) for n in ipaddress.collapse_addresses(family))
    return out


def cidr_network(cidr: str) -> str:
    """``10.0.0.2/24`` -> ``10.0.0.0/24``."""
    return str(_network(cidr))


def cidr_contains(cidr: str, address: str) -> bool:
    network = _network(cidr)
    try:
        if "/" in str(address):
            return _network(address).subnet_of(network)
        return ipaddress.ip_address(str(address)) in network
    except (TypeError, ValueError):
        return False


def cidr_overlaps(a: str, b: str) -> bool:
    na, nb = _network(a), _network(b)
    return na.version == nb.version and na.overlaps(nb)


def cidr_union(*cidr_lists: Any) -> List[str]:
    networks: List[Any] = []
    for cidrs in cidr_lists:
        networks.extend(_networks(cidrs))
    return _collapse(networks)


def cidr_intersect(a: Any, b: Any) -> List[str]:
    out = []
    for na in _networks(a):
        for nb in _networks(b):
            if na.version != nb.version or not na.overlaps(nb):
                continue
            out.append(na if na.prefixlen >= nb.prefixlen else nb)
    return _collapse(out)


def cidr_exclude(a: Any, b: Any) -> List[str]:
    """Set difference ``a - b`` of two CIDR lists."""
    remaining = _networks(a)
    for nb in _networks(b):
        next_round = []
        for na in remaining:
            if na.version != nb.version or not na.overlaps(nb):
                next_round.append(na)
            elif nb.supernet_of(na):
                continue
            else:
                next_round.extend(na.address_exclude(nb))
        remaining = next_round
    return _collapse(remaining)


def cidr_host(cidr: str, number: int) -> str:
    network = _network(cidr)
    number = int(number)
    if number < 0:
        number += network.num_addresses
    if not 0 <= number < network.num_addresses:
        raise TemplateEvalError(f"host number {number} out of range for {network}")
    return str(network.network_address + number)


def cidr_range(cidr: str) -> List[str]:
    """First and last usable address of a subnet."""
    network = _network(cidr)
    if network.num_addresses <= 2:
        return [str(network.network_address), str(network.broadcast_address)]
    return [str(network.network_address + 1), str(network.broadcast_address - 1)]


def cidr_netmask(cidr: str) -> str:
    return str(_network(cidr).netmask)


def cidr_prefix(cidr: str) -> int:
    return _network(cidr).prefixlen


def cidr_address(cidr: str) -> str:
    """Strip the prefix length from an interface address."""
    try:
        return str(ipaddress.ip_interface(str(cidr)).ip)
    except ValueError as e:
        raise ValidationError(f"invalid address {cidr!r}", original=e) from e


# Domain accessors

class Lookup:
    """``lookup(kind, namespace, id)`` resource queries and value-tree reads."""

    def __init__(self, values: Dict[str, Any], discovery: Any):
        self._values = values
        self._discovery = discovery

    def __call__(self, kind: str, namespace: str = "", resource_id: str = "") -> Dict[str, Any]:
        return self._discovery.resource(kind, namespace, resource_id)

    def value(self, path: str, fallback: Any = None) -> Any:
        return get_path(self._values, path, fallback)

    def has(self, path: str) -> bool:
        marker = object()
        return get_path(self._values, path, marker) is not marker

    def keys(self, path: str = "") -> List[str]:
        node = get_path(self._values, path, {})
        return list(node) if isinstance(node, Mapping) else []


class Discovered:
    """Template view of the discovery client of the node being rendered."""

    def __init__(self, discovery: Any):
        self._discovery = discovery

    def hostname(self) -> str:
        return self._discovery.hostname()

    def memory(self):
        return self._discovery.memory()

    def processors(self):
        return self._discovery.processors()

    def disks(self):
        return self._discovery.disks()

    def interfaces(self):
        return self._discovery.interfaces()

    def addresses(self):
        return self._discovery.addresses()

    def routes(self):
        return self._discovery.routes()

    def default_route(self):
        return self._discovery.default_route()

    def default_addresses_by_gateway(self) -> List[str]:
        return self._discovery.default_addresses_by_gateway()

    def default_link_name_by_gateway(self) -> str:
        return self._discovery.default_link_name_by_gateway()

    def default_gateway(self) -> str:
        route = self._discovery.default_route()
        return route.gateway if route else ""

    def default_resolvers(self, optional: bool = False) -> List[str]:
        """Node resolvers; ``optional`` falls back to the defaults when the node is unreachable."""
        if optional:
            fallback = list(getattr(self._discovery, "fallback_resolvers", DEFAULT_RESOLVERS))
            return self._discovery.partial(self._discovery.default_resolvers, fallback)
        return self._discovery.default_resolvers()

    def system_disk_name(self) -> str:
        """Device path of the smallest usable disk, the usual install target."""
        disks = self._discovery.disks()
        if not disks:
            return ""
        return min(disks, key=lambda d: (d.size_bytes, d.id)).dev_path


class Secrets:
    """Read-only accessors into the secrets bundle."""

    def __init__(self, bundle: Optional[SecretsBundle]):
        self._bundle = bundle

    def _require(self) -> SecretsBundle:
        if self._bundle is None:
            raise SecretsMissing("template reads secrets but rendering runs without a secrets bundle")
        return self._bundle

    def get(self, path: str) -> Any:
        return self._require().lookup(path)

    def has(self, path: str) -> bool:
        if self._bundle is None:
            return False
        try:
            self._bundle.lookup(path)
        except SecretPathMissing:
            return False
        return True

    def cluster_id(self) -> str:
        return self._require().cluster_id

    def bootstrap_token(self) -> str:
        return self._require().bootstrap_token


class ModelineBuilder:

    def __call__(self, nodes: List[str], endpoints: List[str], templates: List[str]) -> str:
        return generate_modeline(list(nodes), list(endpoints), list(templates))

    generate = __call__


PLAIN_HELPERS: Dict[str, Callable[..., Any]] = {
    "toYaml": to_yaml,
    "fromYaml": from_yaml,
    "toJson": to_json,
    "fromJson": from_json,
    "indent": indent,
    "nindent": nindent,
    "trim": trim,
    "quote": quote,
    "squote": squote,
    "trimPrefix": trim_prefix,
    "trimSuffix": trim_suffix,
    "regexMatch": regex_match,
    "regexReplaceAll": regex_replace_all,
    "b64enc": b64enc,
    "b64dec": b64dec,
    "sha256sum": sha256sum,
    "pathJoin": path_join,
    "empty": empty,
    "coalesce": coalesce,
    "required": required,
    "fail": fail,
    "ternary": ternary,
    "dict": make_dict,
    "list": make_list,
    "hasKey": has_key,
    "uniq": uniq,
    "cidrNetwork": cidr_network,
    "cidrContains": cidr_contains,
    "cidrOverlaps": cidr_overlaps,
    "cidrUnion": cidr_union,
    "cidrIntersect": cidr_intersect,
    "cidrExclude": cidr_exclude,
    "cidrHost": cidr_host,
    "cidrRange": cidr_range,
    "cidrNetmask": cidr_netmask,
    "cidrPrefix": cidr_prefix,
    "cidrAddress": cidr_address,
}

# Helm semantics replace the Jinja builtins of the same name (``indent`` pads
# the first line too).
FILTERS = {name: fn for name, fn in PLAIN_HELPERS.items() if name not in ("dict", "list", "fail")}


def build_globals(
    values: Dict[str, Any],
    discovery: Any,
    bundle: Optional[SecretsBundle],
    clock: Callable[[], datetime.datetime],
) -> Dict[str, Any]:
    """Assemble the template globals for one render."""

    def now() -> datetime.datetime:
        return clock()

    def date(fmt: str = "%Y-%m-%d", when: Optional[datetime.datetime] = None) -> str:
        return (when or clock()).strftime(fmt)

    library = dict(PLAIN_HELPERS)
    library.update({
        "default": default,
        "lookup": Lookup(values, discovery),
        "discovered": Discovered(discovery),
        "secrets": Secrets(bundle),
        "modeline": ModelineBuilder(),
        "now": now,
        "date": date,
    })
    return library
