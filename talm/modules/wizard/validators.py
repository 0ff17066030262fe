"""Input validation for the init wizard.

Every check raises ``ValidationError`` with a stable ``VAL_0xx`` code.
"""
import ipaddress
import re
from typing import List

from ...errors import ValidationError
from ..presets import validate_preset  # noqa: F401

CLUSTER_NAME_RE = re.compile(r"^[a-z0-9-]+$")
HOSTNAME_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)
NODE_TYPES = ("controlplane", "worker", "control-plane")
MAX_CLUSTER_NAME = 50


def validate_network_cidr(cidr: str) -> None:
    if not cidr.strip():
        raise ValidationError("network to scan cannot be empty", details="a CIDR is required for scanning", code="VAL_001")
    try:
        ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as e:
        raise ValidationError("invalid CIDR notation", details=f"provided CIDR: {cidr}", code="VAL_002", original=e) from e


def validate_cluster_name(name: str) -> None:
    if not name.strip():
        raise ValidationError("cluster name cannot be empty", details="cluster name is required", code="VAL_003")
    if not CLUSTER_NAME_RE.match(name):
        raise ValidationError(
            "cluster name may only contain lowercase letters, digits and dashes",
            details=f"provided name: {name}",
            code="VAL_004",
        )
    if len(name) > MAX_CLUSTER_NAME:
        raise ValidationError(
            f"cluster name must not exceed {MAX_CLUSTER_NAME} characters",
            details=f"current length: {len(name)}",
            code="VAL_005",
        )


def validate_hostname(hostname: str) -> None:
    if not hostname.strip():
        raise ValidationError("hostname cannot be empty", details="hostname is required", code="VAL_006")
    if not HOSTNAME_RE.match(hostname):
        raise ValidationError("invalid hostname", details=f"provided hostname: {hostname}", code="VAL_007")


def validate_required(value: str, field_name: str) -> None:
    if not str(value).strip():
        raise ValidationError(f"field '{field_name}' is required", details="value must not be empty", code="VAL_008")


def validate_ip(ip: str) -> None:
    if not ip.strip():
        raise ValidationError("IP address cannot be empty", details="IP address is required", code="VAL_009")
    try:
        ipaddress.ip_address(ip.strip())
    except ValueError as e:
        raise ValidationError("invalid IP address", details=f"provided IP: {ip}", code="VAL_010", original=e) from e


def validate_vip(vip: str) -> None:
    """The floating IP is optional."""
    if vip.strip():
        validate_ip(vip)


def split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def validate_dns_servers(dns: str) -> None:
    if not dns.strip():
        raise ValidationError("DNS servers cannot be empty", details="at least one DNS server is required", code="VAL_011")
    invalid = []
    for server in split_list(dns):
        try:
            ipaddress.ip_address(server)
        except ValueError:
            invalid.append(server)
    if invalid:
        raise ValidationError("invalid DNS servers", details=f"invalid servers: {', '.join(invalid)}", code="VAL_012")


def validate_network_config(addresses: str, gateway: str, dns_servers: str) -> None:
    validate_required(addresses, "Addresses")
    validate_required(gateway, "Gateway")
    validate_dns_servers(dns_servers)


def validate_node_type(node_type: str) -> None:
    if node_type not in NODE_TYPES:
        raise ValidationError(
            "invalid node type",
            details=f"type: {node_type}, valid values: {', '.join(NODE_TYPES)}",
            code="VAL_013",
        )


def normalize_node_type(node_type: str) -> str:
    validate_node_type(node_type)
    return "controlplane" if node_type == "control-plane" else node_type


def validate_api_server_url(url: str) -> None:
    if not url.strip():
        raise ValidationError("API server URL cannot be empty", details="the cluster API server URL is required", code="VAL_015")
    if not url.startswith(("https://", "http://")):
        raise ValidationError("API server URL must start with http:// or https://", details=f"provided URL: {url}", code="VAL_016")
    hostport = url.split("://", 1)[1].split("/", 1)[0]
    if not re.search(r":\d+$", hostport):
        raise ValidationError("API server URL must contain a port (e.g. :6443)", details=f"provided URL: {url}", code="VAL_017")


def validate_node_config(data) -> None:
    """Checks run before leaving the node configuration step."""
    validate_required(data.node_type, "Role")
    validate_node_type(data.node_type)
    validate_required(data.hostname, "Hostname")
    validate_hostname(data.hostname)
    validate_required(data.disk, "Disk")
    validate_required(data.interface, "Interface")
    validate_network_config(data.addresses, data.gateway, data.dns_servers)
    validate_vip(data.vip)
