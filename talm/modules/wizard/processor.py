"""Turns operator input into chart values and node overlays."""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from ...errors import ValidationError
from ...utils import dump_yaml
from .models import InitData
from .validators import normalize_node_type, split_list

logger = logging.getLogger("talm.wizard")

# Skeleton defaults an operator value may replace
DEFAULT_ENDPOINT = "https://192.168.100.10:6443"
DEFAULT_POD_SUBNET = "10.244.0.0/16"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/16"
DEFAULT_ADVERTISED_SUBNET = "192.168.100.0/24"
COZYSTACK_DEFAULTS = {
    "clusterDomain": "cozy.local",
    "floatingIP": "192.168.100.10",
    "image": "ghcr.io/cozystack/cozystack/talos:v1.10.5",
}

NODE_FILE_RE = re.compile(r"^node(\d+)\.yaml$")


def _replace_first_subnet(values: Dict[str, Any], key: str, default: str, subnet: str) -> None:
    current = values.get(key)
    if not subnet or not isinstance(current, list) or not current:
        return
    if current[0] in (default, ""):
        values[key] = [subnet]


def _replace_scalar(values: Dict[str, Any], key: str, default: str, value: str) -> None:
    current = values.get(key)
    if value and isinstance(current, str) and current in (default, ""):
        values[key] = value


def patch_values(content: str, data: InitData) -> str:
    """Patch a preset's ``values.yaml`` skeleton with operator input.

    A field is replaced only while it still holds the skeleton default or
    is empty. Content that does not parse as a mapping is returned as is.
    """
    try:
        values = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.warning(f"⚠️  values.yaml skeleton is not valid YAML, keeping it unchanged: {e}")
        return content
    if not isinstance(values, dict):
        return content

    _replace_scalar(values, "endpoint", DEFAULT_ENDPOINT, data.api_server_url)
    _replace_first_subnet(values, "podSubnets", DEFAULT_POD_SUBNET, data.pod_subnets)
    _replace_first_subnet(values, "serviceSubnets", DEFAULT_SERVICE_SUBNET, data.service_subnets)
    _replace_first_subnet(values, "advertisedSubnets", DEFAULT_ADVERTISED_SUBNET, data.advertised_subnets)

    if data.preset == "cozystack":
        _replace_scalar(values, "clusterDomain", COZYSTACK_DEFAULTS["clusterDomain"], data.cluster_domain)
        _replace_scalar(values, "floatingIP", COZYSTACK_DEFAULTS["floatingIP"], data.floating_ip)
        _replace_scalar(values, "image", COZYSTACK_DEFAULTS["image"], data.image)
        if "oidcIssuerUrl" in values and data.oidc_issuer_url:
            values["oidcIssuerUrl"] = data.oidc_issuer_url
        if values.get("nr_hugepages") == 0 and data.nr_hugepages > 0:
            values["nr_hugepages"] = data.nr_hugepages
    elif data.floating_ip and values.get("floatingIP") == "":
        values["floatingIP"] = data.floating_ip

    if isinstance(values.get("certSANs"), list) and not values["certSANs"]:
        sans = ["127.0.0.1"]
        if data.floating_ip:
            sans.append(data.floating_ip)
        values["certSANs"] = sans

    return dump_yaml(values)


def node_values(data: InitData) -> Dict[str, Any]:
    """Per-node values for the selected node; they take precedence over discovery."""
    interface: Dict[str, Any] = {"interface": data.interface}
    addresses = split_list(data.addresses)
    if addresses:
        interface["addresses"] = addresses
    if data.gateway:
        network = "::/0" if ":" in data.gateway else "0.0.0.0/0"
        interface["routes"] = [{"network": network, "gateway": data.gateway}]
    if normalize_node_type(data.node_type) == "controlplane":
        vip = data.vip or data.floating_ip
        if vip:
            interface["vip"] = {"ip": vip}

    disk = data.disk if data.disk.startswith("/dev/") else f"/dev/{data.disk}"
    machine: Dict[str, Any] = {
        "install": {"disk": disk},
        "network": {
            "hostname": data.hostname,
            "interfaces": [interface],
        },
    }
    nameservers = split_list(data.dns_servers)
    if nameservers:
        machine["network"]["nameservers"] = nameservers
    return {"machine": machine}


def template_for(node_type: str) -> str:
    return f"templates/{normalize_node_type(node_type)}.yaml"


def existing_node_numbers(root: Union[str, Path]) -> List[int]:
    nodes_dir = Path(root) / "nodes"
    if not nodes_dir.is_dir():
        return []
    numbers = []
    for path in nodes_dir.glob("node*.yaml"):
        match = NODE_FILE_RE.match(path.name)
        if match:
            numbers.append(int(match.group(1)))
    return numbers


def next_node_file(root: Union[str, Path]) -> str:
    """``nodes/nodeN.yaml`` with N one past the highest existing suffix."""
    return f"nodes/node{max(existing_node_numbers(root), default=0) + 1}.yaml"


def parse_hugepages(value: str) -> int:
    value = value.strip()
    if not value:
        return 0
    try:
        count = int(value)
    except ValueError as e:
        raise ValidationError("nr_hugepages must be a number", details=f"provided: {value}", original=e) from e
    if count < 0:
        raise ValidationError("nr_hugepages must not be negative", details=f"provided: {value}")
    return count
