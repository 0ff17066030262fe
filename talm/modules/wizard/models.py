"""Wizard states, transition table and accumulated init data."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ...config import Config
from ..scanner import NodeInfo


class WizardState(str, Enum):
    PRESET = "preset"
    ENDPOINT = "endpoint"
    SCANNING = "scanning"
    NODE_SELECT = "node_select"
    NODE_CONFIG = "node_config"
    CONFIRM = "confirm"
    GENERATE = "generate"
    DONE = "done"
    ADD_NODE_SCAN = "add_node_scan"
    COZYSTACK_SCAN = "cozystack_scan"
    VIP_CONFIG = "vip_config"
    NETWORK_CONFIG = "network_config"
    NODE_DETAILS = "node_details"

    def __str__(self) -> str:
        return self.value


S = WizardState

# Every move not listed here is rejected
TRANSITIONS: Dict[WizardState, FrozenSet[WizardState]] = {
    S.PRESET: frozenset({S.ENDPOINT, S.ADD_NODE_SCAN}),
    S.ENDPOINT: frozenset({S.SCANNING, S.NODE_SELECT}),
    S.SCANNING: frozenset({S.NODE_SELECT, S.ENDPOINT}),
    S.NODE_SELECT: frozenset({S.NODE_CONFIG, S.ENDPOINT}),
    S.NODE_CONFIG: frozenset({S.CONFIRM, S.NODE_SELECT}),
    S.CONFIRM: frozenset({S.GENERATE, S.NODE_CONFIG}),
    S.GENERATE: frozenset({S.DONE}),
    S.ADD_NODE_SCAN: frozenset({S.SCANNING, S.NODE_SELECT}),
    S.COZYSTACK_SCAN: frozenset({S.NODE_SELECT}),
    S.VIP_CONFIG: frozenset({S.NETWORK_CONFIG}),
    S.NETWORK_CONFIG: frozenset({S.NODE_DETAILS}),
    S.NODE_DETAILS: frozenset({S.CONFIRM}),
    S.DONE: frozenset(),
}


def is_allowed(source: WizardState, target: WizardState) -> bool:
    return target in TRANSITIONS.get(source, frozenset())


@dataclass
class InitData:
    """Everything the operator entered or selected during init."""
    preset: str = "generic"
    cluster_name: str = "mycluster"
    talos_version: str = Config.TALOS_VERSION
    api_server_url: str = ""
    pod_subnets: str = ""
    service_subnets: str = ""
    advertised_subnets: str = ""
    cluster_domain: str = ""
    floating_ip: str = ""
    image: str = ""
    oidc_issuer_url: str = ""
    nr_hugepages: int = 0
    network_to_scan: str = "192.168.1.0/24"
    discovered_nodes: List[NodeInfo] = field(default_factory=list)
    selected_node: str = ""
    selected_node_info: Optional[NodeInfo] = None
    node_type: str = "controlplane"
    hostname: str = ""
    disk: str = ""
    interface: str = ""
    addresses: str = ""
    gateway: str = ""
    dns_servers: str = ""
    vip: str = ""

    def has_node(self) -> bool:
        return bool(self.selected_node)

    def select_node(self, node: NodeInfo) -> None:
        """Select a scanned node and prefill its details from the collected facts."""
        self.selected_node = node.ip
        self.selected_node_info = node
        if node.hostname and node.hostname != node.ip:
            self.hostname = node.hostname
        if node.disks:
            self.disk = min(node.disks, key=lambda d: d.size_bytes).dev_path
        interfaces = node.hardware.interfaces
        if interfaces:
            self.interface = interfaces[0].name
            if interfaces[0].ips:
                self.addresses = ",".join(interfaces[0].ips)
