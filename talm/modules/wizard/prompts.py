"""Terminal front end of the init wizard built on rich prompts.

The presenter only asks questions and shows results; every move goes
through ``WizardController``, which owns the data and the state.
"""
import logging
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm, Prompt
from rich.table import Table

from ...errors import TalmError, ValidationError
from ..presets import available_presets
from ..project import is_project_root
from ..scanner import NetworkScanner, describe_node
from .controller import WizardController
from .generator import ProjectGenerator
from .models import InitData, WizardState
from . import validators
from .processor import parse_hugepages

logger = logging.getLogger("talm.wizard")


def _ask_valid(ask: Callable[[], str], check: Callable[[str], None], console: Console) -> str:
    while True:
        value = ask()
        try:
            check(value)
            return value
        except ValidationError as e:
            console.print(f"❌ [red]{escape(str(e))}")


class WizardPrompts:
    """Drives a ``WizardController`` from terminal prompts."""

    def __init__(
        self,
        generator: ProjectGenerator,
        scanner: Optional[NetworkScanner] = None,
        console: Optional[Console] = None,
        data: Optional[InitData] = None,
    ):
        self.generator = generator
        self.scanner = scanner or NetworkScanner()
        self.console = console or Console()
        self.controller = WizardController(data)
        self.add_node = is_project_root(generator.root)

    @property
    def data(self) -> InitData:
        return self.controller.data

    def run(self) -> bool:
        """Run until Done; False when the operator gives up."""
        steps = {
            WizardState.PRESET: self.ask_preset,
            WizardState.ENDPOINT: self.ask_endpoint,
            WizardState.ADD_NODE_SCAN: self.ask_scan,
            WizardState.COZYSTACK_SCAN: self.ask_scan,
            WizardState.SCANNING: self.show_scan,
            WizardState.NODE_SELECT: self.ask_node,
            WizardState.NODE_CONFIG: self.ask_node_config,
            WizardState.CONFIRM: self.ask_confirm,
        }
        while self.controller.state != WizardState.DONE:
            step = steps.get(self.controller.state)
            if step is None:
                raise TalmError(f"no prompt for wizard state {self.controller.state}")
            if step() is False:
                return False
        return True

    def ask_preset(self) -> None:
        if self.add_node:
            self.console.print("ℹ️  Existing project found, adding a node")
            self.controller.transition(WizardState.ADD_NODE_SCAN)
            return
        data = self.data
        data.preset = Prompt.ask("Preset", choices=available_presets(), default=data.preset, console=self.console)
        data.cluster_name = _ask_valid(
            lambda: Prompt.ask("Cluster name", default=data.cluster_name, console=self.console),
            validators.validate_cluster_name, self.console,
        )
        data.talos_version = Prompt.ask("Talos version", default=data.talos_version, console=self.console)
        self.controller.transition(WizardState.ENDPOINT)

    def ask_endpoint(self) -> None:
        data = self.data
        data.api_server_url = _ask_valid(
            lambda: Prompt.ask("Kubernetes API endpoint", default=data.api_server_url or "https://192.168.100.10:6443", console=self.console),
            validators.validate_api_server_url, self.console,
        )
        data.pod_subnets = Prompt.ask("Pod subnet", default=data.pod_subnets or "10.244.0.0/16", console=self.console)
        data.service_subnets = Prompt.ask("Service subnet", default=data.service_subnets or "10.96.0.0/16", console=self.console)
        data.advertised_subnets = Prompt.ask("Node subnet", default=data.advertised_subnets or "192.168.100.0/24", console=self.console)
        data.floating_ip = _ask_valid(
            lambda: Prompt.ask("Floating IP (optional)", default=data.floating_ip, console=self.console),
            validators.validate_vip, self.console,
        )
        if data.preset == "cozystack":
            data.cluster_domain = Prompt.ask("Cluster domain", default=data.cluster_domain or "cozy.local", console=self.console)
            data.oidc_issuer_url = Prompt.ask("OIDC issuer URL (optional)", default=data.oidc_issuer_url, console=self.console)
            data.nr_hugepages = parse_hugepages(
                Prompt.ask("Hugepages (2Mi pages)", default=str(data.nr_hugepages), console=self.console)
            )
        if Confirm.ask("Scan the network for nodes?", default=True, console=self.console):
            self.start_scan()
        else:
            self.controller.transition(WizardState.NODE_SELECT)

    def ask_scan(self) -> Optional[bool]:
        if self.controller.error is not None:
            self.console.print(f"❌ [red]{escape(str(self.controller.error))}")
            self.controller.clear_error()
        if Confirm.ask("Scan the network for nodes?", default=True, console=self.console):
            self.start_scan()
        elif self.controller.state == WizardState.COZYSTACK_SCAN or Confirm.ask("Enter a node address manually?", console=self.console):
            self.controller.transition(WizardState.NODE_SELECT)
        else:
            return False

    def start_scan(self) -> None:
        self.data.network_to_scan = _ask_valid(
            lambda: Prompt.ask("Network to scan", default=self.data.network_to_scan, console=self.console),
            validators.validate_network_cidr, self.console,
        )
        self.controller.start_scan(self.scanner, self.data.network_to_scan)

    def show_scan(self) -> None:
        columns = (SpinnerColumn(), TextColumn("[progress.description]{task.description}"), BarColumn())
        with Progress(*columns, console=self.console, transient=True) as progress:
            task = progress.add_task(f"Scanning {self.data.network_to_scan}", total=100)
            try:
                while self.controller.state == WizardState.SCANNING:
                    self.controller.pump(block=True, timeout=0.2)
                    progress.update(task, completed=self.controller.progress)
            except KeyboardInterrupt:
                self.controller.stop_scan()
                self.controller.wait_scan()
        if self.controller.state == WizardState.NODE_SELECT:
            self.console.print(f"✅ Found {len(self.data.discovered_nodes)} node(s)")

    def ask_node(self) -> None:
        data = self.data
        nodes = data.discovered_nodes
        if nodes:
            table = Table(title="Discovered nodes")
            table.add_column("#")
            table.add_column("Node")
            for index, node in enumerate(nodes, 1):
                table.add_row(str(index), describe_node(node))
            self.console.print(table)
            choice = Prompt.ask("Select a node (number or IP)", default="1", console=self.console)
            if choice.isdigit() and 1 <= int(choice) <= len(nodes):
                data.select_node(nodes[int(choice) - 1])
                self.controller.transition(WizardState.NODE_CONFIG)
                return
            address = choice
        else:
            self.console.print("⚠️  No nodes discovered")
            address = Prompt.ask("Node IP (empty to go back)", default="", console=self.console)
            if not address:
                self.controller.transition(WizardState.ENDPOINT)
                return
        try:
            validators.validate_ip(address)
        except ValidationError as e:
            self.console.print(f"❌ [red]{escape(str(e))}")
            return
        data.selected_node = address
        self.controller.transition(WizardState.NODE_CONFIG)

    def ask_node_config(self) -> None:
        data = self.data
        data.node_type = validators.normalize_node_type(
            Prompt.ask("Role", choices=["controlplane", "worker"], default=data.node_type, console=self.console)
        )
        data.hostname = Prompt.ask("Hostname", default=data.hostname, console=self.console)
        data.disk = Prompt.ask("Install disk", default=data.disk or "/dev/sda", console=self.console)
        data.interface = Prompt.ask("Interface", default=data.interface or "eth0", console=self.console)
        data.addresses = Prompt.ask("Addresses (CIDR, comma separated)", default=data.addresses, console=self.console)
        data.gateway = Prompt.ask("Gateway", default=data.gateway, console=self.console)
        data.dns_servers = Prompt.ask("DNS servers (comma separated)", default=data.dns_servers or "1.1.1.1,8.8.8.8", console=self.console)
        if data.node_type == "controlplane":
            data.vip = Prompt.ask("VIP (optional)", default=data.vip or data.floating_ip, console=self.console)
        try:
            validators.validate_node_config(data)
        except ValidationError as e:
            self.console.print(f"❌ [red]{escape(str(e))}")
            return
        self.controller.transition(WizardState.CONFIRM)

    def ask_confirm(self) -> Optional[bool]:
        if self.controller.error is not None:
            self.console.print(f"❌ [red]{escape(str(self.controller.error))}")
            self.controller.clear_error()
        data = self.data
        table = Table(title="Configuration")
        table.add_column("Setting")
        table.add_column("Value")
        rows = [("Preset", data.preset), ("Cluster", data.cluster_name), ("Endpoint", data.api_server_url),
                ("Node", data.selected_node), ("Role", data.node_type), ("Hostname", data.hostname),
                ("Disk", data.disk), ("Interface", data.interface), ("Addresses", data.addresses),
                ("Gateway", data.gateway), ("DNS", data.dns_servers), ("VIP", data.vip)]
        for name, value in rows:
            if value:
                table.add_row(name, str(value))
        self.console.print(table)
        if not Confirm.ask("Generate configuration?", default=True, console=self.console):
            self.controller.transition(WizardState.NODE_CONFIG)
            return
        action = self.generator.add_node if self.add_node else self.generator.generate
        if self.controller.generate(action):
            self.console.print(f"✅ Configuration written to {Path(self.generator.root).resolve()}")
        elif not Confirm.ask("Generation failed, try again?", default=True, console=self.console):
            return False
