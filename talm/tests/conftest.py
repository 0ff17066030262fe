import datetime
import hashlib
import json

import pytest

from talm.modules.talosctl import CommandResult
from talm.modules.wizard import InitData, ProjectGenerator

FIXED_NOW = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)


def make_entropy(seed: bytes = b"talm"):
    """Deterministic byte source for reproducible secrets."""
    state = {"counter": 0}

    def entropy(n: int) -> bytes:
        out = b""
        while len(out) < n:
            state["counter"] += 1
            out += hashlib.sha256(seed + state["counter"].to_bytes(8, "big")).digest()
        return out[:n]

    return entropy


class FakeTalosctl:
    """Runner for ``TalosctlClient`` answering ``get`` from canned resources."""

    def __init__(self, resources=None, returncode=0, stderr=""):
        self.resources = resources or {}
        self.returncode = returncode
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd, timeout, cancel=None, input_text=None):
        self.calls.append(list(cmd))
        if self.returncode != 0:
            return CommandResult(self.returncode, "", self.stderr)
        if "get" in cmd:
            resource = cmd[cmd.index("get") + 1]
            items = self.resources.get(resource, [])
            return CommandResult(0, "\n".join(json.dumps(item) for item in items), "")
        return CommandResult(0, "", "")


def node_resources():
    """Facts of a small node: one NIC, one default route, one disk."""
    return {
        "hostname": [{"metadata": {"id": "hostname"}, "spec": {"hostname": "talos-abc"}}],
        "links": [
            {"metadata": {"id": "eth0"}, "spec": {"hardwareAddr": "aa:bb:cc:dd:ee:01", "operationalState": "up"}},
            {"metadata": {"id": "lo"}, "spec": {"hardwareAddr": ""}},
            {"metadata": {"id": "cali123"}, "spec": {"hardwareAddr": "aa:bb:cc:dd:ee:02"}},
        ],
        "addresses": [
            {"spec": {"address": "10.0.0.2/24", "linkName": "eth0"}},
            {"spec": {"address": "127.0.0.1/8", "linkName": "lo"}},
        ],
        "routes": [
            {"spec": {"destination": "", "family": "inet4", "gateway": "10.0.0.1", "outLinkName": "eth0", "priority": 1024}},
        ],
        "disks": [
            {"metadata": {"id": "sda"}, "spec": {"size": 64 * 1024 ** 3, "dev_path": "/dev/sda", "model": "QEMU"}},
            {"metadata": {"id": "loop0"}, "spec": {"size": 64 * 1024 ** 3}},
        ],
        "resolvers": [{"spec": {"dnsServers": ["10.0.0.53"]}}],
        "memorymodules": [{"spec": {"sizeMiB": 4096}}],
        "cpu": [{"spec": {"manufacturer": "Intel", "productName": "Xeon", "threadCount": 4}}],
        "machinestatus": [{"spec": {"stage": "maintenance"}}],
    }


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def entropy():
    return make_entropy()


@pytest.fixture
def project(tmp_path, clock, entropy):
    """The tree written by ``talm init`` for cluster ``demo``."""
    root = tmp_path / "demo"
    generator = ProjectGenerator(root, clock=clock, entropy=entropy)
    generator.generate(InitData(
        preset="generic",
        cluster_name="demo",
        api_server_url="https://192.168.0.1:6443",
    ))
    return root
