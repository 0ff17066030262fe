import threading

import pytest
import yaml

from talm.errors import Cancelled, OfflineFactRequired, OutputMalformed, SecretsMissing
from talm.modules import modeline
from talm.modules.discovery import DiscoveryClient
from talm.modules.render import BANNER, RenderOptions, join_outputs, load_patch, render, render_file
from talm.modules.talosctl import TalosctlClient
from talm.modules.values import ValueSources

from .conftest import FakeTalosctl, node_resources


def options(project, clock, **kwargs):
    kwargs.setdefault("template_files", ["templates/controlplane.yaml"])
    kwargs.setdefault("offline", True)
    return RenderOptions(root=project, clock=clock, **kwargs)


def write_overlay(project, node="node1"):
    (project / "nodes").mkdir(exist_ok=True)
    (project / "nodes" / f"{node}.yaml").write_text(
        "machine:\n"
        "  network:\n"
        "    hostname: alpha\n"
        "    interfaces:\n"
        "      - interface: eth0\n"
        "        addresses: [10.0.0.2/24]\n"
        "  install:\n"
        "    disk: /dev/sda\n"
    )


def test_offline_controlplane_render(project, clock):
    outputs = render(options(project, clock))
    assert list(outputs) == ["controlplane"]
    text = outputs["controlplane"].decode()
    first, second = text.splitlines()[:2]
    line = modeline.parse(first)
    assert line.templates == ["templates/controlplane.yaml"]
    assert line.nodes == []
    assert second == BANNER
    data = yaml.safe_load(text)
    assert data["machine"]["type"] == "controlplane"
    assert data["cluster"]["controlPlane"]["endpoint"] == "https://192.168.0.1:6443"
    assert data["cluster"]["network"]["podSubnets"] == ["10.244.0.0/16"]
    assert data["cluster"]["network"]["serviceSubnets"] == ["10.96.0.0/16"]
    assert data["cluster"]["clusterName"] == "demo"


def test_node_overlay(project, clock):
    write_overlay(project)
    outputs = render(options(project, clock, template_files=["templates/worker.yaml"], nodes=["node1"]))
    assert list(outputs) == ["worker.node1"]
    data = yaml.safe_load(outputs["worker.node1"])
    assert data["machine"]["type"] == "worker"
    assert data["machine"]["network"]["hostname"] == "alpha"
    assert data["machine"]["install"]["disk"] == "/dev/sda"
    assert data["machine"]["network"]["interfaces"] == [{"interface": "eth0", "addresses": ["10.0.0.2/24"]}]
    assert "nameservers" not in data["machine"]["network"]


def test_node_overlay_does_not_need_a_reachable_node(project, clock):
    write_overlay(project)
    runner = FakeTalosctl(returncode=1, stderr="lookup node1: no such host")
    outputs = render(options(
        project, clock,
        template_files=["templates/worker.yaml"],
        nodes=["node1"],
        offline=False,
        discovery_factory=lambda node: DiscoveryClient(node, TalosctlClient(runner=runner)),
    ))
    data = yaml.safe_load(outputs["worker.node1"])
    assert data["machine"]["network"]["hostname"] == "alpha"
    assert runner.calls == []


def test_discovered_resolvers_without_overlay(project, clock):
    runner = FakeTalosctl(node_resources())
    outputs = render(options(
        project, clock,
        template_files=["templates/worker.yaml"],
        nodes=["10.0.0.2"],
        offline=False,
        discovery_factory=lambda node: DiscoveryClient(node, TalosctlClient(runner=runner)),
    ))
    network = yaml.safe_load(outputs["worker.10.0.0.2"])["machine"]["network"]
    assert network["nameservers"] == ["10.0.0.53"]
    assert network["interfaces"][0]["interface"] == "eth0"


def test_filtered_links_never_reach_the_output(project, clock):
    resources = node_resources()
    resources["links"].append({"metadata": {"id": "br-lan"}, "spec": {"hardwareAddr": "aa:bb:cc:dd:ee:09"}})
    resources["addresses"].append({"spec": {"address": "10.9.0.2/24", "linkName": "br-lan"}})
    resources["routes"] = [
        {"spec": {"destination": "", "family": "inet4", "gateway": "10.9.0.1", "outLinkName": "br-lan", "priority": 1}},
        {"spec": {"destination": "", "family": "inet4", "gateway": "10.0.0.1", "outLinkName": "eth0", "priority": 1024}},
    ]
    runner = FakeTalosctl(resources)
    text = render(options(
        project, clock,
        template_files=["templates/worker.yaml"],
        nodes=["10.0.0.2"],
        offline=False,
        discovery_factory=lambda node: DiscoveryClient(node, TalosctlClient(runner=runner)),
    ))["worker.10.0.0.2"].decode()
    assert "br-lan" not in text
    interfaces = yaml.safe_load(text)["machine"]["network"]["interfaces"]
    assert interfaces == [{"interface": "eth0", "addresses": ["10.0.0.2/24"],
                           "routes": [{"network": "0.0.0.0/0", "gateway": "10.0.0.1"}]}]


def test_overlay_requires_node_fields(project, clock):
    (project / "nodes").mkdir()
    (project / "nodes" / "node1.yaml").write_text("machine:\n  install:\n    disk: /dev/sda\n  network:\n    hostname: alpha\n    interfaces: []\n")
    resources = node_resources()
    resources["routes"] = []
    runner = FakeTalosctl(resources)
    with pytest.raises(OutputMalformed) as exc:
        render(options(
            project, clock,
            template_files=["templates/worker.yaml"],
            nodes=["node1"],
            offline=False,
            values=ValueSources(values=["nameservers={1.1.1.1}"]),
            discovery_factory=lambda node: DiscoveryClient(node, TalosctlClient(runner=runner)),
        ))
    assert "machine.network.interfaces" in exc.value.path


def test_render_is_deterministic(project, clock):
    first = render(options(project, clock, full=True))
    second = render(options(project, clock, full=True))
    assert first == second


def test_offline_never_calls_discovery(project, clock):
    def factory(node):
        raise AssertionError("discovery must not be created offline")

    with pytest.raises(OfflineFactRequired):
        render(options(project, clock, nodes=["10.0.0.2"], discovery_factory=factory))


def test_full_config_carries_secrets(project, clock):
    outputs = render(options(project, clock, full=True))
    data = yaml.safe_load(outputs["controlplane"])
    assert data["version"] == "v1alpha1"
    assert data["machine"]["token"]
    assert data["machine"]["ca"]["crt"]
    assert data["cluster"]["token"]
    assert data["cluster"]["controlPlane"]["endpoint"] == "https://192.168.0.1:6443"


def test_full_without_secrets_file(project, clock):
    (project / "secrets.yaml").unlink()
    outputs = render(options(project, clock, full=True))
    data = yaml.safe_load(outputs["controlplane"])
    assert "token" not in data["machine"]
    with pytest.raises(SecretsMissing):
        render(options(project, clock, full=True, offline=False, discovery_factory=lambda node: None))


def test_templates_without_modeline(project, clock):
    outputs = render(options(project, clock, templates_have_modeline=False))
    assert not outputs["controlplane"].decode().startswith("#")


def test_extra_documents_follow_machine_config(project, clock):
    (project / "templates" / "volumes.yaml").write_text(
        "apiVersion: v1alpha1\nkind: UserVolumeConfig\nname: data\n---\nmachine:\n  type: worker\n"
    )
    outputs = render(options(project, clock, template_files=["templates/volumes.yaml"]))
    assert list(outputs) == ["volumes.0", "volumes.1"]
    assert "machine" in yaml.safe_load(outputs["volumes.0"])
    assert yaml.safe_load(outputs["volumes.1"])["kind"] == "UserVolumeConfig"


def test_cancelled_before_start(project, clock):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        render(options(project, clock, cancel=cancel))


def test_render_file_is_stable_when_reapplied(project, clock):
    write_overlay(project, "10.0.0.2")
    values = ValueSources(values=["nameservers={1.1.1.1}"])
    base = dict(template_files=["templates/worker.yaml"], nodes=["10.0.0.2"], endpoints=["10.0.0.2"], values=values)
    content = render_file(options(project, clock, **base))
    line = modeline.parse(content.splitlines()[0])
    assert line.endpoints == ["10.0.0.2"]
    assert line.templates == ["templates/worker.yaml"]

    node_file = project / "nodes" / "node1.yaml"
    node_file.write_text(content)
    assert load_patch(node_file)["machine"]["network"]["hostname"] == "alpha"
    again = render_file(options(project, clock, patch_files=[str(node_file)], **base))
    assert again == content


def test_join_outputs():
    assert join_outputs({"a": b"x: 1\n", "b": b"y: 2\n"}) == "x: 1\n---\ny: 2\n"
