import logging
import stat
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from talm.cli import app
from talm.commands import admin
from talm.modules import modeline
from talm.modules.talosctl import CommandResult, TalosctlClient

runner = CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # Handlers bound to the runner's streams must not outlive the test
    root = logging.getLogger("talm")
    for handler in list(root.handlers):
        if isinstance(handler, logging.StreamHandler):
            root.removeHandler(handler)


def node_file(project, name="10.0.0.2.yaml", nodes=("10.0.0.2",), endpoints=("10.0.0.2",)):
    path = project / "nodes" / name
    path.parent.mkdir(exist_ok=True)
    line = modeline.generate(list(nodes), list(endpoints), ["templates/worker.yaml"])
    path.write_text(
        f"{line}\n"
        "machine:\n"
        "  install:\n"
        "    disk: /dev/sda\n"
        "  network:\n"
        "    hostname: w1\n"
        "    nameservers: [1.1.1.1]\n"
        "    interfaces:\n"
        "      - interface: eth0\n"
        "        addresses: [10.0.0.2/24]\n"
    )
    return path


@pytest.fixture
def passthrough(monkeypatch):
    calls = []

    def fake(self, args):
        calls.append({"endpoints": list(self.endpoints), "nodes": list(self.nodes), "args": list(args)})
        return 0

    monkeypatch.setattr(TalosctlClient, "passthrough", fake)
    return calls


def test_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("init", "template", "apply", "talosconfig", "logs", "upgrade-k8s"):
        assert command in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "talm 0.1.0" in result.output


def test_init_then_refuse(tmp_path):
    root = tmp_path / "demo"
    args = ["--root", str(root), "init", "--name", "demo", "--api-server", "https://192.168.0.1:6443"]
    result = runner.invoke(app, args)
    assert result.exit_code == 0, result.output
    assert (root / "secrets.yaml").exists()
    assert yaml.safe_load((root / "Chart.yaml").read_text())["name"] == "demo"

    secrets = (root / "secrets.yaml").read_bytes()
    again = runner.invoke(app, args)
    assert again.exit_code == 3
    assert (root / "secrets.yaml").read_bytes() == secrets


def test_init_rejects_bad_api_server(tmp_path):
    result = runner.invoke(app, ["--root", str(tmp_path / "x"), "init", "--api-server", "10.0.0.1"])
    assert result.exit_code == 2
    assert "VAL_016" in result.output


def test_template_offline(project):
    result = runner.invoke(app, ["--root", str(project), "template", "--offline", "-t", "templates/controlplane.yaml"])
    assert result.exit_code == 0, result.output
    assert "# talm: nodes=[], endpoints=[], templates=[\"templates/controlplane.yaml\"]" in result.output
    assert yaml.safe_load(result.output)["cluster"]["clusterName"] == "demo"


def test_template_needs_input(project):
    result = runner.invoke(app, ["--root", str(project), "template"])
    assert result.exit_code == 2
    assert "nothing to render" in result.output


def test_template_in_place(project):
    path = node_file(project)
    result = runner.invoke(app, ["template", "-f", str(path), "-I"])
    assert result.exit_code == 0, result.output
    content = path.read_text()
    assert modeline.parse(content.splitlines()[0]).nodes == ["10.0.0.2"]
    assert yaml.safe_load(content)["machine"]["network"]["hostname"] == "w1"

    again = runner.invoke(app, ["template", "-f", str(path), "-I"])
    assert again.exit_code == 0, again.output
    assert path.read_text() == content


def test_admin_uses_modeline_targets(project, passthrough):
    path = node_file(project)
    result = runner.invoke(app, ["logs", "kubelet", "-f", str(path), "--tail", "20"])
    assert result.exit_code == 0, result.output
    assert passthrough == [{"endpoints": ["10.0.0.2"], "nodes": ["10.0.0.2"], "args": ["logs", "kubelet", "--tail", "20"]}]


def test_admin_command_line_endpoints_win(project, passthrough):
    path = node_file(project)
    result = runner.invoke(app, ["version", "-f", str(path), "--endpoints", "10.0.0.9"])
    assert result.exit_code == 0, result.output
    assert passthrough[0]["endpoints"] == ["10.0.0.9"]
    assert passthrough[0]["nodes"] == ["10.0.0.2"]


def test_admin_exit_status_propagates(project, monkeypatch):
    monkeypatch.setattr(TalosctlClient, "passthrough", lambda self, args: 7)
    result = runner.invoke(app, ["--root", str(project), "reboot", "-n", "10.0.0.2"])
    assert result.exit_code == 7


def test_wipe_refuses_files(project, passthrough):
    path = node_file(project)
    result = runner.invoke(app, ["wipe", "-f", str(path)])
    assert result.exit_code == 2
    assert passthrough == []


def test_apply_renders_full_config(project, monkeypatch):
    applied = []

    def fake_apply(self, config_text, mode="auto", dry_run=False, timeout=None, cert_fingerprints=None, try_timeout=None):
        applied.append({"nodes": list(self.nodes), "mode": mode, "try_timeout": try_timeout, "config": config_text})
        return CommandResult(0, "", "")

    monkeypatch.setattr(TalosctlClient, "apply_config", fake_apply)
    path = node_file(project)
    result = runner.invoke(app, ["apply", "-f", str(path), "--mode", "try", "--timeout", "1m"])
    assert result.exit_code == 0, result.output
    [call] = applied
    assert call["nodes"] == ["10.0.0.2"]
    assert (call["mode"], call["try_timeout"]) == ("try", "1m")
    data = yaml.safe_load(call["config"])
    assert data["machine"]["token"]
    assert data["machine"]["network"]["hostname"] == "w1"


def test_apply_rejects_unknown_mode(project):
    path = node_file(project)
    result = runner.invoke(app, ["apply", "-f", str(path), "--mode", "sometimes"])
    assert result.exit_code == 2


def test_talosconfig_regenerates(project):
    old = yaml.safe_load((project / "talosconfig").read_text())
    result = runner.invoke(app, ["--root", str(project), "talosconfig"])
    assert result.exit_code == 0, result.output
    fresh = yaml.safe_load((project / "talosconfig").read_text())
    assert fresh["context"] == old["context"]
    assert fresh["contexts"]["demo"]["crt"] != old["contexts"]["demo"]["crt"]


def test_invalid_apply_options_are_input_errors(project):
    chart = project / "Chart.yaml"
    data = yaml.safe_load(chart.read_text())
    data["applyOptions"] = {"mode": "bogus"}
    chart.write_text(yaml.safe_dump(data))
    path = node_file(project)
    result = runner.invoke(app, ["apply", "-f", str(path)])
    assert result.exit_code == 2
    assert "applyOptions.mode" in " ".join(result.output.split())


def test_malformed_chart_yaml_is_an_input_error(project):
    (project / "Chart.yaml").write_text("name: demo\nversion: [0.1.0\n")
    result = runner.invoke(app, ["--root", str(project), "template", "--offline", "-t", "templates/worker.yaml"])
    assert result.exit_code == 2
    assert "not valid YAML" in " ".join(result.output.split())


def test_init_encrypt_then_decrypt(project):
    original = yaml.safe_load((project / "secrets.yaml").read_text())
    result = runner.invoke(app, ["--root", str(project), "init", "--encrypt"])
    assert result.exit_code == 0, result.output
    assert (project / "talm.key").exists()
    assert (project / "secrets.encrypted.yaml").exists()
    assert (project / "talosconfig.encrypted").exists()
    assert "talm.key" in (project / ".gitignore").read_text().splitlines()

    (project / "secrets.yaml").unlink()
    result = runner.invoke(app, ["--root", str(project), "init", "--decrypt"])
    assert result.exit_code == 0, result.output
    assert yaml.safe_load((project / "secrets.yaml").read_text()) == original


def test_init_encrypt_and_decrypt_are_exclusive(project):
    result = runner.invoke(app, ["--root", str(project), "init", "--encrypt", "--decrypt"])
    assert result.exit_code == 2
    assert not (project / "talm.key").exists()


def test_upgrade_derives_installer_image(project, passthrough):
    path = node_file(project)
    result = runner.invoke(app, ["upgrade", "-f", str(path)])
    assert result.exit_code == 0, result.output
    [call] = passthrough
    assert call["args"][:2] == ["upgrade", "--image"]
    assert call["args"][2].startswith("ghcr.io/siderolabs/installer:")


def test_upgrade_keeps_explicit_image(project, passthrough):
    path = node_file(project)
    result = runner.invoke(app, ["upgrade", "-f", str(path), "--image", "registry.local/installer:v1"])
    assert result.exit_code == 0, result.output
    assert passthrough[0]["args"] == ["upgrade", "--image", "registry.local/installer:v1"]


def test_kubeconfig_lands_in_the_project(project, monkeypatch):
    calls = []

    def fake(self, args):
        calls.append(list(args))
        with open(args[-1], "w") as f:
            yaml.safe_dump({"clusters": [{"name": "demo", "cluster": {"server": "https://127.0.0.1:6443"}}]}, f)
        return 0

    monkeypatch.setattr(TalosctlClient, "passthrough", fake)
    path = node_file(project, endpoints=("10.0.0.9",))
    result = runner.invoke(app, ["kubeconfig", "-f", str(path)])
    assert result.exit_code == 0, result.output
    target = project / "kubeconfig"
    [args] = calls
    assert args[0] == "kubeconfig"
    assert Path(args[1]).resolve() == target.resolve()
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert yaml.safe_load(target.read_text())["clusters"][0]["cluster"]["server"] == "https://10.0.0.9:6443"
    assert "kubeconfig" in (project / ".gitignore").read_text().splitlines()


def test_normalize_endpoint():
    assert admin.normalize_endpoint("10.0.0.1") == "https://10.0.0.1:6443"
    assert admin.normalize_endpoint("https://10.0.0.1:50000") == "https://10.0.0.1:6443"
    assert admin.normalize_endpoint("[fd00::1]:50000") == "https://[fd00::1]:6443"
    assert admin.normalize_endpoint("fd00::1") == "https://[fd00::1]:6443"
