import stat

import pytest
import yaml

from talm.errors import SecretsMissing, ValidationError
from talm.modules.project import (
    detect_root,
    ensure_gitignore,
    is_project_root,
    normalize_template_path,
    regenerate_talosconfig,
    resolve_root,
)


def make_root(path):
    path.mkdir(parents=True)
    (path / "Chart.yaml").write_text("apiVersion: v2\nname: x\nversion: 0.1.0\n")
    (path / "secrets.yaml").write_text("{}\n")
    (path / "nodes").mkdir()
    return path.resolve()


def test_detect_root_walks_up(project):
    assert is_project_root(project)
    assert detect_root(project / "templates" / "worker.yaml") == project.resolve()
    assert detect_root(project / "nodes" / "missing.yaml") == project.resolve()


def test_detect_root_outside_project(tmp_path):
    assert detect_root(tmp_path) is None


def test_resolve_root_prefers_files(tmp_path):
    a = make_root(tmp_path / "a")
    assert resolve_root(files=[a / "nodes" / "n1.yaml"], cwd=tmp_path) == a
    assert resolve_root(explicit=a, cwd=tmp_path) == a
    assert resolve_root(cwd=tmp_path) == tmp_path.resolve()


def test_resolve_root_conflicts(tmp_path):
    a = make_root(tmp_path / "a")
    b = make_root(tmp_path / "b")
    with pytest.raises(ValidationError) as exc:
        resolve_root(files=[a / "nodes" / "n1.yaml", b / "nodes" / "n1.yaml"])
    assert "different project roots" in exc.value.message
    with pytest.raises(ValidationError):
        resolve_root(explicit=b, files=[a / "nodes" / "n1.yaml"])


def test_normalize_template_path(project, tmp_path):
    assert normalize_template_path(project / "templates" / "worker.yaml", project) == "templates/worker.yaml"
    elsewhere = tmp_path / "copy" / "worker.yaml"
    elsewhere.parent.mkdir()
    elsewhere.write_text("")
    assert normalize_template_path(elsewhere, project) == "templates/worker.yaml"
    with pytest.raises(ValidationError):
        normalize_template_path(tmp_path / "copy" / "other.yaml", project)


def test_ensure_gitignore(tmp_path):
    assert ensure_gitignore(tmp_path)
    lines = (tmp_path / ".gitignore").read_text().splitlines()
    assert {"secrets.yaml", "talosconfig", "talm.key", "kubeconfig"} <= set(lines)
    assert not ensure_gitignore(tmp_path)


def test_ensure_gitignore_keeps_existing_entries(tmp_path):
    (tmp_path / ".gitignore").write_text("*.pyc\nsecrets.yaml")
    assert ensure_gitignore(tmp_path, kubeconfig="/home/me/.kube/admin.conf")
    lines = (tmp_path / ".gitignore").read_text().splitlines()
    assert lines[:2] == ["*.pyc", "secrets.yaml"]
    assert lines.count("secrets.yaml") == 1
    assert "admin.conf" in lines


def test_regenerate_talosconfig_keeps_contexts(project, clock):
    path = project / "talosconfig"
    config = yaml.safe_load(path.read_text())
    config["contexts"]["demo"]["endpoints"] = ["10.0.0.2"]
    config["contexts"]["other"] = {"endpoints": ["10.9.9.9"]}
    path.write_text(yaml.safe_dump(config))
    old_crt = config["contexts"]["demo"]["crt"]

    fresh = regenerate_talosconfig(project, project / "secrets.yaml", path, now=clock())
    assert fresh["context"] == "demo"
    assert fresh["contexts"]["demo"]["endpoints"] == ["10.0.0.2"]
    assert fresh["contexts"]["other"] == {"endpoints": ["10.9.9.9"]}
    assert fresh["contexts"]["demo"]["crt"] != old_crt
    assert yaml.safe_load(path.read_text()) == fresh
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_regenerate_talosconfig_requires_secrets(tmp_path):
    with pytest.raises(SecretsMissing):
        regenerate_talosconfig(tmp_path, tmp_path / "secrets.yaml", tmp_path / "talosconfig")
    assert not (tmp_path / "talosconfig").exists()
