import stat

import pytest
import yaml

from talm.errors import FilesystemError, SecretsInvalid, ValidationError
from talm.modules import encryption
from talm.modules.render import Renderer, RenderOptions

from .conftest import FIXED_NOW


def test_key_file_layout(tmp_path):
    identity, created = encryption.generate_key(tmp_path, now=FIXED_NOW)
    assert created
    path = tmp_path / "talm.key"
    lines = path.read_text().splitlines()
    assert lines[0] == "# created: 2025-01-01T00:00:00+00:00"
    assert lines[1].startswith("# public key: age1")
    assert lines[2].startswith("AGE-SECRET-KEY-")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert encryption.public_key(tmp_path) == str(identity.to_public())

    again, created = encryption.generate_key(tmp_path)
    assert not created
    assert str(again) == str(identity)


def test_load_key_errors(tmp_path):
    with pytest.raises(FilesystemError):
        encryption.load_key(tmp_path)
    (tmp_path / "talm.key").write_text("# public key: age1nothing\n")
    with pytest.raises(ValidationError):
        encryption.load_key(tmp_path)


def test_only_string_values_are_encrypted(tmp_path):
    identity, _ = encryption.generate_key(tmp_path)
    plain = {"cluster": {"id": "abc", "port": 6443, "enabled": True}, "tokens": ["t1", "t2"]}
    sealed = encryption.encrypt_tree(plain, identity)
    assert sealed["cluster"]["port"] == 6443
    assert sealed["cluster"]["enabled"] is True
    assert encryption.is_encrypted(sealed["cluster"]["id"])
    assert all(encryption.is_encrypted(t) for t in sealed["tokens"])
    assert "abc" not in yaml.safe_dump(sealed)
    assert encryption.decrypt_tree(sealed, identity) == plain


def test_unchanged_values_keep_their_ciphertext(tmp_path):
    identity, _ = encryption.generate_key(tmp_path)
    sealed = encryption.encrypt_tree({"a": "one", "b": "two"}, identity)
    merged = encryption.merge_encrypt({"a": "one", "b": "changed", "c": "new"}, sealed, identity)
    assert merged["a"] == sealed["a"]
    assert merged["b"] != sealed["b"]
    assert encryption.decrypt_tree(merged, identity) == {"a": "one", "b": "changed", "c": "new"}


def test_wrong_key_cannot_decrypt(tmp_path):
    mine, _ = encryption.generate_key(tmp_path / "mine")
    theirs, _ = encryption.generate_key(tmp_path / "theirs")
    value = encryption.encrypt_value("secret", mine)
    with pytest.raises(SecretsInvalid):
        encryption.decrypt_value(value, theirs)


def test_project_round_trip(project):
    original = yaml.safe_load((project / "secrets.yaml").read_text())
    written = encryption.encrypt_project(project, now=FIXED_NOW)
    assert project / "secrets.encrypted.yaml" in written
    assert project / "talosconfig.encrypted" in written
    sealed_text = (project / "secrets.encrypted.yaml").read_text()
    assert original["secrets"]["bootstraptoken"] not in sealed_text

    (project / "secrets.yaml").unlink()
    restored = encryption.decrypt_project(project)
    assert project / "secrets.yaml" in restored
    assert yaml.safe_load((project / "secrets.yaml").read_text()) == original
    assert stat.S_IMODE((project / "secrets.yaml").stat().st_mode) == 0o600


def test_reencrypting_an_unchanged_project_is_stable(project):
    encryption.encrypt_project(project)
    first = (project / "secrets.encrypted.yaml").read_text()
    encryption.encrypt_project(project)
    assert (project / "secrets.encrypted.yaml").read_text() == first


def test_decrypt_without_encrypted_files(project):
    encryption.generate_key(project)
    with pytest.raises(FilesystemError):
        encryption.decrypt_project(project)


def test_render_reads_encrypted_secrets_in_memory(project):
    original = yaml.safe_load((project / "secrets.yaml").read_text())
    encryption.encrypt_project(project)
    (project / "secrets.yaml").unlink()
    renderer = Renderer(RenderOptions(template_files=["templates/worker.yaml"], root=project))
    bundle = renderer.load_bundle()
    assert bundle.cluster_id == original["cluster"]["id"]
    assert not (project / "secrets.yaml").exists()
