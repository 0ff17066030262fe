import stat

import pytest

from talm.errors import FilesystemExists, SecretPathMissing, SecretsInvalid, SecretsMissing, VersionContractError
from talm.modules import secrets
from talm.modules.version import VersionContract, parse_contract

from .conftest import FIXED_NOW, make_entropy


def test_parse_contract():
    assert parse_contract("v1.10.5") == VersionContract(1, 10)
    assert parse_contract("1.9") == VersionContract(1, 9)
    assert parse_contract("v1.11.0-beta.1") == VersionContract(1, 11)
    assert parse_contract("") == parse_contract(None)
    with pytest.raises(VersionContractError):
        parse_contract("latest")


def test_generate_is_reproducible_with_fixed_inputs():
    first = secrets.generate(VersionContract(1, 10), now=FIXED_NOW, entropy=make_entropy())
    second = secrets.generate(VersionContract(1, 10), now=FIXED_NOW, entropy=make_entropy())
    assert first.cluster_id == second.cluster_id
    assert first.bootstrap_token == second.bootstrap_token
    assert first.certs["os"].to_dict() == second.certs["os"].to_dict()
    assert first.secretbox_encryption_secret
    assert first.aescbc_encryption_secret is None


def test_old_contract_uses_aescbc():
    bundle = secrets.generate(VersionContract(0, 13), now=FIXED_NOW, entropy=make_entropy())
    assert bundle.aescbc_encryption_secret
    assert bundle.secretbox_encryption_secret is None


def test_persist_load_round_trip(tmp_path):
    bundle = secrets.generate(now=FIXED_NOW, entropy=make_entropy())
    path = tmp_path / "secrets.yaml"
    secrets.persist(bundle, path)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    loaded = secrets.load(path)
    assert loaded == bundle
    secrets.validate(loaded, VersionContract(1, 10))


def test_persist_refuses_overwrite(tmp_path):
    bundle = secrets.generate(now=FIXED_NOW, entropy=make_entropy())
    path = tmp_path / "secrets.yaml"
    path.write_text("keep me\n")
    with pytest.raises(FilesystemExists) as exc:
        secrets.persist(bundle, path)
    assert exc.value.path == str(path)
    assert path.read_text() == "keep me\n"
    secrets.persist(bundle, path, force=True)
    assert secrets.load(path) == bundle


def test_load_missing_and_invalid(tmp_path):
    with pytest.raises(SecretsMissing):
        secrets.load(tmp_path / "nope.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("cluster: {}\n")
    with pytest.raises(SecretsInvalid):
        secrets.load(bad)


def test_validate_rejects_newer_bundle():
    bundle = secrets.generate(VersionContract(1, 10), now=FIXED_NOW, entropy=make_entropy())
    with pytest.raises(SecretsInvalid):
        secrets.validate(bundle, VersionContract(1, 9))


def test_validate_requires_os_ca():
    bundle = secrets.generate(now=FIXED_NOW, entropy=make_entropy())
    del bundle.certs["os"]
    with pytest.raises(SecretsInvalid):
        secrets.validate(bundle)


def test_lookup_by_path():
    bundle = secrets.generate(now=FIXED_NOW, entropy=make_entropy())
    assert bundle.lookup("secrets.bootstraptoken") == bundle.bootstrap_token
    with pytest.raises(SecretPathMissing):
        bundle.lookup("certs.nope.crt")


def test_admin_certificate_is_signed_by_os_ca():
    bundle = secrets.generate(now=FIXED_NOW, entropy=make_entropy())
    crt, key = secrets.issue_admin_certificate(bundle, now=FIXED_NOW, entropy=make_entropy(b"admin"))
    assert crt and key
    assert crt != bundle.certs["os"].crt
