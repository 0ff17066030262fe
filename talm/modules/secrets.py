"""Cluster secrets bundle.

The bundle holds the cluster identity: cluster ID and secret, bootstrap and
trustd tokens, encryption secrets, the CAs for the OS API, Kubernetes, etcd
and the aggregator, and the service-account signing key. It is generated
once, persisted as ``secrets.yaml`` in the layout ``talosctl gen secrets``
produces, and loaded verbatim on every render.
"""
import base64
import datetime
import logging
import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..errors import (
    FilesystemExists,
    SecretPathMissing,
    SecretsInvalid,
    SecretsMissing,
)
from ..utils import dump_yaml, write_file_atomic
from .version import CURRENT_CONTRACT, VersionContract, parse_contract

logger = logging.getLogger("talm.secrets")

Entropy = Callable[[int], bytes]

CA_VALIDITY = datetime.timedelta(days=3650)
ADMIN_CERT_VALIDITY = datetime.timedelta(days=365)

# Order of the P-256 group
_P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits

# Talos marks PKCS#8 Ed25519 keys with their own PEM label
_ED25519_LABEL = b"ED25519 PRIVATE KEY"
_PKCS8_LABEL = b"PRIVATE KEY"

CA_NAMES = ("etcd", "k8s", "k8saggregator", "os")
KEY_ONLY_NAMES = ("k8sserviceaccount",)


@dataclass
class CertAndKey:
    """Base64-encoded PEM certificate and key, as stored in secrets.yaml."""
    key: str
    crt: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        out = {}
        if self.crt is not None:
            out["crt"] = self.crt
        out["key"] = self.key
        return out

    def certificate(self) -> x509.Certificate:
        if not self.crt:
            raise SecretsInvalid("certificate is missing")
        return x509.load_pem_x509_certificate(base64.b64decode(self.crt))

    def private_key(self):
        pem = base64.b64decode(self.key).replace(_ED25519_LABEL, _PKCS8_LABEL)
        return serialization.load_pem_private_key(pem, password=None)


@dataclass
class SecretsBundle:
    """Schema-versioned cluster identity."""
    cluster_id: str
    cluster_secret: str
    bootstrap_token: str
    trustd_token: str
    certs: Dict[str, CertAndKey] = field(default_factory=dict)
    secretbox_encryption_secret: Optional[str] = None
    aescbc_encryption_secret: Optional[str] = None
    contract: Optional[VersionContract] = None

    def to_dict(self) -> Dict[str, Any]:
        secrets: Dict[str, str] = {"bootstraptoken": self.bootstrap_token}
        if self.secretbox_encryption_secret:
            secrets["secretboxencryptionsecret"] = self.secretbox_encryption_secret
        if self.aescbc_encryption_secret:
            secrets["aescbcencryptionsecret"] = self.aescbc_encryption_secret
        out: Dict[str, Any] = {}
        if self.contract is not None:
            out["contract"] = str(self.contract)
        out.update({
            "cluster": {"id": self.cluster_id, "secret": self.cluster_secret},
            "secrets": secrets,
            "trustdinfo": {"token": self.trustd_token},
            "certs": {name: self.certs[name].to_dict() for name in sorted(self.certs)},
        })
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecretsBundle':
        if not isinstance(data, dict):
            raise SecretsInvalid("secrets bundle must be a mapping")
        try:
            cluster = data["cluster"]
            secrets = data["secrets"]
            certs = {
                name: CertAndKey(key=entry["key"], crt=entry.get("crt"))
                for name, entry in (data.get("certs") or {}).items()
            }
            return cls(
                cluster_id=cluster["id"],
                cluster_secret=cluster["secret"],
                bootstrap_token=secrets["bootstraptoken"],
                trustd_token=data["trustdinfo"]["token"],
                certs=certs,
                secretbox_encryption_secret=secrets.get("secretboxencryptionsecret"),
                aescbc_encryption_secret=secrets.get("aescbcencryptionsecret"),
                contract=parse_contract(data["contract"]) if data.get("contract") else None,
            )
        except (KeyError, TypeError) as e:
            raise SecretsInvalid("secrets bundle is missing a required field", details=str(e), original=e) from e

    def lookup(self, path: str) -> Any:
        """Return the value at a dotted path of the serialized bundle, e.g. ``certs.os.crt``."""
        node: Any = self.to_dict()
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                raise SecretPathMissing(f"secrets bundle has no field {path!r}", path=path)
            node = node[part]
        return node


def _token(entropy: Entropy, length: int) -> str:
    return "".join(_TOKEN_ALPHABET[b % len(_TOKEN_ALPHABET)] for b in entropy(length))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _ed25519_key(entropy: Entropy) -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.from_private_bytes(entropy(32))


def _ecdsa_key(entropy: Entropy) -> ec.EllipticCurvePrivateKey:
    scalar = int.from_bytes(entropy(32), "big") % (_P256_ORDER - 1) + 1
    return ec.derive_private_key(scalar, ec.SECP256R1())


def _key_pem(key) -> bytes:
    if isinstance(key, ed25519.Ed25519PrivateKey):
        pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return pem.replace(_PKCS8_LABEL, _ED25519_LABEL)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _signature_hash(key) -> Optional[hashes.HashAlgorithm]:
    # Ed25519 signs without a separate digest
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return None
    return hashes.SHA256()


def _serial(entropy: Entropy) -> int:
    return int.from_bytes(entropy(16), "big") >> 1 or 1


def _self_signed_ca(key, organization: str, common_name: str, now: datetime.datetime, entropy: Entropy) -> CertAndKey:
    attrs = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization)] if organization else []
    attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    name = x509.Name(attrs)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(_serial(entropy))
        .not_valid_before(now)
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, _signature_hash(key))
    )
    return CertAndKey(
        crt=_b64(cert.public_bytes(serialization.Encoding.PEM)),
        key=_b64(_key_pem(key)),
    )


def generate(
    contract: VersionContract = CURRENT_CONTRACT,
    now: Optional[datetime.datetime] = None,
    entropy: Entropy = os.urandom,
) -> SecretsBundle:
    """Create a fresh bundle.

    ``now`` is the notBefore baseline of every embedded certificate. With a
    fixed ``now`` and a deterministic ``entropy`` source every key, token and
    Ed25519 signature is reproducible.
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    now = now.replace(microsecond=0)

    certs = {
        "etcd": _self_signed_ca(_ecdsa_key(entropy), "etcd", "etcd", now, entropy),
        "k8s": _self_signed_ca(_ecdsa_key(entropy), "kubernetes", "kubernetes", now, entropy),
        "k8saggregator": _self_signed_ca(_ecdsa_key(entropy), "", "front-proxy", now, entropy),
        "os": _self_signed_ca(_ed25519_key(entropy), "talos", "talos", now, entropy),
        "k8sserviceaccount": CertAndKey(key=_b64(_key_pem(_ecdsa_key(entropy)))),
    }

    bundle = SecretsBundle(
        cluster_id=_b64(entropy(32)),
        cluster_secret=_b64(entropy(32)),
        bootstrap_token=f"{_token(entropy, 6)}.{_token(entropy, 16)}",
        trustd_token=f"{_token(entropy, 6)}.{_token(entropy, 16)}",
        certs=certs,
        contract=contract,
    )
    encryption_secret = _b64(entropy(32))
    if contract.secretbox_encryption:
        bundle.secretbox_encryption_secret = encryption_secret
    else:
        bundle.aescbc_encryption_secret = encryption_secret
    logger.debug(f"Generated secrets bundle for contract {contract}")
    return bundle


def serialize(bundle: SecretsBundle) -> str:
    return dump_yaml(bundle.to_dict())


def persist(bundle: SecretsBundle, path: Union[str, Path], force: bool = False) -> None:
    """Write the bundle with owner-only permissions.

    Raises:
        FilesystemExists: if ``path`` exists and ``force`` is not set
    """
    path = Path(path)
    if path.exists() and not force:
        raise FilesystemExists(str(path))
    write_file_atomic(path, serialize(bundle), mode=0o600)
    logger.info(f"✅ Wrote secrets bundle to {path}")


def parse(text: str) -> SecretsBundle:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SecretsInvalid("secrets bundle is not valid YAML", original=e) from e
    return SecretsBundle.from_dict(data)


def load(path: Union[str, Path]) -> SecretsBundle:
    """Load a persisted bundle.

    Raises:
        SecretsMissing: if the file does not exist
        SecretsInvalid: if the file cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        raise SecretsMissing(
            f"secrets bundle not found at {path}",
            details="run 'talm init' or restore secrets.yaml",
            path=str(path),
        )
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SecretsInvalid(f"failed to read secrets bundle {path}", original=e) from e
    return parse(text)


def validate(bundle: SecretsBundle, contract: Optional[VersionContract] = None) -> None:
    """Check the bundle is usable.

    The OS CA must be present and parseable. When ``contract`` is given the
    bundle's own contract must not be newer.
    """
    for name in CA_NAMES:
        entry = bundle.certs.get(name)
        if entry is None or not entry.crt or not entry.key:
            if name == "os":
                raise SecretsInvalid("secrets bundle is missing the OS CA", details="certs.os.crt")
            raise SecretsInvalid(f"secrets bundle is missing the {name} CA", details=f"certs.{name}")
    try:
        bundle.certs["os"].certificate()
        bundle.certs["os"].private_key()
    except (ValueError, TypeError) as e:
        raise SecretsInvalid("OS CA in the secrets bundle cannot be parsed", original=e) from e
    if KEY_ONLY_NAMES[0] not in bundle.certs:
        raise SecretsInvalid("secrets bundle is missing the service account key", details="certs.k8sserviceaccount")
    if contract is not None and bundle.contract is not None and bundle.contract > contract:
        raise SecretsInvalid(
            "secrets bundle was generated for a newer Talos version",
            details=f"bundle {bundle.contract} > render {contract}",
        )


def issue_admin_certificate(
    bundle: SecretsBundle,
    now: Optional[datetime.datetime] = None,
    entropy: Entropy = os.urandom,
    validity: datetime.timedelta = ADMIN_CERT_VALIDITY,
) -> Tuple[str, str]:
    """Issue an ``os:admin`` client certificate signed by the OS CA.

    Returns:
        (crt, key) as base64-encoded PEM
    """
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    now = now.replace(microsecond=0)
    ca_cert = bundle.certs["os"].certificate()
    ca_key = bundle.certs["os"].private_key()
    key = _ed25519_key(entropy)
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "os:admin")]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(_serial(entropy))
        .not_valid_before(now)
        .not_valid_after(now + validity)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=False,
                crl_sign=False, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(ca_key, _signature_hash(ca_key))
    )
    return _b64(cert.public_bytes(serialization.Encoding.PEM)), _b64(_key_pem(key))
