"""At-rest encryption of project secrets with age.

The project key lives in ``talm.key`` in the ``age-keygen`` layout. Files
are encrypted value by value: mapping keys and non-string scalars stay in
clear text, every string becomes ``ENC[AGE,data:<base64 ciphertext>]``, so
an encrypted file still diffs key by key. Re-encrypting keeps the
ciphertext of values that did not change.
"""
import base64
import datetime
import logging
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

import pyrage
import yaml
from pyrage import x25519

from ..errors import FilesystemError, SecretsInvalid, ValidationError
from ..utils import dump_yaml, read_yaml_file, write_file_atomic

logger = logging.getLogger("talm.encryption")

KEY_FILE = "talm.key"
SECRETS_FILE = "secrets.yaml"
ENCRYPTED_SUFFIX = ".encrypted"
ENCRYPTED_SECRETS_FILE = "secrets.encrypted.yaml"

PREFIX = "ENC[AGE,data:"
SUFFIX = "]"

SECRET_KEY_PREFIX = "AGE-SECRET-KEY-"
PUBLIC_KEY_MARKER = "# public key: "


def encrypted_name(rel: Union[str, Path]) -> str:
    """Name of the encrypted counterpart of a project file."""
    rel = str(rel)
    if rel == SECRETS_FILE:
        return ENCRYPTED_SECRETS_FILE
    return rel + ENCRYPTED_SUFFIX


def is_encrypted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX) and value.endswith(SUFFIX)


def generate_key(
    root: Union[str, Path],
    now: Optional[datetime.datetime] = None,
) -> Tuple[x25519.Identity, bool]:
    """Load the project key, creating it when missing; returns ``(identity, created)``."""
    path = Path(root) / KEY_FILE
    if path.exists():
        return load_key(root), False
    identity = x25519.Identity.generate()
    now = now or datetime.datetime.now(datetime.timezone.utc)
    content = (
        f"# created: {now.replace(microsecond=0).isoformat()}\n"
        f"{PUBLIC_KEY_MARKER}{identity.to_public()}\n"
        f"{identity}\n"
    )
    write_file_atomic(path, content, mode=0o600)
    logger.info(f"🔑 Generated encryption key {path}")
    return identity, True


def load_key(root: Union[str, Path]) -> x25519.Identity:
    """Read the identity from ``talm.key``.

    Raises:
        FilesystemError: if the key file is missing or unreadable
        ValidationError: if it holds no usable secret key
    """
    path = Path(root) / KEY_FILE
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FilesystemError(f"failed to read encryption key {path}", path=str(path), original=e) from e
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith(SECRET_KEY_PREFIX):
            continue
        try:
            return x25519.Identity.from_str(line)
        except pyrage.IdentityError as e:
            raise ValidationError("invalid encryption key", path=str(path), original=e) from e
    raise ValidationError("invalid encryption key", details=f"no {SECRET_KEY_PREFIX} line", path=str(path))


def public_key(root: Union[str, Path]) -> str:
    for line in (Path(root) / KEY_FILE).read_text(encoding="utf-8").splitlines():
        if line.startswith(PUBLIC_KEY_MARKER):
            return line[len(PUBLIC_KEY_MARKER):].strip()
    return str(load_key(root).to_public())


def encrypt_value(plain: str, identity: x25519.Identity) -> str:
    try:
        sealed = pyrage.encrypt(plain.encode("utf-8"), [identity.to_public()])
    except pyrage.EncryptError as e:
        raise ValidationError("failed to encrypt value", original=e) from e
    return PREFIX + base64.b64encode(sealed).decode("ascii") + SUFFIX


def decrypt_value(value: str, identity: x25519.Identity) -> str:
    """Plain text of one ``ENC[AGE,...]`` value; other strings pass through."""
    if not is_encrypted(value):
        return value
    data = value[len(PREFIX):-len(SUFFIX)]
    try:
        return pyrage.decrypt(base64.b64decode(data), [identity]).decode("utf-8")
    except (pyrage.DecryptError, ValueError) as e:
        raise SecretsInvalid("failed to decrypt value", details="wrong talm.key or corrupted data", original=e) from e


def encrypt_tree(data: Any, identity: x25519.Identity) -> Any:
    if isinstance(data, dict):
        return {key: encrypt_tree(value, identity) for key, value in data.items()}
    if isinstance(data, list):
        return [encrypt_tree(item, identity) for item in data]
    if isinstance(data, str):
        return encrypt_value(data, identity)
    return data


def decrypt_tree(data: Any, identity: x25519.Identity) -> Any:
    if isinstance(data, dict):
        return {key: decrypt_tree(value, identity) for key, value in data.items()}
    if isinstance(data, list):
        return [decrypt_tree(item, identity) for item in data]
    if isinstance(data, str):
        return decrypt_value(data, identity)
    return data


def merge_encrypt(plain: Any, previous: Any, identity: x25519.Identity) -> Any:
    """Encrypt ``plain``, reusing ciphertext from ``previous`` where the value is unchanged."""
    if isinstance(plain, dict):
        if not isinstance(previous, dict):
            return encrypt_tree(plain, identity)
        return {
            key: merge_encrypt(value, previous[key], identity) if key in previous else encrypt_tree(value, identity)
            for key, value in plain.items()
        }
    if isinstance(plain, list):
        if not isinstance(previous, list) or len(previous) != len(plain):
            return encrypt_tree(plain, identity)
        return [merge_encrypt(p, e, identity) for p, e in zip(plain, previous)]
    if isinstance(plain, str) and is_encrypted(previous):
        try:
            if decrypt_value(previous, identity) == plain:
                return previous
        except SecretsInvalid:
            logger.debug("Re-encrypting a value sealed with another key")
    return encrypt_tree(plain, identity)


def _read(path: Path) -> Any:
    if not path.exists():
        raise FilesystemError(f"{path} not found", path=str(path))
    try:
        return read_yaml_file(path)
    except yaml.YAMLError as e:
        raise ValidationError(f"{path} is not valid YAML", path=str(path), original=e) from e


def encrypt_file(root: Union[str, Path], rel: Union[str, Path], identity: x25519.Identity) -> Path:
    """Write the encrypted counterpart of ``rel``; returns its path."""
    root = Path(root)
    source = root / rel
    target = root / encrypted_name(rel)
    plain = _read(source)
    if target.exists():
        data = merge_encrypt(plain, _read(target), identity)
    else:
        data = encrypt_tree(plain, identity)
    write_file_atomic(target, dump_yaml(data))
    logger.info(f"🔒 Encrypted {source} to {target}")
    return target


def decrypt_file(root: Union[str, Path], rel: Union[str, Path], identity: x25519.Identity) -> Path:
    """Restore ``rel`` from its encrypted counterpart with owner-only permissions."""
    root = Path(root)
    source = root / encrypted_name(rel)
    target = root / rel
    data = decrypt_tree(_read(source), identity)
    write_file_atomic(target, dump_yaml(data), mode=0o600)
    logger.info(f"🔓 Decrypted {source} to {target}")
    return target


def load_encrypted(root: Union[str, Path], rel: Union[str, Path]) -> Any:
    """Decrypted content of ``rel``'s encrypted counterpart, without writing it out."""
    return decrypt_tree(_read(Path(root) / encrypted_name(rel)), load_key(root))


def project_files(kubeconfig: str = "kubeconfig", talosconfig: str = "talosconfig") -> List[str]:
    return [SECRETS_FILE, talosconfig, kubeconfig]


def encrypt_project(
    root: Union[str, Path],
    kubeconfig: str = "kubeconfig",
    talosconfig: str = "talosconfig",
    now: Optional[datetime.datetime] = None,
) -> List[Path]:
    """Encrypt the sensitive files present in the project, creating the key if needed.

    ``secrets.yaml`` is mandatory; ``talosconfig`` and the kubeconfig are
    encrypted when they exist.
    """
    root = Path(root)
    if not (root / SECRETS_FILE).exists():
        raise FilesystemError(f"{root / SECRETS_FILE} not found", details="run 'talm init' first")
    identity, _ = generate_key(root, now=now)
    written = []
    for rel in project_files(kubeconfig, talosconfig):
        if (root / rel).exists():
            written.append(encrypt_file(root, rel, identity))
    return written


def decrypt_project(
    root: Union[str, Path],
    kubeconfig: str = "kubeconfig",
    talosconfig: str = "talosconfig",
) -> List[Path]:
    """Restore every sensitive file that has an encrypted counterpart."""
    root = Path(root)
    identity = load_key(root)
    written = []
    for rel in project_files(kubeconfig, talosconfig):
        if (root / encrypted_name(rel)).exists():
            written.append(decrypt_file(root, rel, identity))
        else:
            logger.debug(f"No encrypted copy of {rel}")
    if not written:
        raise FilesystemError(f"no encrypted files in {root}", details=f"expected {ENCRYPTED_SECRETS_FILE}")
    return written


def refresh_encrypted(root: Union[str, Path], rel: Union[str, Path]) -> Optional[Path]:
    """Re-encrypt ``rel`` when the project already keeps an encrypted copy of it."""
    root = Path(root)
    if not (root / encrypted_name(rel)).exists() or not (root / KEY_FILE).exists():
        return None
    return encrypt_file(root, rel, load_key(root))
