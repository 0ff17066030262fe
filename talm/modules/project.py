"""Project root detection and the client-side files of a project.

A project root is a directory holding both ``Chart.yaml`` and
``secrets.yaml``. This module also owns ``talosconfig`` and ``.gitignore``.
"""
import datetime
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import yaml

from ..errors import FilesystemError, ValidationError
from ..utils import dump_yaml, read_yaml_file, write_file_atomic
from . import secrets as secrets_mod

logger = logging.getLogger("talm.project")

ROOT_MARKERS = ("Chart.yaml", "secrets.yaml")
GITIGNORE_ENTRIES = ("secrets.yaml", "talosconfig", "talm.key")
DEFAULT_CONTEXT = "talos-default"
DEFAULT_TALOSCONFIG_ENDPOINTS = ["127.0.0.1"]


def is_project_root(path: Union[str, Path]) -> bool:
    path = Path(path)
    return all((path / marker).is_file() for marker in ROOT_MARKERS)


def detect_root(start: Union[str, Path]) -> Optional[Path]:
    """Walk up from ``start`` (a file or directory) to the nearest project root."""
    current = Path(start).resolve()
    if current.is_file() or not current.exists():
        current = current.parent
    for candidate in (current, *current.parents):
        if is_project_root(candidate):
            return candidate
    return None


def detect_root_for_files(files: Iterable[Union[str, Path]]) -> Optional[Path]:
    """Common project root of a set of files.

    Raises:
        ValidationError: when the files belong to different roots
    """
    root: Optional[Path] = None
    root_of = None
    for file in files:
        found = detect_root(file)
        if found is None:
            continue
        if root is None:
            root, root_of = found, file
        elif found != root:
            raise ValidationError(
                "files belong to different project roots",
                details=f"{root_of} is in {root}, {file} is in {found}",
            )
    return root


def resolve_root(
    explicit: Optional[Union[str, Path]] = None,
    files: Iterable[Union[str, Path]] = (),
    templates: Iterable[Union[str, Path]] = (),
    cwd: Optional[Union[str, Path]] = None,
) -> Path:
    """Pick the project root: files first, then templates, then the working directory.

    An explicit root must agree with the root detected from files.
    """
    files = list(files)
    if files:
        detected = detect_root_for_files(files)
        if detected is not None:
            if explicit and Path(explicit).resolve() != detected:
                raise ValidationError(
                    "conflicting project roots",
                    details=f"--root={Path(explicit).resolve()}, detected {detected}",
                )
            return detected
    if explicit:
        return Path(explicit).resolve()
    for template in templates:
        detected = detect_root(template)
        if detected is not None:
            return detected
        break
    detected = detect_root(cwd or os.getcwd())
    return detected or Path(cwd or os.getcwd()).resolve()


def normalize_template_path(template: Union[str, Path], root: Union[str, Path]) -> str:
    """Express a template path relative to the project root, POSIX style.

    A path outside the root maps to ``templates/<basename>`` when that file exists.
    """
    root = Path(root).resolve()
    path = Path(template)
    absolute = path if path.is_absolute() else (Path.cwd() / path)
    try:
        return absolute.resolve().relative_to(root).as_posix()
    except ValueError:
        pass
    if not path.is_absolute() and (root / path).exists():
        return path.as_posix()
    fallback = Path("templates") / path.name
    if (root / fallback).exists():
        return fallback.as_posix()
    raise ValidationError(
        f"template {template} is outside the project root",
        details=f"root {root}",
    )


def ensure_gitignore(root: Union[str, Path], kubeconfig: str = "kubeconfig") -> bool:
    """Add missing sensitive-file entries to ``.gitignore``; returns True when written."""
    path = Path(root) / ".gitignore"
    entries = list(GITIGNORE_ENTRIES) + [Path(kubeconfig).name]
    if path.exists():
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise FilesystemError(f"failed to read {path}", original=e) from e
    else:
        content = "# Sensitive files\n"
    present = set()
    for line in content.splitlines():
        line = line.strip()
        for entry in entries:
            if line == entry or line.startswith(entry + " ") or line.startswith(entry + "#"):
                present.add(entry)
    missing = [e for e in entries if e not in present]
    if not missing and path.exists():
        return False
    if content and not content.endswith("\n"):
        content += "\n"
    content += "".join(f"{entry}\n" for entry in missing)
    write_file_atomic(path, content)
    logger.info(f"Updated {path}")
    return True


def chart_name(root: Union[str, Path]) -> str:
    chart = Path(root) / "Chart.yaml"
    try:
        with open(chart, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return ""
    return str(data.get("name", "")) if isinstance(data, dict) else ""


def build_talosconfig(
    bundle: secrets_mod.SecretsBundle,
    context: str,
    endpoints: Optional[List[str]] = None,
    nodes: Optional[List[str]] = None,
    now: Optional[datetime.datetime] = None,
    entropy: Callable[[int], bytes] = os.urandom,
) -> Dict[str, Any]:
    """Client configuration with a single context holding a fresh admin certificate."""
    crt, key = secrets_mod.issue_admin_certificate(bundle, now=now, entropy=entropy)
    ctx: Dict[str, Any] = {
        "endpoints": list(endpoints if endpoints is not None else DEFAULT_TALOSCONFIG_ENDPOINTS),
    }
    if nodes:
        ctx["nodes"] = list(nodes)
    ctx.update({
        "ca": bundle.certs["os"].crt,
        "crt": crt,
        "key": key,
    })
    return {"context": context, "contexts": {context: ctx}}


def write_talosconfig(path: Union[str, Path], config: Dict[str, Any]) -> None:
    write_file_atomic(path, dump_yaml(config), mode=0o600)


def load_talosconfig(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = read_yaml_file(path)
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid talosconfig {path}", original=e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"invalid talosconfig {path}", details="expected a mapping")
    return data


def regenerate_talosconfig(
    root: Union[str, Path],
    secrets_path: Union[str, Path],
    talosconfig_path: Union[str, Path],
    now: Optional[datetime.datetime] = None,
) -> Dict[str, Any]:
    """Reissue client credentials, keeping endpoints, nodes and unrelated contexts."""
    old = load_talosconfig(talosconfig_path)
    context = (old or {}).get("context") or chart_name(root) or DEFAULT_CONTEXT
    bundle = secrets_mod.load(secrets_path)
    secrets_mod.validate(bundle)

    old_contexts: Dict[str, Any] = dict((old or {}).get("contexts") or {})
    old_ctx = old_contexts.get(context) or {}
    fresh = build_talosconfig(
        bundle,
        context,
        endpoints=old_ctx.get("endpoints") if old else None,
        nodes=old_ctx.get("nodes"),
        now=now,
    )
    for name, ctx in old_contexts.items():
        if name != context:
            fresh["contexts"][name] = ctx
    write_talosconfig(talosconfig_path, fresh)
    logger.info(f"✅ Regenerated {talosconfig_path}")
    return fresh
