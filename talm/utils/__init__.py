"""Utility functions and helpers for the talm application."""
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from ..config import Config
from ..errors import FilesystemError

logger = logging.getLogger("talm.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def read_yaml_file(path: Union[str, Path]) -> Any:
    """Read a YAML file and return the parsed document (``{}`` when empty).

    Raises:
        FilesystemError: If the file cannot be read
        yaml.YAMLError: If the file is not valid YAML
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise FilesystemError(f"failed to read {path}", original=e) from e
    return {} if data is None else data


def dump_yaml(data: Any) -> str:
    """Serialize data as block-style YAML preserving key order."""
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, indent=2)


def write_file_atomic(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write a file via a temporary sibling and rename, so readers never see a partial file."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            os.chmod(tmp, mode)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        raise FilesystemError(f"failed to write {path}", original=e) from e


def commit_files(
    files: Dict[Union[str, Path], str],
    mode: int = 0o644,
    modes: Optional[Dict[Union[str, Path], int]] = None,
) -> None:
    """Write several files so that either all of them change or none does.

    Every file is staged as a temporary sibling first; a staging failure
    removes the staged files. Should a rename fail, files already replaced
    are restored to their previous content and new files are removed.
    ``modes`` overrides the permissions of individual files.
    """
    overrides = {Path(p): m for p, m in (modes or {}).items()}
    staged: List[Tuple[Path, str]] = []
    try:
        for path, content in files.items():
            path = Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            staged.append((path, tmp))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(tmp, overrides.get(path, mode))
    except OSError as e:
        for _, tmp in staged:
            if os.path.exists(tmp):
                os.unlink(tmp)
        raise FilesystemError("failed to stage output files", original=e) from e

    previous: Dict[Path, Optional[bytes]] = {}
    try:
        for path, tmp in staged:
            previous[path] = path.read_bytes() if path.exists() else None
            os.replace(tmp, path)
    except OSError as e:
        logger.error(f"Failed to commit output files, rolling back: {e}")
        for path, content in previous.items():
            if content is None:
                if path.exists():
                    path.unlink()
            else:
                path.write_bytes(content)
        for _, tmp in staged:
            if os.path.exists(tmp):
                os.unlink(tmp)
        raise FilesystemError("failed to write output files", original=e) from e


def dedupe(items: Iterable[str]) -> List[str]:
    """Drop duplicates while keeping first-seen order."""
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
