"""Layered value store.

Values are resolved from, lowest to highest priority:

1. chart defaults (``values.yaml`` of the chart)
2. value files, in declaration order
3. inline key-paths: ``--set``, then ``--set-string``, then ``--set-literal``
4. file-inlines: ``--set-file key=@path``
5. JSON fragments: ``--set-json``

Merging is deep. Mappings recurse, every other type is replaced by the
higher priority value. A mapping colliding with a non-mapping raises
``ValueTypeError`` naming the dotted path of the collision. A ``null``
override resets the key to null whatever it held before.
"""
import copy
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..errors import FilesystemError, ValidationError, ValueShapeError, ValueTypeError
from ..utils import redact_sensitive_data

logger = logging.getLogger("talm.values")

_INDEX_RE = re.compile(r'^(?P<name>[^\[\]]*)\[(?P<index>\d+)\]$')
_INT_RE = re.compile(r'^[-+]?(0|[1-9][0-9]*)$')

# Upper bound for list indices in --set expressions
MAX_INDEX = 65536


@dataclass
class ValueSources:
    """Ordered inputs of the value store."""
    value_files: List[str] = field(default_factory=list)
    values: List[str] = field(default_factory=list)
    string_values: List[str] = field(default_factory=list)
    literal_values: List[str] = field(default_factory=list)
    file_values: List[str] = field(default_factory=list)
    json_values: List[str] = field(default_factory=list)


def _join(path: str, key: Any) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else str(key)


def merge_values(base: Dict[str, Any], override: Dict[str, Any], path: str = "") -> Dict[str, Any]:
    """Deep-merge ``override`` onto ``base`` and return a new mapping.

    Neither input is modified.

    Raises:
        ValueTypeError: when a mapping meets a non-mapping at the same path
    """
    out = dict(base)
    for key, value in override.items():
        key_path = _join(path, key)
        if value is None:
            out[key] = None
            continue
        current = out.get(key)
        if isinstance(value, dict):
            if isinstance(current, dict):
                out[key] = merge_values(current, value, key_path)
                continue
            if current is not None:
                raise ValueTypeError(
                    "cannot merge a mapping into a non-mapping value",
                    details=f"{type(current).__name__} vs mapping",
                    path=key_path,
                )
            out[key] = merge_values({}, value, key_path)
            continue
        if isinstance(current, dict):
            raise ValueTypeError(
                "cannot replace a mapping with a non-mapping value",
                details=f"mapping vs {type(value).__name__}",
                path=key_path,
            )
        out[key] = value
    return out


def load_values_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Load one YAML value file; the top level must be a mapping."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise FilesystemError(f"failed to read values file {path}", original=e) from e
    except yaml.YAMLError as e:
        raise ValueShapeError(f"values file {path} is not valid YAML", original=e) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueShapeError(
            f"values file {path} must contain a mapping at the top level",
            details=f"got {type(data).__name__}",
        )
    return data


def _split_unescaped(text: str, sep: str) -> List[str]:
    """Split on ``sep`` ignoring backslash-escaped separators and separators inside ``{}``."""
    parts = []
    buf = []
    depth = 0
    escaped = False
    for ch in text:
        if escaped:
            buf.append(ch)
            escaped = False
            continue
        if ch == '\\':
            escaped = True
            continue
        if ch == '{':
            depth += 1
        elif ch == '}' and depth:
            depth -= 1
        if ch == sep and depth == 0:
            parts.append(''.join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append(''.join(buf))
    return parts


def _typed(raw: str) -> Any:
    if raw == 'true':
        return True
    if raw == 'false':
        return False
    if raw == 'null':
        return None
    if _INT_RE.match(raw):
        return int(raw)
    return raw


def _parse_rhs(raw: str, typed: bool) -> Any:
    if raw.startswith('{') and raw.endswith('}'):
        items = [item for item in _split_unescaped(raw[1:-1], ',') if item != '']
        return [_typed(item) if typed else item for item in items]
    return _typed(raw) if typed else raw


def _tokenize_key(key: str) -> List[Union[str, int]]:
    if not key:
        raise ValidationError("empty key in value expression")
    tokens: List[Union[str, int]] = []
    for part in _split_unescaped(key, '.'):
        if part == '':
            raise ValidationError(f"empty key segment in {key!r}")
        match = _INDEX_RE.match(part)
        if match:
            index = int(match.group('index'))
            if index > MAX_INDEX:
                raise ValidationError(f"index {index} in {key!r} exceeds the limit of {MAX_INDEX}")
            if match.group('name'):
                tokens.append(match.group('name'))
            tokens.append(index)
        else:
            tokens.append(part)
    return tokens


def _graft(tree: Dict[str, Any], tokens: List[Union[str, int]], value: Any, expr: str) -> None:
    """Set ``value`` at ``tokens`` inside ``tree``, creating intermediate containers."""
    node: Any = tree
    path = ""
    for i, token in enumerate(tokens):
        last = i == len(tokens) - 1
        nxt = None if last else tokens[i + 1]
        empty = [] if isinstance(nxt, int) else {}
        if isinstance(token, int):
            if not isinstance(node, list):
                raise ValueTypeError(f"cannot index a non-list value in {expr!r}", path=path)
            while len(node) <= token:
                node.append(None)
            path = _join(path, token)
            if last:
                node[token] = value
                return
            if node[token] is None:
                node[token] = empty
            node = node[token]
            continue
        if not isinstance(node, dict):
            raise ValueTypeError(f"cannot set a key on a non-mapping value in {expr!r}", path=path)
        path = _join(path, token)
        if last:
            current = node.get(token)
            if isinstance(current, dict) and value is not None and not isinstance(value, dict):
                raise ValueTypeError(
                    f"cannot replace a mapping with a scalar in {expr!r}",
                    path=path,
                )
            node[token] = value
            return
        current = node.get(token)
        if current is None:
            node[token] = empty
        elif isinstance(nxt, int) and not isinstance(current, list):
            raise ValueTypeError(f"cannot index a non-list value in {expr!r}", path=path)
        elif not isinstance(nxt, int) and not isinstance(current, dict):
            raise ValueTypeError(
                f"cannot set a nested key under a scalar in {expr!r}",
                details=f"existing value is {type(current).__name__}",
                path=path,
            )
        node = node[token]


def _split_assignment(expr: str) -> Tuple[str, str]:
    if '=' not in expr:
        raise ValidationError(f"value expression {expr!r} must have the form key=value")
    key, raw = expr.split('=', 1)
    return key.strip(), raw


def parse_set(expr: str, tree: Dict[str, Any], typed: bool = True) -> Dict[str, Any]:
    """Apply one ``--set`` / ``--set-string`` expression (comma separated pairs) to ``tree``."""
    for pair in _split_unescaped(expr, ','):
        if pair == '':
            continue
        key, raw = _split_assignment(pair)
        _graft(tree, _tokenize_key(key), _parse_rhs(raw, typed), expr)
    return tree


def parse_literal(expr: str, tree: Dict[str, Any]) -> Dict[str, Any]:
    """Apply one ``--set-literal`` expression; the right hand side is kept verbatim."""
    key, raw = _split_assignment(expr)
    _graft(tree, _tokenize_key(key), raw, expr)
    return tree


def parse_file_value(expr: str, tree: Dict[str, Any], base_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Apply one ``key=@path`` expression, inlining the file contents as a string."""
    key, raw = _split_assignment(expr)
    file_path = Path(raw[1:] if raw.startswith('@') else raw)
    if base_dir is not None and not file_path.is_absolute() and not file_path.exists():
        file_path = base_dir / file_path
    try:
        content = file_path.read_text(encoding='utf-8')
    except OSError as e:
        raise FilesystemError(f"failed to read file for set-file value {expr!r}", original=e) from e
    _graft(tree, _tokenize_key(key), content, expr)
    return tree


def parse_json_value(expr: str, tree: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a JSON fragment.

    A fragment is either a whole JSON object or ``key.path=<json>``.
    """
    text = expr.strip()
    if text.startswith('{'):
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ValidationError(f"failed to parse JSON value {expr!r}", original=e) from e
        if not isinstance(data, dict):
            raise ValueShapeError(f"JSON value {expr!r} must be an object")
        return merge_values(tree, data)
    key, raw = _split_assignment(text)
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"failed to parse JSON value {expr!r}", original=e) from e
    nested: Dict[str, Any] = {}
    _graft(nested, _tokenize_key(key), data, expr)
    return merge_values(tree, nested)


def resolve_values(
    sources: ValueSources,
    defaults: Optional[Dict[str, Any]] = None,
    base_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Resolve the full value tree from chart defaults and ``sources``."""
    tree = merge_values({}, copy.deepcopy(defaults or {}))

    for path in sources.value_files:
        file_path = Path(path)
        if base_dir is not None and not file_path.is_absolute() and not file_path.exists():
            file_path = base_dir / file_path
        tree = merge_values(tree, load_values_file(file_path))
        logger.debug(f"Merged values file {file_path}")

    # Inline expressions graft onto the tree directly, so collisions are reported
    # at the exact key path.
    for expr in sources.values:
        parse_set(expr, tree, typed=True)
    for expr in sources.string_values:
        parse_set(expr, tree, typed=False)
    for expr in sources.literal_values:
        parse_literal(expr, tree)
    for expr in sources.file_values:
        parse_file_value(expr, tree, base_dir)
    for expr in sources.json_values:
        tree = parse_json_value(expr, tree)

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Resolved values: {json.dumps(redact_sensitive_data(tree), default=str)}")
    return tree


def node_overlay_path(root: Union[str, Path], node: str) -> Path:
    return Path(root) / "nodes" / f"{node}.yaml"


def load_node_overlay(root: Union[str, Path], node: str) -> Dict[str, Any]:
    """Return the per-node overlay ``nodes/<node>.yaml`` or ``{}`` when absent.

    Rendered node files start with a modeline comment, which YAML ignores.
    """
    path = node_overlay_path(root, node)
    if not path.exists():
        return {}
    return load_values_file(path)


def get_path(tree: Any, dotted: str, default: Any = None) -> Any:
    """Read a dotted path from the tree; ``default`` when any segment is missing."""
    node = tree
    if not dotted:
        return node
    for token in _tokenize_key(dotted):
        if isinstance(token, int):
            if not isinstance(node, list) or token >= len(node):
                return default
        elif not isinstance(node, dict) or token not in node:
            return default
        node = node[token]
    return node
