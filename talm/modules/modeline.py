"""Modeline: the first-line directive of every rendered file.

Format::

    # talm: nodes=["10.0.0.2"], endpoints=["10.0.0.2"], templates=["templates/worker.yaml"]

Each value is a JSON array of strings. Keys are separated by ``,`` (``;`` is
accepted when parsing). Unknown or repeated keys are rejected.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..errors import FilesystemError, ModelineInvalid
from ..utils import dedupe

logger = logging.getLogger("talm.modeline")

PREFIX = "# talm:"
KEYS = ("nodes", "endpoints", "templates")
OPTIONAL_KEYS = ("user",)


@dataclass
class Modeline:
    nodes: List[str] = field(default_factory=list)
    endpoints: List[str] = field(default_factory=list)
    templates: List[str] = field(default_factory=list)
    user: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return generate(self.nodes, self.endpoints, self.templates, self.user or None)


def _dump(values: List[str]) -> str:
    return json.dumps(list(values), separators=(",", ":"))


def generate(
    nodes: List[str],
    endpoints: List[str],
    templates: List[str],
    user: Optional[List[str]] = None,
) -> str:
    """Build the single-line modeline for the given directives."""
    parts = [
        f"nodes={_dump(nodes)}",
        f"endpoints={_dump(endpoints)}",
        f"templates={_dump(templates)}",
    ]
    if user:
        parts.append(f"user={_dump(user)}")
    return f"{PREFIX} {', '.join(parts)}"


def parse(line: str) -> Modeline:
    """Parse a modeline back into its directives.

    Raises:
        ModelineInvalid: on a missing prefix, bad syntax, unknown or duplicate keys
    """
    line = line.rstrip("\r\n")
    if not line.startswith(PREFIX):
        raise ModelineInvalid("modeline not found", details=f"expected a first line starting with {PREFIX!r}")

    decoder = json.JSONDecoder()
    text = line[len(PREFIX):]
    idx = 0
    seen = {}
    while True:
        while idx < len(text) and (text[idx].isspace() or (seen and text[idx] in ",;")):
            idx += 1
        if idx >= len(text):
            break
        eq = text.find("=", idx)
        if eq < 0:
            raise ModelineInvalid("malformed modeline", details=f"expected key=value at {text[idx:]!r}")
        key = text[idx:eq].strip()
        if key not in KEYS and key not in OPTIONAL_KEYS:
            raise ModelineInvalid(f"unknown modeline key {key!r}", details=f"allowed keys: {', '.join(KEYS)}")
        if key in seen:
            raise ModelineInvalid(f"duplicate modeline key {key!r}")
        try:
            value, idx = decoder.raw_decode(text, eq + 1)
        except ValueError as e:
            raise ModelineInvalid(f"invalid value for modeline key {key!r}", original=e) from e
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ModelineInvalid(f"modeline key {key!r} must be a list of strings")
        seen[key] = value
        # Keys must be separated
        if idx < len(text) and text[idx] not in ",; \t":
            raise ModelineInvalid("malformed modeline", details=f"unexpected {text[idx:]!r}")

    return Modeline(**seen)


def read(path: Union[str, Path]) -> Modeline:
    """Read and parse the modeline of a rendered file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            first = f.readline()
    except OSError as e:
        raise FilesystemError(f"failed to read {path}", original=e) from e
    try:
        return parse(first)
    except ModelineInvalid as e:
        e.path = str(path)
        raise


def resolve(
    files: Sequence[Union[str, Path]],
    nodes: Optional[Sequence[str]] = None,
    endpoints: Optional[Sequence[str]] = None,
) -> Modeline:
    """Directives for an invocation on ``files``.

    Nodes and endpoints given on the command line win; otherwise they are
    collected from the modelines of ``files`` in order. Templates always come
    from the modelines.
    """
    found = Modeline()
    for path in files:
        line = read(path)
        found.nodes.extend(line.nodes)
        found.endpoints.extend(line.endpoints)
        found.templates.extend(line.templates)
    return Modeline(
        nodes=list(nodes) if nodes else dedupe(found.nodes),
        endpoints=list(endpoints) if endpoints else dedupe(found.endpoints),
        templates=dedupe(found.templates),
    )
