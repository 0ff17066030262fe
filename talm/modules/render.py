"""Render orchestration.

``render(options)`` evaluates every ``(template, node)`` pair: it resolves
the value tree once, merges the node overlay, binds discovery lazily, runs
the engine, validates the documents and prefixes each one with its
modeline. The result maps deterministic output names to file contents; it
never touches the filesystem except to read inputs.
"""
import datetime
import getpass
import logging
import socket
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import Config
from ..errors import Cancelled, FilesystemError, SecretsMissing, ValidationError
from ..utils import dump_yaml
from . import encryption, modeline
from . import secrets as secrets_mod
from .discovery import DiscoveryClient, OfflineDiscovery
from .engine import (
    Chart,
    Engine,
    RenderContext,
    is_machine_config,
    machine_type,
    parse_document,
    require_node_fields,
    split_documents,
)
from .engine.machineconfig import full_config
from .engine.schema import validate_document
from .project import normalize_template_path
from .talosctl import TalosctlClient
from .values import ValueSources, load_node_overlay, merge_values, node_overlay_path, resolve_values
from .version import parse_contract

logger = logging.getLogger("talm.render")

BANNER = "# THIS FILE IS AUTOGENERATED. PREFER TEMPLATE EDITS OVER MANUAL ONES."

# Overlay keys applied on top of the rendered machine config
MACHINE_CONFIG_KEYS = ("version", "debug", "persist", "machine", "cluster")


@dataclass
class RenderOptions:
    template_files: List[str]
    root: Path = field(default_factory=Path.cwd)
    values: ValueSources = field(default_factory=ValueSources)
    secrets_path: Optional[str] = "secrets.yaml"
    offline: bool = False
    kubernetes_version: str = Config.KUBERNETES_VERSION
    talos_version: Optional[str] = None
    user_details: bool = False
    nodes: List[str] = field(default_factory=list)
    endpoints: List[str] = field(default_factory=list)
    templates_have_modeline: bool = True
    full: bool = False
    patch_files: List[str] = field(default_factory=list)
    talosconfig: Optional[str] = None
    cancel: Optional[threading.Event] = None
    clock: Optional[Callable[[], datetime.datetime]] = None
    discovery_factory: Optional[Callable[[str], Any]] = None


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("render cancelled")


def load_patch(path: Path) -> Dict[str, Any]:
    """Machine-config documents of a rendered file merged into one patch.

    The modeline and banner are YAML comments; documents with
    ``apiVersion``/``kind`` are not patches and are skipped.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FilesystemError(f"failed to read {path}", original=e) from e
    patch: Dict[str, Any] = {}
    for doc in split_documents(text):
        data = parse_document(doc, str(path))
        if is_machine_config(data):
            patch = merge_values(patch, data)
    return patch


def _user_details() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}"


class Renderer:
    """One render invocation; owns the value tree, the bundle and the discovery cache."""

    def __init__(self, options: RenderOptions, observer: Optional[logging.Logger] = None):
        self.options = options
        self.root = Path(options.root).resolve()
        self.log = observer or logger
        self.contract = parse_contract(options.talos_version)
        self.talos_version = options.talos_version or Config.TALOS_VERSION
        self.clock = options.clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._discovery: Dict[str, Any] = {}

    def load_bundle(self) -> Optional[secrets_mod.SecretsBundle]:
        if not self.options.secrets_path:
            self.log.debug("Rendering without secrets")
            return None
        path = self.root / self.options.secrets_path
        try:
            bundle = secrets_mod.load(path)
        except SecretsMissing:
            encrypted = self.root / encryption.encrypted_name(self.options.secrets_path)
            if encrypted.exists() and (self.root / encryption.KEY_FILE).exists():
                self.log.debug(f"Decrypting {encrypted} in memory")
                bundle = secrets_mod.SecretsBundle.from_dict(
                    encryption.load_encrypted(self.root, self.options.secrets_path)
                )
                secrets_mod.validate(bundle, self.contract)
                return bundle
            if self.options.offline:
                self.log.warning(f"⚠️  {path} not found, rendering offline without secrets")
                return None
            raise
        secrets_mod.validate(bundle, self.contract)
        return bundle

    def discovery_for(self, node: str) -> Any:
        if node in self._discovery:
            return self._discovery[node]
        if self.options.offline:
            client: Any = OfflineDiscovery(node)
        elif self.options.discovery_factory is not None:
            client = self.options.discovery_factory(node)
        else:
            talosconfig = self.options.talosconfig
            client = DiscoveryClient(
                node,
                TalosctlClient(
                    talosconfig=str(self.root / talosconfig) if talosconfig else None,
                    endpoints=list(self.options.endpoints),
                ),
                cancel=self.options.cancel,
                observer=self.log,
            )
        self._discovery[node] = client
        return client

    def modeline_for(self, node: str, template: str) -> str:
        nodes = [node] if node else list(self.options.nodes)
        user = [_user_details()] if self.options.user_details else None
        return modeline.generate(nodes, list(self.options.endpoints), [template], user)

    def postprocess(
        self,
        documents: List[str],
        template: str,
        node: str,
        overlay: Dict[str, Any],
        bundle: Optional[secrets_mod.SecretsBundle],
        strict: bool = False,
    ) -> List[str]:
        """Validate rendered documents; machine configs first, other documents after."""
        main: List[str] = []
        extra: List[str] = []
        patch = {k: v for k, v in overlay.items() if k in MACHINE_CONFIG_KEYS}
        for text in documents:
            data = parse_document(text, template)
            if not is_machine_config(data):
                validate_document(data, self.contract, template)
                extra.append(text)
                continue
            if patch:
                merged = merge_values(data, patch)
                if merged != data:
                    data, text = merged, dump_yaml(merged)
            if strict:
                require_node_fields(data, template, node)
            mtype = machine_type(data, template)
            if self.options.full:
                data = full_config(
                    data, mtype, self.contract, self.talos_version,
                    self.options.kubernetes_version, bundle,
                )
                text = dump_yaml(data)
            validate_document(data, self.contract, template, full=self.options.full)
            main.append(text)
        return main + extra

    def run(self) -> Dict[str, bytes]:
        options = self.options
        if not options.template_files:
            raise ValidationError("no templates to render", details="pass --template or a file with a modeline")
        chart = Chart.load(self.root)
        bundle = self.load_bundle()
        values = resolve_values(options.values, chart.values, base_dir=self.root)
        engine = Engine(chart, observer=self.log)
        targets = list(options.nodes) or [""]
        patch: Dict[str, Any] = {}
        for path in options.patch_files:
            patch = merge_values(patch, load_patch(Path(path)))

        outputs: Dict[str, bytes] = {}
        for template in options.template_files:
            _check_cancel(options.cancel)
            rel = normalize_template_path(template, self.root)
            stem = Path(rel).stem
            for node in targets:
                _check_cancel(options.cancel)
                has_overlay = bool(node) and node_overlay_path(self.root, node).exists()
                overlay = load_node_overlay(self.root, node) if has_overlay else {}
                if patch:
                    overlay = merge_values(overlay, patch)
                node_values = merge_values(values, overlay) if overlay else values
                ctx = RenderContext(
                    values=node_values,
                    discovery=self.discovery_for(node),
                    bundle=bundle,
                    node=node,
                    talos_version=self.talos_version,
                    kubernetes_version=options.kubernetes_version,
                    clock=self.clock,
                )
                documents = self.postprocess(engine.render(rel, ctx), rel, node, overlay, bundle, strict=has_overlay)
                for index, doc in enumerate(documents):
                    key = stem
                    if node:
                        key += f".{node}"
                    if len(documents) > 1:
                        key += f".{index}"
                    if options.templates_have_modeline:
                        doc = f"{self.modeline_for(node, rel)}\n{BANNER}\n{doc}"
                    outputs[key] = doc.encode("utf-8")
                self.log.info(f"✅ Rendered {rel}{' for ' + node if node else ''}")
        return outputs


def render(options: RenderOptions, observer: Optional[logging.Logger] = None) -> Dict[str, bytes]:
    """Render every ``(template, node)`` pair of ``options``.

    Returns:
        output name (``<template_stem>[.<node>][.<index>]``) -> document bytes
    """
    return Renderer(options, observer).run()


def join_outputs(outputs: Dict[str, bytes]) -> str:
    """Concatenate rendered outputs into one multi-document stream."""
    return "---\n".join(doc.decode("utf-8") for doc in outputs.values())


def render_file(options: RenderOptions, observer: Optional[logging.Logger] = None) -> str:
    """Render ``options`` into the content of one node file.

    The file carries a single modeline naming every node, endpoint and
    template of the invocation, then the banner and the documents.
    """
    body_options = replace(options, templates_have_modeline=False)
    renderer = Renderer(body_options, observer)
    outputs = renderer.run()
    templates = [normalize_template_path(t, renderer.root) for t in options.template_files]
    user = [_user_details()] if options.user_details else None
    line = modeline.generate(list(options.nodes), list(options.endpoints), templates, user)
    return f"{line}\n{BANNER}\n{join_outputs(outputs)}"
