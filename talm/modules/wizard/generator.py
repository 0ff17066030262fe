"""Project generation for ``talm init``.

Every file of a new project is built in memory first and committed in one
step, so a failure leaves the working directory untouched. Node configs are
rendered against a staged copy of the project before anything is written.
"""
import datetime
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from ...config import Config
from ...errors import FilesystemError, FilesystemExists, ValidationError
from ...utils import commit_files, dump_yaml
from .. import secrets as secrets_mod
from ..discovery import DiscoveryClient
from ..presets import chart_files, library_files, materialize, validate_preset
from ..project import build_talosconfig, chart_name, ensure_gitignore, is_project_root
from ..render import RenderOptions, render_file
from ..talosctl import TalosctlClient
from ..values import ValueSources
from ..version import parse_contract
from .models import InitData
from .processor import next_node_file, node_values, patch_values, template_for
from .validators import validate_cluster_name, validate_node_config

logger = logging.getLogger("talm.wizard")

SECRETS_FILE = "secrets.yaml"
TALOSCONFIG_FILE = "talosconfig"
PRIVATE_FILES = (SECRETS_FILE, TALOSCONFIG_FILE)


def _maintenance_discovery(node: str) -> DiscoveryClient:
    return DiscoveryClient(node, TalosctlClient(insecure=True))


def detect_preset(root: Union[str, Path]) -> str:
    """Preset recorded in the project's Chart.yaml annotations."""
    try:
        with open(Path(root) / "Chart.yaml", "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return "generic"
    annotations = data.get("annotations") if isinstance(data, dict) else None
    if isinstance(annotations, dict) and annotations.get("talm/preset"):
        return str(annotations["talm/preset"])
    return "generic"


class ProjectGenerator:
    """Writes the files of a talm project into ``root``."""

    def __init__(
        self,
        root: Union[str, Path],
        force: bool = False,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        entropy: Callable[[int], bytes] = os.urandom,
        kubeconfig: str = "kubeconfig",
        discovery_factory: Optional[Callable[[str], Any]] = None,
        observer: Optional[logging.Logger] = None,
    ):
        self.root = Path(root)
        self.force = force
        self.clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self.entropy = entropy
        self.kubeconfig = kubeconfig
        self.discovery_factory = discovery_factory or _maintenance_discovery
        self.log = observer or logger

    def _check_free(self, rel: str) -> None:
        path = self.root / rel
        if path.exists() and not self.force:
            raise FilesystemExists(str(path))

    def _commit(self, files: Dict[str, str]) -> List[Path]:
        paths = {self.root / rel: content for rel, content in files.items()}
        modes = {self.root / rel: 0o600 for rel in PRIVATE_FILES if rel in files}
        commit_files(paths, modes=modes)
        for path in paths:
            self.log.info(f"Created {path}")
        return list(paths)

    def project_files(self, data: InitData) -> Dict[str, str]:
        """Secrets, client config and chart files of a new project, in memory."""
        validate_preset(data.preset)
        validate_cluster_name(data.cluster_name)
        contract = parse_contract(data.talos_version)

        # Secrets first: an existing bundle is the most important refusal
        self._check_free(SECRETS_FILE)
        now = self.clock()
        bundle = secrets_mod.generate(contract, now=now, entropy=self.entropy)
        files = {SECRETS_FILE: secrets_mod.serialize(bundle)}

        talosconfig = build_talosconfig(bundle, data.cluster_name, now=now, entropy=self.entropy)
        files[TALOSCONFIG_FILE] = dump_yaml(talosconfig)

        for rel, content in materialize(data.preset, data.cluster_name, Config.CHART_VERSION).items():
            if rel == "values.yaml":
                content = patch_values(content, data)
            files[rel] = content
        for rel in files:
            self._check_free(rel)
        return files

    def render_node(self, data: InitData, root: Union[str, Path]) -> str:
        """Node config for the selected node, rendered from the project at ``root``."""
        validate_node_config(data)
        template = template_for(data.node_type)
        options = RenderOptions(
            template_files=[template],
            root=Path(root),
            values=ValueSources(json_values=[json.dumps(node_values(data))]),
            talos_version=data.talos_version,
            nodes=[data.selected_node],
            endpoints=[data.selected_node],
            clock=self.clock,
            discovery_factory=self.discovery_factory,
        )
        return render_file(options, observer=self.log)

    def _render_staged(self, data: InitData, files: Dict[str, str]) -> str:
        try:
            with tempfile.TemporaryDirectory(prefix="talm-init-") as tmp:
                for rel, content in files.items():
                    path = Path(tmp) / rel
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_text(content, encoding="utf-8")
                return self.render_node(data, tmp)
        except OSError as e:
            raise FilesystemError("failed to stage project files", original=e) from e

    def generate(self, data: InitData) -> List[Path]:
        """Create a new project and, when a node was selected, its first node config."""
        files = self.project_files(data)
        if data.has_node():
            files[next_node_file(self.root)] = self._render_staged(data, files)
        written = self._commit(files)
        ensure_gitignore(self.root, self.kubeconfig)
        self.log.info(f"✅ Initialized {data.preset} project {data.cluster_name} in {self.root}")
        return written

    def add_node(self, data: InitData) -> Path:
        """Render a node config into an existing project as the next ``nodes/nodeN.yaml``."""
        if not is_project_root(self.root):
            raise ValidationError(
                f"{self.root} is not a talm project",
                details="Chart.yaml and secrets.yaml are required, run 'talm init' first",
            )
        rel = next_node_file(self.root)
        content = self.render_node(data, self.root)
        [path] = self._commit({rel: content})
        return path

    def update(self, preset: Optional[str] = None) -> List[Path]:
        """Refresh the library chart; preset templates are replaced only with ``force``."""
        if not (self.root / "Chart.yaml").exists():
            raise ValidationError(f"{self.root} is not a talm project", details="Chart.yaml not found")
        files = dict(library_files(Config.CHART_VERSION))
        if self.force:
            preset = preset or detect_preset(self.root)
            validate_preset(preset)
            for rel, content in chart_files(preset).items():
                if rel.startswith("templates/"):
                    files[rel] = content
        elif preset:
            self.log.warning("⚠️  Preset templates are kept, use --force to replace them")
        written = self._commit(files)
        ensure_gitignore(self.root, self.kubeconfig)
        self.log.info(f"✅ Updated {chart_name(self.root) or self.root}")
        return written
