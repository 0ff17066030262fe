"""Helm-style chart rendering on a sandboxed Jinja2 environment."""
import datetime
import logging
import re
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from jinja2 import TemplateNotFound, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError

from ...config import Config
from ...errors import (
    FilesystemError,
    OutputMalformed,
    TalmError,
    TemplateEvalError,
    TemplateParseError,
    ValidationError,
)
from ..values import load_values_file
from .environment import StepBudget, TemplateSandbox, ValueTree
from .functions import FILTERS, build_globals

logger = logging.getLogger("talm.engine")

MACHINE_TYPES = ("controlplane", "worker")

_DOCUMENT_SEPARATOR = re.compile(r"^---[ \t]*(?:#.*)?$", re.MULTILINE)


@dataclass
class Chart:
    """A chart directory: ``Chart.yaml``, ``values.yaml``, ``templates/`` and ``charts/``."""
    root: Path
    name: str
    version: str
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls, root: Union[str, Path]) -> 'Chart':
        root = Path(root)
        chart_file = root / "Chart.yaml"
        try:
            with open(chart_file, "r", encoding="utf-8") as f:
                meta = yaml.safe_load(f) or {}
        except OSError as e:
            raise FilesystemError(f"failed to read {chart_file}", original=e) from e
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid {chart_file}", original=e) from e
        if not isinstance(meta, dict):
            raise ValidationError(f"{chart_file} must be a mapping")
        values_file = root / "values.yaml"
        values = load_values_file(values_file) if values_file.exists() else {}
        return cls(
            root=root,
            name=str(meta.get("name", "")),
            version=str(meta.get("version", "")),
            values=values,
        )

    def templates(self) -> List[str]:
        """Renderable templates (helpers starting with ``_`` excluded), sorted."""
        tdir = self.root / "templates"
        if not tdir.is_dir():
            return []
        return sorted(
            f"templates/{p.name}" for p in tdir.iterdir()
            if p.is_file() and not p.name.startswith("_") and p.suffix in (".yaml", ".yml")
        )


@dataclass
class RenderContext:
    """Everything one template evaluation may see."""
    values: Dict[str, Any]
    discovery: Any
    bundle: Any = None
    node: str = ""
    talos_version: str = ""
    kubernetes_version: str = ""
    clock: Callable[[], datetime.datetime] = field(
        default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


def split_documents(text: str) -> List[str]:
    """Split a multi-document stream, dropping documents that hold only comments or blanks."""
    documents = []
    for chunk in _DOCUMENT_SEPARATOR.split(text):
        lines = [line for line in chunk.splitlines() if line.strip() and not line.lstrip().startswith("#")]
        if lines:
            documents.append(chunk.strip("\n") + "\n")
    return documents


def _template_location(exc: BaseException, template: str, root: Path) -> str:
    """``file:line`` of the innermost template frame of a traceback."""
    location = template
    for frame in traceback.extract_tb(exc.__traceback__):
        filename = frame.filename or ""
        try:
            rel = Path(filename).resolve().relative_to(root.resolve())
        except (ValueError, OSError):
            continue
        location = f"{rel.as_posix()}:{frame.lineno}"
    return location


class Engine:
    """Evaluates chart templates into YAML documents."""

    def __init__(
        self,
        chart: Chart,
        step_budget: int = Config.TEMPLATE_STEP_BUDGET,
        observer: Optional[logging.Logger] = None,
    ):
        self.chart = chart
        self.step_budget = step_budget
        self.log = observer or logger

    def _environment(self, ctx: RenderContext) -> TemplateSandbox:
        env = TemplateSandbox(str(self.chart.root), StepBudget(self.step_budget))
        env.filters.update(FILTERS)
        env.globals.update(build_globals(ctx.values, ctx.discovery, ctx.bundle, ctx.clock))
        env.globals.update({
            "Values": ValueTree(ctx.values),
            "Chart": {"Name": self.chart.name, "Version": self.chart.version},
            "Node": ctx.node,
            "TalosVersion": ctx.talos_version,
            "KubernetesVersion": ctx.kubernetes_version,
        })
        return env

    def render_text(self, template: str, ctx: RenderContext) -> str:
        """Evaluate one template to text.

        Raises:
            TemplateParseError: on syntax errors, with ``file:line``
            TemplateEvalError: on evaluation failures, with ``file:line`` and value path
            TemplateTooComplex: when the step budget is exhausted
        """
        env = self._environment(ctx)
        try:
            tmpl = env.get_template(template)
            return tmpl.render()
        except TemplateSyntaxError as e:
            where = f"{e.name or e.filename or template}:{e.lineno}"
            raise TemplateParseError(f"failed to parse template {template}", details=e.message or "", path=where, original=e) from e
        except TemplateNotFound as e:
            raise TemplateParseError(f"template {e.name} not found", path=template) from e
        except TalmError as e:
            if not e.path:
                e.path = _template_location(e, template, self.chart.root)
            raise
        except UndefinedError as e:
            raise TemplateEvalError(
                f"failed to render {template}", details=str(e),
                path=_template_location(e, template, self.chart.root),
            ) from e
        except (SecurityError, TypeError, ValueError, KeyError, ArithmeticError, AttributeError) as e:
            raise TemplateEvalError(
                f"failed to render {template}", details=f"{type(e).__name__}: {e}",
                path=_template_location(e, template, self.chart.root),
            ) from e
        finally:
            self.log.debug(f"Rendered {template} in {env.budget.steps} steps")

    def render(self, template: str, ctx: RenderContext) -> List[str]:
        """Evaluate a template into its documents."""
        return split_documents(self.render_text(template, ctx))


def parse_document(text: str, template: str) -> Dict[str, Any]:
    """Re-parse an emitted document; it must be a YAML mapping."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        where = f"{template}:{mark.line + 1}" if mark is not None else template
        raise OutputMalformed(f"template {template} produced invalid YAML", details=str(e), path=where) from e
    if not isinstance(data, dict):
        raise OutputMalformed(f"template {template} produced a document that is not a mapping", path=template)
    return data


def is_machine_config(data: Dict[str, Any]) -> bool:
    return "machine" in data or "cluster" in data


def machine_type(data: Dict[str, Any], template: str) -> str:
    """The validated ``machine.type``; missing means worker."""
    machine = data.get("machine") or {}
    mtype = machine.get("type") if isinstance(machine, dict) else None
    if mtype is None:
        return "worker"
    if mtype not in MACHINE_TYPES:
        raise OutputMalformed(
            f"invalid machine.type {mtype!r}",
            details=f"expected one of {', '.join(MACHINE_TYPES)}",
            path=template,
        )
    return mtype


def require_node_fields(data: Dict[str, Any], template: str, node: str) -> None:
    """Fields every per-node machine config must carry when an overlay is in effect."""
    machine = data.get("machine") or {}
    network = machine.get("network") or {}
    checks = (
        ("machine.type", machine.get("type")),
        ("machine.install.disk", (machine.get("install") or {}).get("disk")),
        ("machine.network.hostname", network.get("hostname")),
        ("machine.network.interfaces", network.get("interfaces")),
    )
    for path, value in checks:
        if not value:
            raise OutputMalformed(
                f"rendered config for node {node} is missing {path}",
                details="set it in the template, the values or the node overlay",
                path=f"{template}:{path}",
            )
