"""Embedded preset charts.

Charts live under ``charts/<preset>/`` next to this module; ``talm`` is the
shared library chart every project carries under ``charts/talm/``.
"""
import logging
import re
from pathlib import Path
from typing import Dict, List

from ...errors import InternalError, ValidationError

logger = logging.getLogger("talm.presets")

CHARTS_DIR = Path(__file__).parent / "charts"
LIBRARY_CHART = "talm"

# Top-level identity fields of Chart.yaml become format holes
_CHART_HOLES = re.compile(r"^(name|version): \S+", re.MULTILINE)

_cache: Dict[str, Dict[str, str]] = {}


def available_presets() -> List[str]:
    return sorted(
        p.name for p in CHARTS_DIR.iterdir()
        if p.is_dir() and p.name != LIBRARY_CHART and (p / "Chart.yaml").exists()
    )


def validate_preset(name: str) -> str:
    presets = available_presets()
    if name not in presets:
        raise ValidationError(
            f"invalid preset: {name}",
            details=f"valid presets are: {', '.join(presets)}",
            code="VAL_014",
        )
    return name


def chart_files(chart: str) -> Dict[str, str]:
    """Relative path -> content for one embedded chart; Chart.yaml carries holes."""
    if chart in _cache:
        return _cache[chart]
    base = CHARTS_DIR / chart
    if not base.is_dir():
        raise InternalError(f"embedded chart {chart} is missing")
    files = {}
    for path in sorted(base.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(base).as_posix()
        content = path.read_text(encoding="utf-8")
        if rel == "Chart.yaml":
            content = _CHART_HOLES.sub(r"\1: {\1}", content.replace("{", "{{").replace("}", "}}"))
        files[rel] = content
    _cache[chart] = files
    return files


def fill_chart_yaml(template: str, name: str, version: str) -> str:
    return template.format(name=name, version=version)


def materialize(preset: str, name: str, version: str) -> Dict[str, str]:
    """Files to write for a new project: the preset at the root, the library under charts/talm/."""
    validate_preset(preset)
    out = {}
    for rel, content in chart_files(preset).items():
        out[rel] = fill_chart_yaml(content, name, version) if rel == "Chart.yaml" else content
    out.update(library_files(version))
    return out


def library_files(version: str) -> Dict[str, str]:
    out = {}
    for rel, content in chart_files(LIBRARY_CHART).items():
        if rel == "Chart.yaml":
            content = fill_chart_yaml(content, LIBRARY_CHART, version)
        out[f"charts/{LIBRARY_CHART}/{rel}"] = content
    return out
