"""Configuration management for the talm application."""
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# Load environment variables from .env file if it exists
load_dotenv()


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration with sensible defaults."""

    # Verbose wizard tracing
    DEBUG_TUI: bool = _env_flag("DEBUG_TUI")

    # Admin client binary used for discovery, apply and remote-admin commands
    TALOSCTL: str = os.getenv("TALM_TALOSCTL", "talosctl")

    # Timeouts (in seconds)
    RPC_TIMEOUT: float = min(float(os.getenv("TALM_RPC_TIMEOUT", "5")), 5.0)
    PROBE_TIMEOUT: float = float(os.getenv("TALM_PROBE_TIMEOUT", "2"))
    SCAN_TIMEOUT: float = float(os.getenv("TALM_SCAN_TIMEOUT", "30"))
    APPLY_TIMEOUT: int = int(os.getenv("TALM_APPLY_TIMEOUT", "120"))

    # Scanner
    SCAN_WORKERS: int = min(int(os.getenv("TALM_SCAN_WORKERS", "10")), 10)
    SCAN_TARGET_COUNT: int = int(os.getenv("TALM_SCAN_TARGET_COUNT", "3"))
    ADMIN_PORT: int = 50000

    # Template engine
    TEMPLATE_STEP_BUDGET: int = int(os.getenv("TALM_TEMPLATE_STEP_BUDGET", "200000"))

    # Defaults for generated configuration
    TALOS_VERSION: str = os.getenv("TALM_TALOS_VERSION", "v1.10.5")
    KUBERNETES_VERSION: str = os.getenv("TALM_KUBERNETES_VERSION", "v1.33.1")
    CHART_VERSION: str = "0.1.0"

    # Logging
    LOG_LEVEL: str = os.getenv("TALM_LOG_LEVEL", "WARNING").upper()
    LOG_FORMAT: str = os.getenv(
        "TALM_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("key", "secret", "token", "crt", "password")


class GlobalOptions(BaseModel):
    """Paths shared by every command."""
    talosconfig: str = Field(default="talosconfig", description="Client config path, relative to the project root")
    kubeconfig: str = Field(default="kubeconfig", description="Kubeconfig path, relative to the project root")


class TemplateOptions(BaseModel):
    """Defaults for the template command; CLI flags win."""
    offline: bool = False
    valueFiles: List[str] = Field(default_factory=list)
    values: List[str] = Field(default_factory=list)
    stringValues: List[str] = Field(default_factory=list)
    fileValues: List[str] = Field(default_factory=list)
    jsonValues: List[str] = Field(default_factory=list)
    literalValues: List[str] = Field(default_factory=list)
    talosVersion: str = ""
    withSecrets: str = "secrets.yaml"
    kubernetesVersion: str = ""
    full: bool = False


class ApplyOptions(BaseModel):
    """Defaults for the apply command."""
    dryRun: bool = False
    timeout: str = "1m"
    mode: str = "auto"
    certFingerprints: List[str] = Field(default_factory=list)

    @field_validator('mode')
    @classmethod
    def check_mode(cls, v: str) -> str:
        allowed = ("auto", "interactive", "no-reboot", "reboot", "staged", "try")
        if v not in allowed:
            raise ValueError(f"mode must be one of {', '.join(allowed)}")
        return v


class ProjectConfig(BaseModel):
    """Project configuration embedded in Chart.yaml."""
    name: str = ""
    version: str = ""
    globalOptions: GlobalOptions = Field(default_factory=GlobalOptions)
    templateOptions: TemplateOptions = Field(default_factory=TemplateOptions)
    applyOptions: ApplyOptions = Field(default_factory=ApplyOptions)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, root: Optional[Union[str, Path]]) -> 'ProjectConfig':
        """Load the project configuration from ``<root>/Chart.yaml``.

        A missing root or Chart.yaml yields the defaults.
        """
        if not root:
            return cls()
        chart = Path(root) / "Chart.yaml"
        if not chart.exists():
            return cls()
        try:
            with open(chart, "r", encoding="utf-8") as f:
                data: Dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid project configuration in {chart}", details="Chart.yaml is not valid YAML", path=str(chart), original=e) from e
        if not isinstance(data, dict):
            raise ValidationError(f"invalid project configuration in {chart}", details="Chart.yaml must be a mapping", path=str(chart))
        try:
            return cls(**data)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"invalid project configuration in {chart}", details=problems, path=str(chart)) from e
