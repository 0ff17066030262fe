"""Interactive project initialization."""
from .controller import Message, WizardController
from .generator import ProjectGenerator, detect_preset
from .models import TRANSITIONS, InitData, WizardState, is_allowed

__all__ = [
    "InitData",
    "Message",
    "ProjectGenerator",
    "TRANSITIONS",
    "WizardController",
    "WizardState",
    "detect_preset",
    "is_allowed",
]
