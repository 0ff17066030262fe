"""talm - render and apply Talos machine configurations from a Helm-style chart."""
import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
