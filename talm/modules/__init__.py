"""
Project, render and discovery modules.
"""
from .network import ConnectionPool, RateLimiter
from .render import RenderOptions, render, render_file
from .talosctl import TalosctlClient

__all__ = [
    'ConnectionPool',
    'RateLimiter',
    'RenderOptions',
    'TalosctlClient',
    'render',
    'render_file',
]
