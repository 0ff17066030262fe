"""CLI command groups and the helpers they share."""
import functools
import logging
import traceback
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import typer
from rich.console import Console
from rich.markup import escape

from talm.errors import TalmError

logger = logging.getLogger("talm.cli")

# Logs and errors go to stderr; rendered documents are the only stdout output
console = Console(stderr=True)


@dataclass
class GlobalState:
    """Options of the root command, set by its callback."""
    root: Optional[str] = None
    nodes: List[str] = field(default_factory=list)
    endpoints: List[str] = field(default_factory=list)
    talosconfig: Optional[str] = None
    debug: bool = False


state = GlobalState()


def split_csv(values: Optional[Iterable[str]]) -> List[str]:
    """Flatten repeated and comma-separated option values."""
    out: List[str] = []
    for value in values or []:
        out.extend(part.strip() for part in value.split(",") if part.strip())
    return out


def handle_errors(func: Callable) -> Callable:
    """Map ``TalmError`` to its exit code with a one-line message."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (typer.Exit, typer.Abort):
            raise
        except TalmError as e:
            if state.debug:
                logger.debug(traceback.format_exc())
            console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
            raise typer.Exit(code=e.exit_code)
        except KeyboardInterrupt:
            console.print("❌ Interrupted")
            raise typer.Exit(code=130)
        except Exception as e:
            if state.debug:
                logger.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
            console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
            raise typer.Exit(code=1)
    return wrapper
