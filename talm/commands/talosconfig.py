from pathlib import Path
from typing import Optional

import typer

from talm.commands import console, handle_errors, state
from talm.config import ProjectConfig
from talm.modules import encryption
from talm.modules.project import ensure_gitignore, regenerate_talosconfig, resolve_root

app = typer.Typer(help="Regenerate the client config from secrets.yaml")


@app.callback(invoke_without_command=True)
@handle_errors
def talosconfig(
    secrets: str = typer.Option("secrets.yaml", "--secrets", help="Secrets bundle, relative to the project root"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output path (default: globalOptions.talosconfig)"),
):
    """Reissue client credentials, keeping endpoints, nodes and other contexts."""
    root = resolve_root(state.root)
    project = ProjectConfig.load(root)
    target = Path(root) / (output or state.talosconfig or project.globalOptions.talosconfig)
    config = regenerate_talosconfig(root, Path(root) / secrets, target)
    ensure_gitignore(root, project.globalOptions.kubeconfig)
    if target.parent == Path(root):
        refreshed = encryption.refresh_encrypted(root, target.name)
        if refreshed is not None:
            console.print(f"🔒 Updated {refreshed}")
    console.print(f"✅ Regenerated {target} (context {config.get('context')})")
