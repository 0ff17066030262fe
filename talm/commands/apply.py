"""``talm apply``: render node files and push them with the admin client."""
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import typer

from talm.commands import console, handle_errors, split_csv, state
from talm.commands.template import build_options
from talm.config import ProjectConfig
from talm.errors import DiscoveryUnavailable, ValidationError
from talm.modules import modeline
from talm.modules.project import resolve_root
from talm.modules.render import render_file
from talm.modules.talosctl import TalosctlClient

logger = logging.getLogger("talm.cli.apply")

app = typer.Typer(help="Apply rendered machine configs to nodes")


@app.callback(invoke_without_command=True)
@handle_errors
def apply(
    files: List[str] = typer.Option(..., "--file", "-f", help="Node file with a modeline"),
    templates: Optional[List[str]] = typer.Option(None, "--template", "-t", help="Override the templates of the modeline"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="auto, interactive, no-reboot, reboot, staged or try"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Check how the config change would be applied"),
    insecure: bool = typer.Option(False, "--insecure", "-i", help="Apply to a node in maintenance mode"),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="Rollback timeout of try mode, e.g. 1m"),
    cert_fingerprints: Optional[List[str]] = typer.Option(None, "--cert-fingerprint", help="Accepted server certificate fingerprint"),
    nodes: Optional[List[str]] = typer.Option(None, "--nodes", "-n", help="Target nodes"),
    endpoints: Optional[List[str]] = typer.Option(None, "--endpoints", "-e", help="Admin API endpoints"),
):
    """Render every file in full with secrets and apply it to its nodes."""
    nodes = split_csv(nodes) or state.nodes
    endpoints = split_csv(endpoints) or state.endpoints
    root = resolve_root(state.root, files=files)
    project = ProjectConfig.load(root)
    defaults = project.applyOptions
    mode = mode or defaults.mode
    if mode not in ("auto", "interactive", "no-reboot", "reboot", "staged", "try"):
        raise ValidationError(f"invalid apply mode {mode!r}")

    base = build_options(root, project, list(templates or []), full=True)
    talosconfig = state.talosconfig or project.globalOptions.talosconfig

    for file in files:
        line = modeline.resolve([file], nodes, endpoints)
        if not line.nodes:
            raise ValidationError(f"no nodes for {file}", details="set --nodes or add them to the modeline", path=file)
        for node in line.nodes:
            options = replace(
                base,
                template_files=list(templates or []) or line.templates,
                nodes=[node],
                endpoints=line.endpoints,
                patch_files=[file],
            )
            config = render_file(options)
            client = TalosctlClient(
                talosconfig=str(Path(root) / talosconfig),
                endpoints=list(line.endpoints) or ([node] if insecure else []),
                nodes=[node],
                insecure=insecure,
            )
            console.print(f"🔍 Applying {file} to {node}")
            result = client.apply_config(
                config,
                mode=mode,
                dry_run=dry_run or defaults.dryRun,
                cert_fingerprints=list(cert_fingerprints or []) or defaults.certFingerprints,
                try_timeout=timeout or defaults.timeout,
            )
            if result.stdout:
                typer.echo(result.stdout, nl=False)
            if result.returncode != 0:
                raise DiscoveryUnavailable(
                    f"failed to apply {file} to {node}",
                    details=result.stderr.strip() or f"exit code {result.returncode}",
                    path=file,
                )
            console.print(f"✅ Applied {file} to {node}")
