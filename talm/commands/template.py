"""``talm template``: render templates or re-render node files."""
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import typer

from talm.commands import console, handle_errors, split_csv, state
from talm.config import Config, ProjectConfig
from talm.errors import ValidationError
from talm.modules import modeline
from talm.modules.project import resolve_root
from talm.modules.render import RenderOptions, join_outputs, render, render_file
from talm.modules.values import ValueSources
from talm.utils import commit_files

logger = logging.getLogger("talm.cli.template")

app = typer.Typer(help="Render machine configs from templates")


def build_options(
    root: Path,
    project: ProjectConfig,
    templates: List[str],
    value_files: Optional[List[str]] = None,
    values: Optional[List[str]] = None,
    string_values: Optional[List[str]] = None,
    file_values: Optional[List[str]] = None,
    json_values: Optional[List[str]] = None,
    literal_values: Optional[List[str]] = None,
    offline: bool = False,
    full: bool = False,
    with_secrets: Optional[str] = None,
    without_secrets: bool = False,
    talos_version: Optional[str] = None,
    kubernetes_version: Optional[str] = None,
    user_details: bool = False,
) -> RenderOptions:
    """Combine command-line flags with the ``templateOptions`` of Chart.yaml.

    List options from the project come first so the command line overrides them;
    boolean options are enabled by either source.
    """
    opts = project.templateOptions
    sources = ValueSources(
        value_files=list(opts.valueFiles) + list(value_files or []),
        values=list(opts.values) + list(values or []),
        string_values=list(opts.stringValues) + list(string_values or []),
        literal_values=list(opts.literalValues) + list(literal_values or []),
        file_values=list(opts.fileValues) + list(file_values or []),
        json_values=list(opts.jsonValues) + list(json_values or []),
    )
    secrets_path: Optional[str] = None
    if not without_secrets:
        secrets_path = with_secrets or opts.withSecrets or "secrets.yaml"
    return RenderOptions(
        template_files=list(templates),
        root=root,
        values=sources,
        secrets_path=secrets_path,
        offline=offline or opts.offline,
        kubernetes_version=kubernetes_version or opts.kubernetesVersion or Config.KUBERNETES_VERSION,
        talos_version=talos_version or opts.talosVersion or None,
        user_details=user_details,
        full=full or opts.full,
        talosconfig=state.talosconfig or project.globalOptions.talosconfig,
    )


def rerender_files(files: List[str], base: RenderOptions, templates: List[str], nodes: List[str], endpoints: List[str]) -> Dict[Path, str]:
    """Re-render each file from its own modeline, applying the file body as a patch."""
    contents: Dict[Path, str] = {}
    for file in files:
        line = modeline.resolve([file], nodes, endpoints)
        options = replace(
            base,
            template_files=list(templates) or line.templates,
            nodes=line.nodes,
            endpoints=line.endpoints,
            patch_files=[file],
        )
        contents[Path(file)] = render_file(options)
        logger.debug(f"Re-rendered {file}")
    return contents


@app.callback(invoke_without_command=True)
@handle_errors
def template(
    templates: Optional[List[str]] = typer.Option(None, "--template", "-t", help="Template file to render"),
    files: Optional[List[str]] = typer.Option(None, "--file", "-f", help="Rendered node file to re-render from its modeline"),
    in_place: bool = typer.Option(False, "--in-place", "-I", help="Overwrite the -f files instead of printing"),
    value_files: Optional[List[str]] = typer.Option(None, "--values", help="Values file"),
    values: Optional[List[str]] = typer.Option(None, "--set", help="Set values (key=val,key2=val2)"),
    string_values: Optional[List[str]] = typer.Option(None, "--set-string", help="Set string values"),
    file_values: Optional[List[str]] = typer.Option(None, "--set-file", help="Set values from files (key=path)"),
    json_values: Optional[List[str]] = typer.Option(None, "--set-json", help="Set JSON values (key=json)"),
    literal_values: Optional[List[str]] = typer.Option(None, "--set-literal", help="Set a literal string value"),
    offline: bool = typer.Option(False, "--offline", help="Render without querying nodes"),
    full: bool = typer.Option(False, "--full", help="Render the complete machine config"),
    with_secrets: Optional[str] = typer.Option(None, "--with-secrets", help="Secrets bundle path"),
    without_secrets: bool = typer.Option(False, "--without-secrets", help="Render without secrets"),
    talos_version: Optional[str] = typer.Option(None, "--talos-version", help="Talos version contract, e.g. v1.10"),
    kubernetes_version: Optional[str] = typer.Option(None, "--kubernetes-version", help="Kubernetes version"),
    user_details: bool = typer.Option(False, "--with-user-details", help="Record user and host in the modeline"),
    nodes: Optional[List[str]] = typer.Option(None, "--nodes", "-n", help="Target nodes"),
    endpoints: Optional[List[str]] = typer.Option(None, "--endpoints", "-e", help="Admin API endpoints"),
):
    """Render templates to stdout, or re-render node files with -f."""
    templates = list(templates or [])
    files = list(files or [])
    nodes = split_csv(nodes) or state.nodes
    endpoints = split_csv(endpoints) or state.endpoints
    if in_place and not files:
        raise ValidationError("--in-place requires --file")
    if not templates and not files:
        raise ValidationError("nothing to render", details="pass --template or --file")

    root = resolve_root(state.root, files=files, templates=templates)
    project = ProjectConfig.load(root)
    base = build_options(
        root, project, templates,
        value_files=value_files, values=values, string_values=string_values,
        file_values=file_values, json_values=json_values, literal_values=literal_values,
        offline=offline, full=full, with_secrets=with_secrets, without_secrets=without_secrets,
        talos_version=talos_version, kubernetes_version=kubernetes_version,
        user_details=user_details,
    )

    if files:
        contents = rerender_files(files, base, templates, nodes, endpoints)
        if in_place:
            commit_files(contents)
            for path in contents:
                console.print(f"✅ Updated {path}")
            return
        typer.echo("---\n".join(contents.values()), nl=False)
        return

    base.nodes = nodes
    base.endpoints = endpoints
    typer.echo(join_outputs(render(base)), nl=False)
