from pathlib import Path
from typing import Optional

import typer

from talm.commands import console, handle_errors, state
from talm.config import Config, ProjectConfig
from talm.errors import ValidationError
from talm.modules import encryption
from talm.modules.project import ensure_gitignore
from talm.modules.wizard import InitData, ProjectGenerator
from talm.modules.wizard.prompts import WizardPrompts
from talm.modules.wizard.validators import validate_api_server_url

app = typer.Typer(help="Initialize a new project")


@app.callback(invoke_without_command=True)
@handle_errors
def init(
    preset: str = typer.Option("generic", "--preset", "-p", help="Preset chart to start from"),
    name: Optional[str] = typer.Option(None, "--name", help="Cluster name (default: directory name)"),
    api_server: str = typer.Option("", "--api-server", help="Kubernetes API endpoint, e.g. https://192.168.0.1:6443"),
    talos_version: str = typer.Option(Config.TALOS_VERSION, "--talos-version", help="Talos version the secrets and configs target"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing files"),
    update: bool = typer.Option(False, "--update", "-u", help="Refresh the library chart of an existing project"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Run the interactive wizard"),
    encrypt: bool = typer.Option(False, "--encrypt", help="Encrypt secrets.yaml, talosconfig and the kubeconfig with talm.key"),
    decrypt: bool = typer.Option(False, "--decrypt", help="Restore the sensitive files from their encrypted copies"),
):
    """Create Chart.yaml, values.yaml, secrets.yaml, talosconfig and templates."""
    root = Path(state.root or ".")
    project = ProjectConfig.load(root)
    kubeconfig = project.globalOptions.kubeconfig

    if encrypt and decrypt:
        raise ValidationError("--encrypt and --decrypt are mutually exclusive")
    if encrypt or decrypt:
        talosconfig = state.talosconfig or project.globalOptions.talosconfig
        if encrypt:
            written = encryption.encrypt_project(root, kubeconfig=kubeconfig, talosconfig=talosconfig)
            console.print(f"🔑 Public key: {encryption.public_key(root)}")
        else:
            written = encryption.decrypt_project(root, kubeconfig=kubeconfig, talosconfig=talosconfig)
        ensure_gitignore(root, kubeconfig)
        for path in written:
            console.print(f"✅ Wrote {path}")
        return

    generator = ProjectGenerator(root, force=force, kubeconfig=kubeconfig)

    if update:
        written = generator.update(preset if preset != "generic" else None)
        console.print(f"✅ Updated {len(written)} file(s)")
        return

    data = InitData(
        preset=preset,
        cluster_name=name or root.resolve().name,
        talos_version=talos_version,
        api_server_url=api_server,
    )
    if interactive:
        if not WizardPrompts(generator, console=console, data=data).run():
            raise typer.Exit(code=1)
        return

    if api_server:
        validate_api_server_url(api_server)
    written = generator.generate(data)
    console.print(f"✅ Created {len(written)} file(s) for cluster {data.cluster_name}")
