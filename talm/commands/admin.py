"""Remote-admin subcommands proxied to the admin client.

Each command is declared once as an ``AdminCommand`` descriptor; ``register``
turns every descriptor into a subcommand of the root app. Options the
descriptor does not know are passed to the admin client unchanged, so
``talm logs kubelet -f nodes/node1.yaml --tail 20`` runs
``talosctl -e <endpoints> -n <nodes> logs kubelet --tail 20``.

A descriptor may carry hooks: ``prepare`` adds arguments before the call
(``upgrade`` derives ``--image`` from the node file) and ``finish`` runs
after a successful one (``kubeconfig`` fixes up the downloaded file).
"""
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import typer
import yaml

from talm.commands import handle_errors, split_csv, state
from talm.commands.template import build_options
from talm.config import ProjectConfig
from talm.errors import FilesystemError, ValidationError
from talm.modules import encryption, modeline
from talm.modules.project import ensure_gitignore, resolve_root
from talm.modules.render import render_file
from talm.modules.talosctl import TalosctlClient
from talm.utils import dump_yaml, read_yaml_file, write_file_atomic

logger = logging.getLogger("talm.cli.admin")


@dataclass
class AdminContext:
    """What a hook knows about one admin invocation."""
    root: Path
    project: ProjectConfig
    files: List[str]
    nodes: List[str]
    endpoints: List[str]
    args: List[str]


@dataclass(frozen=True)
class AdminCommand:
    name: str
    help: str
    admin_args: Tuple[str, ...]
    accepts_files: bool = True
    # Returns extra admin client arguments
    prepare: Optional[Callable[[AdminContext], List[str]]] = None
    # Runs after a successful admin client call
    finish: Optional[Callable[[AdminContext], None]] = None


def _has_option(args: Sequence[str], *names: str) -> bool:
    prefixes = tuple(f"{name}=" for name in names)
    return any(arg in names or arg.startswith(prefixes) for arg in args)


def installer_image(ctx: AdminContext) -> List[str]:
    """``--image`` from ``machine.install.image`` of the first node file, unless given."""
    if not ctx.files or _has_option(ctx.args, "--image", "-i"):
        return []
    file = ctx.files[0]
    line = modeline.resolve([file], ctx.nodes, ctx.endpoints)
    options = replace(
        build_options(ctx.root, ctx.project, [], full=True),
        template_files=line.templates,
        nodes=line.nodes[:1],
        endpoints=line.endpoints,
        patch_files=[file],
    )
    image = None
    for doc in yaml.safe_load_all(render_file(options)):
        if isinstance(doc, dict) and "machine" in doc:
            image = ((doc.get("machine") or {}).get("install") or {}).get("image")
            break
    if not image:
        raise ValidationError(
            f"no installer image in {file}",
            details="set machine.install.image or pass --image",
            path=file,
        )
    logger.info(f"Upgrading to {image}")
    return ["--image", image]


def kubeconfig_path(ctx: AdminContext) -> Path:
    path = Path(ctx.project.globalOptions.kubeconfig or "kubeconfig")
    return path if path.is_absolute() else ctx.root / path


def kubeconfig_target(ctx: AdminContext) -> List[str]:
    """Download into the project kubeconfig unless a path was given."""
    if any(not arg.startswith("-") for arg in ctx.args):
        return []
    return [str(kubeconfig_path(ctx))]


def normalize_endpoint(endpoint: str) -> str:
    """Kubernetes API URL for an admin endpoint: ``https://<host>:6443``."""
    host = endpoint.split("://", 1)[-1].rstrip("/")
    if host.startswith("["):
        host = host[:host.index("]") + 1]
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]
    elif ":" in host:
        host = f"[{host}]"
    return f"https://{host}:6443"


def update_kubeconfig_server(path: Path, endpoint: str) -> bool:
    """Point every cluster of the kubeconfig at ``endpoint``; True when rewritten."""
    server = normalize_endpoint(endpoint)
    try:
        data = read_yaml_file(path)
    except yaml.YAMLError as e:
        raise ValidationError(f"invalid kubeconfig {path}", original=e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"invalid kubeconfig {path}", details="expected a mapping")
    changed = False
    for entry in data.get("clusters") or []:
        cluster = entry.get("cluster") if isinstance(entry, dict) else None
        if isinstance(cluster, dict) and cluster.get("server") != server:
            cluster["server"] = server
            changed = True
            logger.info(f"Updated cluster {entry.get('name')} server to {server}")
    if changed:
        write_file_atomic(path, dump_yaml(data), mode=0o600)
    return changed


def kubeconfig_finish(ctx: AdminContext) -> None:
    """Lock down the downloaded kubeconfig and point it at the first endpoint."""
    if not kubeconfig_target(ctx):
        return
    path = kubeconfig_path(ctx)
    if not path.exists():
        logger.warning(f"⚠️  {path} was not written")
        return
    if ctx.endpoints:
        update_kubeconfig_server(path, ctx.endpoints[0])
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        raise FilesystemError(f"failed to set permissions on {path}", original=e) from e
    try:
        rel = path.resolve().relative_to(ctx.root.resolve())
    except ValueError:
        return
    ensure_gitignore(ctx.root, rel.as_posix())
    encryption.refresh_encrypted(ctx.root, rel.as_posix())


REGISTRY: Tuple[AdminCommand, ...] = (
    AdminCommand("bootstrap", "Bootstrap the etcd cluster on one control plane node", ("bootstrap",)),
    AdminCommand("containers", "List containers", ("containers",)),
    AdminCommand("dashboard", "Cluster dashboard with node overview, logs and real-time metrics", ("dashboard",)),
    AdminCommand("disks", "List the disks of a node", ("get", "disks")),
    AdminCommand("dmesg", "Retrieve kernel logs", ("dmesg",)),
    AdminCommand("etcd", "Manage etcd", ("etcd",)),
    AdminCommand("get", "Get a specific resource or list of resources", ("get",)),
    AdminCommand("health", "Check cluster health", ("health",)),
    AdminCommand(
        "kubeconfig", "Download the admin kubeconfig from the node", ("kubeconfig",),
        prepare=kubeconfig_target, finish=kubeconfig_finish,
    ),
    AdminCommand("list", "Retrieve a directory listing", ("list",)),
    AdminCommand("logs", "Retrieve logs for a service", ("logs",)),
    AdminCommand("memory", "Show memory usage", ("memory",)),
    AdminCommand("mounts", "List mounts", ("mounts",)),
    AdminCommand("processes", "List running processes", ("processes",)),
    AdminCommand("read", "Read a file on the machine", ("read",)),
    AdminCommand("reboot", "Reboot a node", ("reboot",)),
    AdminCommand("reset", "Reset a node", ("reset",)),
    AdminCommand("service", "Retrieve the state of a service or start, stop, restart it", ("service",)),
    AdminCommand("shutdown", "Shut down a node", ("shutdown",)),
    AdminCommand("stats", "Get container stats", ("stats",)),
    AdminCommand("time", "Get the time on a node", ("time",)),
    AdminCommand("upgrade", "Upgrade Talos on the target node", ("upgrade",), prepare=installer_image),
    AdminCommand("upgrade-k8s", "Upgrade Kubernetes control plane in the cluster", ("upgrade-k8s",)),
    AdminCommand("version", "Print the version of the client and the nodes", ("version",)),
    AdminCommand("wipe", "Wipe block devices or volumes", ("wipe",), accepts_files=False),
)


def lookup(name: str) -> AdminCommand:
    for descriptor in REGISTRY:
        if descriptor.name == name:
            return descriptor
    raise ValidationError(f"unknown admin command {name!r}")


def resolve_targets(
    descriptor: AdminCommand,
    files: Sequence[str],
    nodes: Sequence[str],
    endpoints: Sequence[str],
) -> Tuple[List[str], List[str]]:
    """Nodes and endpoints for one invocation; command-line values win over modelines."""
    if files and not descriptor.accepts_files:
        raise ValidationError(f"'{descriptor.name}' does not take --file")
    if not files:
        return list(nodes), list(endpoints)
    line = modeline.resolve(files, nodes, endpoints)
    logger.debug(f"{descriptor.name}: nodes={line.nodes} endpoints={line.endpoints}")
    return line.nodes, line.endpoints


def run(
    descriptor: AdminCommand,
    args: Sequence[str],
    files: Sequence[str] = (),
    nodes: Sequence[str] = (),
    endpoints: Sequence[str] = (),
    client_factory: Callable[..., TalosctlClient] = TalosctlClient,
) -> int:
    """Run ``descriptor`` through the admin client; returns its exit status."""
    nodes, endpoints = resolve_targets(descriptor, files, nodes, endpoints)
    root = resolve_root(state.root, files=files)
    project = ProjectConfig.load(root)
    ctx = AdminContext(
        root=Path(root),
        project=project,
        files=list(files),
        nodes=list(nodes),
        endpoints=list(endpoints),
        args=list(args),
    )
    extra = descriptor.prepare(ctx) if descriptor.prepare else []
    talosconfig = state.talosconfig or project.globalOptions.talosconfig
    client = client_factory(
        talosconfig=str(Path(root) / talosconfig),
        endpoints=list(endpoints),
        nodes=list(nodes),
    )
    code = client.passthrough(list(descriptor.admin_args) + list(args) + extra)
    if code == 0 and descriptor.finish:
        descriptor.finish(ctx)
    return code


def _make_command(descriptor: AdminCommand) -> Callable:
    @handle_errors
    def command(
        ctx: typer.Context,
        files: Optional[List[str]] = typer.Option(None, "--file", "-f", help="Node files whose modelines select nodes and endpoints"),
        nodes: Optional[List[str]] = typer.Option(None, "--nodes", "-n", help="Target nodes"),
        endpoints: Optional[List[str]] = typer.Option(None, "--endpoints", "-e", help="Admin API endpoints"),
    ):
        code = run(
            descriptor,
            ctx.args,
            files=list(files or []),
            nodes=split_csv(nodes) or state.nodes,
            endpoints=split_csv(endpoints) or state.endpoints,
        )
        if code != 0:
            raise typer.Exit(code=code)

    command.__doc__ = descriptor.help
    command.__name__ = descriptor.name.replace("-", "_")
    return command


def register(app: typer.Typer) -> None:
    """Add every registered admin command to ``app``."""
    for descriptor in REGISTRY:
        app.command(
            descriptor.name,
            help=descriptor.help,
            context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
        )(_make_command(descriptor))
