"""Thin wrapper around the ``talosctl`` admin client.

All node API traffic goes through this module: resource queries for
discovery and scanning, ``apply-config`` and the remote-admin passthrough
commands. Every call is deadline-bounded and can be cancelled through a
``threading.Event``.
"""
import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import Config
from ..errors import Cancelled, DiscoveryUnavailable, OperationTimeout

logger = logging.getLogger("talm.talosctl")

# Interval at which a running command checks its cancellation token
_POLL_INTERVAL = 0.05


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def parse_json_stream(text: str) -> List[Dict[str, Any]]:
    """Parse the concatenated JSON objects ``talosctl get -o json`` prints."""
    decoder = json.JSONDecoder()
    items = []
    idx = 0
    length = len(text)
    while idx < length:
        while idx < length and text[idx].isspace():
            idx += 1
        if idx >= length:
            break
        obj, idx = decoder.raw_decode(text, idx)
        items.append(obj)
    return items


def run_command(
    cmd: Sequence[str],
    timeout: float,
    cancel: Optional[threading.Event] = None,
    input_text: Optional[str] = None,
) -> CommandResult:
    """Run a command with a deadline and a cooperative cancellation token.

    Raises:
        OperationTimeout: if the deadline passes
        Cancelled: if ``cancel`` is set while the command runs
        DiscoveryUnavailable: if the binary cannot be started
    """
    if cancel is not None and cancel.is_set():
        raise Cancelled("operation cancelled before start", details=" ".join(cmd))
    try:
        proc = subprocess.Popen(
            list(cmd),
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise DiscoveryUnavailable(f"failed to start {cmd[0]}", original=e) from e

    if input_text is not None:
        # Small payloads only (machine configs), written before polling
        try:
            proc.stdin.write(input_text)
            proc.stdin.close()
        except OSError as e:
            logger.debug(f"Failed to write stdin of {cmd[0]}: {e}")

    deadline = time.monotonic() + timeout
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
            return CommandResult(proc.returncode, stdout or "", stderr or "")
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.is_set():
            proc.kill()
            proc.communicate()
            raise Cancelled("operation cancelled", details=" ".join(cmd))
        if time.monotonic() >= deadline:
            proc.kill()
            proc.communicate()
            raise OperationTimeout(f"command timed out after {timeout:g}s", details=" ".join(cmd))


Runner = Callable[..., CommandResult]


@dataclass
class TalosctlClient:
    """Builds and runs ``talosctl`` invocations against one set of endpoints."""
    binary: str = Config.TALOSCTL
    talosconfig: Optional[str] = None
    endpoints: List[str] = field(default_factory=list)
    nodes: List[str] = field(default_factory=list)
    insecure: bool = False
    timeout: float = Config.RPC_TIMEOUT
    runner: Runner = run_command

    def base_args(self, node: Optional[str] = None, endpoint: Optional[str] = None) -> List[str]:
        args = [self.binary]
        if self.talosconfig and not self.insecure:
            args += ["--talosconfig", self.talosconfig]
        endpoints = [endpoint] if endpoint else self.endpoints
        if endpoints:
            args += ["-e", ",".join(endpoints)]
        nodes = [node] if node else self.nodes
        if nodes:
            args += ["-n", ",".join(nodes)]
        return args

    def get(
        self,
        resource: str,
        node: str,
        resource_id: Optional[str] = None,
        namespace: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch all instances of a resource from one node.

        Raises:
            DiscoveryUnavailable: when the node does not answer or the output is unreadable;
                the resource name is attached to the error
            Cancelled: when ``cancel`` trips
        """
        # In maintenance mode the node itself is the only endpoint
        endpoint = node if self.insecure or not self.endpoints else None
        cmd = self.base_args(node=node, endpoint=endpoint) + ["get", resource]
        if resource_id:
            cmd.append(resource_id)
        if namespace:
            cmd += ["--namespace", namespace]
        cmd += ["-o", "json"]
        if self.insecure:
            cmd.append("-i")

        try:
            result = self.runner(cmd, timeout=min(timeout or self.timeout, self.timeout), cancel=cancel)
        except OperationTimeout as e:
            raise DiscoveryUnavailable(
                f"node {node} did not answer in time",
                details=f"resource {resource}",
                path=resource,
                original=e,
            ) from e
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "NotFound" in stderr or "not found" in stderr:
                return []
            raise DiscoveryUnavailable(
                f"failed to query node {node}",
                details=f"resource {resource}: {stderr or 'exit code ' + str(result.returncode)}",
                path=resource,
            )
        try:
            return parse_json_stream(result.stdout)
        except ValueError as e:
            raise DiscoveryUnavailable(
                f"unreadable output from node {node}",
                details=f"resource {resource}",
                path=resource,
                original=e,
            ) from e

    def apply_config(
        self,
        config_text: str,
        mode: str = "auto",
        dry_run: bool = False,
        timeout: Optional[float] = None,
        cert_fingerprints: Optional[List[str]] = None,
        try_timeout: Optional[str] = None,
    ) -> CommandResult:
        cmd = self.base_args() + ["apply-config", "--file", "/dev/stdin", "--mode", mode]
        if mode == "try" and try_timeout:
            cmd += ["--timeout", try_timeout]
        if self.insecure:
            cmd.append("--insecure")
        if dry_run:
            cmd.append("--dry-run")
        for fingerprint in cert_fingerprints or []:
            cmd += ["--cert-fingerprint", fingerprint]
        logger.debug(f"Running: {' '.join(cmd)}")
        return self.runner(cmd, timeout=timeout or Config.APPLY_TIMEOUT, input_text=config_text)

    def passthrough(self, args: Sequence[str]) -> int:
        """Run an interactive admin command, streaming its output to the terminal."""
        cmd = self.base_args() + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.call(cmd)
        except OSError as e:
            raise DiscoveryUnavailable(f"failed to start {self.binary}", original=e) from e
