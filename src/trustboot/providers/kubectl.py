"""Provider wrapping ``kubectl`` for the cluster control-plane operations."""
from __future__ import annotations

import base64
import binascii
import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import CommandFailed, RemoteUnready
from .base import CommandRunner


@dataclass(slots=True)
class KubectlProvider:
    """Thin, typed wrapper around the ``kubectl`` commands trustboot needs."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    binary: str = "kubectl"
    context: str | None = None

    # ------------------------------------------------------------------
    # Cluster
    def cluster_info(self, context: str | None = None) -> str:
        """Return ``kubectl cluster-info`` output, failing when unreachable."""
        target = context or self.context
        args = [self.binary, "cluster-info"]
        if target:
            args.extend(["--context", target])
        result = self.runner.run(args, error_prefix=f"{self.binary} cluster-info")
        return (result.stdout or "").strip()

    def config_view(self) -> dict[str, object]:
        """Return the flattened kubeconfig for the current context."""
        result = self._kubectl(
            ["config", "view", "--raw", "--minify", "--flatten", "-o", "json"],
            error_prefix=f"{self.binary} config view",
        )
        return _parse_json(result.stdout, "kubectl config view")

    # ------------------------------------------------------------------
    # Namespaces and manifests
    def namespace_exists(self, namespace: str) -> bool:
        """Return ``True`` when *namespace* exists."""
        result = self._kubectl(
            ["get", "namespace", namespace, "--ignore-not-found", "-o", "name"],
            error_prefix=f"{self.binary} get namespace {namespace}",
        )
        return bool((result.stdout or "").strip())

    def ensure_namespace(self, namespace: str) -> bool:
        """Create *namespace* if missing; return ``True`` when it was created."""
        if self.namespace_exists(namespace):
            return False
        self._kubectl(
            ["create", "namespace", namespace],
            error_prefix=f"{self.binary} create namespace {namespace}",
        )
        return True

    def apply(self, manifest: str, *, namespace: str | None = None) -> str:
        """Apply *manifest* (YAML text) and return kubectl's summary."""
        args = self._namespaced(namespace, ["apply", "-f", "-"])
        result = self._kubectl(args, error_prefix=f"{self.binary} apply", input_text=manifest)
        return (result.stdout or "").strip()

    def delete(self, resource: str, *, namespace: str | None = None, wait: bool = True) -> None:
        """Delete *resource* (``kind/name``); a missing resource is not an error."""
        args = self._namespaced(
            namespace,
            ["delete", resource, "--ignore-not-found", f"--wait={'true' if wait else 'false'}"],
        )
        self._kubectl(args, error_prefix=f"{self.binary} delete {resource}")

    # ------------------------------------------------------------------
    # Pods and workloads
    def ready_pod_names(self, namespace: str, selector: str) -> list[str]:
        """Return pods matching *selector* that are Ready and not being deleted."""
        result = self._kubectl(
            ["-n", namespace, "get", "pod", "-l", selector, "-o", "json"],
            error_prefix=f"{self.binary} get pod -l {selector}",
        )
        payload = _parse_json(result.stdout, "kubectl get pod")
        names: list[str] = []
        for item in _items(payload):
            metadata = item.get("metadata")
            if not isinstance(metadata, Mapping) or not metadata.get("name"):
                continue
            if metadata.get("deletionTimestamp"):
                continue
            if _is_ready(item.get("status")):
                names.append(str(metadata["name"]))
        return names

    def ready_pod_name(self, namespace: str, selector: str) -> str | None:
        """Return the first Ready, non-terminating pod matching *selector*, or ``None``."""
        names = self.ready_pod_names(namespace, selector)
        return names[0] if names else None

    def rollout_status(self, namespace: str, resource: str, *, timeout: float) -> None:
        """Block until the rollout of *resource* (``deployment/<name>``) has finished."""
        args = ["-n", namespace, "rollout", "status", resource, f"--timeout={max(1, int(timeout))}s"]
        result = self._kubectl(
            args, error_prefix=f"{self.binary} rollout status {resource}", check=False
        )
        if result.returncode == 0:
            return
        output = f"{result.stderr or ''}{result.stdout or ''}"
        lowered = output.lower()
        if "timed out" in lowered or "progress deadline" in lowered:
            raise RemoteUnready(f"the rollout of {resource} in {namespace}", timeout)
        raise CommandFailed(
            f"{self.binary} rollout status {resource}", result.returncode, output
        )

    def wait(
        self,
        namespace: str,
        target: str,
        *,
        condition: str,
        timeout: float,
    ) -> None:
        """Block until *target* reaches *condition* (``kubectl wait``)."""
        args = [
            "-n",
            namespace,
            "wait",
            target,
            f"--for=condition={condition}",
            f"--timeout={max(1, int(timeout))}s",
        ]
        result = self._kubectl(args, error_prefix=f"{self.binary} wait {target}", check=False)
        if result.returncode == 0:
            return
        output = f"{result.stderr or ''}{result.stdout or ''}"
        if "timed out" in output.lower():
            raise RemoteUnready(f"{target} in {namespace} to be {condition}", timeout)
        raise CommandFailed(f"{self.binary} wait {target}", result.returncode, output)

    def exec(
        self,
        namespace: str,
        pod: str,
        command: Sequence[str],
        *,
        container: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *pod* and return the completed process."""
        args = ["-n", namespace, "exec", pod]
        if container:
            args.extend(["-c", container])
        args.append("--")
        args.extend(command)
        return self._kubectl(
            args,
            check=check,
            error_prefix=f"{self.binary} exec {pod} -- {command[0] if command else ''}".rstrip(),
        )

    # ------------------------------------------------------------------
    # Identity
    def create_token(
        self,
        namespace: str,
        service_account: str,
        *,
        audience: str | None = None,
        duration: str | None = None,
    ) -> str:
        """Mint a service-account token and return it."""
        args = ["-n", namespace, "create", "token", service_account]
        if audience:
            args.append(f"--audience={audience}")
        if duration:
            args.append(f"--duration={duration}")
        result = self._kubectl(
            args,
            error_prefix=f"{self.binary} create token {service_account}",
        )
        return (result.stdout or "").strip()

    # ------------------------------------------------------------------
    # Secrets
    def secret_names(self, namespace: str) -> list[str]:
        """Return the names of secrets in *namespace*."""
        result = self._kubectl(
            ["-n", namespace, "get", "secret", "-o", "json"],
            error_prefix=f"{self.binary} get secret",
        )
        payload = _parse_json(result.stdout, "kubectl get secret")
        names: list[str] = []
        for item in _items(payload):
            metadata = item.get("metadata")
            if isinstance(metadata, Mapping) and metadata.get("name"):
                names.append(str(metadata["name"]))
        return names

    def secret_value(self, namespace: str, name: str, key: str) -> bytes:
        """Return the decoded value stored under *key* in secret *name*."""
        result = self._kubectl(
            ["-n", namespace, "get", "secret", name, "-o", "json"],
            error_prefix=f"{self.binary} get secret {name}",
        )
        payload = _parse_json(result.stdout, f"kubectl get secret {name}")
        data = payload.get("data")
        if not isinstance(data, Mapping) or key not in data:
            raise CommandFailed(
                f"{self.binary} get secret {name}",
                0,
                f"secret has no '{key}' entry",
            )
        try:
            return base64.b64decode(str(data[key]), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CommandFailed(
                f"{self.binary} get secret {name}", 0, f"'{key}' is not valid base64"
            ) from exc

    # ------------------------------------------------------------------
    # Tunnels
    def port_forward(
        self,
        namespace: str,
        service: str,
        *,
        local_port: int,
        remote_port: int,
        log_path: Path,
    ) -> subprocess.Popen[str]:
        """Start ``kubectl port-forward`` for *service* in the background."""
        args = [self.binary]
        if self.context:
            args.extend(["--context", self.context])
        args.extend(
            [
                "-n",
                namespace,
                "port-forward",
                f"svc/{service}",
                f"{local_port}:{remote_port}",
            ]
        )
        return self.runner.spawn(args, log_path=log_path)

    # ------------------------------------------------------------------
    def _namespaced(self, namespace: str | None, args: list[str]) -> list[str]:
        if namespace:
            return ["-n", namespace, *args]
        return args

    def _kubectl(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary]
        if self.context:
            command.extend(["--context", self.context])
        command.extend(args)
        return self.runner.run(
            command,
            check=check,
            error_prefix=error_prefix,
            input_text=input_text,
        )


def _parse_json(text: str | None, label: str) -> dict[str, object]:
    try:
        payload = json.loads(text or "{}")
    except json.JSONDecodeError as exc:
        raise CommandFailed(label, 0, f"unparseable JSON output: {exc}") from exc
    if not isinstance(payload, dict):
        raise CommandFailed(label, 0, "expected a JSON object")
    return payload


def _items(payload: Mapping[str, object]) -> list[Mapping[str, object]]:
    items = payload.get("items")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping)]


def _is_ready(status: object) -> bool:
    if not isinstance(status, Mapping):
        return False
    conditions = status.get("conditions")
    if not isinstance(conditions, list):
        return False
    return any(
        isinstance(condition, Mapping)
        and condition.get("type") == "Ready"
        and condition.get("status") == "True"
        for condition in conditions
    )


__all__ = ["KubectlProvider"]
