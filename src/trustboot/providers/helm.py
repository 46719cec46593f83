"""Provider wrapping ``helm`` for chart repositories and releases."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import CommandFailed
from .base import CommandRunner


@dataclass(slots=True)
class HelmProvider:
    """Install, upgrade and remove releases through the ``helm`` CLI."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    binary: str = "helm"
    kube_context: str | None = None

    def repo_add(self, name: str, url: str) -> None:
        """Register chart repository *name* (re-registering is a no-op)."""
        self._helm(
            ["repo", "add", name, url, "--force-update"],
            error_prefix=f"{self.binary} repo add {name}",
        )

    def repo_update(self) -> None:
        """Refresh the local chart index."""
        self._helm(["repo", "update"], error_prefix=f"{self.binary} repo update")

    def list_releases(self, namespace: str) -> list[dict[str, object]]:
        """Return the releases deployed in *namespace*."""
        result = self._helm(
            ["list", "-n", namespace, "-a", "-o", "json"],
            error_prefix=f"{self.binary} list -n {namespace}",
        )
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise CommandFailed(
                f"{self.binary} list -n {namespace}", 0, f"unparseable JSON output: {exc}"
            ) from exc
        if not isinstance(payload, list):
            return []
        return [dict(item) for item in payload if isinstance(item, Mapping)]

    def release_exists(self, release: str, namespace: str) -> bool:
        """Return ``True`` when *release* is deployed in *namespace*."""
        return any(item.get("name") == release for item in self.list_releases(namespace))

    def install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        values: Sequence[tuple[str, str]] = (),
        files: Sequence[tuple[str, Path]] = (),
        create_namespace: bool = True,
        sensitive: Sequence[str] = (),
    ) -> None:
        """Install *chart* as *release* with ``--set`` *values* and ``--set-file`` *files*."""
        args = ["install", release, chart, "--namespace", namespace]
        if create_namespace:
            args.append("--create-namespace")
        args.extend(_set_args(values, files))
        self._helm(args, error_prefix=f"{self.binary} install {release}", sensitive=sensitive)

    def upgrade(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        values: Sequence[tuple[str, str]] = (),
        files: Sequence[tuple[str, Path]] = (),
        reuse_values: bool = True,
        install: bool = False,
        create_namespace: bool = False,
    ) -> None:
        """Upgrade *release*, optionally installing it when absent."""
        args = ["upgrade", release, chart, "--namespace", namespace]
        if install:
            args.append("--install")
        if create_namespace:
            args.append("--create-namespace")
        if reuse_values:
            args.append("--reuse-values")
        args.extend(_set_args(values, files))
        self._helm(args, error_prefix=f"{self.binary} upgrade {release}")

    def uninstall(self, release: str, *, namespace: str, wait: bool = True) -> bool:
        """Uninstall *release*; return ``False`` when it was not installed."""
        args = ["uninstall", release, "--namespace", namespace]
        if wait:
            args.append("--wait")
        result = self._helm(args, error_prefix=f"{self.binary} uninstall {release}", check=False)
        if result.returncode == 0:
            return True
        output = f"{result.stderr or ''}{result.stdout or ''}"
        if "not found" in output.lower():
            return False
        raise CommandFailed(f"{self.binary} uninstall {release}", result.returncode, output)

    # ------------------------------------------------------------------
    def _helm(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        sensitive: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary, *args]
        if self.kube_context:
            command.extend(["--kube-context", self.kube_context])
        return self.runner.run(
            command,
            check=check,
            error_prefix=error_prefix,
            sensitive=sensitive,
        )


def _set_args(
    values: Sequence[tuple[str, str]],
    files: Sequence[tuple[str, Path]],
) -> list[str]:
    args: list[str] = []
    for key, value in values:
        args.extend(["--set", f"{key}={value}"])
    for key, path in files:
        args.extend(["--set-file", f"{key}={path}"])
    return args


__all__ = ["HelmProvider"]
