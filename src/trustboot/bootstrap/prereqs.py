"""Verification of the external tools the pipeline drives."""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..config import ToolsConfig
from ..errors import ExternalToolMissing
from ..providers.base import CommandRunner
from ..providers.helm import HelmProvider

LOGGER = logging.getLogger(__name__)

REQUIRED_TOOLS: tuple[str, ...] = ("kind", "kubectl", "helm", "conjur", "docker")

VERSION_ARGS: Mapping[str, tuple[str, ...]] = {
    "kind": ("version",),
    "kubectl": ("version", "--client"),
    "helm": ("version", "--short"),
    "conjur": ("--version",),
    "docker": ("--version",),
}

_VERSION_RE = re.compile(r"v?(\d+\.\d+(?:\.\d+)?)")


@dataclass(slots=True, frozen=True)
class ToolReport:
    """Detected state of one external tool."""

    tool: str
    path: Path
    version: str | None
    minimum: str | None

    @property
    def below_minimum(self) -> bool:
        """Return ``True`` when the detected version is older than the minimum."""
        if not self.version or not self.minimum:
            return False
        try:
            return Version(self.version) < Version(self.minimum)
        except InvalidVersion:
            return False

    @property
    def warning(self) -> str | None:
        """Return an operator-facing warning, if any."""
        if self.version is None:
            return f"Could not determine the {self.tool} version."
        if self.below_minimum:
            return f"{self.tool} {self.version} is older than the supported minimum {self.minimum}."
        return None


def parse_version(output: str) -> str | None:
    """Extract the first dotted version number from *output*."""
    match = _VERSION_RE.search(output or "")
    return match.group(1) if match else None


def check_tools(
    tools: ToolsConfig,
    *,
    runner: CommandRunner | None = None,
    which: Callable[[str], str | None] | None = None,
) -> list[ToolReport]:
    """Verify every required tool is on PATH and report its version.

    A missing tool raises :class:`ExternalToolMissing`; an old version is only
    reported (see :attr:`ToolReport.warning`).
    """
    runner = runner or CommandRunner()
    which = which or shutil.which
    minimums = dict(tools.minimum_versions)
    reports: list[ToolReport] = []
    for tool in REQUIRED_TOOLS:
        binary = tools.binary(tool)
        resolved = which(binary)
        if not resolved:
            raise ExternalToolMissing(binary)
        result = runner.run(
            [binary, *VERSION_ARGS[tool]],
            check=False,
            error_prefix=f"{binary} version",
        )
        output = f"{result.stdout or ''}\n{result.stderr or ''}"
        version = parse_version(output) if result.returncode == 0 else None
        report = ToolReport(
            tool=tool,
            path=Path(resolved),
            version=version,
            minimum=minimums.get(tool),
        )
        if report.warning:
            LOGGER.warning(report.warning)
        reports.append(report)
    return reports


def register_chart_repo(helm: HelmProvider, name: str, url: str) -> None:
    """Register the chart repository and refresh the index."""
    helm.repo_add(name, url)
    helm.repo_update()


__all__ = [
    "REQUIRED_TOOLS",
    "ToolReport",
    "check_tools",
    "parse_version",
    "register_chart_repo",
]
