"""Provider wrapping the Conjur CLI (v8) used against the tunnelled broker."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import AuthenticationFailure, CommandFailed, PolicyConflict
from .base import CommandRunner


@dataclass(slots=True)
class ConjurCLI:
    """Initialise, authenticate and administer the broker through ``conjur``."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    binary: str = "conjur"

    def init(self, url: str, account: str, *, self_signed: bool = True) -> None:
        """Point the CLI at *url* for *account*, replacing any prior configuration."""
        args = [self.binary, "init", "--force", "-u", url, "-a", account]
        if self_signed:
            args.append("--self-signed")
        self.runner.run(args, error_prefix=f"{self.binary} init")

    def login(self, identity: str, api_key: str) -> None:
        """Authenticate as *identity*; rejection raises :class:`AuthenticationFailure`."""
        try:
            self.runner.run(
                [self.binary, "login", "-i", identity, "-p", api_key],
                error_prefix=f"{self.binary} login",
                sensitive=(api_key,),
            )
        except CommandFailed as exc:
            raise AuthenticationFailure(
                f"Broker rejected login for '{identity}': {exc.message}"
            ) from exc

    def policy_load(self, branch: str, policy_file: Path) -> str:
        """Load *policy_file* into *branch*; rejection raises :class:`PolicyConflict`."""
        result = self._run(
            [self.binary, "policy", "load", "-b", branch, "-f", str(policy_file)],
            error_prefix=f"{self.binary} policy load -b {branch}",
        )
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            stdout = (result.stdout or "").strip()
            raise PolicyConflict(stderr or stdout or f"policy load exited {result.returncode}")
        return (result.stdout or "").strip()

    def variable_set(self, variable_id: str, value: str) -> None:
        """Store *value* in *variable_id* (a new version; last write wins)."""
        self.runner.run(
            [self.binary, "variable", "set", "-i", variable_id, "-v", value],
            error_prefix=f"{self.binary} variable set -i {variable_id}",
            sensitive=(value,),
        )

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str], *, error_prefix: str) -> subprocess.CompletedProcess[str]:
        return self.runner.run(args, check=False, error_prefix=error_prefix)


__all__ = ["ConjurCLI"]
