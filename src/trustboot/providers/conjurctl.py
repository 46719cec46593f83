"""Administrative surface of the broker: ``conjurctl`` inside the pod and the data-key generator."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..errors import CommandFailed
from ..models import AccountCreateResult, AccountStatus
from .base import CommandRunner
from .kubectl import KubectlProvider

LOGGER = logging.getLogger(__name__)

API_KEY_MARKER = "API key for admin:"
EXISTS_MARKERS = ("already exists",)


@dataclass(slots=True)
class ConjurAdmin:
    """Run ``conjurctl`` in the broker container and generate data keys."""

    kubectl: KubectlProvider
    namespace: str
    container: str
    runner: CommandRunner = field(default_factory=CommandRunner)
    docker_binary: str = "docker"
    data_key_image: str = "cyberark/conjur"

    def generate_data_key(self) -> str:
        """Return a freshly generated broker data key."""
        result = self.runner.run(
            [self.docker_binary, "run", "--rm", self.data_key_image, "data-key", "generate"],
            error_prefix=f"{self.docker_binary} run {self.data_key_image} data-key generate",
        )
        key = _last_line(result.stdout)
        if not key:
            raise CommandFailed("data-key generate", 0, "no key printed")
        return key

    def create_account(self, pod: str, account: str) -> AccountCreateResult:
        """Attempt to create *account*, classifying the outcome."""
        result = self.kubectl.exec(
            self.namespace,
            pod,
            ["conjurctl", "account", "create", account],
            container=self.container,
            check=False,
        )
        output = f"{result.stdout or ''}\n{result.stderr or ''}"
        return parse_account_create(output, result.returncode)

    def retrieve_key(self, pod: str, account: str, identity: str = "admin") -> str | None:
        """Return the API key of ``<account>:user:<identity>``, or ``None``."""
        result = self.kubectl.exec(
            self.namespace,
            pod,
            ["conjurctl", "role", "retrieve-key", f"{account}:user:{identity}"],
            container=self.container,
            check=False,
        )
        if result.returncode != 0:
            LOGGER.debug("retrieve-key exited %s", result.returncode)
            return None
        return _last_line(result.stdout) or None


def parse_account_create(output: str, returncode: int = 0) -> AccountCreateResult:
    """Classify ``conjurctl account create`` output."""
    for line in output.splitlines():
        if API_KEY_MARKER in line:
            fields = line.split()
            key = fields[-1] if fields else ""
            if key and not line.rstrip().endswith(":"):
                return AccountCreateResult(AccountStatus.CREATED, api_key=key)
    lowered = output.lower()
    if any(marker in lowered for marker in EXISTS_MARKERS):
        return AccountCreateResult(AccountStatus.EXISTS, detail="account already exists")
    detail = _last_line(output) or f"exit {returncode}"
    return AccountCreateResult(AccountStatus.ERROR, detail=detail)


def _last_line(text: str | None) -> str:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""


__all__ = ["API_KEY_MARKER", "ConjurAdmin", "parse_account_create"]
