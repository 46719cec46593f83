"""Credential bootstrapper: obtain and persist the broker admin API key."""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from ..errors import CredentialBootstrapFailure
from ..models import AccountStatus, AdminCredential
from ..providers.conjurctl import ConjurAdmin
from ..providers.kubectl import KubectlProvider

LOGGER = logging.getLogger(__name__)

CREDENTIAL_MODE = 0o600


def bootstrap_admin_key(
    admin: ConjurAdmin,
    kubectl: KubectlProvider,
    *,
    namespace: str,
    selector: str,
    account: str,
    identity: str = "admin",
) -> AdminCredential:
    """Return the admin API key for *account*.

    Account creation is attempted first; when it yields no key (the account
    already exists, or creation failed) the existing key is retrieved. When
    neither produces a non-empty key the bootstrap fails.
    """
    pod = kubectl.ready_pod_name(namespace, selector)
    if pod is None:
        raise CredentialBootstrapFailure(
            f"No ready broker pod matching {selector} in {namespace}; cannot obtain the admin key."
        )

    created = admin.create_account(pod, account)
    if created.status is AccountStatus.CREATED and created.api_key:
        LOGGER.info("Created account %s", account)
        return AdminCredential(
            account=account,
            identity=identity,
            api_key=created.api_key,
            source="created",
        )

    LOGGER.info("Account %s not created (%s); retrieving existing key", account, created.status.value)
    key = admin.retrieve_key(pod, account, identity)
    if key:
        return AdminCredential(account=account, identity=identity, api_key=key, source="retrieved")

    detail = created.detail or created.status.value
    raise CredentialBootstrapFailure(
        f"Could not obtain the API key for {account}:user:{identity} "
        f"(account create: {detail}; key retrieval returned nothing)."
    )


@dataclass(slots=True)
class CredentialStore:
    """Owner-only file holding the admin API key."""

    path: Path

    def save(self, credential: AdminCredential) -> bool:
        """Write the key atomically with mode ``0600``; return ``True`` when changed."""
        content = credential.api_key + "\n"
        if self.path.exists() and self.path.read_text(encoding="utf-8") == content:
            os.chmod(self.path, CREDENTIAL_MODE)
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            os.fchmod(fd, CREDENTIAL_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def remove(self) -> bool:
        """Delete the stored key; return ``False`` when there was none."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


__all__ = ["CREDENTIAL_MODE", "CredentialStore", "bootstrap_admin_key"]
