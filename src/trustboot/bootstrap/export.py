"""Environment export: files consumed by downstream demo tooling."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..config import BrokerConfig, ExportConfig, IdentityConfig
from ..models import AdminCredential
from ..templates import TemplateEngine
from .credentials import CREDENTIAL_MODE, CredentialStore

LOGGER = logging.getLogger(__name__)

ENV_TEMPLATE = "env/demo_env.sh.j2"


@dataclass(slots=True)
class ExportResult:
    """Files written (or left unchanged) by an export."""

    written: list[Path] = field(default_factory=list)
    unchanged: list[Path] = field(default_factory=list)


def export_credential(
    export: ExportConfig,
    credential: AdminCredential,
    result: ExportResult | None = None,
) -> ExportResult:
    """Persist the admin key (``0600``) as soon as it is known."""
    result = result if result is not None else ExportResult()
    store = CredentialStore(export.credential_file)
    _record(result, export.credential_file, store.save(credential))
    return result


def export_environment(
    templates: TemplateEngine,
    export: ExportConfig,
    *,
    credential: AdminCredential,
    broker: BrokerConfig,
    identity: IdentityConfig,
    result: ExportResult | None = None,
) -> ExportResult:
    """Write the shell environment file (``0600``) into *result*."""
    result = result if result is not None else ExportResult()
    changed = templates.render_to_path(
        ENV_TEMPLATE,
        export.env_file,
        {
            "account": credential.account,
            "namespace": broker.namespace,
            "admin_password": credential.api_key,
            "authenticator_id": identity.authenticator_id,
            "cli_version": export.cli_version,
            "release": broker.release,
        },
        mode=CREDENTIAL_MODE,
    )
    _record(result, export.env_file, changed)
    return result


def remove_exports(export: ExportConfig) -> list[Path]:
    """Delete the exported files; return those that existed."""
    removed: list[Path] = []
    if CredentialStore(export.credential_file).remove():
        removed.append(export.credential_file)
    try:
        export.env_file.unlink()
    except FileNotFoundError:
        pass
    else:
        removed.append(export.env_file)
    return removed


def _record(result: ExportResult, path: Path, changed: bool) -> None:
    if changed:
        LOGGER.info("Wrote %s", path)
        result.written.append(path)
    else:
        result.unchanged.append(path)


__all__ = ["ExportResult", "export_credential", "export_environment", "remove_exports"]
