"""Tests for admin credential bootstrap and storage."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from conftest import FIRST_API_KEY, FakeWorld
from trustboot.bootstrap.credentials import CredentialStore, bootstrap_admin_key
from trustboot.errors import CredentialBootstrapFailure
from trustboot.exit_codes import ExitCode
from trustboot.models import AdminCredential
from trustboot.providers.conjurctl import ConjurAdmin
from trustboot.providers.kubectl import KubectlProvider


@pytest.fixture
def broker(world: FakeWorld) -> FakeWorld:
    """Return a world with the broker release installed."""
    world.clusters.add("conjur-poc")
    world.releases[("conjur-system", "conjur-oss")] = {
        "chart": "cyberark/conjur-oss",
        "values": {},
        "files": {},
    }
    return world


def _bootstrap() -> AdminCredential:
    kubectl = KubectlProvider(context="kind-conjur-poc")
    admin = ConjurAdmin(kubectl=kubectl, namespace="conjur-system", container="conjur-oss")
    return bootstrap_admin_key(
        admin,
        kubectl,
        namespace="conjur-system",
        selector="app=conjur-oss",
        account="demo",
    )


def test_new_account_yields_created_key(broker: FakeWorld) -> None:
    """The key printed by account creation is used directly."""
    credential = _bootstrap()

    assert credential.api_key == FIRST_API_KEY
    assert credential.source == "created"
    assert credential.identity == "admin"
    assert not [argv for argv in broker.commands if "retrieve-key" in argv]


def test_existing_account_falls_back_to_retrieval(broker: FakeWorld) -> None:
    """An existing account is not an error; its key is retrieved."""
    broker.account_exists = True

    credential = _bootstrap()

    assert credential.api_key == FIRST_API_KEY
    assert credential.source == "retrieved"


def test_no_key_obtainable_is_credential_failure(broker: FakeWorld) -> None:
    """When both paths fail the bootstrap fails with both reasons."""
    broker.fail_next("kubectl -n conjur-system exec", "error: database is locked")

    with pytest.raises(CredentialBootstrapFailure) as excinfo:
        _bootstrap()

    assert "account create: error: database is locked" in str(excinfo.value)
    assert excinfo.value.exit_code is ExitCode.CREDENTIAL


def test_missing_broker_pod_is_credential_failure(world: FakeWorld) -> None:
    """No pod means no way to reach conjurctl."""
    world.clusters.add("conjur-poc")

    with pytest.raises(CredentialBootstrapFailure, match="No ready broker pod matching app=conjur-oss"):
        _bootstrap()


def test_credential_store_round_trip(tmp_path: Path) -> None:
    """The key is stored owner-only and only rewritten when it changes."""
    store = CredentialStore(tmp_path / "state" / "admin.key")
    credential = AdminCredential(account="demo", identity="admin", api_key="abc", source="created")

    assert not store.path.exists()
    assert store.save(credential) is True
    assert store.save(credential) is False

    assert store.path.read_text(encoding="utf-8") == "abc\n"
    assert stat.S_IMODE(store.path.stat().st_mode) == 0o600
    assert sorted(path.name for path in store.path.parent.iterdir()) == ["admin.key"]


def test_credential_store_tightens_existing_mode(tmp_path: Path) -> None:
    """An unchanged key file with loose permissions is tightened."""
    store = CredentialStore(tmp_path / "admin.key")
    store.path.write_text("abc\n", encoding="utf-8")
    store.path.chmod(0o644)

    changed = store.save(
        AdminCredential(account="demo", identity="admin", api_key="abc", source="retrieved")
    )

    assert changed is False
    assert stat.S_IMODE(store.path.stat().st_mode) == 0o600


def test_credential_store_remove(tmp_path: Path) -> None:
    """Removing twice reports whether anything was deleted."""
    store = CredentialStore(tmp_path / "admin.key")
    store.path.write_text("abc\n", encoding="utf-8")

    assert store.remove() is True
    assert store.remove() is False
