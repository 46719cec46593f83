"""Tests for policy rendering, validation and loading."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from trustboot.bootstrap.policy import (
    AUTHENTICATOR_VARIABLES,
    PolicyDocument,
    PolicyNode,
    application_policy,
    authenticator_group,
    authenticator_policy,
    grant_policy,
    load_policy,
    parse_policy,
)
from trustboot.errors import PolicyConflict, ValidationError
from trustboot.templates import TemplateEngine


class RecordingConjur:
    """Stand-in for the Conjur CLI that inspects the policy file it receives."""

    def __init__(self, error: str | None = None) -> None:
        """Optionally reject every load with *error*."""
        self.error = error
        self.loaded: list[tuple[str, Path, str, int]] = []

    def policy_load(self, branch: str, policy_file: Path) -> str:
        """Record the call and the file's content and mode."""
        mode = stat.S_IMODE(policy_file.stat().st_mode)
        self.loaded.append((branch, policy_file, policy_file.read_text(encoding="utf-8"), mode))
        if self.error:
            raise PolicyConflict(self.error)
        return '{"created_roles": {}}'


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("- !variable [unclosed\n", "is malformed"),
        ("- !secret db/password\n", "unknown policy statement !secret"),
        ("- id: app\n", "untagged statement"),
        ("", "is empty"),
        ("!variable lonely\n", "must be a sequence"),
        ("- !policy\n  id: app\n  body: !variable x\n", "policy body must be a sequence"),
        ("- !policy\n  id: app\n  body:\n    - plain\n", "must be tagged"),
        ("- !grant\n  role: !group admins\n", "missing required 'member'"),
        ("- !permit\n  role: !group admins\n  privilege: []\n  resource: !webservice\n",
         "missing required 'privilege'"),
        ("- !policy\n  body: []\n", "missing required 'id'"),
    ],
)
def test_parse_policy_rejects_malformed_documents(text: str, message: str) -> None:
    """Malformed documents are rejected before reaching the broker."""
    with pytest.raises(ValidationError, match=message):
        parse_policy(text, source="test")


def test_parse_policy_builds_nested_nodes() -> None:
    """Nested policy bodies become child nodes."""
    nodes = parse_policy(
        "- !policy\n"
        "  id: app\n"
        "  body:\n"
        "    - !host\n"
        "      id: web\n"
        "    - !variable db/creds/url\n"
    )

    (branch,) = nodes
    assert branch.kind == "policy"
    assert branch.id == "app"
    assert [(node.kind, node.id) for node in branch.walk()] == [
        ("policy", "app"),
        ("host", "web"),
        ("variable", "db/creds/url"),
    ]


def test_authenticator_policy_declares_webservice_and_variables(templates: TemplateEngine) -> None:
    """The authenticator policy declares its webservice, group, permit and variables."""
    document = authenticator_policy(templates, "dev-cluster")

    (branch,) = document.nodes()
    assert branch.id == "conjur/authn-k8s/dev-cluster"
    kinds = [child.kind for child in branch.children]
    assert kinds == ["webservice", "group", "permit", "variable", "variable", "variable"]
    permit = branch.children[2]
    assert permit.attributes["privilege"] == ["read", "authenticate"]
    role = permit.attributes["role"]
    assert isinstance(role, PolicyNode) and role.id == "admins"
    variables = [child.id for child in branch.children if child.kind == "variable"]
    assert tuple(variables) == AUTHENTICATOR_VARIABLES


def test_application_policy_declares_hosts_and_variables(templates: TemplateEngine) -> None:
    """Hosts and variables live under the application branch."""
    document = application_policy(
        templates,
        "app",
        hosts=["system:serviceaccount:app-ns:default"],
        variables=["db/creds/url", "api/token"],
    )

    (branch,) = document.nodes()
    assert branch.id == "app"
    assert [(child.kind, child.id) for child in branch.children] == [
        ("host", "system:serviceaccount:app-ns:default"),
        ("variable", "db/creds/url"),
        ("variable", "api/token"),
    ]


def test_grant_policy_requires_members(templates: TemplateEngine) -> None:
    """An empty grant is a validation error."""
    with pytest.raises(ValidationError, match="at least one member"):
        grant_policy(templates, authenticator_group("dev-cluster"), members=[])


def test_grant_policy_names_group(templates: TemplateEngine) -> None:
    """The grant targets the authenticator's admin group."""
    group = authenticator_group("dev-cluster")
    document = grant_policy(templates, group, members=["app/system:serviceaccount:app-ns:default"])

    assert group == "conjur/authn-k8s/dev-cluster/admins"
    assert document.name == "grant-conjur-authn-k8s-dev-cluster-admins"
    (grant,) = document.nodes()
    member = grant.attributes["member"]
    assert isinstance(member, PolicyNode)
    assert member.id == "app/system:serviceaccount:app-ns:default"


def test_load_policy_uses_private_temporary_file(tmp_path: Path) -> None:
    """The document is written owner-only and removed after loading."""
    conjur = RecordingConjur()
    document = PolicyDocument(name="app-app", text="- !variable x\n")

    result = load_policy(conjur, document, workdir=tmp_path)  # type: ignore[arg-type]

    (branch, path, text, mode) = conjur.loaded[0]
    assert branch == "root"
    assert text == "- !variable x\n"
    assert mode == 0o600
    assert not path.exists()
    assert result.branch == "root"
    assert result.document == "app-app"


def test_load_policy_removes_file_on_conflict(tmp_path: Path) -> None:
    """A rejected load still cleans up and keeps the broker message."""
    conjur = RecordingConjur(error="422 Unprocessable Entity: role does not exist")
    document = PolicyDocument(name="grant", text="- !variable x\n")

    with pytest.raises(PolicyConflict, match="role does not exist"):
        load_policy(conjur, document, branch="app", workdir=tmp_path)  # type: ignore[arg-type]

    assert list(tmp_path.iterdir()) == []
