"""Policy loader: render, validate and load declarative broker policy.

Documents are rendered from Jinja2 templates and parsed back through a
PyYAML loader that understands the broker's ``!tag`` node syntax, so a
malformed document is rejected locally before the broker sees it. Loading
uses append semantics: reloading an identical document converges.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..errors import ValidationError
from ..providers.conjur import ConjurCLI
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

ROOT_BRANCH = "root"

AUTHENTICATOR_VARIABLES: tuple[str, ...] = ("api-url", "ca-cert", "service-account-token")

KNOWN_KINDS = frozenset(
    {
        "policy",
        "user",
        "host",
        "group",
        "layer",
        "variable",
        "webservice",
        "host-factory",
        "permit",
        "deny",
        "grant",
        "revoke",
        "delete",
    }
)
REQUIRED_ATTRIBUTES: Mapping[str, tuple[str, ...]] = {
    "permit": ("role", "privilege", "resource"),
    "deny": ("role", "privilege", "resource"),
    "grant": ("role", "member"),
    "revoke": ("role", "member"),
    "policy": ("id",),
}


@dataclass(slots=True)
class PolicyNode:
    """One tagged statement (or reference) in a policy document."""

    kind: str
    id: str | None = None
    attributes: dict[str, object] = field(default_factory=dict)
    children: list[PolicyNode] = field(default_factory=list)

    def walk(self) -> Iterator[PolicyNode]:
        """Yield this node and every descendant statement."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(slots=True, frozen=True)
class PolicyDocument:
    """A named, rendered policy document."""

    name: str
    text: str

    def nodes(self) -> list[PolicyNode]:
        """Return the parsed statements of the document."""
        return parse_policy(self.text, source=self.name)


@dataclass(slots=True, frozen=True)
class PolicyLoadResult:
    """Outcome of loading a document into a branch."""

    document: str
    branch: str
    output: str


class _PolicyLoader(yaml.SafeLoader):
    """Safe loader that turns ``!kind`` tags into :class:`PolicyNode` objects."""


def _construct_tagged(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> PolicyNode:
    kind = suffix.lstrip("!")
    if kind not in KNOWN_KINDS:
        raise yaml.constructor.ConstructorError(
            None, None, f"unknown policy statement !{kind}", node.start_mark
        )
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
        return PolicyNode(kind=kind, id=str(value) if value not in (None, "") else None)
    if isinstance(node, yaml.MappingNode):
        mapping = loader.construct_mapping(node, deep=True)
        attributes = {str(key): value for key, value in mapping.items()}
        identifier = attributes.pop("id", None)
        body = attributes.pop("body", None) if kind == "policy" else None
        children: list[PolicyNode] = []
        if body is not None:
            if not isinstance(body, list):
                raise yaml.constructor.ConstructorError(
                    None, None, "policy body must be a sequence", node.start_mark
                )
            children = [_expect_node(item, node) for item in body]
        return PolicyNode(
            kind=kind,
            id=str(identifier) if identifier is not None else None,
            attributes=attributes,
            children=children,
        )
    raise yaml.constructor.ConstructorError(
        None, None, f"!{kind} must be a scalar or a mapping", node.start_mark
    )


def _expect_node(value: object, node: yaml.Node) -> PolicyNode:
    if not isinstance(value, PolicyNode):
        raise yaml.constructor.ConstructorError(
            None, None, "policy statements must be tagged (e.g. !variable)", node.start_mark
        )
    return value


_PolicyLoader.add_multi_constructor("!", _construct_tagged)


def parse_policy(text: str, *, source: str = "<policy>") -> list[PolicyNode]:
    """Parse *text* into statements, raising :class:`ValidationError` when malformed."""
    try:
        data = yaml.load(text, Loader=_PolicyLoader)  # noqa: S506 - loader derives from SafeLoader
    except yaml.YAMLError as exc:
        raise ValidationError(f"Policy '{source}' is malformed: {exc}") from exc
    if data is None:
        raise ValidationError(f"Policy '{source}' is empty.")
    if not isinstance(data, list):
        raise ValidationError(f"Policy '{source}' must be a sequence of statements.")
    nodes: list[PolicyNode] = []
    for item in data:
        if not isinstance(item, PolicyNode):
            raise ValidationError(
                f"Policy '{source}' contains an untagged statement: {item!r}."
            )
        nodes.append(item)
    for statement in nodes:
        for node in statement.walk():
            _check_required(node, source)
    return nodes


def _check_required(node: PolicyNode, source: str) -> None:
    for attribute in REQUIRED_ATTRIBUTES.get(node.kind, ()):
        present = node.id if attribute == "id" else node.attributes.get(attribute)
        if present in (None, "", []):
            raise ValidationError(
                f"Policy '{source}': !{node.kind} is missing required '{attribute}'."
            )


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------

def render_policy(
    templates: TemplateEngine,
    name: str,
    template: str,
    context: Mapping[str, object],
) -> PolicyDocument:
    """Render *template* and validate the result."""
    document = PolicyDocument(name=name, text=templates.render_to_string(template, context))
    document.nodes()
    return document


def authenticator_policy(
    templates: TemplateEngine,
    authenticator_id: str,
    *,
    admin_group: str = "admins",
) -> PolicyDocument:
    """Return the authenticator webservice policy for *authenticator_id*."""
    return render_policy(
        templates,
        f"authn-k8s-{authenticator_id}",
        "policy/authenticator.yml.j2",
        {
            "authenticator_id": authenticator_id,
            "admin_group": admin_group,
            "variables": list(AUTHENTICATOR_VARIABLES),
        },
    )


def application_policy(
    templates: TemplateEngine,
    branch: str,
    *,
    hosts: Sequence[str],
    variables: Sequence[str],
) -> PolicyDocument:
    """Return the application branch policy declaring *hosts* and *variables*."""
    return render_policy(
        templates,
        f"app-{branch}",
        "policy/application.yml.j2",
        {"branch": branch, "hosts": list(hosts), "variables": list(variables)},
    )


def grant_policy(
    templates: TemplateEngine,
    group: str,
    *,
    members: Sequence[str],
) -> PolicyDocument:
    """Return the document granting *group* membership to each host in *members*."""
    if not members:
        raise ValidationError("A grant policy needs at least one member.")
    return render_policy(
        templates,
        "grant-" + group.replace("/", "-"),
        "policy/grant.yml.j2",
        {"group": group, "members": list(members)},
    )


def authenticator_group(authenticator_id: str, admin_group: str = "admins") -> str:
    """Return the fully qualified group allowed to use the authenticator."""
    return f"conjur/authn-k8s/{authenticator_id}/{admin_group}"


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def load_policy(
    conjur: ConjurCLI,
    document: PolicyDocument,
    *,
    branch: str = ROOT_BRANCH,
    workdir: Path | None = None,
) -> PolicyLoadResult:
    """Load *document* into *branch*.

    The document is written to a private temporary file for the duration of
    the call. Broker rejections surface as :class:`PolicyConflict` with the
    broker's message unchanged.
    """
    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{document.name}.",
        suffix=".yml",
        dir=str(workdir) if workdir else None,
    )
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(document.text)
        output = conjur.policy_load(branch, tmp_path)
    finally:
        tmp_path.unlink(missing_ok=True)
    LOGGER.info("Loaded policy %s into %s", document.name, branch)
    return PolicyLoadResult(document=document.name, branch=branch, output=output)


__all__ = [
    "AUTHENTICATOR_VARIABLES",
    "PolicyDocument",
    "PolicyLoadResult",
    "PolicyNode",
    "ROOT_BRANCH",
    "application_policy",
    "authenticator_group",
    "authenticator_policy",
    "grant_policy",
    "load_policy",
    "parse_policy",
    "render_policy",
]
