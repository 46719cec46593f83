"""Identity binder: tell the authenticator how to trust the cluster's tokens."""
from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Mapping
from urllib.parse import urlsplit

from ..config import IdentityConfig
from ..errors import CommandFailed, ValidationError
from ..models import ClusterFacts, WorkloadIdentity
from ..providers.conjur import ConjurCLI
from ..providers.kubectl import KubectlProvider
from ..templates import TemplateEngine
from .policy import PolicyLoadResult, grant_policy, load_policy
from .secrets import set_variable

LOGGER = logging.getLogger(__name__)


def authenticator_url(base_url: str, authenticator_id: str) -> str:
    """Return the authenticator endpoint under *base_url*."""
    return f"{base_url.rstrip('/')}/authn-k8s/{authenticator_id}"


def validate_audience(audience: str | None, authn_url: str) -> str | None:
    """Validate the token audience against the authenticator URL.

    Opaque audiences are accepted unchanged. URL-shaped audiences must use
    ``https`` and name either the authenticator URL itself or its base.
    """
    if audience is None or not audience.strip():
        return None
    value = audience.strip()
    if any(ch.isspace() for ch in value):
        raise ValidationError(f"Token audience '{value}' must not contain whitespace.")
    if "://" not in value:
        return value
    parsed = urlsplit(value)
    if parsed.scheme != "https":
        raise ValidationError(f"Token audience '{value}' must use https.")
    expected = urlsplit(authn_url)
    normalized = value.rstrip("/")
    base = f"{expected.scheme}://{expected.netloc}"
    if normalized not in (authn_url.rstrip("/"), base):
        raise ValidationError(
            f"Token audience '{value}' does not match the authenticator URL "
            f"'{authn_url}' or its base '{base}'."
        )
    return value


def read_cluster_facts(
    kubectl: KubectlProvider,
    *,
    namespace: str,
    service_account: str,
    audience: str | None,
    duration: str | None = None,
) -> ClusterFacts:
    """Return the API URL, CA and a freshly minted token for the cluster."""
    view = kubectl.config_view()
    cluster = _first_cluster(view)
    server = cluster.get("server")
    if not server:
        raise CommandFailed("kubectl config view", 0, "current context has no cluster server")
    encoded_ca = cluster.get("certificate-authority-data")
    if not encoded_ca:
        raise CommandFailed("kubectl config view", 0, "cluster has no certificate-authority-data")
    try:
        ca_cert = base64.b64decode(str(encoded_ca), validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise CommandFailed(
            "kubectl config view", 0, "certificate-authority-data is not valid base64"
        ) from exc
    token = kubectl.create_token(
        namespace,
        service_account,
        audience=audience,
        duration=duration,
    )
    if not token:
        raise CommandFailed(f"kubectl create token {service_account}", 0, "empty token")
    return ClusterFacts(api_url=str(server), ca_cert=ca_cert, sa_token=token)


def ensure_token_reviewer(
    kubectl: KubectlProvider,
    templates: TemplateEngine,
    identity: IdentityConfig,
) -> bool:
    """Ensure the token namespace (and a dedicated reviewer account) exist.

    Returns ``True`` when anything was created or applied.
    """
    changed = kubectl.ensure_namespace(identity.token_namespace)
    if identity.token_service_account != "default":
        manifest = templates.render_to_string(
            "k8s/authn-rbac.yaml.j2",
            {
                "service_account": identity.token_service_account,
                "namespace": identity.token_namespace,
                "authenticator_id": identity.authenticator_id,
            },
        )
        kubectl.apply(manifest)
        changed = True
    return changed


def bind_cluster_identity(
    kubectl: KubectlProvider,
    conjur: ConjurCLI,
    templates: TemplateEngine,
    identity: IdentityConfig,
    *,
    audience: str | None,
) -> ClusterFacts:
    """Store the cluster facts in the authenticator's variables.

    The token is minted fresh on every run, so re-running refreshes it.
    """
    ensure_token_reviewer(kubectl, templates, identity)
    facts = read_cluster_facts(
        kubectl,
        namespace=identity.token_namespace,
        service_account=identity.token_service_account,
        audience=audience,
        duration=identity.token_duration,
    )
    prefix = f"conjur/authn-k8s/{identity.authenticator_id}"
    set_variable(conjur, f"{prefix}/api-url", facts.api_url)
    set_variable(conjur, f"{prefix}/ca-cert", facts.ca_cert)
    set_variable(conjur, f"{prefix}/service-account-token", facts.sa_token)
    LOGGER.info("Bound cluster %s to authenticator %s", facts.api_url, identity.authenticator_id)
    return facts


def grant_workload(
    conjur: ConjurCLI,
    templates: TemplateEngine,
    workload: WorkloadIdentity,
    group: str,
) -> PolicyLoadResult:
    """Make *workload*'s host a member of the authenticator *group*."""
    document = grant_policy(templates, group, members=[workload.qualified_host])
    return load_policy(conjur, document)


def _first_cluster(view: Mapping[str, object]) -> Mapping[str, object]:
    clusters = view.get("clusters")
    if isinstance(clusters, list):
        for entry in clusters:
            if isinstance(entry, Mapping):
                cluster = entry.get("cluster")
                if isinstance(cluster, Mapping):
                    return cluster
    raise CommandFailed("kubectl config view", 0, "no cluster in the current context")


__all__ = [
    "authenticator_url",
    "bind_cluster_identity",
    "ensure_token_reviewer",
    "grant_workload",
    "read_cluster_facts",
    "validate_audience",
]
