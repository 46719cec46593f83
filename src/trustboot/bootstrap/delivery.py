"""Delivery integrator and verifier.

Two delivery modes are supported. ``job`` installs the secrets-provider
chart as a one-shot Job that copies broker variables into a Kubernetes
Secret, which the demo pod mounts. ``sidecar`` installs the authenticator
client chart and relies on the pod's ``conjur.org/conjur-secrets``
annotation. Verification reads the delivered file from inside the demo pod
and compares it with the value written to the broker.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..config import DeliveryConfig
from ..errors import CommandFailed, DeliveryMismatch, ValidationError
from ..models import BrokerEndpoint, DeliveryReport, WorkloadIdentity
from ..providers.helm import HelmProvider
from ..providers.kubectl import KubectlProvider
from ..templates import TemplateEngine
from .identity import authenticator_url
from .session import TLS_SECRET_KEY, find_tls_secret

LOGGER = logging.getLogger(__name__)

CA_FILE_NAME = "conjur-ca.pem"


@dataclass(slots=True, frozen=True)
class SecretMapping:
    """One broker variable copied into a key of the target Secret."""

    path: str
    key: str
    variable_id: str


def build_mapping(branch: str, paths: Sequence[str]) -> list[SecretMapping]:
    """Map each variable *path* to a Secret key named after its last segment."""
    mapping: list[SecretMapping] = []
    seen: dict[str, str] = {}
    for path in paths:
        cleaned = path.strip().strip("/")
        key = cleaned.rsplit("/", 1)[-1]
        if key in seen:
            raise ValidationError(
                f"Variables '{seen[key]}' and '{cleaned}' would share the Secret key '{key}'."
            )
        seen[key] = cleaned
        mapping.append(SecretMapping(path=cleaned, key=key, variable_id=f"{branch}/{cleaned}"))
    return mapping


def write_broker_ca(
    kubectl: KubectlProvider,
    endpoint: BrokerEndpoint,
    workdir: Path,
) -> Path:
    """Extract the broker CA certificate into *workdir* and return its path."""
    secret = find_tls_secret(kubectl, endpoint.namespace, endpoint.release, prefer_ca=True)
    pem = kubectl.secret_value(endpoint.namespace, secret, TLS_SECRET_KEY)
    workdir.mkdir(parents=True, exist_ok=True)
    path = workdir / CA_FILE_NAME
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(pem)
    return path


def job_values(
    endpoint: BrokerEndpoint,
    delivery: DeliveryConfig,
    workload: WorkloadIdentity,
    *,
    authenticator_id: str,
    audience: str | None,
) -> list[tuple[str, str]]:
    """Return the ``--set`` values for the secrets-provider Job."""
    authn_url = authenticator_url(endpoint.in_cluster_url, authenticator_id)
    if audience:
        authn_url = f"{authn_url}?audience={audience}"
    return [
        ("environment.k8sSecrets[0]", delivery.k8s_secret),
        ("environment.conjur.account", endpoint.account),
        ("environment.conjur.applianceUrl", endpoint.in_cluster_url),
        ("environment.conjur.authnUrl", authn_url),
        ("environment.conjur.authnLogin", workload.login),
        ("rbac.create", "true"),
        ("serviceAccount.create", "false"),
        ("serviceAccount.name", workload.service_account),
    ]


def sidecar_values(
    endpoint: BrokerEndpoint,
    workload: WorkloadIdentity,
    *,
    authenticator_id: str,
) -> list[tuple[str, str]]:
    """Return the ``--set`` values for the authenticator client chart."""
    return [
        ("conjur.account", endpoint.account),
        ("conjur.applianceURL", endpoint.in_cluster_url),
        ("conjur.authenticatorID", authenticator_id),
        ("appServiceAccount.name", workload.service_account),
        ("appServiceAccount.create", "false"),
    ]


def install_delivery(
    helm: HelmProvider,
    kubectl: KubectlProvider,
    templates: TemplateEngine,
    delivery: DeliveryConfig,
    *,
    endpoint: BrokerEndpoint,
    workload: WorkloadIdentity,
    mapping: Sequence[SecretMapping],
    authenticator_id: str,
    audience: str | None,
    workdir: Path,
) -> str:
    """Install the delivery mechanism for *workload*; return the release name."""
    namespace = workload.namespace
    kubectl.ensure_namespace(namespace)
    ca_path = write_broker_ca(kubectl, endpoint, workdir)

    if delivery.mode == "sidecar":
        helm.upgrade(
            delivery.sidecar_release,
            delivery.sidecar_chart,
            namespace=namespace,
            values=sidecar_values(endpoint, workload, authenticator_id=authenticator_id),
            files=[("conjur.sslCA.cert", ca_path)],
            reuse_values=False,
            install=True,
            create_namespace=True,
        )
        return delivery.sidecar_release

    manifest = templates.render_to_string(
        "k8s/secret-map.yaml.j2",
        {
            "secret_name": delivery.k8s_secret,
            "namespace": namespace,
            "mapping": [(item.variable_id, item.key) for item in mapping],
        },
    )
    kubectl.apply(manifest, namespace=namespace)
    # Job specs are immutable, so the previous release is removed first.
    if helm.uninstall(delivery.release, namespace=namespace, wait=True):
        LOGGER.info("Removed previous %s release", delivery.release)
    helm.install(
        delivery.release,
        delivery.chart,
        namespace=namespace,
        values=job_values(
            endpoint,
            delivery,
            workload,
            authenticator_id=authenticator_id,
            audience=audience,
        ),
        files=[("environment.conjur.sslCertificate.value", ca_path)],
        create_namespace=True,
    )
    kubectl.wait(
        namespace,
        f"job/{delivery.release}",
        condition="complete",
        timeout=delivery.job_timeout,
    )
    return delivery.release


def verify_delivery(
    kubectl: KubectlProvider,
    templates: TemplateEngine,
    delivery: DeliveryConfig,
    *,
    workload: WorkloadIdentity,
    mapping: Sequence[SecretMapping],
    expected: str,
    release: str,
) -> DeliveryReport:
    """Recreate the demo pod and check it observes *expected*."""
    namespace = workload.namespace
    target = next(
        (item for item in mapping if item.path == delivery.verify_variable),
        None,
    )
    if target is None:
        raise ValidationError(
            f"Variable '{delivery.verify_variable}' is not part of the delivered mapping."
        )
    manifest = templates.render_to_string(
        "k8s/demo-pod.yaml.j2",
        {
            "pod_name": delivery.pod_name,
            "namespace": namespace,
            "variables": [item.path for item in mapping],
            "service_account": workload.service_account,
            "image": delivery.pod_image,
            "secret_name": delivery.k8s_secret if delivery.mode == "job" else None,
            "mount_path": delivery.mount_path,
            "mapping": [(item.path, item.key) for item in mapping],
        },
    )
    kubectl.delete(f"pod/{delivery.pod_name}", namespace=namespace, wait=True)
    kubectl.apply(manifest, namespace=namespace)
    kubectl.wait(
        namespace,
        f"pod/{delivery.pod_name}",
        condition="ready",
        timeout=delivery.pod_timeout,
    )

    path = f"{delivery.mount_path}/{target.path}"
    try:
        result = kubectl.exec(namespace, delivery.pod_name, ["cat", path])
    except CommandFailed as exc:
        raise DeliveryMismatch(
            f"Secret was not delivered to {delivery.pod_name}:{path}: {exc.message}"
        ) from exc
    observed = (result.stdout or "").rstrip("\n")
    report = DeliveryReport(
        mode="sidecar" if delivery.mode == "sidecar" else "job",
        release=release,
        expected=expected,
        observed=observed,
        path=path,
    )
    if not report.matched:
        raise DeliveryMismatch(
            f"Value delivered to {delivery.pod_name}:{path} does not match the value stored "
            f"in {target.variable_id} ({len(observed)} chars observed, {len(expected)} expected)."
        )
    LOGGER.info("Verified delivery of %s to %s", target.variable_id, path)
    return report


__all__ = [
    "SecretMapping",
    "build_mapping",
    "install_delivery",
    "job_values",
    "sidecar_values",
    "verify_delivery",
    "write_broker_ca",
]
