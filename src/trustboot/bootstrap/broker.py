"""Broker installer: install or upgrade the Conjur release and wait for it."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from ..config import BrokerConfig
from ..errors import ValidationError
from ..models import BrokerAction, BrokerEndpoint, BrokerRelease
from ..providers.conjurctl import ConjurAdmin
from ..providers.helm import HelmProvider
from ..providers.kubectl import KubectlProvider
from ..waiting import remaining, wait_for

LOGGER = logging.getLogger(__name__)


def normalize_authenticators(authenticators: Iterable[str]) -> tuple[str, ...]:
    """Return *authenticators* stripped, ordered by first appearance and de-duplicated."""
    result: list[str] = []
    for name in authenticators:
        cleaned = name.strip()
        if cleaned and cleaned not in result:
            result.append(cleaned)
    if not result:
        raise ValidationError("At least one authenticator must be enabled on the broker.")
    return tuple(result)


def render_authenticators(authenticators: Iterable[str]) -> str:
    """Render the authenticator set as a single ``--set`` value (commas escaped)."""
    return "\\,".join(normalize_authenticators(authenticators))


def install_values(
    broker: BrokerConfig,
    authenticators: str,
    data_key: str,
) -> list[tuple[str, str]]:
    """Return the ``--set`` values for a fresh install."""
    return [
        ("dataKey", data_key),
        ("authenticators", authenticators),
        ("account.create", "true"),
        ("account.name", broker.account),
        ("ssl.hostname", broker.hostname),
    ]


def ensure_broker(
    helm: HelmProvider,
    kubectl: KubectlProvider,
    admin: ConjurAdmin,
    broker: BrokerConfig,
    *,
    port: int,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[BrokerRelease, BrokerEndpoint]:
    """Install or upgrade the broker release and wait until it is ready.

    A fresh install generates a data key (unless one is configured) and asks
    the chart to create the account. An upgrade reuses every stored value and
    only re-applies the authenticator set, so the data key can never change
    underneath an existing release.
    """
    authenticators = normalize_authenticators(broker.authenticators)
    rendered = render_authenticators(authenticators)
    data_key_generated = False
    action: BrokerAction
    if helm.release_exists(broker.release, broker.namespace):
        LOGGER.info("Upgrading release %s in place", broker.release)
        helm.upgrade(
            broker.release,
            broker.chart,
            namespace=broker.namespace,
            values=[("authenticators", rendered)],
            reuse_values=True,
        )
        action = "upgrade"
    else:
        data_key = broker.data_key
        if not data_key:
            data_key = admin.generate_data_key()
            data_key_generated = True
        LOGGER.info("Installing release %s", broker.release)
        helm.install(
            broker.release,
            broker.chart,
            namespace=broker.namespace,
            values=install_values(broker, rendered, data_key),
            create_namespace=True,
            sensitive=(data_key,),
        )
        action = "install"

    wait_for_broker(
        kubectl,
        namespace=broker.namespace,
        deployment=broker.release,
        selector=broker.pod_selector,
        timeout=broker.ready_timeout,
        clock=clock,
        sleep=sleep,
    )
    release = BrokerRelease(
        release=broker.release,
        namespace=broker.namespace,
        authenticators=authenticators,
        action=action,
        data_key_generated=data_key_generated,
    )
    endpoint = BrokerEndpoint(
        release=broker.release,
        namespace=broker.namespace,
        service=broker.service,
        hostname=broker.hostname,
        port=port,
        account=broker.account,
    )
    return release, endpoint


def wait_for_broker(
    kubectl: KubectlProvider,
    *,
    namespace: str,
    deployment: str,
    selector: str,
    timeout: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Wait for the broker rollout to finish; return a Ready pod that is not terminating.

    An upgrade that changes the pod template keeps the previous pod Ready
    until its replacement is, so pod readiness alone is not enough: the
    deployment's rollout has to complete first.
    """
    deadline = clock() + timeout
    kubectl.rollout_status(namespace, f"deployment/{deployment}", timeout=timeout)
    return wait_for(
        lambda: kubectl.ready_pod_name(namespace, selector),
        timeout=max(1.0, remaining(deadline, clock=clock)),
        description=f"a ready pod matching {selector} in {namespace}",
        clock=clock,
        sleep=sleep,
    )


__all__ = [
    "ensure_broker",
    "install_values",
    "normalize_authenticators",
    "render_authenticators",
    "wait_for_broker",
]
