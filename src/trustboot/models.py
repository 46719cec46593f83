"""Data model shared by the provisioning stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

BrokerAction = Literal["install", "upgrade"]
CredentialSource = Literal["created", "retrieved"]
DeliveryMode = Literal["job", "sidecar"]


@dataclass(slots=True, frozen=True)
class ClusterHandle:
    """A running local cluster."""

    name: str
    node_image: str
    context: str
    created: bool


@dataclass(slots=True, frozen=True)
class BrokerRelease:
    """Outcome of reconciling the broker release."""

    release: str
    namespace: str
    authenticators: tuple[str, ...]
    action: BrokerAction
    data_key_generated: bool = False


@dataclass(slots=True, frozen=True)
class BrokerEndpoint:
    """Where the ready broker can be reached."""

    release: str
    namespace: str
    service: str
    hostname: str
    port: int
    account: str

    @property
    def url(self) -> str:
        """Return the operator-facing URL (through the tunnel)."""
        return f"https://{self.hostname}:{self.port}"

    @property
    def in_cluster_url(self) -> str:
        """Return the URL workloads inside the cluster use."""
        return f"https://{self.service}.{self.namespace}.svc.cluster.local"

    def with_hostname(self, hostname: str) -> BrokerEndpoint:
        """Return a copy addressed by *hostname*."""
        return BrokerEndpoint(
            release=self.release,
            namespace=self.namespace,
            service=self.service,
            hostname=hostname,
            port=self.port,
            account=self.account,
        )


@dataclass(slots=True, frozen=True)
class AdminCredential:
    """The bootstrap admin API key for an account."""

    account: str
    identity: str
    api_key: str = field(repr=False)
    source: CredentialSource

    def __repr__(self) -> str:
        """Return a representation that never reveals the key."""
        return (
            f"AdminCredential(account={self.account!r}, identity={self.identity!r}, "
            f"api_key='***', source={self.source!r})"
        )


class AccountStatus(str, Enum):
    """Classification of an account-creation attempt."""

    CREATED = "created"
    EXISTS = "exists"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class AccountCreateResult:
    """Typed result of asking the broker to create an account."""

    status: AccountStatus
    api_key: str | None = field(default=None, repr=False)
    detail: str = ""


@dataclass(slots=True, frozen=True)
class Session:
    """An authenticated admin session against the broker."""

    endpoint: BrokerEndpoint
    account: str
    hostname: str
    identity: str

    def matches(self, hostname: str) -> bool:
        """Return ``True`` when this session is valid for *hostname*."""
        return self.hostname.lower() == hostname.strip().lower()


@dataclass(slots=True, frozen=True)
class WorkloadIdentity:
    """A cluster workload identity mapped to a broker host."""

    namespace: str
    service_account: str
    policy_branch: str

    @property
    def host_id(self) -> str:
        """Return the host id inside the policy branch."""
        return f"system:serviceaccount:{self.namespace}:{self.service_account}"

    @property
    def qualified_host(self) -> str:
        """Return the host id qualified by its policy branch."""
        return f"{self.policy_branch}/{self.host_id}"

    @property
    def login(self) -> str:
        """Return the authenticator login name for the workload."""
        return f"host/{self.qualified_host}"


@dataclass(slots=True, frozen=True)
class ClusterFacts:
    """Facts the authenticator needs to validate workload tokens."""

    api_url: str
    ca_cert: str
    sa_token: str = field(repr=False)

    def __repr__(self) -> str:
        """Return a representation that never reveals the token."""
        return f"ClusterFacts(api_url={self.api_url!r}, ca_cert=<{len(self.ca_cert)} chars>, sa_token='***')"


@dataclass(slots=True, frozen=True)
class VariableBinding:
    """A value written to a broker variable."""

    path: str
    value: str = field(repr=False)


@dataclass(slots=True, frozen=True)
class DeliveryReport:
    """Outcome of end-to-end secret delivery verification."""

    mode: DeliveryMode
    release: str
    expected: str = field(repr=False)
    observed: str = field(repr=False)
    path: str

    @property
    def matched(self) -> bool:
        """Return ``True`` when the workload observed the expected value."""
        return self.expected == self.observed


__all__ = [
    "AccountCreateResult",
    "AccountStatus",
    "AdminCredential",
    "BrokerAction",
    "BrokerEndpoint",
    "BrokerRelease",
    "ClusterFacts",
    "ClusterHandle",
    "CredentialSource",
    "DeliveryMode",
    "DeliveryReport",
    "Session",
    "VariableBinding",
    "WorkloadIdentity",
]
