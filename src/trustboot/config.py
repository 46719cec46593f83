"""Configuration loader for trustboot.

Values are read from several sources, with later sources taking precedence:

1. Built-in defaults.
2. ``~/.config/trustboot/config.yml`` (or an override path).
3. Environment variables prefixed with ``TRUSTBOOT_``.
4. Explicit overrides supplied programmatically.

Environment keys use double underscores to express nesting, e.g.::

    export TRUSTBOOT_BROKER__ACCOUNT=demo
    export TRUSTBOOT_IDENTITY__AUTHENTICATOR_ID=dev-cluster

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and passed explicitly through the provisioning pipeline.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load trustboot configuration. Install with "
        "`pip install trustboot` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "TRUSTBOOT_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ClusterConfig:
    """Local kind cluster settings."""

    name: str = "conjur-poc"
    node_image: str = "kindest/node:v1.30.0"
    create_timeout: float = 300.0

    @property
    def context(self) -> str:
        """Return the kubeconfig context kind registers for the cluster."""
        return f"kind-{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "node_image": self.node_image,
            "create_timeout": self.create_timeout,
        }


@dataclass(frozen=True)
class BrokerConfig:
    """Conjur OSS release settings."""

    release: str = "conjur-oss"
    namespace: str = "conjur-system"
    chart: str = "cyberark/conjur-oss"
    repo_name: str = "cyberark"
    repo_url: str = "https://cyberark.github.io/helm-charts"
    account: str = "demo"
    admin_identity: str = "admin"
    authenticators: tuple[str, ...] = ("authn-k8s/dev-cluster", "authn")
    hostname: str = "conjur.myorg.com"
    service: str = "conjur-oss"
    pod_selector: str = "app=conjur-oss"
    container: str = "conjur-oss"
    data_key: str | None = None
    data_key_image: str = "cyberark/conjur"
    ready_timeout: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the data key is masked)."""
        return {
            "release": self.release,
            "namespace": self.namespace,
            "chart": self.chart,
            "repo_name": self.repo_name,
            "repo_url": self.repo_url,
            "account": self.account,
            "admin_identity": self.admin_identity,
            "authenticators": list(self.authenticators),
            "hostname": self.hostname,
            "service": self.service,
            "pod_selector": self.pod_selector,
            "container": self.container,
            "data_key": "***" if self.data_key else None,
            "data_key_image": self.data_key_image,
            "ready_timeout": self.ready_timeout,
        }


@dataclass(frozen=True)
class TunnelConfig:
    """Local port-forward settings."""

    local_port: int = 8443
    remote_port: int = 443
    ready_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local_port": self.local_port,
            "remote_port": self.remote_port,
            "ready_timeout": self.ready_timeout,
        }


@dataclass(frozen=True)
class IdentityConfig:
    """Authenticator and workload identity settings."""

    authenticator_id: str = "dev-cluster"
    workload_namespace: str = "app-ns"
    service_account: str = "default"
    policy_branch: str = "app"
    token_namespace: str = "app-ns"
    token_service_account: str = "default"
    audience: str | None = "kubernetes.default.svc"
    token_duration: str | None = None

    @property
    def authenticator(self) -> str:
        """Return the authenticator name as listed in the broker release."""
        return f"authn-k8s/{self.authenticator_id}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "authenticator_id": self.authenticator_id,
            "workload_namespace": self.workload_namespace,
            "service_account": self.service_account,
            "policy_branch": self.policy_branch,
            "token_namespace": self.token_namespace,
            "token_service_account": self.token_service_account,
            "audience": self.audience,
            "token_duration": self.token_duration,
        }


@dataclass(frozen=True)
class DeliveryConfig:
    """Secrets delivery and verification settings."""

    mode: str = "job"
    release: str = "conjur-secrets-provider"
    chart: str = "cyberark/secrets-provider"
    sidecar_release: str = "conjur-authn-client"
    sidecar_chart: str = "cyberark/conjur-authn-k8s-client"
    k8s_secret: str = "app-secrets"
    job_timeout: float = 180.0
    pod_name: str = "demo"
    pod_image: str = "alpine:3.20"
    pod_timeout: float = 120.0
    mount_path: str = "/conjur/secrets"
    verify_variable: str = "db/creds/url"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "release": self.release,
            "chart": self.chart,
            "sidecar_release": self.sidecar_release,
            "sidecar_chart": self.sidecar_chart,
            "k8s_secret": self.k8s_secret,
            "job_timeout": self.job_timeout,
            "pod_name": self.pod_name,
            "pod_image": self.pod_image,
            "pod_timeout": self.pod_timeout,
            "mount_path": self.mount_path,
            "verify_variable": self.verify_variable,
        }


@dataclass(frozen=True)
class ExportConfig:
    """Local files written for downstream tooling."""

    enabled: bool = True
    credential_file: Path = Path("~/.local/state/trustboot/admin.key").expanduser()
    env_file: Path = Path("~/.conjur_demo_env").expanduser()
    cli_version: str = "8"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "credential_file": str(self.credential_file),
            "env_file": str(self.env_file),
            "cli_version": self.cli_version,
        }


@dataclass(frozen=True)
class ToolsConfig:
    """External executables and their minimum supported versions."""

    kind: str = "kind"
    kubectl: str = "kubectl"
    helm: str = "helm"
    conjur: str = "conjur"
    docker: str = "docker"
    minimum_versions: tuple[tuple[str, str], ...] = ()

    def binary(self, tool: str) -> str:
        """Return the configured executable for *tool*."""
        return cast(str, getattr(self, tool))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "kubectl": self.kubectl,
            "helm": self.helm,
            "conjur": self.conjur,
            "docker": self.docker,
            "minimum_versions": dict(self.minimum_versions),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for trustboot."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path | None
    lock_timeout: float
    cluster: ClusterConfig
    broker: BrokerConfig
    tunnel: TunnelConfig
    identity: IdentityConfig
    secrets: tuple[tuple[str, str], ...]
    delivery: DeliveryConfig
    export: ExportConfig
    tools: ToolsConfig

    @property
    def variables(self) -> dict[str, str]:
        """Return the application secrets keyed by their policy-relative path."""
        return dict(self.secrets)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "lock_timeout": self.lock_timeout,
            "cluster": self.cluster.to_dict(),
            "broker": self.broker.to_dict(),
            "tunnel": self.tunnel.to_dict(),
            "identity": self.identity.to_dict(),
            "secrets": {"variables": {key: "***" for key, _ in self.secrets}},
            "delivery": self.delivery.to_dict(),
            "export": self.export.to_dict(),
            "tools": self.tools.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/trustboot/config.yml",
    "state_dir": "~/.local/state/trustboot",
    "logs_dir": None,  # derived from state_dir when absent
    "templates_dir": None,
    "lock_timeout": 30.0,
    "cluster": {
        "name": "conjur-poc",
        "k8s_version": "v1.30.0",
        "node_image": None,  # derived from k8s_version when absent
        "create_timeout": 300,
    },
    "broker": {
        "release": "conjur-oss",
        "namespace": "conjur-system",
        "chart": "cyberark/conjur-oss",
        "repo_name": "cyberark",
        "repo_url": "https://cyberark.github.io/helm-charts",
        "account": "demo",
        "admin_identity": "admin",
        "authenticators": None,  # derived from identity.authenticator_id
        "hostname": "conjur.myorg.com",
        "service": "conjur-oss",
        "pod_selector": "app=conjur-oss",
        "container": "conjur-oss",
        "data_key": None,
        "data_key_image": "cyberark/conjur",
        "ready_timeout": 120,
    },
    "tunnel": {
        "local_port": 8443,
        "remote_port": 443,
        "ready_timeout": 30,
    },
    "identity": {
        "authenticator_id": "dev-cluster",
        "workload_namespace": "app-ns",
        "service_account": "default",
        "policy_branch": "app",
        "token_namespace": "app-ns",
        "token_service_account": "default",
        "audience": "kubernetes.default.svc",
        "token_duration": None,
    },
    "secrets": {
        "variables": {"db/creds/url": "postgres://localhost"},
    },
    "delivery": {
        "mode": "job",
        "release": "conjur-secrets-provider",
        "chart": "cyberark/secrets-provider",
        "sidecar_release": "conjur-authn-client",
        "sidecar_chart": "cyberark/conjur-authn-k8s-client",
        "k8s_secret": "app-secrets",
        "job_timeout": 180,
        "pod_name": "demo",
        "pod_image": "alpine:3.20",
        "pod_timeout": 120,
        "mount_path": "/conjur/secrets",
        "verify_variable": "db/creds/url",
    },
    "export": {
        "enabled": True,
        "credential_file": None,  # derived from state_dir when absent
        "env_file": "~/.conjur_demo_env",
        "cli_version": "8",
    },
    "tools": {
        "kind": "kind",
        "kubectl": "kubectl",
        "helm": "helm",
        "conjur": "conjur",
        "docker": "docker",
        "minimum_versions": {
            "kubectl": "1.30.0",
            "kind": "0.23.0",
            "helm": "3.8.0",
            "conjur": "8.0.0",
        },
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("cluster", "broker", "tunnel", "identity", "secrets", "delivery", "export", "tools")
}
ALLOWED_DELIVERY_MODES = {"job", "sidecar"}
KNOWN_TOOLS = ("kind", "kubectl", "helm", "conjur", "docker")


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    delivery = _as_dict(raw.get("delivery"), "delivery")
    mode = str(delivery.get("mode", "job"))
    if mode not in ALLOWED_DELIVERY_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_DELIVERY_MODES))
        raise ConfigError(f"Unsupported delivery mode '{mode}'. Allowed: {allowed_modes}.")

    tools = _as_dict(raw.get("tools"), "tools")
    minimums = _as_dict(tools.get("minimum_versions"), "tools.minimum_versions")
    unknown_tools = set(minimums.keys()) - set(KNOWN_TOOLS)
    if unknown_tools:
        joined = ", ".join(sorted(unknown_tools))
        raise ConfigError(f"Unknown tools in tools.minimum_versions: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    cluster_map = _as_dict(raw.get("cluster"), "cluster")
    k8s_version = _expect_name(cluster_map.get("k8s_version", "v1.30.0"), "cluster.k8s_version")
    node_image_value = cluster_map.get("node_image")
    cluster = ClusterConfig(
        name=_expect_name(cluster_map.get("name", "conjur-poc"), "cluster.name"),
        node_image=(
            _expect_name(node_image_value, "cluster.node_image")
            if node_image_value
            else f"kindest/node:{k8s_version}"
        ),
        create_timeout=_expect_positive_float(
            cluster_map.get("create_timeout"), "cluster.create_timeout", default=300.0
        ),
    )

    identity_map = _as_dict(raw.get("identity"), "identity")
    workload_namespace = _expect_name(
        identity_map.get("workload_namespace", "app-ns"), "identity.workload_namespace"
    )
    audience_value = identity_map.get("audience")
    duration_value = identity_map.get("token_duration")
    identity = IdentityConfig(
        authenticator_id=_expect_name(
            identity_map.get("authenticator_id", "dev-cluster"), "identity.authenticator_id"
        ),
        workload_namespace=workload_namespace,
        service_account=_expect_name(
            identity_map.get("service_account", "default"), "identity.service_account"
        ),
        policy_branch=_expect_name(
            identity_map.get("policy_branch", "app"), "identity.policy_branch"
        ),
        token_namespace=_expect_name(
            identity_map.get("token_namespace") or workload_namespace, "identity.token_namespace"
        ),
        token_service_account=_expect_name(
            identity_map.get("token_service_account", "default"),
            "identity.token_service_account",
        ),
        audience=str(audience_value).strip() if audience_value not in (None, "") else None,
        token_duration=str(duration_value) if duration_value not in (None, "") else None,
    )

    broker_map = _as_dict(raw.get("broker"), "broker")
    authenticators = _build_authenticators(broker_map.get("authenticators"), identity)
    data_key_value = broker_map.get("data_key")
    broker = BrokerConfig(
        release=_expect_name(broker_map.get("release", "conjur-oss"), "broker.release"),
        namespace=_expect_name(broker_map.get("namespace", "conjur-system"), "broker.namespace"),
        chart=_expect_name(broker_map.get("chart", "cyberark/conjur-oss"), "broker.chart"),
        repo_name=_expect_name(broker_map.get("repo_name", "cyberark"), "broker.repo_name"),
        repo_url=_expect_name(
            broker_map.get("repo_url", "https://cyberark.github.io/helm-charts"),
            "broker.repo_url",
        ),
        account=_expect_name(broker_map.get("account", "demo"), "broker.account"),
        admin_identity=_expect_name(
            broker_map.get("admin_identity", "admin"), "broker.admin_identity"
        ),
        authenticators=authenticators,
        hostname=_expect_name(broker_map.get("hostname", "conjur.myorg.com"), "broker.hostname"),
        service=_expect_name(broker_map.get("service", "conjur-oss"), "broker.service"),
        pod_selector=_expect_name(
            broker_map.get("pod_selector", "app=conjur-oss"), "broker.pod_selector"
        ),
        container=_expect_name(broker_map.get("container", "conjur-oss"), "broker.container"),
        data_key=str(data_key_value) if data_key_value else None,
        data_key_image=_expect_name(
            broker_map.get("data_key_image", "cyberark/conjur"), "broker.data_key_image"
        ),
        ready_timeout=_expect_positive_float(
            broker_map.get("ready_timeout"), "broker.ready_timeout", default=120.0
        ),
    )

    tunnel_map = _as_dict(raw.get("tunnel"), "tunnel")
    tunnel = TunnelConfig(
        local_port=_expect_port(tunnel_map.get("local_port"), "tunnel.local_port", default=8443),
        remote_port=_expect_port(tunnel_map.get("remote_port"), "tunnel.remote_port", default=443),
        ready_timeout=_expect_positive_float(
            tunnel_map.get("ready_timeout"), "tunnel.ready_timeout", default=30.0
        ),
    )

    secrets_map = _as_dict(raw.get("secrets"), "secrets")
    variables_map = _as_dict(secrets_map.get("variables"), "secrets.variables")
    secrets: dict[str, str] = {}
    for path, value in variables_map.items():
        normalized = path.strip().strip("/")
        if not normalized:
            raise ConfigError("secrets.variables keys must be non-empty variable paths.")
        if value is None:
            raise ConfigError(f"secrets.variables['{normalized}'] must have a value.")
        secrets[normalized] = str(value)

    delivery_map = _as_dict(raw.get("delivery"), "delivery")
    delivery = DeliveryConfig(
        mode=str(delivery_map.get("mode", "job")),
        release=_expect_name(
            delivery_map.get("release", "conjur-secrets-provider"), "delivery.release"
        ),
        chart=_expect_name(delivery_map.get("chart", "cyberark/secrets-provider"), "delivery.chart"),
        sidecar_release=_expect_name(
            delivery_map.get("sidecar_release", "conjur-authn-client"),
            "delivery.sidecar_release",
        ),
        sidecar_chart=_expect_name(
            delivery_map.get("sidecar_chart", "cyberark/conjur-authn-k8s-client"),
            "delivery.sidecar_chart",
        ),
        k8s_secret=_expect_name(delivery_map.get("k8s_secret", "app-secrets"), "delivery.k8s_secret"),
        job_timeout=_expect_positive_float(
            delivery_map.get("job_timeout"), "delivery.job_timeout", default=180.0
        ),
        pod_name=_expect_name(delivery_map.get("pod_name", "demo"), "delivery.pod_name"),
        pod_image=_expect_name(delivery_map.get("pod_image", "alpine:3.20"), "delivery.pod_image"),
        pod_timeout=_expect_positive_float(
            delivery_map.get("pod_timeout"), "delivery.pod_timeout", default=120.0
        ),
        mount_path=_expect_name(
            delivery_map.get("mount_path", "/conjur/secrets"), "delivery.mount_path"
        ).rstrip("/"),
        verify_variable=_expect_name(
            delivery_map.get("verify_variable", "db/creds/url"), "delivery.verify_variable"
        ).strip("/"),
    )
    if delivery.verify_variable not in secrets:
        raise ConfigError(
            f"delivery.verify_variable '{delivery.verify_variable}' is not declared in "
            "secrets.variables."
        )

    export_map = _as_dict(raw.get("export"), "export")
    credential_value = export_map.get("credential_file")
    export = ExportConfig(
        enabled=bool(export_map.get("enabled", True)),
        credential_file=(
            _to_path(credential_value) if credential_value else state_dir / "admin.key"
        ),
        env_file=_to_path(export_map.get("env_file", "~/.conjur_demo_env")),
        cli_version=str(export_map.get("cli_version", "8")),
    )

    tools_map = _as_dict(raw.get("tools"), "tools")
    minimums_map = _as_dict(tools_map.get("minimum_versions"), "tools.minimum_versions")
    tools = ToolsConfig(
        kind=_expect_name(tools_map.get("kind", "kind"), "tools.kind"),
        kubectl=_expect_name(tools_map.get("kubectl", "kubectl"), "tools.kubectl"),
        helm=_expect_name(tools_map.get("helm", "helm"), "tools.helm"),
        conjur=_expect_name(tools_map.get("conjur", "conjur"), "tools.conjur"),
        docker=_expect_name(tools_map.get("docker", "docker"), "tools.docker"),
        minimum_versions=tuple(
            (tool, str(version)) for tool, version in minimums_map.items() if version is not None
        ),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        cluster=cluster,
        broker=broker,
        tunnel=tunnel,
        identity=identity,
        secrets=tuple(secrets.items()),
        delivery=delivery,
        export=export,
        tools=tools,
    )


def _build_authenticators(value: object | None, identity: IdentityConfig) -> tuple[str, ...]:
    """Return the ordered, de-duplicated authenticator set for the broker release."""
    if value is None:
        return (identity.authenticator, "authn")
    if isinstance(value, str):
        items: Sequence[object] = [part for part in value.split(",")]
    else:
        items = _as_sequence(value, "broker.authenticators")
    result: list[str] = []
    for item in items:
        name = str(item).strip()
        if name and name not in result:
            result.append(name)
    if identity.authenticator not in result:
        raise ConfigError(
            f"broker.authenticators must include '{identity.authenticator}' "
            "(derived from identity.authenticator_id)."
        )
    return tuple(result)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if port <= 0 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_name(value: object, key: str) -> str:
    if isinstance(value, bool) or value is None:
        raise ConfigError(f"Expected {key} to be a non-empty string. Got {value!r}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"Expected {key} to be a non-empty string.")
    return text


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BrokerConfig",
    "ClusterConfig",
    "ConfigError",
    "DeliveryConfig",
    "ExportConfig",
    "IdentityConfig",
    "ToolsConfig",
    "TunnelConfig",
    "load_config",
]
