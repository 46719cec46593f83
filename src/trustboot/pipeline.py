"""The provisioning pipeline: ordered, idempotent stages sharing one context.

Each stage's postcondition is the next stage's precondition, so the stages
run strictly in order and the first failure ends the run. Nothing is rolled
back; re-running the whole pipeline is the recovery path because every
stage converges on its desired state.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from .bootstrap.broker import ensure_broker
from .bootstrap.cluster import delete_cluster, ensure_cluster
from .bootstrap.credentials import bootstrap_admin_key
from .bootstrap.delivery import SecretMapping, build_mapping, install_delivery, verify_delivery
from .bootstrap.export import (
    ExportResult,
    export_credential,
    export_environment,
    remove_exports,
)
from .bootstrap.identity import (
    authenticator_url,
    bind_cluster_identity,
    grant_workload,
    validate_audience,
)
from .bootstrap.policy import (
    application_policy,
    authenticator_group,
    authenticator_policy,
    load_policy,
)
from .bootstrap.prereqs import ToolReport, check_tools, register_chart_repo
from .bootstrap.secrets import set_variable, variable_id
from .bootstrap.session import (
    Resolver,
    SessionManager,
    Tunnel,
    fetch_broker_certificate,
    require_loopback,
    resolve_host,
)
from .config import AppConfig
from .errors import LocalStateError, TrustbootError, ValidationError
from .logging import OperationScope
from .models import (
    AdminCredential,
    BrokerEndpoint,
    BrokerRelease,
    ClusterFacts,
    ClusterHandle,
    DeliveryReport,
    Session,
    VariableBinding,
    WorkloadIdentity,
)
from .providers import (
    CommandRunner,
    ConjurAdmin,
    ConjurCLI,
    HelmProvider,
    KindProvider,
    KubectlProvider,
)
from .templates import TemplateEngine, TemplateError
from .tls import BrokerCertificate, TLSValidationSeverity, require_hostname

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

PIDFILE_NAME = "port-forward.pid"
WORKDIR_NAME = "work"


@dataclass(slots=True)
class Providers:
    """The external collaborators, all sharing one command runner."""

    runner: CommandRunner
    kind: KindProvider
    kubectl: KubectlProvider
    helm: HelmProvider
    conjur: ConjurCLI
    admin: ConjurAdmin

    @classmethod
    def from_config(cls, config: AppConfig, runner: CommandRunner | None = None) -> Providers:
        """Build providers bound to the configured cluster context and binaries."""
        runner = runner or CommandRunner()
        tools = config.tools
        kubectl = KubectlProvider(
            runner=runner,
            binary=tools.kubectl,
            context=config.cluster.context,
        )
        return cls(
            runner=runner,
            kind=KindProvider(runner=runner, binary=tools.kind),
            kubectl=kubectl,
            helm=HelmProvider(
                runner=runner,
                binary=tools.helm,
                kube_context=config.cluster.context,
            ),
            conjur=ConjurCLI(runner=runner, binary=tools.conjur),
            admin=ConjurAdmin(
                kubectl=kubectl,
                namespace=config.broker.namespace,
                container=config.broker.container,
                runner=runner,
                docker_binary=tools.docker,
                data_key_image=config.broker.data_key_image,
            ),
        )


@dataclass(slots=True)
class PipelineContext:
    """Explicit state threaded through the stages of one run."""

    config: AppConfig
    providers: Providers
    templates: TemplateEngine
    narrate: Callable[[str], None] = LOGGER.info
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    resolver: Resolver = resolve_host
    connect: Callable[[int], bool] | None = None
    sessions: SessionManager | None = None
    # Filled in as stages complete.
    audience: str | None = None
    workload: WorkloadIdentity | None = None
    mapping: list[SecretMapping] = field(default_factory=list)
    tools: list[ToolReport] = field(default_factory=list)
    cluster: ClusterHandle | None = None
    release: BrokerRelease | None = None
    endpoint: BrokerEndpoint | None = None
    credential: AdminCredential | None = None
    certificate: BrokerCertificate | None = None
    session: Session | None = None
    facts: ClusterFacts | None = None
    bindings: list[VariableBinding] = field(default_factory=list)
    delivery_release: str | None = None
    report: DeliveryReport | None = None
    exports: ExportResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def pidfile(self) -> Path:
        """Return where the tunnel process id is recorded."""
        return self.config.state_dir / PIDFILE_NAME

    @property
    def workdir(self) -> Path:
        """Return the scratch directory for files handed to collaborators."""
        return self.config.state_dir / WORKDIR_NAME


StageFunc = Callable[[PipelineContext, ExitStack], str]


@dataclass(slots=True, frozen=True)
class Stage:
    """A named pipeline step."""

    name: str
    description: str
    run: StageFunc
    skippable: bool = False


# ----------------------------------------------------------------------
# Stages
# ----------------------------------------------------------------------

def _stage_inputs(ctx: PipelineContext, stack: ExitStack) -> str:
    config = ctx.config
    identity = config.identity
    in_cluster = BrokerEndpoint(
        release=config.broker.release,
        namespace=config.broker.namespace,
        service=config.broker.service,
        hostname=config.broker.hostname,
        port=config.tunnel.local_port,
        account=config.broker.account,
    ).in_cluster_url
    ctx.audience = validate_audience(
        identity.audience,
        authenticator_url(in_cluster, identity.authenticator_id),
    )
    ctx.workload = WorkloadIdentity(
        namespace=identity.workload_namespace,
        service_account=identity.service_account,
        policy_branch=identity.policy_branch,
    )
    ctx.mapping = build_mapping(identity.policy_branch, list(config.variables))
    return f"workload {ctx.workload.login}"


def _stage_prerequisites(ctx: PipelineContext, stack: ExitStack) -> str:
    ctx.tools = check_tools(ctx.config.tools, runner=ctx.providers.runner)
    for report in ctx.tools:
        if report.warning:
            ctx.warnings.append(report.warning)
    broker = ctx.config.broker
    register_chart_repo(ctx.providers.helm, broker.repo_name, broker.repo_url)
    found = ", ".join(f"{item.tool} {item.version or '?'}" for item in ctx.tools)
    return f"{found}; repo {broker.repo_name} registered"


def _stage_cluster(ctx: PipelineContext, stack: ExitStack) -> str:
    cluster = ctx.config.cluster
    ctx.cluster = ensure_cluster(
        ctx.providers.kind,
        ctx.providers.kubectl,
        name=cluster.name,
        node_image=cluster.node_image,
        wait_seconds=cluster.create_timeout,
    )
    verb = "created" if ctx.cluster.created else "reused"
    return f"{verb} {ctx.cluster.name} ({ctx.cluster.context})"


def _stage_broker(ctx: PipelineContext, stack: ExitStack) -> str:
    ctx.release, ctx.endpoint = ensure_broker(
        ctx.providers.helm,
        ctx.providers.kubectl,
        ctx.providers.admin,
        ctx.config.broker,
        port=ctx.config.tunnel.local_port,
        clock=ctx.clock,
        sleep=ctx.sleep,
    )
    authenticators = ",".join(ctx.release.authenticators)
    return f"{ctx.release.action} {ctx.release.release} [{authenticators}]"


def _stage_credentials(ctx: PipelineContext, stack: ExitStack) -> str:
    broker = ctx.config.broker
    ctx.credential = bootstrap_admin_key(
        ctx.providers.admin,
        ctx.providers.kubectl,
        namespace=broker.namespace,
        selector=broker.pod_selector,
        account=broker.account,
        identity=broker.admin_identity,
    )
    if ctx.config.export.enabled:
        ctx.exports = export_credential(ctx.config.export, ctx.credential)
    return f"{ctx.credential.source} key for {broker.account}:user:{broker.admin_identity}"


def _stage_session(ctx: PipelineContext, stack: ExitStack) -> str:
    endpoint = _need(ctx.endpoint, "the broker endpoint")
    credential = _need(ctx.credential, "the admin credential")
    ctx.certificate = fetch_broker_certificate(
        ctx.providers.kubectl, endpoint.namespace, endpoint.release
    )
    validity = ctx.certificate.validity()
    if validity.severity is not TLSValidationSeverity.OK:
        ctx.warnings.append(validity.message)
    require_hostname(ctx.certificate, endpoint.hostname)
    require_loopback(endpoint.hostname, resolver=ctx.resolver)
    tunnel = Tunnel(
        ctx.providers.kubectl,
        namespace=endpoint.namespace,
        service=endpoint.service,
        local_port=ctx.config.tunnel.local_port,
        remote_port=ctx.config.tunnel.remote_port,
        pidfile=ctx.pidfile,
        ready_timeout=ctx.config.tunnel.ready_timeout,
        runner=ctx.providers.runner,
        connect=ctx.connect,
        clock=ctx.clock,
        sleep=ctx.sleep,
    )
    stack.enter_context(tunnel)
    if ctx.sessions is None:
        ctx.sessions = SessionManager(ctx.providers.conjur)
    # Closing the tunnel ends the session too.
    stack.callback(ctx.sessions.invalidate)
    ctx.session = ctx.sessions.ensure(endpoint, credential, certificate=ctx.certificate)
    return f"{ctx.session.identity}@{endpoint.url}"


def _stage_authenticator_policy(ctx: PipelineContext, stack: ExitStack) -> str:
    document = authenticator_policy(ctx.templates, ctx.config.identity.authenticator_id)
    result = load_policy(ctx.providers.conjur, document, workdir=_workdir(ctx))
    return f"{result.document} -> {result.branch}"


def _stage_cluster_identity(ctx: PipelineContext, stack: ExitStack) -> str:
    ctx.facts = bind_cluster_identity(
        ctx.providers.kubectl,
        ctx.providers.conjur,
        ctx.templates,
        ctx.config.identity,
        audience=ctx.audience,
    )
    return f"api-url {ctx.facts.api_url}"


def _stage_application_policy(ctx: PipelineContext, stack: ExitStack) -> str:
    workload = _need(ctx.workload, "the workload identity")
    document = application_policy(
        ctx.templates,
        workload.policy_branch,
        hosts=[workload.host_id],
        variables=list(ctx.config.variables),
    )
    result = load_policy(ctx.providers.conjur, document, workdir=_workdir(ctx))
    return f"{result.document} -> {result.branch}"


def _stage_workload_grant(ctx: PipelineContext, stack: ExitStack) -> str:
    workload = _need(ctx.workload, "the workload identity")
    group = authenticator_group(ctx.config.identity.authenticator_id)
    grant_workload(ctx.providers.conjur, ctx.templates, workload, group)
    return f"{workload.qualified_host} in {group}"


def _stage_secrets(ctx: PipelineContext, stack: ExitStack) -> str:
    branch = ctx.config.identity.policy_branch
    ctx.bindings = [
        set_variable(ctx.providers.conjur, variable_id(branch, path), value)
        for path, value in ctx.config.secrets
    ]
    return ", ".join(binding.path for binding in ctx.bindings)


def _stage_delivery(ctx: PipelineContext, stack: ExitStack) -> str:
    endpoint = _need(ctx.endpoint, "the broker endpoint")
    workload = _need(ctx.workload, "the workload identity")
    ctx.delivery_release = install_delivery(
        ctx.providers.helm,
        ctx.providers.kubectl,
        ctx.templates,
        ctx.config.delivery,
        endpoint=endpoint,
        workload=workload,
        mapping=ctx.mapping,
        authenticator_id=ctx.config.identity.authenticator_id,
        audience=ctx.audience,
        workdir=_workdir(ctx),
    )
    return f"{ctx.config.delivery.mode} via {ctx.delivery_release}"


def _stage_verification(ctx: PipelineContext, stack: ExitStack) -> str:
    workload = _need(ctx.workload, "the workload identity")
    delivery = ctx.config.delivery
    ctx.report = verify_delivery(
        ctx.providers.kubectl,
        ctx.templates,
        delivery,
        workload=workload,
        mapping=ctx.mapping,
        expected=ctx.config.variables[delivery.verify_variable],
        release=ctx.delivery_release or delivery.release,
    )
    return f"{ctx.report.path} matches"


def _stage_export(ctx: PipelineContext, stack: ExitStack) -> str:
    credential = _need(ctx.credential, "the admin credential")
    export = ctx.config.export
    if not export.enabled:
        return "disabled"
    ctx.exports = export_environment(
        ctx.templates,
        export,
        credential=credential,
        broker=ctx.config.broker,
        identity=ctx.config.identity,
        result=ctx.exports,
    )
    written = len(ctx.exports.written)
    return f"{written} file(s) written, {len(ctx.exports.unchanged)} unchanged"


def _need(value: T | None, what: str) -> T:
    if value is None:
        raise TrustbootError(f"Internal ordering error: {what} is not available.")
    return value


def _workdir(ctx: PipelineContext) -> Path:
    ctx.workdir.mkdir(parents=True, exist_ok=True)
    return ctx.workdir


STAGES: tuple[Stage, ...] = (
    Stage("inputs", "Validate inputs", _stage_inputs),
    Stage("prerequisites", "Check tools and chart repository", _stage_prerequisites, skippable=True),
    Stage("cluster", "Spin up or reuse the cluster", _stage_cluster),
    Stage("broker", "Install or upgrade the secrets broker", _stage_broker),
    Stage("credentials", "Obtain the admin API key", _stage_credentials),
    Stage("session", "Open the tunnel and log in", _stage_session),
    Stage("authenticator-policy", "Define the authenticator webservice", _stage_authenticator_policy),
    Stage("cluster-identity", "Store cluster facts in the authenticator", _stage_cluster_identity),
    Stage("application-policy", "Declare the workload host and variables", _stage_application_policy),
    Stage("workload-grant", "Grant the workload use of the authenticator", _stage_workload_grant),
    Stage("secrets", "Write secret values", _stage_secrets),
    Stage("delivery", "Install the delivery mechanism", _stage_delivery),
    Stage("verification", "Verify delivery from the demo workload", _stage_verification),
    Stage("export", "Write the environment file", _stage_export),
)


class Pipeline:
    """Run :data:`STAGES` in order, recording each as a step of *op*."""

    def __init__(self, stages: Sequence[Stage] = STAGES) -> None:
        """Use *stages* (in order)."""
        self.stages = tuple(stages)

    def run(
        self,
        ctx: PipelineContext,
        op: OperationScope,
        *,
        skip_prereqs: bool = False,
    ) -> PipelineContext:
        """Execute every stage; the tunnel (if opened) is closed on exit."""
        with ExitStack() as stack:
            for index, stage in enumerate(self.stages, start=1):
                if stage.skippable and skip_prereqs:
                    ctx.narrate(f"{index}. {stage.description} (skipped)")
                    op.add_step(stage.name, status="skipped")
                    continue
                ctx.narrate(f"{index}. {stage.description}")
                try:
                    detail = stage.run(ctx, stack)
                except TrustbootError as exc:
                    if exc.stage is None:
                        exc.stage = stage.name
                    op.add_step(stage.name, status="error", detail=exc.message)
                    raise
                except TemplateError as exc:
                    op.add_step(stage.name, status="error", detail=str(exc))
                    raise ValidationError(str(exc), stage=stage.name) from exc
                except OSError as exc:
                    message = f"Local file operation failed: {exc}"
                    op.add_step(stage.name, status="error", detail=message)
                    raise LocalStateError(message, stage=stage.name) from exc
                op.add_step(stage.name, status="success", detail=detail)
                LOGGER.debug("stage %s: %s", stage.name, detail)
        return ctx


def teardown(ctx: PipelineContext, op: OperationScope) -> list[str]:
    """Stop stray tunnels, delete the cluster and remove exported files."""
    config = ctx.config
    actions: list[str] = []
    tunnel = Tunnel(
        ctx.providers.kubectl,
        namespace=config.broker.namespace,
        service=config.broker.service,
        local_port=config.tunnel.local_port,
        remote_port=config.tunnel.remote_port,
        pidfile=ctx.pidfile,
        ready_timeout=config.tunnel.ready_timeout,
        runner=ctx.providers.runner,
    )
    stopped = tunnel.terminate_stale()
    op.add_step("tunnel", status="success", detail=f"{len(stopped)} stopped")
    if stopped:
        actions.append(f"stopped {len(stopped)} port-forward process(es)")

    ctx.narrate(f"Deleting cluster {config.cluster.name}")
    try:
        deleted = delete_cluster(ctx.providers.kind, config.cluster.name)
    except TrustbootError as exc:
        exc.stage = exc.stage or "cluster"
        op.add_step("cluster", status="error", detail=exc.message)
        raise
    op.add_step("cluster", status="success", detail="deleted" if deleted else "absent")
    actions.append(f"cluster {config.cluster.name} {'deleted' if deleted else 'not present'}")

    removed = remove_exports(config.export)
    op.add_step("export", status="success", detail=f"{len(removed)} removed")
    actions.extend(f"removed {path}" for path in removed)
    return actions


__all__ = [
    "Pipeline",
    "PipelineContext",
    "Providers",
    "STAGES",
    "Stage",
    "teardown",
]
