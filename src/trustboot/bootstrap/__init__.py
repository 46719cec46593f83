"""Pipeline stages that establish trust between the cluster and the broker."""
from __future__ import annotations

from .broker import ensure_broker, render_authenticators, wait_for_broker
from .cluster import delete_cluster, ensure_cluster
from .credentials import CredentialStore, bootstrap_admin_key
from .delivery import SecretMapping, build_mapping, install_delivery, verify_delivery
from .export import ExportResult, export_credential, export_environment, remove_exports
from .identity import bind_cluster_identity, grant_workload, validate_audience
from .policy import (
    PolicyDocument,
    PolicyLoadResult,
    PolicyNode,
    application_policy,
    authenticator_policy,
    grant_policy,
    load_policy,
    parse_policy,
)
from .prereqs import ToolReport, check_tools, register_chart_repo
from .secrets import set_variable, variable_id
from .session import SessionManager, Tunnel, establish_session, fetch_broker_certificate

__all__ = [
    # prerequisites
    "ToolReport",
    "check_tools",
    "register_chart_repo",
    # cluster and broker
    "delete_cluster",
    "ensure_cluster",
    "ensure_broker",
    "render_authenticators",
    "wait_for_broker",
    # credentials and session
    "CredentialStore",
    "bootstrap_admin_key",
    "SessionManager",
    "Tunnel",
    "establish_session",
    "fetch_broker_certificate",
    # policy and identity
    "PolicyDocument",
    "PolicyLoadResult",
    "PolicyNode",
    "application_policy",
    "authenticator_policy",
    "grant_policy",
    "load_policy",
    "parse_policy",
    "bind_cluster_identity",
    "grant_workload",
    "validate_audience",
    # secrets and delivery
    "set_variable",
    "variable_id",
    "SecretMapping",
    "build_mapping",
    "install_delivery",
    "verify_delivery",
    # export
    "ExportResult",
    "export_credential",
    "export_environment",
    "remove_exports",
]
