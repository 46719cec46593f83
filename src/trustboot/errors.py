"""Failure taxonomy shared by providers, pipeline stages and the CLI.

Every error is fatal for the pipeline. Recovery is a fresh run from the
start, which is safe because each stage converges on its desired state.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class TrustbootError(RuntimeError):
    """Base class for errors surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        """Record the failure *message* and the pipeline *stage* (if known)."""
        super().__init__(message)
        self.message = message
        self.stage = stage


class ValidationError(TrustbootError):
    """Raised when inputs are inconsistent before any remote call is made."""

    exit_code = ExitCode.VALIDATION


class ExternalToolMissing(TrustbootError):
    """Raised when a required command-line tool is not installed."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, tool: str, *, stage: str | None = None) -> None:
        """Describe the missing *tool*."""
        super().__init__(f"Required tool '{tool}' was not found on PATH.", stage=stage)
        self.tool = tool


class CommandFailed(TrustbootError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        command: str,
        returncode: int,
        output: str,
        *,
        stage: str | None = None,
    ) -> None:
        """Capture the failing *command*, its exit status and output."""
        detail = output.strip() or "no output"
        super().__init__(f"{command} failed (exit {returncode}): {detail}", stage=stage)
        self.command = command
        self.returncode = returncode
        self.output = output


class RemoteUnready(TrustbootError):
    """Raised when a readiness or completion wait exceeds its timeout."""

    def __init__(self, description: str, timeout: float, *, stage: str | None = None) -> None:
        """Describe what never became ready within *timeout* seconds."""
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {description}.",
            stage=stage,
        )
        self.description = description
        self.timeout = timeout


class LocalStateError(TrustbootError):
    """Raised when a local file or directory under our control cannot be written."""

    exit_code = ExitCode.ENVIRONMENT


class CredentialBootstrapFailure(TrustbootError):
    """Raised when neither account creation nor key retrieval yields a key."""

    exit_code = ExitCode.CREDENTIAL


class AuthenticationFailure(TrustbootError):
    """Raised when the broker rejects a login."""

    exit_code = ExitCode.CREDENTIAL


class HostnameMismatch(AuthenticationFailure):
    """Raised when the session hostname is not covered by the broker certificate."""


class PolicyConflict(TrustbootError):
    """Raised when the broker rejects a policy document (message is verbatim)."""


class DeliveryMismatch(TrustbootError):
    """Raised when the delivered secret differs from the expected value."""

    exit_code = ExitCode.VERIFICATION


__all__ = [
    "AuthenticationFailure",
    "CommandFailed",
    "CredentialBootstrapFailure",
    "DeliveryMismatch",
    "ExternalToolMissing",
    "HostnameMismatch",
    "LocalStateError",
    "PolicyConflict",
    "RemoteUnready",
    "TrustbootError",
    "ValidationError",
]
