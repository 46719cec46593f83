"""Typer-powered command line for ``trustboot``.

``trustboot up`` provisions (or re-converges) the whole local trust chain:
kind cluster, Conjur OSS broker, admin credential, authenticator policy,
workload grant, secrets and their delivery into a demo pod. It is safe to
re-run after any failure. ``trustboot teardown`` removes the cluster and
the exported files.
"""
from __future__ import annotations

import textwrap
from dataclasses import dataclass
from typing import NoReturn

import typer
from rich.console import Console

from .config import AppConfig, ConfigError, load_config
from .errors import TrustbootError
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .pipeline import Pipeline, PipelineContext, Providers, teardown
from .templates import TemplateEngine

console = Console()

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Bootstrap trust between a local Kubernetes cluster and a Conjur OSS
        secrets broker.

        Configuration is read from ~/.config/trustboot/config.yml (or the
        file named by TRUSTBOOT_CONFIG_FILE) and TRUSTBOOT_* environment
        variables.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    templates: TemplateEngine
    providers: Providers


def _ensure_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config()
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.state_dir, config.lock_timeout),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        providers=Providers.from_config(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx)


def _pipeline_context(runtime: RuntimeContext) -> PipelineContext:
    return PipelineContext(
        config=runtime.config,
        providers=runtime.providers,
        templates=runtime.templates,
        narrate=console.print,
    )


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:  # noqa: D401 - Typer displays help for us.
    """Entry point callback invoked for every CLI execution."""
    _ensure_runtime(ctx)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.PROVIDER),
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _stage_error(op: OperationScope, exc: TrustbootError) -> NoReturn:
    stage = exc.stage or "unknown"
    _command_error(
        op,
        f"Stage '{stage}' failed: {exc.message}",
        rc=int(exc.exit_code),
        errors=[exc.message],
    )


@app.command()
def up(
    ctx: typer.Context,
    skip_prereqs: bool = typer.Option(
        False,
        "--skip-prereqs",
        "-s",
        help="Skip the tool checks and chart repository registration.",
    ),
) -> None:
    """Provision the cluster, broker, policies and secret delivery."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "up",
        args={"skip_prereqs": skip_prereqs},
        target={
            "kind": "cluster",
            "name": config.cluster.name,
            "account": config.broker.account,
        },
    ) as op:
        try:
            with runtime.locks.pipeline_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                pipeline_ctx = _pipeline_context(runtime)
                Pipeline().run(pipeline_ctx, op, skip_prereqs=skip_prereqs)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except TrustbootError as exc:
            _stage_error(op, exc)

        for warning in pipeline_ctx.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        report = pipeline_ctx.report
        if report is not None:
            console.print(
                f"[green]Delivered {report.path} to pod "
                f"'{config.delivery.pod_name}' ({report.mode}).[/green]"
            )
        if pipeline_ctx.endpoint is not None:
            console.print(
                f"Broker {pipeline_ctx.endpoint.url} (account '{config.broker.account}')"
            )
        op.success(
            "Trust bootstrap complete.",
            changed=len(pipeline_ctx.exports.written) if pipeline_ctx.exports else 0,
            warnings=pipeline_ctx.warnings,
            context={
                "cluster": config.cluster.name,
                "release": config.broker.release,
                "delivery": config.delivery.mode,
            },
        )


@app.command("teardown")
def teardown_command(ctx: typer.Context) -> None:
    """Delete the cluster and remove the exported credential files."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "teardown",
        target={"kind": "cluster", "name": config.cluster.name},
    ) as op:
        try:
            with runtime.locks.pipeline_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                actions = teardown(_pipeline_context(runtime), op)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except TrustbootError as exc:
            _stage_error(op, exc)
        for action in actions:
            console.print(f"- {action}")
        console.print("[green]Teardown complete.[/green]")
        op.success("Teardown complete.", changed=len(actions))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
