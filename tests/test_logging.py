"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from trustboot.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("up", args={"skip_prereqs": False}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("up") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("teardown") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps, lock wait and the result are persisted as one JSON line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("up", target={"kind": "cluster", "name": "conjur-poc"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("inputs", status="success", detail="workload host/app/x")
        op.add_step("prerequisites", status="skipped")
        op.success("Trust bootstrap complete.", changed=2, warnings=["old helm"])

    (record,) = _records(logger)
    assert record["command"] == "up"
    assert record["lock_wait_ms"] == 12
    assert record["target"] == {"kind": "cluster", "name": "conjur-poc"}
    assert record["steps"] == [
        {"name": "inputs", "status": "success", "detail": "workload host/app/x"},
        {"name": "prerequisites", "status": "skipped"},
    ]
    assert record["result"] == {
        "status": "success",
        "message": "Trust bootstrap complete.",
        "changed": 2,
        "warnings": ["old helm"],
    }


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("up", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert record["args"] == {"path": "foo"}
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}  # type: ignore[index]


def test_unhandled_exception_is_recorded_as_error(tmp_path: Path) -> None:
    """An exception escaping the block is logged and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError):
        with logger.operation("up"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    assert record["result"] == {
        "status": "error",
        "message": "boom",
        "changed": 0,
        "errors": ["boom"],
    }


def test_explicit_error_is_not_overwritten(tmp_path: Path) -> None:
    """A result recorded before the exception is kept."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(SystemExit):
        with logger.operation("up") as op:
            op.error("Stage 'broker' failed: timed out", rc=4)
            raise SystemExit(4)

    (record,) = _records(logger)
    assert record["result"]["message"] == "Stage 'broker' failed: timed out"  # type: ignore[index]
    assert record["result"]["rc"] == 4  # type: ignore[index]
