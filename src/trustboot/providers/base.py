"""Subprocess plumbing shared by the command-line tool providers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import CommandFailed, ExternalToolMissing

LOGGER = logging.getLogger(__name__)

MASK = "***"


@dataclass(slots=True)
class CommandRunner:
    """Run external commands, mapping failures onto the error taxonomy.

    ``sensitive`` values passed to :meth:`run` are masked in debug output and
    never included in raised error messages.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
        input_text: str | None = None,
        sensitive: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process."""
        argv = [str(arg) for arg in args]
        prefix = error_prefix or " ".join(argv[:2])
        LOGGER.debug("Running: %s", render_command(argv, sensitive))
        try:
            result = subprocess.run(  # noqa: S603, S607
                argv,
                capture_output=True,
                text=True,
                input=input_text,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExternalToolMissing(argv[0]) from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = _mask(stderr.strip() or stdout.strip(), sensitive)
            raise CommandFailed(prefix, result.returncode, message)
        return result

    def spawn(self, args: Sequence[str], *, log_path: Path) -> subprocess.Popen[str]:
        """Start *args* in the background with its stderr written to *log_path*."""
        argv = [str(arg) for arg in args]
        LOGGER.debug("Spawning: %s (stderr to %s)", " ".join(argv), log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # The child keeps its own copy of the descriptor.
        with log_path.open("w", encoding="utf-8") as log:
            try:
                return subprocess.Popen(  # noqa: S603, S607
                    argv,
                    stdout=subprocess.DEVNULL,
                    stderr=log,
                    text=True,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise ExternalToolMissing(argv[0]) from exc


def render_command(args: Sequence[str], sensitive: Sequence[str] = ()) -> str:
    """Return *args* joined for display with *sensitive* values masked."""
    return " ".join(_mask(arg, sensitive) for arg in args)


def _mask(text: str, sensitive: Sequence[str]) -> str:
    for value in sensitive:
        if value:
            text = text.replace(value, MASK)
    return text


__all__ = ["CommandRunner", "MASK", "render_command"]
