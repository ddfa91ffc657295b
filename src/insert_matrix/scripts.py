"""External script runner.

Runs the reference-engine scripts (``init.py``, ``check.py``) as separate
processes. Scripts are deterministic validators: a non-zero exit, a timeout or
a missing script fails the owning instance and is never retried.
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from insert_matrix.errors import ValidationScriptError

logger = structlog.get_logger(__name__)

INIT_SCRIPT = "init.py"
CHECK_SCRIPT = "check.py"

# Characters of captured output carried into error messages
OUTPUT_TAIL_CHARS = 2000

ProcessRunner = Callable[[list[str], Path, float], "subprocess.CompletedProcess[str]"]


def _run_process(
    args: list[str], cwd: Path, timeout: float
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        args,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def _tail(text: str | bytes | None) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-OUTPUT_TAIL_CHARS:].strip()


@dataclass(frozen=True)
class ScriptResult:
    """Captured result of a successful script run."""

    script: str
    returncode: int
    stdout: str
    stderr: str


class ScriptRunner:
    """Runs scripts from a directory with a fixed interpreter.

    Args:
        scripts_dir: Directory holding the scripts; also the working directory.
        python: Interpreter command used to run the scripts.
        timeout: Seconds allowed per script run.
        runner: Callable ``(args, cwd, timeout)`` that runs the process.
            Defaults to ``subprocess.run``.
    """

    def __init__(
        self,
        scripts_dir: Path,
        python: str,
        timeout: float = 600.0,
        runner: ProcessRunner | None = None,
    ) -> None:
        self._scripts_dir = Path(scripts_dir)
        self._python = python
        self._timeout = timeout
        self._run = runner or _run_process

    def run(
        self,
        script_name: str,
        args: Sequence[str],
        description: str,
    ) -> ScriptResult:
        """Run a script and wait for it to finish.

        Args:
            script_name: File name of the script inside scripts_dir.
            args: Arguments passed to the script.
            description: Human-readable purpose, used in logs and errors.

        Returns:
            ScriptResult of the successful run.

        Raises:
            ValidationScriptError: If the script is missing, times out or
                exits non-zero.
        """
        script_path = self._scripts_dir / script_name
        log = logger.bind(script=script_name, description=description)

        if not script_path.is_file():
            msg = f"Script not found: {script_path}"
            raise ValidationScriptError(msg, script=script_name)

        command = [self._python, str(script_path), *args]
        log.info("script_started")
        try:
            completed = self._run(command, self._scripts_dir, self._timeout)
        except subprocess.TimeoutExpired as e:
            log.error("script_timed_out", timeout=self._timeout)
            msg = f"{description}: timed out after {self._timeout:.0f}s"
            raise ValidationScriptError(
                msg, script=script_name, details={"output": _tail(e.output)}
            ) from e
        except OSError as e:
            msg = f"{description}: cannot start script: {e}"
            raise ValidationScriptError(msg, script=script_name) from e

        log.debug("script_output", stdout=completed.stdout, stderr=completed.stderr)
        if completed.returncode != 0:
            log.error("script_failed", returncode=completed.returncode)
            msg = f"{description}: script exited with status {completed.returncode}"
            raise ValidationScriptError(
                msg,
                script=script_name,
                returncode=completed.returncode,
                details={"stderr": _tail(completed.stderr) or _tail(completed.stdout)},
            )

        log.info("script_succeeded")
        return ScriptResult(
            script=script_name,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )


__all__ = [
    "CHECK_SCRIPT",
    "INIT_SCRIPT",
    "ScriptResult",
    "ScriptRunner",
]
