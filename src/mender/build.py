"""Build process boundary.

Runs the external toolchain build command in a workspace and classifies the
result. Nothing here raises on a failed, missing or hung build; every case
becomes a ``BuildOutcome`` with a diagnostic the repair loop can read.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

from mender.exceptions import BuildInvocationError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
LAUNCH_FAILURE_EXIT_CODE = -1

BuildCommand = Union[str, Sequence[str]]


@dataclass(frozen=True)
class SuccessHeuristic:
    """Decides whether a finished build succeeded.

    A success marker in the output always wins. Otherwise, when the exit code
    is authoritative, success means exit code 0. Otherwise the output must
    contain none of the error tokens.

    Attributes:
        success_markers: Substrings that mark a successful compile.
        error_tokens: Substrings that mark a failure in text-only mode.
        exit_code_authoritative: Trust the process exit code.
    """

    success_markers: tuple[str, ...] = ("Compiled", "Successfully compiled")
    error_tokens: tuple[str, ...] = ("error", "Error")
    exit_code_authoritative: bool = True

    @classmethod
    def text_only(cls) -> SuccessHeuristic:
        """Judge by output text alone, ignoring the exit code."""
        return cls(exit_code_authoritative=False)

    def evaluate(self, exit_code: int, output: str) -> bool:
        if any(marker in output for marker in self.success_markers):
            return True
        if self.exit_code_authoritative:
            return exit_code == 0
        return not any(token in output for token in self.error_tokens)


@dataclass(frozen=True)
class BuildOutcome:
    """Result of one build invocation.

    Attributes:
        exit_code: Process exit code; 124 on timeout, -1 if it never started.
        stdout: Captured standard output.
        stderr: Captured standard error (or a synthetic diagnostic).
        succeeded: Verdict of the SuccessHeuristic.
        timed_out: The process was killed after the timeout.
        launched: The process started at all.
        duration: Wall-clock seconds.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    succeeded: bool = False
    timed_out: bool = False
    launched: bool = True
    duration: float = 0.0

    @property
    def combined_output(self) -> str:
        """stdout and stderr joined, skipping empty parts."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    @classmethod
    def failure(cls, message: str, *, exit_code: int = LAUNCH_FAILURE_EXIT_CODE) -> BuildOutcome:
        """Build a failed outcome for a build that could not run."""
        return cls(exit_code=exit_code, stderr=message, succeeded=False, launched=False)


@runtime_checkable
class Builder(Protocol):
    """Anything that can build a workspace."""

    def run(self, workspace: str | Path) -> BuildOutcome: ...


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class BuildRunner:
    """Runs a build command and turns the result into a BuildOutcome.

    Args:
        command: Shell string (run through the shell) or argv list.
        timeout: Seconds before the process is killed.
        heuristic: Success rule. Defaults to exit-code authoritative.
        env: Extra environment variables layered over ``os.environ``.
    """

    def __init__(
        self,
        command: BuildCommand,
        timeout: float = 300.0,
        heuristic: SuccessHeuristic | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("build command must not be empty")
        self.command = command
        self.timeout = timeout
        self.heuristic = heuristic or SuccessHeuristic()
        self.env = dict(env) if env else {}

    def describe(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return shlex.join(self.command)

    def run(self, workspace: str | Path) -> BuildOutcome:
        """Run the build in *workspace*.

        Returns:
            A BuildOutcome. Never raises for process-level failures.
        """
        logger.debug("Running build %r in %s", self.describe(), workspace)
        started = time.monotonic()
        try:
            proc = self._launch(workspace)
        except subprocess.TimeoutExpired as exc:
            duration = time.monotonic() - started
            logger.warning("Build timed out after %.1fs", duration)
            stderr = _as_text(exc.stderr)
            note = f"Build timed out after {self.timeout}s"
            return BuildOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_as_text(exc.stdout),
                stderr=f"{stderr}\n{note}" if stderr else note,
                succeeded=False,
                timed_out=True,
                duration=duration,
            )
        except BuildInvocationError as exc:
            logger.warning("Build could not start: %s", exc)
            return BuildOutcome(
                exit_code=LAUNCH_FAILURE_EXIT_CODE,
                stderr=str(exc),
                succeeded=False,
                launched=False,
                duration=time.monotonic() - started,
            )

        outcome = BuildOutcome(
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration=time.monotonic() - started,
        )
        succeeded = self.heuristic.evaluate(proc.returncode, outcome.combined_output)
        logger.debug(
            "Build finished: exit=%d succeeded=%s (%.2fs)",
            proc.returncode,
            succeeded,
            outcome.duration,
        )
        return replace(outcome, succeeded=succeeded)

    def _launch(self, workspace: str | Path) -> subprocess.CompletedProcess[str]:
        """Start the build and wait for it.

        Raises:
            BuildInvocationError: If the process cannot be started.
            subprocess.TimeoutExpired: If it outlives ``timeout``.
        """
        shell = isinstance(self.command, str)
        env = {**os.environ, **self.env} if self.env else None
        try:
            return subprocess.run(
                self.command if shell else list(self.command),
                shell=shell,
                cwd=str(workspace),
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as exc:
            raise BuildInvocationError(f"Build command could not be started: {exc}") from exc
