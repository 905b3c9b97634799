"""RepairSession: generate an artifact, then repair it until it builds.

A session owns one workspace, one history session id and its own capability
registry scoped to that workspace. Sessions are independent, so
``run_sessions`` can run many of them on a thread pool.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from mender.build import BuildRunner
from mender.capabilities.defaults import default_registry
from mender.capabilities.dispatcher import CapabilityDispatcher
from mender.capabilities.files import write_source
from mender.config import MenderConfig
from mender.exceptions import OracleCommunicationError, OracleResponseError, RepairExhaustedError
from mender.history.sql import SqlHistoryStore
from mender.history.store import FileHistoryStore
from mender.prompts.repair import GENERATE_SYSTEM, build_generate_prompt, strip_code_fences
from mender.repair.loop import CorrectionLoop
from mender.repair.span import SpanRepairStrategy, detect_incomplete

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mender.build import Builder
    from mender.capabilities.registry import CapabilityRegistry
    from mender.history.store import HistoryStore
    from mender.oracle.protocols import OracleGateway
    from mender.repair.models import CorrectionResult, ProgressEvent

logger = logging.getLogger(__name__)


def open_history_store(config: MenderConfig) -> HistoryStore:
    """SQL store when ``history_url`` is set, else a file store in ``history_dir``."""
    if config.history_url:
        return SqlHistoryStore.from_url(config.history_url)
    return FileHistoryStore(config.history_dir)


def build_oracle(config: MenderConfig) -> OracleGateway:
    """OpenAI-compatible oracle configured from *config* and the environment.

    Raises:
        OracleConfigError: If no API key is available.
    """
    from mender.oracle.client import OpenAIClient
    from mender.oracle.gateway import OpenAIOracle

    client = OpenAIClient(default_model=config.model, timeout=config.oracle_timeout)
    return OpenAIOracle(client, temperature=config.temperature, max_tokens=config.max_tokens)


class RepairSession:
    """One artifact's generate-and-repair lifecycle.

    Usage::

        session = RepairSession(oracle, "/tmp/dex", "src/main.leo",
                                BuildRunner("leo build"), FileHistoryStore("fixhistory"))
        result = session.run("A token swap program")

    Args:
        oracle: Gateway used for generation and repair.
        workspace: Project root.
        artifact_path: Main source file, relative to the workspace.
        build: Builder for the workspace.
        history: Optional audit store.
        config: Settings; defaults to ``MenderConfig()``.
        registry: Capability registry; defaults to the standard file and
            build capabilities scoped to *workspace*.
        description: Default project description for ``run()``.
        project_identifier: Name recorded in history; defaults to the
            workspace directory name.
    """

    def __init__(
        self,
        oracle: OracleGateway,
        workspace: str | Path,
        artifact_path: str | None = None,
        build: Builder | None = None,
        history: HistoryStore | None = None,
        config: MenderConfig | None = None,
        registry: CapabilityRegistry | None = None,
        *,
        description: str | None = None,
        project_identifier: str | None = None,
    ) -> None:
        self.config = config or MenderConfig()
        self.oracle = oracle
        self.workspace = Path(workspace)
        self.artifact_path = artifact_path or self.config.artifact_path
        if build is None:
            if not self.config.build_command:
                raise ValueError("a builder or config.build_command is required")
            build = BuildRunner(
                self.config.build_command,
                timeout=self.config.build_timeout,
                heuristic=self.config.heuristic(),
            )
        self.build = build
        self.history = history
        self.registry = registry or default_registry(
            self.workspace, build, default_artifact=self.artifact_path
        )
        self.dispatcher = CapabilityDispatcher(self.registry)
        self.description = description
        self.project_identifier = project_identifier or self.workspace.name or "project"
        self.session_id: str | None = None
        self.incomplete_reason: str | None = None
        self._cancel_event = threading.Event()

    @property
    def artifact(self) -> Path:
        return self.workspace / self.artifact_path

    def _ensure_session(self, description: str = "") -> str | None:
        if self.history is None:
            return None
        if self.session_id is None:
            self.session_id = self.history.init_session(
                project_identifier=self.project_identifier,
                description=description,
                workspace_path=str(self.workspace),
                artifact_path=self.artifact_path,
            )
        return self.session_id

    def generate_initial(self, description: str) -> Path:
        """Ask the oracle for a complete artifact and write it to disk.

        Returns:
            Path of the written artifact.

        Raises:
            OracleCommunicationError: If the oracle fails or returns nothing.
        """
        sid = self._ensure_session(description)
        prompt = build_generate_prompt(description, self.artifact_path)
        try:
            reply = self.oracle.send(GENERATE_SYSTEM, [{"role": "user", "content": prompt}], [])
            code = strip_code_fences(reply.text)
            if not code.strip():
                raise OracleResponseError("oracle returned an empty artifact")
        except OracleCommunicationError as exc:
            logger.warning("Initial generation failed: %s", exc)
            if self.history is not None and sid is not None:
                self.history.record_failure(sid, total_attempts=0, last_error=str(exc))
            raise

        if not code.endswith("\n"):
            code += "\n"
        self.artifact.parent.mkdir(parents=True, exist_ok=True)
        write_source(self.artifact, code)
        logger.info("Initial artifact written to %s (%d lines)", self.artifact, code.count("\n"))
        incomplete = detect_incomplete(code)
        if incomplete:
            logger.warning("Generated artifact looks incomplete: %s", incomplete)
        self.incomplete_reason = incomplete
        if self.history is not None and sid is not None:
            self.history.record_initial_generation(
                sid,
                code,
                {
                    "description": description,
                    "reply_chars": len(reply.text),
                    "complete": incomplete is None,
                    "incomplete_reason": incomplete,
                },
            )
        return self.artifact

    def repair(
        self,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> CorrectionResult:
        """Run the correction loop on the current artifact."""
        sid = self._ensure_session(self.description or "")
        span = None
        if self.config.span_repair:
            span = SpanRepairStrategy(
                self.oracle,
                self.workspace,
                self.artifact_path,
                delimiters=tuple(self.config.artifact_delimiters),
            )
        repair_config = self.config.repair_config(on_event)
        repair_config.artifact_path = self.artifact_path
        loop = CorrectionLoop(
            self.oracle,
            self.dispatcher,
            self.build,
            self.workspace,
            repair_config,
            history=self.history,
            session_id=sid,
            span_strategy=span,
            cancel_event=self._cancel_event,
        )
        return loop.run()

    def run(
        self,
        description: str | None = None,
        raise_on_failure: bool = False,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> CorrectionResult:
        """Generate (when a description is available) and repair.

        Raises:
            RepairExhaustedError: If ``raise_on_failure`` and the build never
                passed.
            OracleCommunicationError: If initial generation failed.
        """
        description = description or self.description
        if description:
            self.description = description
            self.generate_initial(description)
        result = self.repair(on_event=on_event)
        if raise_on_failure and not result.succeeded:
            raise RepairExhaustedError(result.attempt_count, result.last_diagnostic)
        return result

    def stop(self) -> None:
        """Cancel a running repair before its next build or oracle turn."""
        self._cancel_event.set()


def run_sessions(
    sessions: Iterable[RepairSession],
    max_workers: int = 4,
) -> list[CorrectionResult]:
    """Run sessions concurrently and return their results in input order.

    Raises:
        The first exception raised by a session, after all sessions finish.
    """
    sessions = list(sessions)
    if not sessions:
        return []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mender") as pool:
        futures = [pool.submit(session.run) for session in sessions]
        return [future.result() for future in futures]
