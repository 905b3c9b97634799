"""CorrectionLoop: bounded build -> analyze -> fix -> rebuild state machine.

Each outer iteration builds the workspace once. A passing build ends the run.
A failing build is analyzed: a span repair is tried first when one is
attached, otherwise (or when it writes nothing) the oracle gets a tool
exchange of up to ``max_tool_turns`` turns to edit the artifact. Every
iteration is recorded as an Attempt, in memory and in the HistoryStore.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mender.build import BuildOutcome
from mender.capabilities.files import read_source
from mender.exceptions import OracleCommunicationError
from mender.prompts.repair import REPAIR_SYSTEM, build_repair_prompt
from mender.repair.config import LoopState, RepairConfig
from mender.repair.models import (
    Attempt,
    CorrectionResult,
    EventKind,
    ProgressEvent,
    RepairStrategy,
)

if TYPE_CHECKING:
    from mender.build import Builder
    from mender.capabilities.dispatcher import CapabilityDispatcher
    from mender.capabilities.models import InvocationRequest, InvocationResult
    from mender.history.store import HistoryStore
    from mender.oracle.protocols import OracleGateway
    from mender.repair.span import SpanRepairStrategy

logger = logging.getLogger(__name__)

_MAX_FIX_DESCRIPTION = 300


def describe_fix(request: InvocationRequest, result: InvocationResult) -> str:
    """One-line description of a successful mutating call."""
    text = f"{request.capability_name}: {result.render()}"
    if len(text) > _MAX_FIX_DESCRIPTION:
        text = text[: _MAX_FIX_DESCRIPTION - 3] + "..."
    return text


class CorrectionLoop:
    """Drives one artifact from a failing build to a passing one.

    Usage::

        loop = CorrectionLoop(oracle, dispatcher, BuildRunner("leo build"),
                              workspace, RepairConfig(max_attempts=5))
        result = loop.run()
        print(result.state, result.attempt_count)

    Args:
        oracle: Gateway that proposes fixes.
        dispatcher: Executes the oracle's capability invocations.
        builder: Runs the build.
        workspace: Project root.
        config: Loop settings.
        history: Optional audit store.
        session_id: Existing history session; one is created when a history
            store is given without an id.
        span_strategy: Optional span repair tried before the tool exchange.
        cancel_event: External event that cancels the run when set.
    """

    def __init__(
        self,
        oracle: OracleGateway,
        dispatcher: CapabilityDispatcher,
        builder: Builder,
        workspace: str | Path,
        config: RepairConfig | None = None,
        *,
        history: HistoryStore | None = None,
        session_id: str | None = None,
        span_strategy: SpanRepairStrategy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._oracle = oracle
        self._dispatcher = dispatcher
        self._builder = builder
        self._workspace = Path(workspace)
        self._config = config or RepairConfig()
        self._history = history
        self._session_id = session_id
        self._span = span_strategy
        self._stop_event = threading.Event()
        self._cancel_event = cancel_event
        self._state = LoopState.IDLE
        self._build_calls = 0
        self._oracle_calls = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def artifact(self) -> Path:
        return self._workspace / self._config.artifact_path

    def stop(self) -> None:
        """Cancel the run before its next build or oracle turn."""
        self._stop_event.set()

    def reset(self) -> None:
        """Clear a previous stop() so the loop can run again."""
        self._stop_event.clear()
        self._state = LoopState.IDLE

    def run(self) -> CorrectionResult:
        """Run the loop until the build passes, the budget runs out, or
        the run is cancelled.

        Returns:
            CorrectionResult. Never raises for build, oracle or history
            failures.
        """
        config = self._config
        self._build_calls = 0
        self._oracle_calls = 0
        self._ensure_session()

        attempts: list[Attempt] = []
        diagnostics: list[str] = []
        span_used = 0
        outcome: BuildOutcome | None = None

        for index in range(1, config.max_attempts + 1):
            if self._cancelled():
                return self._finish_cancelled(attempts, diagnostics, outcome)

            self._state = LoopState.BUILD
            self._emit(
                EventKind.BUILD_STARTED, index, f"Build attempt {index}/{config.max_attempts}"
            )
            snapshot = self._snapshot()
            outcome = self._build()

            if outcome.succeeded:
                attempt = Attempt(
                    index=index,
                    analysis_text="Build succeeded",
                    code_snapshot=snapshot,
                    build_succeeded=True,
                )
                attempts.append(attempt)
                self._record_attempt(attempt)
                if self._history is not None and self._session_id is not None:
                    self._history.record_solution(
                        self._session_id,
                        snapshot,
                        build_log=outcome.combined_output,
                        total_attempts=index,
                        errors=diagnostics,
                    )
                self._state = LoopState.SUCCESS
                logger.info("Build succeeded on attempt %d", index)
                self._emit(EventKind.BUILD_SUCCEEDED, index, "Build succeeded")
                self._emit(
                    EventKind.PROJECT_COMPLETE,
                    index,
                    f"Build fixed after {index} attempt(s)",
                    {"attempts": index},
                )
                return self._result(attempts, outcome)

            diagnostic = outcome.combined_output
            diagnostics.append(diagnostic)
            logger.info("Build failed on attempt %d (exit %d)", index, outcome.exit_code)
            self._emit(
                EventKind.BUILD_FAILED,
                index,
                "Build failed",
                {"exit_code": outcome.exit_code, "timed_out": outcome.timed_out},
            )

            if index == config.max_attempts:
                attempt = Attempt(
                    index=index,
                    diagnostic_text=diagnostic,
                    analysis_text="Attempt budget exhausted",
                    code_snapshot=snapshot,
                )
                attempts.append(attempt)
                self._record_attempt(attempt)
                break

            self._state = LoopState.ANALYZE
            self._emit(EventKind.FIXING_STARTED, index, "Analyzing build errors")

            strategy = RepairStrategy.NONE
            analysis = ""
            fixes: tuple[str, ...] = ()

            span_allowed = config.span_repair and span_used < config.max_span_repairs
            if self._span is not None and span_allowed:
                span_result = self._span.repair(diagnostic)
                if span_result.oracle_called:
                    self._oracle_calls += 1
                if span_result.repaired:
                    span_used += 1
                    strategy = RepairStrategy.SPAN_REPAIR
                    analysis = f"Span repair: {span_result.reason}"
                    fixes = (span_result.reason,)
                else:
                    logger.debug("Span repair skipped: %s", span_result.reason)

            if strategy is RepairStrategy.NONE:
                strategy = RepairStrategy.TOOL_LOOP
                analysis, fixes = self._tool_exchange(index, diagnostic)

            self._state = LoopState.DONE_TURN
            if fixes:
                self._emit(
                    EventKind.FIXING_SUCCESS,
                    index,
                    f"Applied {len(fixes)} fix(es)",
                    {"fixes": list(fixes)},
                )
            else:
                self._emit(EventKind.FIXING_FAILED, index, analysis or "No fixes applied")

            attempt = Attempt(
                index=index,
                diagnostic_text=diagnostic,
                analysis_text=analysis,
                fixes_applied=fixes,
                code_snapshot=snapshot,
                strategy=strategy,
            )
            attempts.append(attempt)
            self._record_attempt(attempt)

        self._state = LoopState.EXHAUSTED
        logger.warning("Build still failing after %d attempt(s)", len(attempts))
        self._record_failure(attempts, diagnostics, outcome)
        self._emit(
            EventKind.ERROR,
            len(attempts),
            f"Build still failing after {len(attempts)} attempt(s)",
        )
        return self._result(attempts, outcome)

    # ------------------------------------------------------------------
    # Internal methods
    # ------------------------------------------------------------------

    def _tool_exchange(self, index: int, diagnostic: str) -> tuple[str, tuple[str, ...]]:
        """Let the oracle fix the artifact with capabilities.

        Returns:
            (analysis text, descriptions of applied fixes).
        """
        config = self._config
        system_prompt = config.system_prompt or REPAIR_SYSTEM
        capabilities = self._dispatcher.registry.list_all()
        conversation: list[dict[str, Any]] = [
            {
                "role": "user",
                "content": build_repair_prompt(
                    diagnostic,
                    index,
                    config.max_attempts,
                    str(self._workspace),
                    config.artifact_path,
                ),
            }
        ]
        fixes: list[str] = []
        last_text = ""

        for turn in range(1, config.max_tool_turns + 1):
            if self._cancelled():
                return "Cancelled", tuple(fixes)

            self._state = LoopState.FIX_TURN
            try:
                reply = self._oracle.send(system_prompt, conversation, capabilities)
            except OracleCommunicationError as exc:
                self._oracle_calls += 1
                logger.warning("Oracle call failed on attempt %d turn %d: %s", index, turn, exc)
                self._emit(EventKind.ERROR, index, f"Oracle error: {exc}")
                return f"Oracle error: {exc}", tuple(fixes)
            self._oracle_calls += 1

            if reply.text:
                last_text = reply.text
            if not reply.invocations:
                return reply.text, tuple(fixes)

            results = self._dispatcher.invoke_many(reply.invocations)
            for request, result in zip(reply.invocations, results):
                if result.ok and self._dispatcher.is_mutating(request.capability_name):
                    description = describe_fix(request, result)
                    fixes.append(description)
                    self._emit(EventKind.FIXING_PROGRESS, index, description)
                elif not result.ok:
                    logger.debug(
                        "Invocation of %s failed: %s", request.capability_name, result.render()
                    )
            conversation.extend(self._oracle.format_results(reply, results))

        logger.info("Tool turn budget (%d) used up on attempt %d", config.max_tool_turns, index)
        return last_text or "Tool turn budget exhausted", tuple(fixes)

    def _build(self) -> BuildOutcome:
        self._build_calls += 1
        try:
            return self._builder.run(self._workspace)
        except Exception as exc:
            logger.warning("Build invocation failed: %s", exc, exc_info=True)
            return BuildOutcome.failure(f"Build invocation failed: {type(exc).__name__}: {exc}")

    def _snapshot(self) -> str:
        try:
            return read_source(self.artifact, errors="replace")
        except OSError:
            return ""

    def _cancelled(self) -> bool:
        if self._stop_event.is_set():
            return True
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _ensure_session(self) -> None:
        if self._history is None or self._session_id is not None:
            return
        self._session_id = self._history.init_session(
            project_identifier=self._workspace.name or str(self._workspace),
            workspace_path=str(self._workspace),
            artifact_path=self._config.artifact_path,
        )

    def _record_attempt(self, attempt: Attempt) -> None:
        if self._history is None or self._session_id is None:
            return
        self._history.record_attempt(
            self._session_id,
            attempt.index,
            attempt.code_snapshot,
            attempt.diagnostic_text,
            attempt.analysis_text,
            attempt.fixes_applied,
        )

    def _record_failure(
        self,
        attempts: list[Attempt],
        diagnostics: list[str],
        outcome: BuildOutcome | None,
    ) -> None:
        if self._history is None or self._session_id is None:
            return
        self._history.record_failure(
            self._session_id,
            total_attempts=len(attempts),
            errors=diagnostics,
            last_error=outcome.combined_output if outcome is not None else None,
        )

    def _finish_cancelled(
        self,
        attempts: list[Attempt],
        diagnostics: list[str],
        outcome: BuildOutcome | None,
    ) -> CorrectionResult:
        self._state = LoopState.CANCELLED
        logger.info("Correction loop cancelled after %d attempt(s)", len(attempts))
        self._record_failure(attempts, diagnostics, outcome)
        self._emit(EventKind.ERROR, len(attempts), "Repair cancelled")
        return self._result(attempts, outcome)

    def _result(self, attempts: list[Attempt], outcome: BuildOutcome | None) -> CorrectionResult:
        return CorrectionResult(
            state=self._state,
            attempts=tuple(attempts),
            last_outcome=outcome,
            build_calls=self._build_calls,
            oracle_calls=self._oracle_calls,
            session_id=self._session_id,
        )

    def _emit(
        self,
        kind: EventKind,
        attempt: int,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        callback = self._config.on_event
        if callback is None:
            return
        event = ProgressEvent(
            kind=kind,
            attempt=attempt,
            message=message,
            payload=payload or {},
            session_id=self._session_id,
        )
        try:
            callback(event)
        except Exception:
            logger.debug("on_event callback error", exc_info=True)
