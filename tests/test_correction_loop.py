"""Tests for the CorrectionLoop state machine.

Covers:
- success paths (first build, after a tool exchange, after a span repair)
- budget exhaustion and the no-fix-on-last-attempt rule
- oracle failures, builder crashes, cancellation
- progress events and history recording
"""

from __future__ import annotations

import threading

import pytest

from mender.build import BuildOutcome
from mender.capabilities.defaults import default_registry
from mender.capabilities.dispatcher import CapabilityDispatcher
from mender.history.models import COMPLETED_FAILED, COMPLETED_SUCCESS, STARTED, attempt_status
from mender.oracle.gateway import parse_tool_calls
from mender.oracle.protocols import OracleReply
from mender.repair.config import LoopState, RepairConfig
from mender.repair.loop import CorrectionLoop
from mender.repair.models import EventKind, RepairStrategy
from mender.repair.span import SpanRepairStrategy
from tests.conftest import (
    ARTIFACT,
    BROKEN_PROGRAM,
    FIXED_LINE,
    FakeBuilder,
    FakeOracle,
    artifact_is_fixed,
    failing,
    oracle_down,
    passing,
    reply_with_calls,
)

DIAGNOSTIC = "Error [EPAR0370005]: expected ';' -- found '}'\n    --> src/main.leo:8:55"

EDIT_CALL = (
    "edit_file",
    {
        "file_path": ARTIFACT,
        "start_line": 8,
        "end_line": "8",
        "new_content": FIXED_LINE.rstrip("\n"),
    },
)


def _loop(oracle, builder, workspace, **kwargs) -> CorrectionLoop:
    config_kwargs = {
        key: kwargs.pop(key)
        for key in list(kwargs)
        if key in ("max_attempts", "max_tool_turns", "on_event", "span_repair", "max_span_repairs")
    }
    registry = default_registry(workspace, builder, default_artifact=ARTIFACT)
    return CorrectionLoop(
        oracle,
        CapabilityDispatcher(registry),
        builder,
        workspace,
        RepairConfig(artifact_path=ARTIFACT, **config_kwargs),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Success paths
# ---------------------------------------------------------------------------

class TestSuccess:
    def test_first_build_passes(self, workspace):
        oracle = FakeOracle()
        result = _loop(oracle, FakeBuilder([passing()]), workspace).run()

        assert result.state is LoopState.SUCCESS
        assert result.succeeded
        assert result.attempt_count == 1
        assert result.attempts[0].build_succeeded
        assert result.oracle_calls == 0
        assert oracle.calls == []

    def test_fixed_on_second_attempt(self, workspace):
        oracle = FakeOracle([
            reply_with_calls(("read_file_with_line_numbers", {"file_path": ARTIFACT})),
            reply_with_calls(EDIT_CALL),
            OracleReply(text="Added the missing semicolon on line 8."),
        ])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        result = _loop(oracle, builder, workspace, max_attempts=3).run()

        assert result.succeeded
        assert result.attempt_count == 2
        first, second = result.attempts
        assert first.strategy is RepairStrategy.TOOL_LOOP
        assert first.diagnostic_text == DIAGNOSTIC
        assert first.analysis_text == "Added the missing semicolon on line 8."
        assert first.fixes_applied == (
            "edit_file: Patch applied successfully to src/main.leo (lines 8-8)",
        )
        assert first.code_snapshot == BROKEN_PROGRAM
        assert second.build_succeeded
        assert FIXED_LINE in second.code_snapshot
        assert result.build_calls == 2
        assert result.oracle_calls == 3

    def test_results_are_fed_back_to_the_oracle(self, workspace):
        oracle = FakeOracle([reply_with_calls(EDIT_CALL), OracleReply(text="done")])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        _loop(oracle, builder, workspace).run()

        first_turn, second_turn = oracle.calls
        assert "Attempt: 1/5" in first_turn["history"][0]["content"]
        assert DIAGNOSTIC.splitlines()[0] in first_turn["history"][0]["content"]
        assert "edit_file" in first_turn["capabilities"]
        tool_message = second_turn["history"][-1]
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_0"
        assert tool_message["content"].startswith("Patch applied successfully")

    def test_failed_invocations_are_not_fixes(self, workspace):
        oracle = FakeOracle([
            reply_with_calls(("edit_file", {"file_path": ARTIFACT, "start_line": 1})),
            reply_with_calls(("no_such_tool", {})),
            OracleReply(text="giving up"),
        ])
        result = _loop(oracle, FakeBuilder([failing(DIAGNOSTIC)]), workspace, max_attempts=2).run()
        assert result.attempts[0].fixes_applied == ()
        assert oracle.calls[1]["history"][-1]["content"].startswith("Error: argument")

    def test_span_repair_tried_first(self, workspace):
        lines = BROKEN_PROGRAM.splitlines(keepends=True)
        window = "".join(lines[4:7]) + FIXED_LINE + "".join(lines[8:10])
        oracle = FakeOracle([OracleReply(text=window)])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        span = SpanRepairStrategy(oracle, workspace, ARTIFACT)
        result = _loop(oracle, builder, workspace, span_strategy=span).run()

        assert result.succeeded
        assert result.attempts[0].strategy is RepairStrategy.SPAN_REPAIR
        assert result.oracle_calls == 1
        assert oracle.calls[0]["capabilities"] == []

    def test_span_repair_falls_back_to_tool_exchange(self, workspace):
        oracle = FakeOracle([
            OracleReply(text=""),
            reply_with_calls(EDIT_CALL),
            OracleReply(text="fixed"),
        ])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        span = SpanRepairStrategy(oracle, workspace, ARTIFACT)
        result = _loop(oracle, builder, workspace, span_strategy=span).run()

        assert result.succeeded
        assert result.attempts[0].strategy is RepairStrategy.TOOL_LOOP
        assert result.oracle_calls == 3

    def test_span_repair_budget(self, workspace):
        # Each span reply rewrites line 1 differently, so it always applies
        replies = [OracleReply(text=f"// variant {i}\n") for i in range(10)]
        oracle = FakeOracle(replies)
        diagnostic = "error: bad header\n  --> src/main.leo:1:1"
        builder = FakeBuilder([failing(diagnostic)])
        span = SpanRepairStrategy(oracle, workspace, ARTIFACT, lead_context=0, trail_context=0)
        result = _loop(
            oracle, builder, workspace, span_strategy=span, max_attempts=4, max_span_repairs=2
        ).run()

        strategies = [a.strategy for a in result.attempts]
        assert strategies[:2] == [RepairStrategy.SPAN_REPAIR, RepairStrategy.SPAN_REPAIR]
        assert strategies[2] is RepairStrategy.TOOL_LOOP

    def test_idempotent_once_fixed(self, workspace):
        oracle = FakeOracle([reply_with_calls(EDIT_CALL), OracleReply(text="done")])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        assert _loop(oracle, builder, workspace).run().succeeded
        fixed = (workspace / ARTIFACT).read_text()

        again = FakeOracle()
        result = _loop(again, builder, workspace).run()
        assert result.succeeded
        assert result.attempt_count == 1
        assert again.calls == []
        assert (workspace / ARTIFACT).read_text() == fixed


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------

class TestBudget:
    def test_exhausted_after_max_attempts(self, workspace):
        oracle = FakeOracle([OracleReply(text="no idea")] * 5)
        builder = FakeBuilder([failing(DIAGNOSTIC)])
        result = _loop(oracle, builder, workspace, max_attempts=3).run()

        assert result.state is LoopState.EXHAUSTED
        assert not result.succeeded
        assert result.attempt_count == 3
        assert result.build_calls == 3
        # No fix after the last build: nothing would verify it
        assert result.oracle_calls == 2
        assert result.attempts[-1].analysis_text == "Attempt budget exhausted"
        assert result.last_diagnostic == DIAGNOSTIC

    def test_single_attempt_budget(self, workspace):
        oracle = FakeOracle()
        result = _loop(oracle, FakeBuilder([failing()]), workspace, max_attempts=1).run()
        assert result.state is LoopState.EXHAUSTED
        assert oracle.calls == []

    def test_tool_turn_budget(self, workspace):
        reads = [
            reply_with_calls(("read_file_lines", {"file_path": ARTIFACT, "start_line": 1,
                                                  "end_line": 3}))
            for _ in range(10)
        ]
        oracle = FakeOracle(reads)
        result = _loop(
            oracle, FakeBuilder([failing()]), workspace, max_attempts=2, max_tool_turns=4
        ).run()
        assert result.oracle_calls == 4
        assert result.attempts[0].analysis_text == "Tool turn budget exhausted"

    def test_config_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RepairConfig(max_attempts=0)


# ---------------------------------------------------------------------------
# Failures inside an attempt
# ---------------------------------------------------------------------------

class TestFailures:
    def test_oracle_error_ends_the_turn_only(self, workspace):
        oracle = FakeOracle([
            oracle_down("HTTP 503"),
            reply_with_calls(EDIT_CALL),
            OracleReply(text="fixed"),
        ])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        result = _loop(oracle, builder, workspace).run()

        assert result.succeeded
        assert result.attempt_count == 3
        assert result.attempts[0].analysis_text == "Oracle error: HTTP 503"
        assert result.attempts[1].fixes_applied

    def test_builder_exception_becomes_failed_outcome(self, workspace):
        class ExplodingBuilder:
            def run(self, workspace):
                raise RuntimeError("toolchain missing")

        result = _loop(FakeOracle(), ExplodingBuilder(), workspace, max_attempts=2).run()
        assert result.state is LoopState.EXHAUSTED
        assert "toolchain missing" in result.last_diagnostic

    def test_timed_out_build_counts_as_failure(self, workspace):
        timed_out = BuildOutcome(exit_code=124, stderr="Build timed out", timed_out=True)
        result = _loop(FakeOracle(), FakeBuilder([timed_out]), workspace, max_attempts=2).run()
        assert result.state is LoopState.EXHAUSTED

    def test_undecodable_artifact_uses_whole_budget(self, workspace):
        (workspace / ARTIFACT).write_bytes(b"\xff\xfe program token.aleo {\n")
        oracle = FakeOracle()
        span = SpanRepairStrategy(oracle, workspace, ARTIFACT)
        builder = FakeBuilder([failing(DIAGNOSTIC)])
        result = _loop(oracle, builder, workspace, span_strategy=span, max_attempts=3).run()

        assert result.state is LoopState.EXHAUSTED
        assert result.attempt_count == 3
        assert "\ufffd" in result.attempts[0].code_snapshot
        assert result.attempts[0].strategy is RepairStrategy.TOOL_LOOP

    def test_malformed_tool_call_ends_the_turn_only(self, workspace):
        def malformed(history):
            return OracleReply(
                invocations=parse_tool_calls({"tool_calls": [{"id": "c1", "function": "edit"}]})
            )

        oracle = FakeOracle([malformed, reply_with_calls(EDIT_CALL), OracleReply(text="fixed")])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        result = _loop(oracle, builder, workspace).run()

        assert result.succeeded
        assert result.attempts[0].analysis_text.startswith("Oracle error: Malformed function")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    def test_cancel_event_set_before_run(self, workspace):
        event = threading.Event()
        event.set()
        builder = FakeBuilder([failing()])
        result = _loop(FakeOracle(), builder, workspace, cancel_event=event).run()
        assert result.state is LoopState.CANCELLED
        assert builder.runs == 0
        assert result.attempt_count == 0

    def test_stop_during_fix(self, workspace):
        oracle = FakeOracle()
        holder = {}

        def on_event(event):
            if event.kind is EventKind.FIXING_STARTED:
                holder["loop"].stop()

        loop = _loop(oracle, FakeBuilder([failing()]), workspace, on_event=on_event)
        holder["loop"] = loop
        result = loop.run()

        assert result.state is LoopState.CANCELLED
        assert result.attempt_count == 1
        assert oracle.calls == []

    def test_reset_allows_rerun(self, workspace):
        loop = _loop(FakeOracle(), FakeBuilder([passing()]), workspace)
        loop.stop()
        assert loop.run().state is LoopState.CANCELLED
        loop.reset()
        assert loop.state is LoopState.IDLE
        assert loop.run().succeeded


# ---------------------------------------------------------------------------
# Events and history
# ---------------------------------------------------------------------------

class TestEvents:
    def test_event_sequence(self, workspace):
        events = []
        oracle = FakeOracle([reply_with_calls(EDIT_CALL), OracleReply(text="done")])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        _loop(oracle, builder, workspace, on_event=events.append).run()

        assert [e.kind for e in events] == [
            EventKind.BUILD_STARTED,
            EventKind.BUILD_FAILED,
            EventKind.FIXING_STARTED,
            EventKind.FIXING_PROGRESS,
            EventKind.FIXING_SUCCESS,
            EventKind.BUILD_STARTED,
            EventKind.BUILD_SUCCEEDED,
            EventKind.PROJECT_COMPLETE,
        ]
        assert events[-1].payload == {"attempts": 2}

    def test_callback_errors_swallowed(self, workspace):
        def broken(event):
            raise RuntimeError("ui crashed")

        result = _loop(FakeOracle(), FakeBuilder([passing()]), workspace, on_event=broken).run()
        assert result.succeeded


class TestHistoryRecording:
    def test_success_recorded(self, workspace, history_store):
        oracle = FakeOracle([reply_with_calls(EDIT_CALL), OracleReply(text="done")])
        builder = FakeBuilder(check=artifact_is_fixed, diagnostic=DIAGNOSTIC)
        result = _loop(oracle, builder, workspace, history=history_store).run()

        sid = result.session_id
        info = history_store.get_session(sid)
        assert info.status_history == [
            STARTED, attempt_status(1), attempt_status(2), COMPLETED_SUCCESS
        ]
        attempts = history_store.get_attempts(sid)
        assert [a.attempt for a in attempts] == [1, 2]
        assert attempts[0].diagnostic == DIAGNOSTIC
        summary = history_store.get_summary(sid)
        assert summary.success
        assert summary.total_attempts == 2
        assert FIXED_LINE in summary.final_code
        assert summary.errors_encountered == [DIAGNOSTIC]

    def test_exhaustion_recorded(self, workspace, history_store):
        builder = FakeBuilder([failing(DIAGNOSTIC)])
        result = _loop(FakeOracle(), builder, workspace, history=history_store, max_attempts=2).run()

        info = history_store.get_session(result.session_id)
        assert info.status == COMPLETED_FAILED
        summary = history_store.get_summary(result.session_id)
        assert not summary.success
        assert summary.total_attempts == 2
        assert summary.last_error == DIAGNOSTIC

    def test_existing_session_reused(self, workspace, history_store):
        sid = history_store.init_session("token", "mint tokens", str(workspace), ARTIFACT)
        result = _loop(
            FakeOracle(), FakeBuilder([passing()]), workspace, history=history_store, session_id=sid
        ).run()
        assert result.session_id == sid
        assert len(history_store.list_sessions()) == 1
