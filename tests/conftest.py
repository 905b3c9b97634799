"""Shared test fixtures for Mender.

Provides a scripted oracle, a scripted builder, a workspace with a broken
artifact, and in-memory / on-disk history stores.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from mender.build import BuildOutcome
from mender.capabilities.models import InvocationRequest
from mender.exceptions import OracleCommunicationError
from mender.history.sql import SqlHistoryStore
from mender.history.store import FileHistoryStore
from mender.oracle.protocols import OracleReply

ARTIFACT = "src/main.leo"

BROKEN_PROGRAM = (
    "program token.aleo {\n"
    "    record Token {\n"
    "        owner: address,\n"
    "        amount: u64,\n"
    "    }\n"
    "\n"
    "    transition mint(receiver: address, amount: u64) -> Token {\n"
    "        return Token { owner: receiver, amount: amount }\n"
    "    }\n"
    "}\n"
)

FIXED_LINE = "        return Token { owner: receiver, amount: amount };\n"


# ---------------------------------------------------------------------------
# Oracle and builder doubles
# ---------------------------------------------------------------------------

class FakeOracle:
    """Oracle double that replays scripted replies and records every call.

    Each script entry is an OracleReply, an exception instance (raised), or
    a callable taking the conversation and returning either.
    """

    def __init__(self, script=()):
        self.script = list(script)
        self.calls: list[dict] = []

    def send(self, system_prompt, history, capabilities):
        self.calls.append({
            "system_prompt": system_prompt,
            "history": [dict(m) for m in history],
            "capabilities": [c.name for c in capabilities],
        })
        if not self.script:
            return OracleReply(text="Nothing more to do.")
        step = self.script.pop(0)
        if callable(step) and not isinstance(step, OracleReply):
            step = step(history)
        if isinstance(step, Exception):
            raise step
        return step

    def format_results(self, reply, results):
        messages = [{"role": "assistant", "content": reply.text}]
        for request, result in zip(reply.invocations, results):
            messages.append({
                "role": "tool",
                "tool_call_id": request.invocation_id,
                "content": result.render(),
            })
        return messages


class FakeBuilder:
    """Builder double.

    With a *check* callable, the build succeeds when ``check(workspace)`` is
    true. Otherwise outcomes are replayed from *outcomes*, repeating the last.
    """

    def __init__(
        self,
        outcomes: list[BuildOutcome] | None = None,
        check: Callable[[Path], bool] | None = None,
        diagnostic: str = "error: expected ';'\n  --> src/main.leo:8:55",
    ):
        self.outcomes = list(outcomes or [])
        self.check = check
        self.diagnostic = diagnostic
        self.runs = 0

    def run(self, workspace):
        self.runs += 1
        if self.check is not None:
            if self.check(Path(workspace)):
                return BuildOutcome(exit_code=0, stdout="Compiled 'main.leo'", succeeded=True)
            return BuildOutcome(exit_code=1, stderr=self.diagnostic, succeeded=False)
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


def failing(diagnostic: str = "error: expected ';'\n  --> src/main.leo:8:55") -> BuildOutcome:
    return BuildOutcome(exit_code=1, stderr=diagnostic, succeeded=False)


def passing() -> BuildOutcome:
    return BuildOutcome(exit_code=0, stdout="Compiled 'main.leo'", succeeded=True)


def reply_with_calls(*calls: tuple[str, dict], text: str = "") -> OracleReply:
    """An oracle reply requesting the given (name, arguments) invocations."""
    return OracleReply(
        text=text,
        invocations=tuple(
            InvocationRequest(capability_name=name, raw_arguments=args, invocation_id=f"call_{i}")
            for i, (name, args) in enumerate(calls)
        ),
    )


def oracle_down(message: str = "connection refused") -> OracleCommunicationError:
    return OracleCommunicationError(message)


def artifact_is_fixed(workspace: Path) -> bool:
    return FIXED_LINE in (workspace / ARTIFACT).read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace holding a program with one missing semicolon on line 8."""
    root = tmp_path / "project"
    artifact = root / ARTIFACT
    artifact.parent.mkdir(parents=True)
    artifact.write_text(BROKEN_PROGRAM, encoding="utf-8")
    return root


@pytest.fixture
def file_store(tmp_path: Path) -> FileHistoryStore:
    return FileHistoryStore(tmp_path / "fixhistory")


@pytest.fixture
def sql_store():
    store = SqlHistoryStore.from_url()
    yield store
    store.close()


@pytest.fixture(params=["file", "sql"])
def history_store(request, tmp_path: Path):
    """Each history backend in turn."""
    if request.param == "file":
        yield FileHistoryStore(tmp_path / "fixhistory")
    else:
        store = SqlHistoryStore.from_url()
        yield store
        store.close()
