"""Span repair: rewrite a small window of lines around one diagnostic.

Cheaper than a full tool exchange. The strategy finds the first
``path:line:column`` location in the build output, asks the oracle to
rewrite a few lines around it, and splices the answer back into the file.
A reply that is clearly a complete artifact replaces the whole file instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from mender.capabilities.files import read_source, replace_line_range, write_source
from mender.exceptions import OracleCommunicationError
from mender.prompts.repair import SPAN_REPAIR_SYSTEM, build_span_prompt, strip_code_fences

if TYPE_CHECKING:
    from mender.build import BuildOutcome
    from mender.oracle.protocols import OracleGateway

logger = logging.getLogger(__name__)

_END_OF_LINE_LOCATION = re.compile(
    r"(?P<path>[^\s:]*):(?P<line>\d+):(?P<column>\d+)\s*$", re.MULTILINE
)
_ANYWHERE_LOCATION = re.compile(
    r"(?P<path>[\w./\\-]+\.\w+):(?P<line>\d+):(?P<column>\d+)"
)

SPAN = "span"
WHOLE_FILE = "whole_file"


@dataclass(frozen=True)
class DiagnosticLocation:
    """A source position parsed from compiler output."""

    path: str | None
    line: int
    column: int


@dataclass(frozen=True)
class SpanRepairResult:
    """Outcome of one span repair.

    Attributes:
        repaired: Whether the file was written.
        mode: ``"span"`` or ``"whole_file"`` when repaired, else None.
        location: Parsed diagnostic location, if any.
        window: Inclusive 1-based ``(first, last)`` lines sent to the oracle.
        reason: Why nothing was written, or a short description of the patch.
        replacement: Text returned by the oracle (fences stripped).
        oracle_called: Whether the oracle was asked at all.
    """

    repaired: bool
    mode: str | None = None
    location: DiagnosticLocation | None = None
    window: tuple[int, int] | None = None
    reason: str = ""
    replacement: str = ""
    oracle_called: bool = False


def extract_location(diagnostic: str) -> DiagnosticLocation | None:
    """Find the first source location in *diagnostic*.

    Prefers a ``path:line:column`` that ends a line (the usual
    ``--> file:12:5`` pointer); falls back to the first
    ``file.ext:line:column`` anywhere in the text.
    """
    if not diagnostic:
        return None
    match = _END_OF_LINE_LOCATION.search(diagnostic) or _ANYWHERE_LOCATION.search(diagnostic)
    if match is None:
        return None
    return DiagnosticLocation(
        path=match.group("path") or None,
        line=int(match.group("line")),
        column=int(match.group("column")),
    )


def compute_window(line: int, line_count: int, lead: int, trail: int) -> tuple[int, int] | None:
    """Return the inclusive 1-based window around *line*, or None if off-file."""
    if line < 1 or line > line_count:
        return None
    return max(1, line - lead), min(line_count, line + trail)


def looks_complete(text: str, delimiters: tuple[str, ...]) -> bool:
    """Whether *text* looks like a whole artifact rather than a fragment."""
    body = text.strip()
    if not any(token in body for token in delimiters):
        return False
    opens = body.count("{")
    return opens > 0 and opens == body.count("}") and body.endswith("}")


_BLOCK_HEADER = re.compile(
    r"\b(?P<kind>transition|function|inline|finalize|struct|record)\b[^{;]*\{"
)


def _block_closes(code: str, open_brace: int) -> bool:
    depth = 0
    for char in code[open_brace:]:
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return True
    return False


def detect_incomplete(code: str) -> str | None:
    """Return why *code* looks truncated, or None if it looks whole.

    Catches the usual ways a generated artifact gets cut off: no closing
    ``}``, unbalanced braces, or a block header whose body never closes.
    """
    body = code.strip()
    if not body:
        return "artifact is empty"
    if not body.endswith("}"):
        return "artifact does not end with '}'"
    opens, closes = body.count("{"), body.count("}")
    if opens != closes:
        return f"unbalanced braces ({opens} '{{' vs {closes} '}}')"
    for match in _BLOCK_HEADER.finditer(body):
        if not _block_closes(body, match.end() - 1):
            return f"unterminated {match.group('kind')} block at offset {match.start()}"
    return None


class SpanRepairStrategy:
    """Repairs one artifact by windowed rewrites.

    Args:
        oracle: Gateway used for the rewrite (no capabilities offered).
        workspace: Project root.
        artifact_path: File to patch, relative to the workspace.
        lead_context: Lines before the diagnostic line.
        trail_context: Lines after the diagnostic line.
        delimiters: Tokens that mark a complete artifact (e.g. ``"program "``).
    """

    def __init__(
        self,
        oracle: OracleGateway,
        workspace: str | Path,
        artifact_path: str,
        *,
        lead_context: int = 3,
        trail_context: int = 2,
        delimiters: tuple[str, ...] = ("program ",),
        system_prompt: str | None = None,
    ) -> None:
        self.oracle = oracle
        self.workspace = Path(workspace)
        self.artifact_path = artifact_path
        self.lead_context = lead_context
        self.trail_context = trail_context
        self.delimiters = tuple(delimiters)
        self.system_prompt = system_prompt or SPAN_REPAIR_SYSTEM

    @property
    def artifact(self) -> Path:
        return self.workspace / self.artifact_path

    def repair(self, diagnostic: str) -> SpanRepairResult:
        """Try one span repair for *diagnostic*. Never raises."""
        location = extract_location(diagnostic)
        if location is None:
            return SpanRepairResult(repaired=False, reason="no source location in diagnostic")

        if location.path and Path(location.path).name != Path(self.artifact_path).name:
            return SpanRepairResult(
                repaired=False,
                location=location,
                reason=f"diagnostic points at {location.path}, not {self.artifact_path}",
            )

        try:
            text = read_source(self.artifact)
        except (OSError, UnicodeError) as exc:
            return SpanRepairResult(
                repaired=False, location=location, reason=f"cannot read artifact: {exc}"
            )

        lines = text.splitlines(keepends=True)
        window = compute_window(location.line, len(lines), self.lead_context, self.trail_context)
        if window is None:
            return SpanRepairResult(
                repaired=False,
                location=location,
                reason=f"line {location.line} is outside the file ({len(lines)} lines)",
            )

        first, last = window
        span = "".join(lines[first - 1 : last])
        prompt = build_span_prompt(diagnostic, self.artifact_path, first, span)
        try:
            reply = self.oracle.send(
                self.system_prompt, [{"role": "user", "content": prompt}], []
            )
        except OracleCommunicationError as exc:
            logger.warning("Span repair oracle call failed: %s", exc)
            return SpanRepairResult(
                repaired=False,
                location=location,
                window=window,
                reason=f"oracle failure: {exc}",
                oracle_called=True,
            )

        replacement = strip_code_fences(reply.text)
        common = {
            "location": location,
            "window": window,
            "replacement": replacement,
            "oracle_called": True,
        }
        if not replacement.strip():
            return SpanRepairResult(repaired=False, reason="empty replacement", **common)

        covers_file = first == 1 and last == len(lines)
        grows = len(replacement.splitlines()) > last - first + 1
        if looks_complete(replacement, self.delimiters) and (covers_file or grows):
            updated = replacement if replacement.endswith("\n") else replacement + "\n"
            mode = WHOLE_FILE
        else:
            updated = replace_line_range(text, first, last, replacement)
            mode = SPAN

        if updated == text:
            return SpanRepairResult(repaired=False, reason="replacement is unchanged", **common)

        try:
            write_source(self.artifact, updated)
        except OSError as exc:
            logger.warning("Span repair could not write %s: %s", self.artifact, exc)
            return SpanRepairResult(
                repaired=False, reason=f"cannot write artifact: {exc}", **common
            )
        logger.info(
            "Span repair applied (%s) at line %d, window %d-%d", mode, location.line, first, last
        )
        return SpanRepairResult(
            repaired=True,
            mode=mode,
            reason=(
                f"rewrote whole file for line {location.line}"
                if mode == WHOLE_FILE
                else f"rewrote lines {first}-{last} for line {location.line}"
            ),
            **common,
        )

    def repair_and_rebuild(
        self,
        outcome: BuildOutcome,
        build: Callable[[], BuildOutcome],
        max_rounds: int = 3,
    ) -> tuple[BuildOutcome, list[SpanRepairResult]]:
        """Alternate span repairs and rebuilds until the build passes.

        Stops early when a repair writes nothing.

        Returns:
            The last build outcome and the repair results in order.
        """
        results: list[SpanRepairResult] = []
        for _round in range(max_rounds):
            if outcome.succeeded:
                break
            result = self.repair(outcome.combined_output)
            results.append(result)
            if not result.repaired:
                break
            outcome = build()
        return outcome, results
