"""Prompts for the repair oracle.

Three system prompts cover the oracle's jobs:

- **REPAIR_SYSTEM** -- tool-driven repair of a failing build.
- **SPAN_REPAIR_SYSTEM** -- rewrite of a small window around one diagnostic.
- **GENERATE_SYSTEM** -- first draft of the artifact from a description.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Tool-driven repair
# ---------------------------------------------------------------------------

REPAIR_SYSTEM: str = (
    "You are a compiler-error repair assistant. Your task is to make the "
    "project build by editing its source with the provided tools.\n\n"
    "You MUST use the tools to read, analyze and fix the code. Do not paste "
    "code into your reply.\n\n"
    "Workflow:\n"
    "1. Read the failing file with read_file_with_line_numbers.\n"
    "2. Find the line each diagnostic points at; use read_file_lines for "
    "context around it.\n"
    "3. Fix the errors with edit_file (replace a line range) or replace_text "
    "(replace the first match of a snippet).\n"
    "4. Fix one error at a time, starting with the first one reported.\n"
    "5. Call run_build to check your work when it is available.\n"
    "6. When you believe the build is fixed, reply with a short explanation "
    "of what you changed and do not call any more tools."
)


def build_repair_prompt(
    diagnostic: str,
    attempt: int,
    max_attempts: int,
    workspace: str,
    artifact_path: str,
) -> str:
    """Build the user prompt that opens one repair exchange.

    Args:
        diagnostic: Compiler output of the failing build.
        attempt: 1-based attempt number.
        max_attempts: Total attempt budget.
        workspace: Project root.
        artifact_path: Path of the main source file, relative to the root.

    Returns:
        The formatted prompt.
    """
    return (
        f"Fix the compilation errors in the project at: {workspace}\n\n"
        f"Attempt: {attempt}/{max_attempts}\n\n"
        "Compilation error output:\n"
        f"```\n{diagnostic.strip()}\n```\n\n"
        f"The main source file is: {artifact_path}\n\n"
        "Use the tools to read the file, identify the issues from the error "
        "messages and edit the file to fix them. Focus on the first error in "
        "the list."
    )


# ---------------------------------------------------------------------------
# Span repair
# ---------------------------------------------------------------------------

SPAN_REPAIR_SYSTEM: str = (
    "You fix compiler errors by rewriting a short span of source code.\n\n"
    "You receive the compiler error and a span of consecutive lines around "
    "the reported location. Return ONLY the corrected lines for that span: "
    "no explanation, no line numbers, no surrounding code. Keep every line "
    "that does not need to change exactly as it was."
)


def build_span_prompt(diagnostic: str, file_label: str, first_line: int, span: str) -> str:
    """Build the user prompt for a span rewrite."""
    return (
        f"Compiler error:\n{diagnostic.strip()}\n\n"
        f"File: {file_label}\n"
        f"Span starting at line {first_line} (replace this only):\n"
        f"{span}\n"
        "Return ONLY the corrected code for the span."
    )


# ---------------------------------------------------------------------------
# Initial generation
# ---------------------------------------------------------------------------

GENERATE_SYSTEM: str = (
    "You write complete, compilable source files. Reply with the full "
    "contents of the file and nothing else. Do not add commentary before "
    "or after the code."
)


def build_generate_prompt(description: str, artifact_path: str) -> str:
    """Build the user prompt asking for a first draft of the artifact."""
    return (
        f"Write the complete contents of {artifact_path} for this project:\n\n"
        f"{description.strip()}"
    )


_FENCE_RE = re.compile(r"```[^\n`]*\n(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced code block, or *text* unchanged.

    An unterminated opening fence is dropped along with its info string.
    """
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1)
    stripped = text.strip()
    if stripped.startswith("```"):
        _, _, rest = stripped.partition("\n")
        return rest
    return text
