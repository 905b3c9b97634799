"""Build capability: lets the oracle rebuild the workspace mid-conversation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mender.capabilities.registry import capability

if TYPE_CHECKING:
    from pathlib import Path

    from mender.build import Builder, BuildOutcome

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 8000


class BuildCapability:
    """Wraps a Builder bound to one workspace.

    The most recent outcome is kept in ``last_outcome`` for callers that want
    to know whether the oracle's own build already passed.
    """

    def __init__(self, builder: Builder, workspace: str | Path) -> None:
        self.builder = builder
        self.workspace = workspace
        self.last_outcome: BuildOutcome | None = None

    @capability(name="run_build")
    def run_build(self) -> dict:
        """Build the project and report whether it compiled, with the compiler output."""
        outcome = self.builder.run(self.workspace)
        self.last_outcome = outcome
        output = outcome.combined_output
        if len(output) > _MAX_OUTPUT_CHARS:
            output = "...\n" + output[-_MAX_OUTPUT_CHARS:]
        return {
            "succeeded": outcome.succeeded,
            "exit_code": outcome.exit_code,
            "timed_out": outcome.timed_out,
            "output": output,
        }
