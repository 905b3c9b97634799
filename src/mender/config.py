"""Configuration for Mender.

MenderConfig holds every user-facing setting and produces the narrower
RepairConfig the correction loop consumes. Values can come from keyword
arguments or from MENDER_* environment variables.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from pydantic import BaseModel, field_validator

from mender.build import SuccessHeuristic
from mender.repair.config import RepairConfig

if TYPE_CHECKING:
    from collections.abc import Mapping

    from mender.repair.models import ProgressEvent

ENV_PREFIX = "MENDER_"

_TUPLE_FIELDS = frozenset({"success_markers", "error_tokens", "artifact_delimiters"})
_BOOL_WORDS = {
    "1": True,
    "true": True,
    "yes": True,
    "on": True,
    "0": False,
    "false": False,
    "no": False,
    "off": False,
}


class MenderConfig(BaseModel):
    """Top-level settings for a repair run."""

    model_config = {"arbitrary_types_allowed": True}

    build_command: Optional[Union[str, list[str]]] = None
    artifact_path: str = "src/main.leo"
    max_attempts: int = 5
    max_tool_turns: int = 10
    max_span_repairs: int = 3
    span_repair: bool = True
    build_timeout: float = 300.0
    oracle_timeout: float = 120.0
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 4096
    history_dir: str = "fixhistory"
    history_url: Optional[str] = None  # SQL backend when set
    success_markers: tuple[str, ...] = ("Compiled", "Successfully compiled")
    error_tokens: tuple[str, ...] = ("error", "Error")
    exit_code_authoritative: bool = True
    artifact_delimiters: tuple[str, ...] = ("program ",)

    @field_validator("max_attempts", "max_tool_turns")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("build_timeout", "oracle_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> MenderConfig:
        """Build a config from MENDER_* variables, then apply *overrides*.

        ``MENDER_MAX_ATTEMPTS=3`` sets ``max_attempts``; tuple fields take
        comma-separated values. Oracle credentials (MENDER_OPENAI_API_KEY,
        MENDER_OPENAI_BASE_URL) are read by the oracle client, not here.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name in _TUPLE_FIELDS:
                values[name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            elif field.annotation is bool:
                values[name] = _BOOL_WORDS.get(raw.strip().lower(), raw)
            else:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def heuristic(self) -> SuccessHeuristic:
        return SuccessHeuristic(
            success_markers=tuple(self.success_markers),
            error_tokens=tuple(self.error_tokens),
            exit_code_authoritative=self.exit_code_authoritative,
        )

    def repair_config(
        self,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> RepairConfig:
        """The loop-level settings derived from this config."""
        return RepairConfig(
            artifact_path=self.artifact_path,
            max_attempts=self.max_attempts,
            max_tool_turns=self.max_tool_turns,
            max_span_repairs=self.max_span_repairs,
            span_repair=self.span_repair,
            on_event=on_event,
        )
