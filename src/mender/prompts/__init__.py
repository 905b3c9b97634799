"""Prompt templates for the repair oracle."""

from mender.prompts.repair import (
    GENERATE_SYSTEM,
    REPAIR_SYSTEM,
    SPAN_REPAIR_SYSTEM,
    build_generate_prompt,
    build_repair_prompt,
    build_span_prompt,
    strip_code_fences,
)

__all__ = [
    "GENERATE_SYSTEM",
    "REPAIR_SYSTEM",
    "SPAN_REPAIR_SYSTEM",
    "build_generate_prompt",
    "build_repair_prompt",
    "build_span_prompt",
    "strip_code_fences",
]
