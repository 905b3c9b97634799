"""Default capability set for a repair session."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mender.capabilities.build import BuildCapability
from mender.capabilities.files import FileCapabilities
from mender.capabilities.registry import CapabilityRegistry

if TYPE_CHECKING:
    from pathlib import Path

    from mender.build import Builder

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITIES = (
    "read_file_with_line_numbers",
    "read_file_lines",
    "edit_file",
    "replace_text",
    "list_files",
    "run_build",
)


def register_defaults(
    registry: CapabilityRegistry,
    workspace: str | Path,
    builder: Builder | None = None,
    default_artifact: str | None = None,
) -> CapabilityRegistry:
    """Register the file capabilities and, when a builder is given, ``run_build``.

    Returns:
        The same registry, for chaining.
    """
    registry.register_instance(FileCapabilities(workspace, default_artifact=default_artifact))
    if builder is not None:
        registry.register_instance(BuildCapability(builder, workspace))
    logger.debug("Default capabilities registered: %s", ", ".join(registry.names()))
    return registry


def default_registry(
    workspace: str | Path,
    builder: Builder | None = None,
    default_artifact: str | None = None,
) -> CapabilityRegistry:
    """Create a fresh registry holding the default capability set."""
    return register_defaults(CapabilityRegistry(), workspace, builder, default_artifact)
