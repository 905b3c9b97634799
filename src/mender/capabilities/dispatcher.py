"""CapabilityDispatcher: turns invocation requests into Ok/Err results.

``invoke()`` never raises. Every failure (unknown name, bad arguments, an
exception inside the callable) is returned as an ``Err`` so one bad call
cannot abort the conversation it belongs to.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from mender.capabilities.coercion import bind_arguments
from mender.capabilities.models import Err, ErrorKind, InvocationRequest, Ok
from mender.exceptions import ArgumentCoercionError, CapabilityExecutionError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from mender.capabilities.models import InvocationResult, RegisteredCapability
    from mender.capabilities.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


def serialize_result(value: Any) -> str:
    """Render a capability's return value as the text shown to the oracle."""
    if isinstance(value, str):
        return value
    if value is None:
        return "Success"
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (Mapping, list, tuple, int, float, bool)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


class CapabilityDispatcher:
    """Resolves, binds and invokes capabilities from a registry.

    Holds no per-call state; one dispatcher can serve concurrent sessions.

    Usage::

        dispatcher = CapabilityDispatcher(registry)
        result = dispatcher.invoke(InvocationRequest("read_file_lines", {...}))
        text = result.render()
    """

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Invoke one capability.

        Args:
            request: Capability name, raw arguments and correlation id.

        Returns:
            Ok with the serialized return value, or Err describing the failure.
        """
        name = request.capability_name
        call_id = request.invocation_id

        entry = self._registry.get(name)
        if entry is None:
            logger.debug("Invocation %s: unknown capability %s", call_id, name)
            return Err(
                message=f"capability not found: {name}",
                kind=ErrorKind.CAPABILITY_NOT_FOUND,
                invocation_id=call_id,
                capability_name=name,
            )

        raw = request.raw_arguments
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            return Err(
                message=f"arguments must be an object, got {type(raw).__name__}",
                kind=ErrorKind.ARGUMENT_COERCION,
                invocation_id=call_id,
                capability_name=name,
            )

        try:
            kwargs = bind_arguments(entry.descriptor.parameters, raw)
        except ArgumentCoercionError as exc:
            logger.debug("Invocation %s of %s: %s", call_id, name, exc)
            return Err(
                message=str(exc),
                kind=ErrorKind.ARGUMENT_COERCION,
                invocation_id=call_id,
                capability_name=name,
            )

        try:
            value = self.execute(entry, kwargs)
        except CapabilityExecutionError as exc:
            logger.debug("Capability %s failed: %s", name, exc, exc_info=exc.error)
            return Err(
                message=str(exc),
                kind=ErrorKind.CAPABILITY_EXECUTION,
                invocation_id=call_id,
                capability_name=name,
            )

        return Ok(
            value=serialize_result(value),
            invocation_id=call_id,
            capability_name=name,
        )

    @staticmethod
    def execute(entry: RegisteredCapability, kwargs: dict[str, Any]) -> Any:
        """Call a capability's handler with already-coerced arguments.

        Raises:
            CapabilityExecutionError: Wrapping whatever the handler raised.
        """
        try:
            return entry.handler(**kwargs)
        except Exception as exc:
            raise CapabilityExecutionError(entry.name, exc) from exc

    def invoke_many(self, requests: Iterable[InvocationRequest]) -> list[InvocationResult]:
        """Invoke requests in order; failures do not stop later requests."""
        return [self.invoke(request) for request in requests]

    def is_mutating(self, name: str) -> bool:
        return self._registry.is_mutating(name)
