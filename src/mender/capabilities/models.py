"""Capability data models.

Frozen dataclasses for parameter specs, capability descriptors,
invocation requests, and the Ok/Err invocation result union.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from mender.exceptions import DuplicateParameterError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from pydantic import BaseModel


class SemanticType(str, enum.Enum):
    """Declared type of a capability parameter."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    STRUCT = "struct"

    @property
    def json_type(self) -> str:
        """JSON Schema type advertised to the oracle."""
        if self is SemanticType.STRUCT:
            return "object"
        return self.value


class ErrorKind(str, enum.Enum):
    """Why an invocation produced an Err."""

    CAPABILITY_NOT_FOUND = "capability_not_found"
    ARGUMENT_COERCION = "argument_coercion"
    CAPABILITY_EXECUTION = "capability_execution"


@dataclass(frozen=True)
class ParameterSpec:
    """One declared parameter of a capability.

    Attributes:
        name: Key looked up in the raw argument mapping.
        semantic_type: Target type for coercion.
        description: Shown to the oracle in the parameter schema.
        required: Whether the parameter must be present (or defaulted).
        default: Textual default, coerced like any raw value.
        model: Pydantic model class for ``struct`` parameters.
    """

    name: str
    semantic_type: SemanticType = SemanticType.STRING
    description: str = ""
    required: bool = True
    default: str | None = None
    model: type[BaseModel] | None = None

    def json_schema(self) -> dict:
        schema: dict[str, Any] = {"type": self.semantic_type.json_type}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        if self.model is not None:
            schema["properties"] = self.model.model_json_schema().get("properties", {})
        return schema


def param(
    name: str,
    semantic_type: SemanticType | str = SemanticType.STRING,
    description: str = "",
    *,
    required: bool = True,
    default: str | None = None,
    model: type[BaseModel] | None = None,
) -> ParameterSpec:
    """Shorthand for building a ParameterSpec.

    A parameter with a default is never required.
    """
    if default is not None:
        required = False
    return ParameterSpec(
        name=name,
        semantic_type=SemanticType(semantic_type),
        description=description,
        required=required,
        default=default,
        model=model,
    )


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Static metadata describing one callable capability.

    Attributes:
        name: Unique capability id (e.g. "edit_file").
        description: Human-readable description shown to the oracle.
        parameters: Ordered parameter specs.
    """

    name: str
    description: str
    parameters: tuple[ParameterSpec, ...] = ()

    def __post_init__(self) -> None:
        # Accept lists from callers but store an immutable tuple
        object.__setattr__(self, "parameters", tuple(self.parameters))
        seen: set[str] = set()
        for spec in self.parameters:
            if spec.name in seen:
                raise DuplicateParameterError(self.name, spec.name)
            seen.add(spec.name)

    def json_schema(self) -> dict:
        """Build the JSON Schema object describing this capability's input."""
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def to_openai(self) -> dict:
        """Convert to OpenAI function-calling format.

        Returns:
            Dict with "type": "function" and nested "function" object.
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }

    def to_anthropic(self) -> dict:
        """Convert to Anthropic tool-use format.

        Returns:
            Dict with "name", "description", and "input_schema".
        """
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.json_schema(),
        }


@dataclass(frozen=True)
class RegisteredCapability:
    """A descriptor paired with the callable that implements it."""

    descriptor: CapabilityDescriptor
    handler: Callable[..., object]

    @property
    def name(self) -> str:
        return self.descriptor.name


def new_invocation_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class InvocationRequest:
    """A request from the oracle to invoke one capability.

    ``invocation_id`` correlates the request with its result in the
    conversation transcript.
    """

    capability_name: str
    raw_arguments: Mapping[str, Any] = field(default_factory=dict)
    invocation_id: str = field(default_factory=new_invocation_id)


@dataclass(frozen=True)
class Ok:
    """Successful invocation carrying the serialized return value."""

    value: str
    invocation_id: str = ""
    capability_name: str = ""

    @property
    def ok(self) -> bool:
        return True

    def render(self) -> str:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed invocation. Never raised, always returned."""

    message: str
    kind: ErrorKind = ErrorKind.CAPABILITY_EXECUTION
    invocation_id: str = ""
    capability_name: str = ""

    @property
    def ok(self) -> bool:
        return False

    def render(self) -> str:
        return f"Error: {self.message}"


InvocationResult = Union[Ok, Err]
