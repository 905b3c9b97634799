"""Per-type converters from untyped oracle arguments to typed call values.

One converter per SemanticType. Converters accept values that are already of
the exact type, parse textual representations of primitives, and raise
ArgumentCoercionError otherwise. Struct parameters are hydrated through their
pydantic model: a direct ``model_validate`` first, then a lenient
field-by-field pass.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, TypeAdapter, ValidationError

from mender.capabilities.models import SemanticType
from mender.exceptions import ArgumentCoercionError

if TYPE_CHECKING:
    from mender.capabilities.models import ParameterSpec

logger = logging.getLogger(__name__)

_TRUE_WORDS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n", "off"})


def _to_string(name: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_integer(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ArgumentCoercionError(name, f"expected integer, got boolean {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ArgumentCoercionError(name, f"expected integer, got non-integral {value!r}")
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            as_float = float(text)
        except ValueError:
            raise ArgumentCoercionError(name, f"cannot parse {value!r} as integer") from None
        if as_float.is_integer():
            return int(as_float)
        raise ArgumentCoercionError(name, f"expected integer, got non-integral {value!r}")
    raise ArgumentCoercionError(name, f"expected integer, got {type(value).__name__}")


def _to_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ArgumentCoercionError(name, f"expected number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise ArgumentCoercionError(name, f"cannot parse {value!r} as number") from None
    raise ArgumentCoercionError(name, f"expected number, got {type(value).__name__}")


def _to_boolean(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ArgumentCoercionError(name, f"cannot interpret {value!r} as boolean")


def _parse_json(name: str, text: str, expected: type, label: str) -> Any:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        raise ArgumentCoercionError(name, f"expected {label}, got unparseable text") from None
    if not isinstance(parsed, expected):
        raise ArgumentCoercionError(
            name, f"expected {label}, got JSON {type(parsed).__name__}"
        )
    return parsed


def _to_array(name: str, value: Any) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return _parse_json(name, value, list, "array")
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return list(value)
    raise ArgumentCoercionError(name, f"expected array, got {type(value).__name__}")


def _to_object(name: str, value: Any) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        return _parse_json(name, value, dict, "object")
    raise ArgumentCoercionError(name, f"expected object, got {type(value).__name__}")


def build_struct(name: str, model: type[BaseModel], value: Any) -> BaseModel:
    """Hydrate a pydantic model from an untyped value.

    Tries a direct structural validation first. When that fails, assigns
    fields one at a time: fields that validate are kept, optional fields that
    fail fall back to their defaults, and a required field that cannot be
    satisfied aborts the conversion.

    Raises:
        ArgumentCoercionError: If no instance can be built.
    """
    if isinstance(value, model):
        return value
    if isinstance(value, str):
        value = _parse_json(name, value, dict, model.__name__)
    if not isinstance(value, Mapping):
        raise ArgumentCoercionError(
            name, f"expected {model.__name__} object, got {type(value).__name__}"
        )

    try:
        return model.model_validate(dict(value))
    except ValidationError as exc:
        logger.debug(
            "Direct validation of %s failed (%d errors), trying field-by-field",
            model.__name__,
            exc.error_count(),
        )

    accepted: dict[str, Any] = {}
    for field_name, info in model.model_fields.items():
        key = info.alias or field_name
        if key not in value:
            if info.is_required():
                raise ArgumentCoercionError(
                    name, f"{model.__name__}.{field_name} is required"
                )
            continue
        try:
            accepted[field_name] = TypeAdapter(info.annotation).validate_python(value[key])
        except ValidationError:
            if info.is_required():
                raise ArgumentCoercionError(
                    name,
                    f"{model.__name__}.{field_name}: cannot convert {value[key]!r}",
                ) from None
            logger.debug(
                "Dropping invalid optional field %s.%s", model.__name__, field_name
            )

    try:
        return model(**accepted)
    except ValidationError as exc:
        raise ArgumentCoercionError(name, f"cannot build {model.__name__}: {exc}") from None


_CONVERTERS: dict[SemanticType, Callable[[str, Any], Any]] = {
    SemanticType.STRING: _to_string,
    SemanticType.INTEGER: _to_integer,
    SemanticType.NUMBER: _to_number,
    SemanticType.BOOLEAN: _to_boolean,
    SemanticType.ARRAY: _to_array,
    SemanticType.OBJECT: _to_object,
}


def coerce_value(spec: ParameterSpec, value: Any) -> Any:
    """Convert one raw value to the parameter's declared type.

    Args:
        spec: The parameter declaration.
        value: Raw value from the oracle (or the textual default).

    Returns:
        The converted value.

    Raises:
        ArgumentCoercionError: If the value cannot be converted.
    """
    if value is None:
        if spec.required:
            raise ArgumentCoercionError(spec.name, "null is not allowed")
        return None
    if spec.semantic_type is SemanticType.STRUCT:
        if spec.model is None:
            raise ArgumentCoercionError(spec.name, "struct parameter declares no model")
        return build_struct(spec.name, spec.model, value)
    return _CONVERTERS[spec.semantic_type](spec.name, value)


def bind_arguments(
    parameters: Sequence[ParameterSpec],
    raw_arguments: Mapping[str, Any],
) -> dict[str, Any]:
    """Resolve and coerce every declared parameter from a raw mapping.

    Absent parameters take their textual default. Absent optional
    parameters without a default are omitted so the callable's own default
    applies. Undeclared keys are ignored.

    Raises:
        ArgumentCoercionError: On a missing required parameter or a failed
            conversion.
    """
    bound: dict[str, Any] = {}
    for spec in parameters:
        if spec.name in raw_arguments:
            raw = raw_arguments[spec.name]
        elif spec.default is not None:
            raw = spec.default
        elif spec.required:
            raise ArgumentCoercionError(spec.name, "missing required parameter")
        else:
            continue
        bound[spec.name] = coerce_value(spec, raw)

    declared = {spec.name for spec in parameters}
    extra = [key for key in raw_arguments if key not in declared]
    if extra:
        logger.debug("Ignoring undeclared arguments: %s", ", ".join(sorted(extra)))
    return bound
