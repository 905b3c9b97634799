"""Capability dispatch: typed local operations exposed as oracle tools."""

from mender.capabilities.build import BuildCapability
from mender.capabilities.defaults import DEFAULT_CAPABILITIES, default_registry, register_defaults
from mender.capabilities.dispatcher import CapabilityDispatcher, serialize_result
from mender.capabilities.files import FileCapabilities, replace_line_range
from mender.capabilities.models import (
    CapabilityDescriptor,
    Err,
    ErrorKind,
    InvocationRequest,
    InvocationResult,
    Ok,
    ParameterSpec,
    RegisteredCapability,
    SemanticType,
    param,
)
from mender.capabilities.registry import CapabilityRegistry, capability

__all__ = [
    "BuildCapability",
    "CapabilityDescriptor",
    "CapabilityDispatcher",
    "CapabilityRegistry",
    "DEFAULT_CAPABILITIES",
    "Err",
    "ErrorKind",
    "FileCapabilities",
    "InvocationRequest",
    "InvocationResult",
    "Ok",
    "ParameterSpec",
    "RegisteredCapability",
    "SemanticType",
    "capability",
    "default_registry",
    "param",
    "register_defaults",
    "replace_line_range",
    "serialize_result",
]
