"""Mender: drive a code oracle until a project builds.

A build runs, its diagnostic goes to the oracle, the oracle edits the
workspace through typed capabilities, and the cycle repeats within a fixed
attempt budget. Every step can be recorded in a fix history.
"""

from mender._version import __version__

# Build
from mender.build import Builder, BuildOutcome, BuildRunner, SuccessHeuristic

# Capabilities
from mender.capabilities import (
    CapabilityDescriptor,
    CapabilityDispatcher,
    CapabilityRegistry,
    Err,
    ErrorKind,
    InvocationRequest,
    InvocationResult,
    Ok,
    ParameterSpec,
    SemanticType,
    capability,
    default_registry,
    param,
)

# Configuration
from mender.config import MenderConfig

# Exceptions
from mender.exceptions import (
    ArgumentCoercionError,
    BuildInvocationError,
    CapabilityError,
    CapabilityExecutionError,
    CapabilityNotFoundError,
    DuplicateParameterError,
    HistoryPersistenceError,
    LineRangeError,
    MenderError,
    OracleAuthError,
    OracleCommunicationError,
    OracleConfigError,
    OracleRateLimitError,
    OracleResponseError,
    RepairExhaustedError,
    WorkspaceViolationError,
)

# History
from mender.history import FileHistoryStore, HistoryStore, SqlHistoryStore

# Oracle
from mender.oracle import OpenAIOracle, OracleGateway, OracleReply

# Repair
from mender.repair import (
    CorrectionLoop,
    CorrectionResult,
    EventKind,
    LoopState,
    ProgressEvent,
    RepairConfig,
    SpanRepairStrategy,
)
from mender.session import RepairSession, run_sessions

__all__ = [
    "__version__",
    "ArgumentCoercionError",
    "BuildInvocationError",
    "BuildOutcome",
    "BuildRunner",
    "Builder",
    "CapabilityDescriptor",
    "CapabilityDispatcher",
    "CapabilityError",
    "CapabilityExecutionError",
    "CapabilityNotFoundError",
    "CapabilityRegistry",
    "CorrectionLoop",
    "CorrectionResult",
    "DuplicateParameterError",
    "Err",
    "ErrorKind",
    "EventKind",
    "FileHistoryStore",
    "HistoryPersistenceError",
    "HistoryStore",
    "InvocationRequest",
    "InvocationResult",
    "LineRangeError",
    "LoopState",
    "MenderConfig",
    "MenderError",
    "Ok",
    "OpenAIOracle",
    "OracleAuthError",
    "OracleCommunicationError",
    "OracleConfigError",
    "OracleGateway",
    "OracleRateLimitError",
    "OracleReply",
    "OracleResponseError",
    "ParameterSpec",
    "ProgressEvent",
    "RepairConfig",
    "RepairExhaustedError",
    "RepairSession",
    "SemanticType",
    "SpanRepairStrategy",
    "SqlHistoryStore",
    "SuccessHeuristic",
    "WorkspaceViolationError",
    "capability",
    "default_registry",
    "param",
    "run_sessions",
]
