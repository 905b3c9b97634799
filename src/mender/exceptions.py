"""Mender exception hierarchy.

All Mender-specific exceptions inherit from MenderError.
"""


class MenderError(Exception):
    """Base exception for all Mender errors."""


class CapabilityError(MenderError):
    """Base for failures raised while resolving or invoking a capability."""


class CapabilityNotFoundError(CapabilityError):
    """Raised when a capability name lookup fails."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"capability not found: {name}")


class ArgumentCoercionError(CapabilityError):
    """Raised when a raw argument cannot be coerced to its declared type."""

    def __init__(self, parameter: str, message: str) -> None:
        self.parameter = parameter
        super().__init__(f"argument '{parameter}': {message}")


class CapabilityExecutionError(CapabilityError):
    """Raised when a bound capability callable fails.

    Wraps the original exception; the dispatcher turns it into an Err.
    """

    def __init__(self, capability: str, error: Exception) -> None:
        self.capability = capability
        self.error = error
        super().__init__(f"{type(error).__name__}: {error}")


class DuplicateParameterError(CapabilityError):
    """Raised when a descriptor declares the same parameter name twice."""

    def __init__(self, capability: str, parameter: str) -> None:
        self.capability = capability
        self.parameter = parameter
        super().__init__(
            f"Capability '{capability}' declares parameter '{parameter}' more than once"
        )


class LineRangeError(MenderError):
    """Raised when a line range does not fit the target file.

    Edits that raise this never write to disk.
    """

    def __init__(self, start_line: int, end_line: int, line_count: int) -> None:
        self.start_line = start_line
        self.end_line = end_line
        self.line_count = line_count
        super().__init__(
            f"Invalid line range {start_line}-{end_line} "
            f"(file has {line_count} lines)"
        )


class WorkspaceViolationError(MenderError):
    """Raised when a path resolves outside the session workspace."""

    def __init__(self, path: str, workspace: str) -> None:
        self.path = path
        self.workspace = workspace
        super().__init__(f"Path '{path}' is outside workspace '{workspace}'")


class BuildInvocationError(MenderError):
    """Raised when the external build process cannot be started.

    BuildRunner.run() converts it into a failed BuildOutcome.
    """


class OracleCommunicationError(MenderError):
    """Raised when an oracle call fails or times out.

    Fatal for the current fix turn only; the correction loop moves on to
    the next attempt.
    """


class OracleConfigError(OracleCommunicationError):
    """Missing or invalid oracle configuration (e.g., no API key)."""


class OracleAuthError(OracleCommunicationError):
    """Authentication failed (401/403)."""


class OracleRateLimitError(OracleCommunicationError):
    """Rate limited by the API (429).

    Attributes:
        retry_after: Seconds to wait before retrying (from Retry-After header),
            or None if not provided.
    """

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"{message} (retry after {retry_after}s)"
        super().__init__(message)


class OracleResponseError(OracleCommunicationError):
    """Unexpected response format from the oracle."""


class HistoryPersistenceError(MenderError):
    """Raised inside the history store when disk or database I/O fails.

    Never escapes the store's public methods.
    """


class RepairExhaustedError(MenderError):
    """All correction attempts failed."""

    def __init__(self, attempts: int, last_diagnostic: str) -> None:
        self.attempts = attempts
        self.last_diagnostic = last_diagnostic
        super().__init__(
            f"Build still failing after {attempts} attempt(s). "
            f"Last diagnostic: {last_diagnostic[-500:]}"
        )
