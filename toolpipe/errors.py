"""Module errors: structured error taxonomy for toolpipe."""
#
from enum import Enum
from typing import Dict, Any, Optional, Sequence
# PURPOSE:
# Provides the error codes and typed exceptions shared by the config parser,
# the persistence codec and the process executor.
#
# ERROR CODE FORMAT:
# - CONFIG_XXX: Tool definition parsing errors
# - SERIAL_XXX: Persisted blob errors
# - PROC_XXX: External process errors
# - DISPATCH_XXX: Tool selection errors
#
# USAGE:
#   from toolpipe.errors import ProcessExecutionError
#
#   raise ProcessExecutionError(
#       "jq exited with status 5",
#       argv=["jq", "."], exit_code=5, stderr=b"parse error"
#   )
#
class ErrorCode(Enum):
    # Config Errors
    CONFIG_INVALID = "CONFIG_001"
    CONFIG_MISSING_REQUIRED = "CONFIG_002"
    CONFIG_INVALID_ENUM = "CONFIG_003"
    CONFIG_MALFORMED_COLLECTION = "CONFIG_004"

    # Serialization Errors
    SERIAL_CORRUPT = "SERIAL_001"
    SERIAL_BAD_PADDING = "SERIAL_002"
    SERIAL_DECODE_FAILED = "SERIAL_003"

    # Process Errors
    PROC_SPAWN_FAILED = "PROC_001"
    PROC_NOT_FOUND = "PROC_002"
    PROC_PERMISSION_DENIED = "PROC_003"
    PROC_MISSING_DEPENDENCY = "PROC_004"
    PROC_EXIT_NONZERO = "PROC_005"
    PROC_TIMEOUT = "PROC_006"

    # Dispatch Errors
    DISPATCH_INVALID_INPUT = "DISPATCH_001"
    DISPATCH_MISSING_PARAMETER = "DISPATCH_002"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class PipeError(Exception):
    """
    Base exception class for toolpipe with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "PROC_005")
        message: Human-readable error message
        details: Optional dictionary with additional context
    """

    default_code = ErrorCode.CONFIG_INVALID

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}

        # Build exception message with code for easy debugging
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON serialization.

        Returns:
            Dictionary with code, message and details
        """
        return {
            "type": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Configuration
# ============================================================================

class ConfigParseError(PipeError):
    """The tool definition document could not be turned into a Config."""

    default_code = ErrorCode.CONFIG_INVALID


class MissingFieldError(ConfigParseError):
    default_code = ErrorCode.CONFIG_MISSING_REQUIRED

    def __init__(self, key: str):
        super().__init__(f"Missing value for {key}", details={"key": key})
        self.key = key


class InvalidEnumError(ConfigParseError):
    default_code = ErrorCode.CONFIG_INVALID_ENUM

    def __init__(self, value: Any, enum_name: str):
        super().__init__(
            f"Invalid value for enumerated type: {value}",
            details={"value": value, "enum": enum_name},
        )
        self.value = value


class MalformedCollectionError(ConfigParseError):
    default_code = ErrorCode.CONFIG_MALFORMED_COLLECTION


# ============================================================================
# Persistence
# ============================================================================

class SerializationError(PipeError):
    """A persisted blob is corrupt, truncated or not a Config."""

    default_code = ErrorCode.SERIAL_CORRUPT


# ============================================================================
# Processes
# ============================================================================

class ProcessError(PipeError):
    """Base class for failures of a single tool invocation."""

    default_code = ErrorCode.PROC_SPAWN_FAILED

    def __init__(
        self,
        message: str,
        argv: Sequence[str] = (),
        code: Optional[ErrorCode] = None,
        exit_code: Optional[int] = None,
        stderr: bytes = b"",
    ):
        details: Dict[str, Any] = {"argv": list(argv)}
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            details["stderr"] = stderr.decode("utf-8", errors="replace")
        super().__init__(message, code=code, details=details)
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessSpawnError(ProcessError):
    """The executable could not be started."""

    default_code = ErrorCode.PROC_SPAWN_FAILED


class ProcessExecutionError(ProcessError):
    """The process ran but exited with a non-zero status."""

    default_code = ErrorCode.PROC_EXIT_NONZERO


class ProcessTimeoutError(ProcessError):
    """The invocation deadline elapsed and the process was killed."""

    default_code = ErrorCode.PROC_TIMEOUT


# ============================================================================
# Dispatch
# ============================================================================

class DispatchError(PipeError):
    """A tool was asked to run on input it does not accept."""

    default_code = ErrorCode.DISPATCH_INVALID_INPUT


class ParameterError(DispatchError):
    """A command parameter has no value, or a placeholder names an unknown parameter."""

    default_code = ErrorCode.DISPATCH_MISSING_PARAMETER


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> PipeError:
    """
    Convert a generic exception to a PipeError.

    Used by the dispatcher so every isolated tool failure is reported with the
    same shape.
    """
    if isinstance(error, PipeError):
        return error

    message = str(error) or type(error).__name__
    if context:
        message = f"{context}: {message}"

    return PipeError(
        message,
        code=ErrorCode.SYSTEM_INTERNAL_ERROR,
        details={
            "original_type": type(error).__name__,
            "original_message": str(error),
        },
    )


__all__ = [
    "ErrorCode",
    "PipeError",
    "ConfigParseError",
    "MissingFieldError",
    "InvalidEnumError",
    "MalformedCollectionError",
    "SerializationError",
    "ProcessError",
    "ProcessSpawnError",
    "ProcessExecutionError",
    "ProcessTimeoutError",
    "DispatchError",
    "ParameterError",
    "handle_error",
]
