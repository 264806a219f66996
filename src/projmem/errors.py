"""
Exception hierarchy for projmem.

All projmem exceptions inherit from ProjmemError, allowing callers to catch
all projmem-specific exceptions with a single except clause.

Exception Categories:
    - ValidationError: Malformed, oversized, or disallowed input
    - RateLimitExceededError / PoolTimeoutError: Admission failures
    - NotFoundError / ConfirmationRequiredError / SchemaVersionMismatchError:
      Request-level refusals
    - StorageError: Backing engine failure (detail redacted)
    - ConfigError: Invalid or unreadable configuration

Design Principles:
    - All errors have a numeric code and a stable kind string
    - The kind string is what crosses the tool boundary
    - Messages are safe to show to an agent (no paths, no credentials)
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Request errors: 1xxx
ERROR_VALIDATION = 1001
ERROR_UNKNOWN_OPERATION = 1002

# Admission errors: 2xxx
ERROR_RATE_LIMIT_EXCEEDED = 2001
ERROR_POOL_TIMEOUT = 2002

# Refusals: 3xxx
ERROR_NOT_FOUND = 3001
ERROR_CONFIRMATION_REQUIRED = 3002
ERROR_SCHEMA_VERSION_MISMATCH = 3003

# Storage errors: 4xxx
ERROR_STORAGE = 4000
ERROR_STORAGE_CONNECTION = 4001
ERROR_STORAGE_WRITE = 4002
ERROR_STORAGE_READ = 4003
ERROR_STORAGE_INTEGRITY = 4004

# Configuration errors: 5xxx
ERROR_CONFIG = 5001


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class ProjmemError(Exception):
    """
    Base exception for all projmem errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info (never
                 returned to tool callers)
    """

    kind = "PROJMEM_ERROR"

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Request Errors
# =============================================================================


@dataclass
class ValidationError(ProjmemError):
    """
    Raised when a tool argument is malformed or a key is disallowed.

    Raised before any engine access, so it never has side effects.

    Attributes:
        field_name: The argument that failed validation
        reason: Why it failed
    """

    kind = "VALIDATION_ERROR"

    field_name: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            if self.field_name:
                self.message = f"Invalid {self.field_name}: {self.reason}"
            else:
                self.message = f"Invalid arguments: {self.reason}"
        if self.code == 0:
            self.code = ERROR_VALIDATION
        self.context.update({
            "field": self.field_name,
            "reason": self.reason,
        })


@dataclass
class UnknownOperationError(ProjmemError):
    """Raised when the dispatcher is asked for an operation it does not know."""

    kind = "UNKNOWN_OPERATION"

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown operation: {self.operation}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_OPERATION
        self.context["operation"] = self.operation


# =============================================================================
# Admission Errors
# =============================================================================


@dataclass
class RateLimitExceededError(ProjmemError):
    """
    Raised when the per-process operation budget for the window is spent.

    Attributes:
        max_ops: Operations allowed per window
        window_seconds: Window length
        retry_after_seconds: Time until the window resets
    """

    kind = "RATE_LIMIT_EXCEEDED"

    max_ops: int = 0
    window_seconds: float = 0.0
    retry_after_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Rate limit exceeded: {self.max_ops} operations per "
                f"{self.window_seconds:g}s"
            )
        if self.code == 0:
            self.code = ERROR_RATE_LIMIT_EXCEEDED
        if not self.suggestion:
            self.suggestion = f"Retry in {self.retry_after_seconds:.1f}s"
        self.context.update({
            "max_ops": self.max_ops,
            "window_seconds": self.window_seconds,
            "retry_after_seconds": self.retry_after_seconds,
        })


@dataclass
class PoolTimeoutError(ProjmemError):
    """Raised when no pooled connection became available in time."""

    kind = "POOL_TIMEOUT"

    timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"No storage connection available within {self.timeout_seconds:g}s"
            )
        if self.code == 0:
            self.code = ERROR_POOL_TIMEOUT
        if not self.suggestion:
            self.suggestion = (
                "Reads are safe to retry; deduplicate writes by content before retrying"
            )
        self.context["timeout_seconds"] = self.timeout_seconds


# =============================================================================
# Refusals
# =============================================================================


@dataclass
class NotFoundError(ProjmemError):
    """Raised when a context key or pattern does not exist."""

    kind = "NOT_FOUND"

    entity: str = ""
    key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"{self.entity.capitalize() or 'Entry'} not found: {self.key}"
        if self.code == 0:
            self.code = ERROR_NOT_FOUND
        self.context.update({"entity": self.entity, "key": self.key})


@dataclass
class ConfirmationRequiredError(ProjmemError):
    """Raised when a destructive operation is called without its exact token."""

    kind = "CONFIRMATION_REQUIRED"

    operation: str = ""
    token: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"{self.operation} is irreversible and requires "
                f"confirm={self.token!r}"
            )
        if self.code == 0:
            self.code = ERROR_CONFIRMATION_REQUIRED
        self.context["operation"] = self.operation


@dataclass
class SchemaVersionMismatchError(ProjmemError):
    """Raised when a snapshot or store uses an unsupported schema version."""

    kind = "SCHEMA_VERSION_MISMATCH"

    expected: int = 0
    actual: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Unsupported schema version {self.actual!r} "
                f"(supported: {self.expected})"
            )
        if self.code == 0:
            self.code = ERROR_SCHEMA_VERSION_MISMATCH
        self.context.update({"expected": self.expected, "actual": self.actual})


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(ProjmemError):
    """
    Base class for storage/database errors.

    Attributes:
        operation: The storage operation that failed
    """

    kind = "STORAGE_ERROR"

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage operation failed: {self.operation}"
        if self.code == 0:
            self.code = ERROR_STORAGE
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the backing store cannot be opened."""

    backend: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to {self.backend or 'storage'} backend"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the store location is valid and writable"
        super().__post_init__()
        self.context["backend"] = self.backend


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails. Prior state is unchanged."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed ({self.operation}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed ({self.operation}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class IntegrityCheckError(StorageError):
    """Raised when the backing engine's integrity check fails."""

    kind = "INTEGRITY_ERROR"

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Database integrity check failed"
        if self.code == 0:
            self.code = ERROR_STORAGE_INTEGRITY
        if not self.suggestion:
            self.suggestion = "The store may be corrupted. Export what you can and restore from a backup."
        super().__post_init__()


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigError(ProjmemError):
    """Raised when configuration cannot be read or fails validation."""

    kind = "CONFIG_ERROR"

    source: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration in {self.source or 'environment'}"
        if self.code == 0:
            self.code = ERROR_CONFIG
        self.context["source"] = self.source
