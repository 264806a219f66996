"""
Schema definitions for projmem.

This module defines the Pydantic models used throughout projmem:
- Decision/Pattern/ContextEntry: The three stored entity kinds
- Snapshot/ImportSummary: Export/import wire format
- *Args models: Typed argument objects for each dispatcher operation
- Operation: The closed set of operations the dispatcher understands

Design Decisions:
    - External JSON uses camelCase (createdAt, schemaVersion); Python
      attributes stay snake_case via aliases
    - Argument models forbid unknown fields so typos surface as errors
    - Entity models are immutable (frozen=True)
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Store layout version; also stamped into exported snapshots
SCHEMA_VERSION = 1

# Exact literal that authorizes purge_memory
PURGE_CONFIRMATION_TOKEN = "CONFIRM_PURGE"


def now_iso() -> str:
    """Get current UTC time in ISO format with fixed microsecond precision."""
    return datetime.now(UTC).isoformat(timespec="microseconds")


def normalize_timestamp(value: str | datetime | None) -> str | None:
    """
    Normalize a timestamp to the stored UTC ISO-8601 form.

    Stored timestamps always carry microseconds and a +00:00 offset so that
    lexical order equals chronological order. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


# =============================================================================
# Enums
# =============================================================================


class StorageProfile(str, Enum):
    """Backing engine profile."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"


class ImportMode(str, Enum):
    """How an imported snapshot is applied."""

    REPLACE = "replace"
    MERGE = "merge"


class EntityKind(str, Enum):
    """Capacity-bounded entity kinds."""

    DECISION = "decision"
    PATTERN = "pattern"
    CONTEXT = "context"


class Operation(str, Enum):
    """The closed set of operations exposed to the transport layer."""

    STORE_DECISION = "store_decision"
    SEARCH_DECISIONS = "search_decisions"
    GET_RECENT_DECISIONS = "get_recent_decisions"
    STORE_PATTERN = "store_pattern"
    GET_PATTERNS = "get_patterns"
    GET_PATTERN = "get_pattern"
    DELETE_PATTERN = "delete_pattern"
    SET_CONTEXT = "set_context"
    GET_CONTEXT = "get_context"
    GET_ALL_CONTEXT = "get_all_context"
    CLEAR_CONTEXT = "clear_context"
    EXPORT_MEMORY = "export_memory"
    IMPORT_MEMORY = "import_memory"
    GET_STATS = "get_stats"
    HEALTH_CHECK = "health_check"
    PURGE_MEMORY = "purge_memory"


# =============================================================================
# Entity Models
# =============================================================================


class _WireModel(BaseModel):
    """Base for models that travel as camelCase JSON."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to the external JSON shape."""
        return self.model_dump(mode="json", by_alias=True)


class Decision(_WireModel):
    """
    A recorded architectural decision.

    Attributes:
        id: Engine-assigned monotonic identifier
        text: What was decided
        rationale: Why (may be empty)
        tags: Normalized tag list
        created_at: UTC ISO-8601 creation time
    """

    id: int = Field(..., description="Engine-assigned identifier", ge=1)
    text: str = Field(..., description="What was decided")
    rationale: str = Field(default="", description="Why it was decided")
    tags: list[str] = Field(default_factory=list, description="Tags")
    created_at: str = Field(..., description="UTC ISO-8601 creation time")


class Pattern(_WireModel):
    """A reusable code pattern, keyed by name."""

    name: str = Field(..., description="Unique pattern name")
    description: str = Field(..., description="What the pattern is for")
    example: str = Field(default="", description="Example usage")
    updated_at: str = Field(..., description="UTC ISO-8601 last update time")


class ContextEntry(_WireModel):
    """A single key/value context entry."""

    key: str = Field(..., description="Unique context key")
    value: str = Field(..., description="Stored value")
    updated_at: str = Field(..., description="UTC ISO-8601 last update time")


# =============================================================================
# Snapshot Models
# =============================================================================


class SnapshotDecision(_WireModel):
    """Decision as it appears in a snapshot (id is informational only)."""

    id: int | None = None
    text: str
    rationale: str | None = ""
    tags: list[str] = Field(default_factory=list)
    created_at: str | None = None

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: str | None) -> str | None:
        """Reject unparseable timestamps up front."""
        return normalize_timestamp(v)


class SnapshotPattern(_WireModel):
    """Pattern as it appears in a snapshot."""

    name: str
    description: str = ""
    example: str | None = ""
    updated_at: str | None = None

    @field_validator("updated_at")
    @classmethod
    def validate_updated_at(cls, v: str | None) -> str | None:
        """Reject unparseable timestamps up front."""
        return normalize_timestamp(v)


class SnapshotContextValue(_WireModel):
    """Context value as it appears in a snapshot."""

    value: str
    updated_at: str | None = None

    @field_validator("updated_at")
    @classmethod
    def validate_updated_at(cls, v: str | None) -> str | None:
        """Reject unparseable timestamps up front."""
        return normalize_timestamp(v)


class Snapshot(_WireModel):
    """
    Full serialized store.

    Context values may be given either as objects carrying updatedAt or as
    plain strings (no timestamp).
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    schema_version: int
    exported_at: str | None = None
    decisions: list[SnapshotDecision] = Field(default_factory=list)
    patterns: list[SnapshotPattern] = Field(default_factory=list)
    context: dict[str, SnapshotContextValue] = Field(default_factory=dict)

    @field_validator("context", mode="before")
    @classmethod
    def coerce_plain_values(cls, v: Any) -> Any:
        """Accept {key: "value"} as well as {key: {"value": ..., "updatedAt": ...}}."""
        if isinstance(v, dict):
            return {
                key: {"value": item} if isinstance(item, str) else item
                for key, item in v.items()
            }
        return v


class ImportSummary(_WireModel):
    """Outcome counts of an import."""

    imported: int = 0
    skipped: int = 0
    conflicts: int = 0
    evicted: int = 0


# =============================================================================
# Operation Argument Models
# =============================================================================


class _Args(BaseModel):
    """Base for dispatcher argument objects."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class NoArgs(_Args):
    """Operations that take no arguments."""


class StoreDecisionArgs(_Args):
    text: str
    rationale: str | None = None
    tags: list[str] | None = None


class SearchDecisionsArgs(_Args):
    query: str
    limit: int = Field(default=20, ge=1, le=100)


class GetRecentDecisionsArgs(_Args):
    limit: int = Field(default=10, ge=1, le=100)


class StorePatternArgs(_Args):
    name: str
    description: str
    example: str | None = None


class PatternNameArgs(_Args):
    name: str


class SetContextArgs(_Args):
    key: str
    value: str


class GetContextArgs(_Args):
    key: str


class ClearContextArgs(_Args):
    key: str | None = None


class ImportMemoryArgs(_Args):
    # Either the export_memory object or its JSON text
    snapshot: dict[str, Any] | str
    mode: ImportMode = ImportMode.MERGE


class PurgeMemoryArgs(_Args):
    # Any value is accepted here; only the exact token authorizes a purge
    confirm: Any = None
