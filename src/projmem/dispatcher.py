"""
Tool dispatcher for projmem.

The dispatcher is the only entry point the transport layer calls. It maps a
closed set of operation names onto handlers and always returns a ToolResult:
expected failures become failure results, never exceptions.

Call Flow:
    1. Resolve the operation name (UNKNOWN_OPERATION)
    2. Parse and validate arguments (VALIDATION_ERROR, CONFIRMATION_REQUIRED)
    3. Count the call against the rate limit (RATE_LIMIT_EXCEEDED)
    4. Borrow one pooled connection (POOL_TIMEOUT) and run the handler
    5. Release the connection on every path

Steps 1-3 never touch the storage engine, so a rejected call has no side
effects.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from projmem.engine import MemoryStore
from projmem.errors import (
    ConfirmationRequiredError,
    IntegrityCheckError,
    NotFoundError,
    ProjmemError,
    StorageError,
    UnknownOperationError,
    ValidationError,
)
from projmem.federation import export_snapshot, import_snapshot, parse_snapshot
from projmem.schema import (
    PURGE_CONFIRMATION_TOKEN,
    ClearContextArgs,
    EntityKind,
    GetContextArgs,
    GetRecentDecisionsArgs,
    ImportMemoryArgs,
    NoArgs,
    Operation,
    PatternNameArgs,
    PurgeMemoryArgs,
    SearchDecisionsArgs,
    SetContextArgs,
    StoreDecisionArgs,
    StorePatternArgs,
)
from projmem.store.base import ALL_TABLES, CONTEXT, DECISIONS, PATTERNS
from projmem.validation import normalize_tags, require_key, sanitize_text

logger = logging.getLogger(__name__)

# Argument model per operation
ARGUMENT_MODELS: dict[Operation, type[BaseModel]] = {
    Operation.STORE_DECISION: StoreDecisionArgs,
    Operation.SEARCH_DECISIONS: SearchDecisionsArgs,
    Operation.GET_RECENT_DECISIONS: GetRecentDecisionsArgs,
    Operation.STORE_PATTERN: StorePatternArgs,
    Operation.GET_PATTERNS: NoArgs,
    Operation.GET_PATTERN: PatternNameArgs,
    Operation.DELETE_PATTERN: PatternNameArgs,
    Operation.SET_CONTEXT: SetContextArgs,
    Operation.GET_CONTEXT: GetContextArgs,
    Operation.GET_ALL_CONTEXT: NoArgs,
    Operation.CLEAR_CONTEXT: ClearContextArgs,
    Operation.EXPORT_MEMORY: NoArgs,
    Operation.IMPORT_MEMORY: ImportMemoryArgs,
    Operation.GET_STATS: NoArgs,
    Operation.HEALTH_CHECK: NoArgs,
    Operation.PURGE_MEMORY: PurgeMemoryArgs,
}


@dataclass(frozen=True)
class ToolResult:
    """
    Standardized outcome of a dispatched operation.

    Attributes:
        success: Whether the operation succeeded
        data: Result payload (success only)
        error: The error that was reported (failure only)
    """

    success: bool
    data: Any = None
    error: ProjmemError | None = None

    @classmethod
    def ok(cls, data: Any) -> "ToolResult":
        """Create a successful result."""
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ProjmemError) -> "ToolResult":
        """Create a failed result."""
        return cls(success=False, error=error)

    @property
    def code(self) -> str | None:
        """Stable machine-readable error kind (failure only)."""
        return self.error.kind if self.error else None

    @property
    def message(self) -> str | None:
        return self.error.message if self.error else None

    def to_dict(self) -> dict[str, Any]:
        """The shape returned across the tool boundary."""
        if self.success:
            return {"ok": True, "data": self.data}
        return {"ok": False, "code": self.code, "message": self.message}


class Dispatcher:
    """
    Route named operations to the memory store.

    Usage:
        dispatcher = Dispatcher(store)
        result = dispatcher.call("set_context", {"key": "branch", "value": "main"})
        result.to_dict()  # {"ok": True, "data": {"key": "branch", "stored": True}}
    """

    def __init__(self, store: MemoryStore) -> None:
        """
        Bind the dispatcher to an open store.

        Raises:
            RuntimeError: If any operation lacks a handler
        """
        self.store = store
        self.backend = store.backend
        self._max_text = store.config.max_text_length
        self._handlers: dict[Operation, Callable[[Any, Any], Any]] = {
            Operation.STORE_DECISION: self._store_decision,
            Operation.SEARCH_DECISIONS: self._search_decisions,
            Operation.GET_RECENT_DECISIONS: self._get_recent_decisions,
            Operation.STORE_PATTERN: self._store_pattern,
            Operation.GET_PATTERNS: self._get_patterns,
            Operation.GET_PATTERN: self._get_pattern,
            Operation.DELETE_PATTERN: self._delete_pattern,
            Operation.SET_CONTEXT: self._set_context,
            Operation.GET_CONTEXT: self._get_context,
            Operation.GET_ALL_CONTEXT: self._get_all_context,
            Operation.CLEAR_CONTEXT: self._clear_context,
            Operation.EXPORT_MEMORY: self._export_memory,
            Operation.IMPORT_MEMORY: self._import_memory,
            Operation.GET_STATS: self._get_stats,
            Operation.HEALTH_CHECK: self._health_check,
            Operation.PURGE_MEMORY: self._purge_memory,
        }

        missing = [op.value for op in Operation if op not in self._handlers]
        if missing:
            msg = f"Operations without a handler: {', '.join(missing)}"
            raise RuntimeError(msg)

    @property
    def operations(self) -> list[str]:
        """Names of every supported operation."""
        return [op.value for op in Operation]

    def call(self, name: str, arguments: Mapping[str, Any] | None = None) -> ToolResult:
        """
        Run one operation.

        Args:
            name: Operation name (e.g. "store_decision")
            arguments: Operation arguments

        Returns:
            ToolResult; never raises for expected failures
        """
        try:
            operation = self._resolve(name)
            args = self._validate(operation, self._parse_arguments(operation, arguments))
            self.store.limiter.try_acquire()

            logger.debug("Dispatching %s", operation.value)
            with self.store.connection() as conn:
                data = self._handlers[operation](conn, args)
        except ProjmemError as e:
            logger.debug("%s failed: %s", name, e.kind)
            return ToolResult.fail(e)
        except Exception:
            logger.exception("Unexpected failure in %s", name)
            return ToolResult.fail(
                StorageError(operation=str(name), message="Internal storage failure")
            )

        return ToolResult.ok(data)

    # =========================================================================
    # Admission
    # =========================================================================

    @staticmethod
    def _resolve(name: Any) -> Operation:
        try:
            return Operation(name)
        except ValueError:
            raise UnknownOperationError(operation=str(name)) from None

    @staticmethod
    def _parse_arguments(operation: Operation, arguments: Any) -> Any:
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, Mapping):
            raise ValidationError(field_name="arguments", reason="must be an object")

        try:
            return ARGUMENT_MODELS[operation].model_validate(dict(arguments))
        except PydanticValidationError as e:
            err = e.errors()[0]
            raise ValidationError(
                field_name=".".join(str(part) for part in err["loc"]),
                reason=err["msg"],
            ) from None

    def _validate(self, operation: Operation, args: Any) -> Any:
        """Sanitize free text and check keys; returns the cleaned arguments."""
        if operation is Operation.STORE_DECISION:
            return args.model_copy(
                update={
                    "text": sanitize_text(args.text, self._max_text),
                    "rationale": sanitize_text(args.rationale, self._max_text),
                    "tags": normalize_tags(args.tags),
                }
            )

        if operation is Operation.STORE_PATTERN:
            require_key(args.name, "name")
            return args.model_copy(
                update={
                    "description": sanitize_text(args.description, self._max_text),
                    "example": sanitize_text(args.example, self._max_text),
                }
            )

        if operation in (Operation.GET_PATTERN, Operation.DELETE_PATTERN):
            require_key(args.name, "name")
        elif operation is Operation.SET_CONTEXT:
            require_key(args.key, "key")
            return args.model_copy(update={"value": sanitize_text(args.value, self._max_text)})
        elif operation is Operation.GET_CONTEXT:
            require_key(args.key, "key")
        elif operation is Operation.CLEAR_CONTEXT and args.key is not None:
            require_key(args.key, "key")
        elif operation is Operation.IMPORT_MEMORY:
            return args.model_copy(
                update={"snapshot": parse_snapshot(args.snapshot, self._max_text)}
            )
        elif operation is Operation.PURGE_MEMORY:
            if not (isinstance(args.confirm, str) and args.confirm == PURGE_CONFIRMATION_TOKEN):
                raise ConfirmationRequiredError(
                    operation=operation.value, token=PURGE_CONFIRMATION_TOKEN
                )

        return args

    # =========================================================================
    # Decision handlers
    # =========================================================================

    def _store_decision(self, conn: Any, args: StoreDecisionArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=[DECISIONS], operation="store_decision"):
            self.store.capacity.before_insert(conn, EntityKind.DECISION)
            decision_id = self.backend.insert_decision(
                conn, args.text, args.rationale or "", args.tags or []
            )
        return {"id": decision_id}

    def _search_decisions(self, conn: Any, args: SearchDecisionsArgs) -> dict[str, Any]:
        decisions = self.store.search.search(conn, args.query, args.limit)
        return {"decisions": [d.to_wire() for d in decisions]}

    def _get_recent_decisions(self, conn: Any, args: GetRecentDecisionsArgs) -> dict[str, Any]:
        decisions = self.backend.list_decisions(conn, args.limit)
        return {"decisions": [d.to_wire() for d in decisions]}

    # =========================================================================
    # Pattern handlers
    # =========================================================================

    def _store_pattern(self, conn: Any, args: StorePatternArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=[PATTERNS], operation="store_pattern"):
            self.store.capacity.before_insert(conn, EntityKind.PATTERN, key=args.name)
            self.backend.upsert_pattern(conn, args.name, args.description, args.example or "")
        return {"name": args.name, "stored": True}

    def _get_patterns(self, conn: Any, args: NoArgs) -> dict[str, Any]:
        return {"patterns": [p.to_wire() for p in self.backend.list_patterns(conn)]}

    def _get_pattern(self, conn: Any, args: PatternNameArgs) -> dict[str, Any]:
        pattern = self.backend.get_pattern(conn, args.name)
        if pattern is None:
            raise NotFoundError(entity="pattern", key=args.name)
        return pattern.to_wire()

    def _delete_pattern(self, conn: Any, args: PatternNameArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=[PATTERNS], operation="delete_pattern"):
            deleted = self.backend.delete_pattern(conn, args.name)
        if not deleted:
            raise NotFoundError(entity="pattern", key=args.name)
        return {"name": args.name, "deleted": True}

    # =========================================================================
    # Context handlers
    # =========================================================================

    def _set_context(self, conn: Any, args: SetContextArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=[CONTEXT], operation="set_context"):
            self.store.capacity.before_insert(conn, EntityKind.CONTEXT, key=args.key)
            self.backend.upsert_context(conn, args.key, args.value)
        return {"key": args.key, "stored": True}

    def _get_context(self, conn: Any, args: GetContextArgs) -> dict[str, Any]:
        entry = self.backend.get_context(conn, args.key)
        if entry is None:
            raise NotFoundError(entity="context key", key=args.key)
        return entry.to_wire()

    def _get_all_context(self, conn: Any, args: NoArgs) -> dict[str, Any]:
        return {"context": {e.key: e.value for e in self.backend.list_context(conn)}}

    def _clear_context(self, conn: Any, args: ClearContextArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=[CONTEXT], operation="clear_context"):
            cleared = self.backend.delete_context(conn, args.key)
        return {"cleared": cleared}

    # =========================================================================
    # Whole-store handlers
    # =========================================================================

    def _export_memory(self, conn: Any, args: NoArgs) -> dict[str, Any]:
        return export_snapshot(self.backend, conn).to_wire()

    def _import_memory(self, conn: Any, args: ImportMemoryArgs) -> dict[str, Any]:
        summary = import_snapshot(
            self.backend,
            conn,
            self.store.capacity,
            args.snapshot,
            args.mode,
            self._max_text,
        )
        return summary.to_wire()

    def _get_stats(self, conn: Any, args: NoArgs) -> dict[str, Any]:
        return {
            "decisionCount": self.backend.count_decisions(conn),
            "patternCount": self.backend.count_patterns(conn),
            "contextKeyCount": self.backend.count_context(conn),
            "limits": self.store.limits.to_dict(),
            "storageBytes": self.backend.storage_size(conn),
            "backend": self.backend.profile.value,
        }

    def _health_check(self, conn: Any, args: NoArgs) -> dict[str, Any]:
        try:
            passed = self.backend.integrity_check(conn)
        except StorageError as e:
            raise IntegrityCheckError(operation="health_check") from e
        if not passed:
            raise IntegrityCheckError(operation="health_check")

        return {
            "ok": True,
            "integrityCheckPassed": True,
            "schemaVersion": self.backend.schema_version(conn),
            "backend": self.backend.profile.value,
            "pool": self.store.pool.stats(),
            "rateLimiter": self.store.limiter.snapshot(),
        }

    def _purge_memory(self, conn: Any, args: PurgeMemoryArgs) -> dict[str, Any]:
        with self.backend.transaction(conn, locks=ALL_TABLES, operation="purge_memory"):
            purged = self.backend.purge_all(conn)
        logger.warning(
            "Purged memory store: %d decisions, %d patterns, %d context entries",
            purged["decisions"],
            purged["patterns"],
            purged["context"],
        )
        return {"purged": purged}
