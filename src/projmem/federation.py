"""
Snapshot export/import and federation merge.

A snapshot is the whole store as one JSON document carrying an explicit
schemaVersion. Importing one either replaces the destination store or
merges two independently evolved histories with deterministic rules.

Merge Rules:
    - Decisions: deduplicated by the hash of their normalized text. On a
      match the longer rationale survives (local on a tie) and tags become
      the union of both sides.
    - Patterns: by name. A one-sided name is kept. On both sides, the one
      with a non-empty example wins; if both or neither have one, the newer
      updatedAt wins (local on a tie).
    - Context: last-write-wins by updatedAt (local on a tie or when the
      incoming entry carries no timestamp).

A snapshot is validated completely before anything is written, and the
whole import runs in one transaction: a failure leaves the store unchanged.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from projmem.capacity import CapacityManager
from projmem.errors import SchemaVersionMismatchError, ValidationError
from projmem.schema import (
    SCHEMA_VERSION,
    EntityKind,
    ImportMode,
    ImportSummary,
    Pattern,
    Snapshot,
    SnapshotContextValue,
    SnapshotDecision,
    SnapshotPattern,
    now_iso,
)
from projmem.store.base import ALL_TABLES, StorageBackend, decision_hash
from projmem.validation import MAX_TEXT_LENGTH, normalize_tags, require_key, sanitize_text

logger = logging.getLogger(__name__)


# =============================================================================
# Export
# =============================================================================


def export_snapshot(backend: StorageBackend, conn: Any) -> Snapshot:
    """
    Serialize the whole store.

    Decisions are listed oldest first so that a replace-import recreates
    them in their original order.
    """
    decisions = [
        SnapshotDecision(
            id=d.id,
            text=d.text,
            rationale=d.rationale,
            tags=d.tags,
            created_at=d.created_at,
        )
        for d in reversed(backend.list_decisions(conn))
    ]
    patterns = [
        SnapshotPattern(
            name=p.name,
            description=p.description,
            example=p.example,
            updated_at=p.updated_at,
        )
        for p in backend.list_patterns(conn)
    ]
    context = {
        entry.key: SnapshotContextValue(value=entry.value, updated_at=entry.updated_at)
        for entry in backend.list_context(conn)
    }
    return Snapshot(
        schema_version=SCHEMA_VERSION,
        exported_at=now_iso(),
        decisions=decisions,
        patterns=patterns,
        context=context,
    )


# =============================================================================
# Validation
# =============================================================================


def parse_snapshot(raw: Any, max_text_length: int = MAX_TEXT_LENGTH) -> Snapshot:
    """
    Parse, version-check, and sanitize an incoming snapshot.

    Args:
        raw: The export_memory object, its JSON text, or a Snapshot
        max_text_length: Free-text truncation length

    Returns:
        A Snapshot whose strings have all passed the validator

    Raises:
        SchemaVersionMismatchError: If schemaVersion is missing or unsupported
        ValidationError: If the snapshot is malformed or holds a disallowed key
    """
    if isinstance(raw, Snapshot):
        raw = raw.to_wire()
    elif isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(
                field_name="snapshot",
                reason=f"not valid JSON (line {e.lineno}, column {e.colno})",
            ) from e

    if not isinstance(raw, dict):
        raise ValidationError(field_name="snapshot", reason="must be a JSON object")

    version = raw.get("schemaVersion", raw.get("schema_version"))
    if type(version) is not int or version != SCHEMA_VERSION:
        raise SchemaVersionMismatchError(expected=SCHEMA_VERSION, actual=version)

    try:
        snapshot = Snapshot.model_validate(raw)
    except PydanticValidationError as e:
        err = e.errors()[0]
        location = ".".join(str(part) for part in err["loc"])
        raise ValidationError(
            field_name=f"snapshot.{location}" if location else "snapshot",
            reason=err["msg"],
        ) from e

    return _sanitize_snapshot(snapshot, max_text_length)


def _sanitize_snapshot(snapshot: Snapshot, max_text_length: int) -> Snapshot:
    decisions = []
    for d in snapshot.decisions:
        decisions.append(
            d.model_copy(
                update={
                    "text": sanitize_text(d.text, max_text_length),
                    "rationale": sanitize_text(d.rationale, max_text_length),
                    "tags": normalize_tags(d.tags),
                }
            )
        )

    patterns = []
    for i, p in enumerate(snapshot.patterns):
        require_key(p.name, field_name=f"patterns[{i}].name")
        patterns.append(
            p.model_copy(
                update={
                    "description": sanitize_text(p.description, max_text_length),
                    "example": sanitize_text(p.example, max_text_length),
                }
            )
        )

    context = {}
    for key, entry in snapshot.context.items():
        require_key(key, field_name="context key")
        context[key] = entry.model_copy(
            update={"value": sanitize_text(entry.value, max_text_length)}
        )

    return snapshot.model_copy(
        update={"decisions": decisions, "patterns": patterns, "context": context}
    )


# =============================================================================
# Import
# =============================================================================


def import_snapshot(
    backend: StorageBackend,
    conn: Any,
    capacity: CapacityManager,
    raw: Any,
    mode: ImportMode = ImportMode.MERGE,
    max_text_length: int = MAX_TEXT_LENGTH,
) -> ImportSummary:
    """
    Apply a snapshot to the store in one transaction.

    Args:
        backend: Storage backend
        conn: Pooled connection (not inside a transaction)
        capacity: Capacity manager applied to every insert
        raw: A Snapshot returned by parse_snapshot (applied as is), or the
            export_memory object or its JSON text (parsed first)
        mode: REPLACE purges first; MERGE reconciles with existing data
        max_text_length: Free-text truncation length

    Returns:
        ImportSummary counts

    Raises:
        SchemaVersionMismatchError / ValidationError: Before any write
        StorageWriteError: If the engine fails; nothing is applied
    """
    if isinstance(raw, Snapshot):
        if raw.schema_version != SCHEMA_VERSION:
            raise SchemaVersionMismatchError(expected=SCHEMA_VERSION, actual=raw.schema_version)
        snapshot = raw
    else:
        snapshot = parse_snapshot(raw, max_text_length)
    mode = ImportMode(mode)

    with backend.transaction(conn, locks=ALL_TABLES, operation="import_memory"):
        if mode is ImportMode.REPLACE:
            purged = backend.purge_all(conn)
            logger.info(
                "Replace import purged %d decisions, %d patterns, %d context entries",
                purged["decisions"],
                purged["patterns"],
                purged["context"],
            )
            summary = _apply_replace(backend, conn, capacity, snapshot)
        else:
            summary = _apply_merge(backend, conn, capacity, snapshot)

    logger.info(
        "Imported snapshot (%s): %d imported, %d skipped, %d conflicts, %d evicted",
        mode.value,
        summary.imported,
        summary.skipped,
        summary.conflicts,
        summary.evicted,
    )
    return summary


def _oldest_first(snapshot: Snapshot) -> list[SnapshotDecision]:
    # Undated decisions sort last; they are stamped with the import time
    return sorted(
        snapshot.decisions,
        key=lambda d: (d.created_at is None, d.created_at or "", d.id or 0),
    )


def _apply_replace(
    backend: StorageBackend, conn: Any, capacity: CapacityManager, snapshot: Snapshot
) -> ImportSummary:
    imported = evicted = 0

    for d in _oldest_first(snapshot):
        evicted += capacity.before_insert(conn, EntityKind.DECISION)
        backend.insert_decision(conn, d.text, d.rationale or "", d.tags, d.created_at)
        imported += 1

    for p in snapshot.patterns:
        evicted += capacity.before_insert(conn, EntityKind.PATTERN, key=p.name)
        backend.upsert_pattern(conn, p.name, p.description, p.example or "", p.updated_at)
        imported += 1

    for key, entry in snapshot.context.items():
        evicted += capacity.before_insert(conn, EntityKind.CONTEXT, key=key)
        backend.upsert_context(conn, key, entry.value, entry.updated_at)
        imported += 1

    return ImportSummary(imported=imported, evicted=evicted)


def _apply_merge(
    backend: StorageBackend, conn: Any, capacity: CapacityManager, snapshot: Snapshot
) -> ImportSummary:
    imported = skipped = conflicts = evicted = 0

    for d in _oldest_first(snapshot):
        rationale = d.rationale or ""
        existing = backend.get_decision_by_hash(conn, decision_hash(d.text))
        if existing is None:
            evicted += capacity.before_insert(conn, EntityKind.DECISION)
            backend.insert_decision(conn, d.text, rationale, d.tags, d.created_at)
            imported += 1
            continue

        if rationale == existing.rationale and set(d.tags) <= set(existing.tags):
            skipped += 1
            continue

        conflicts += 1
        merged_rationale = (
            rationale if len(rationale) > len(existing.rationale) else existing.rationale
        )
        merged_tags = normalize_tags([*existing.tags, *d.tags])
        if merged_rationale != existing.rationale or merged_tags != existing.tags:
            backend.update_decision(conn, existing.id, merged_rationale, merged_tags)

    for p in snapshot.patterns:
        example = p.example or ""
        local = backend.get_pattern(conn, p.name)
        if local is None:
            evicted += capacity.before_insert(conn, EntityKind.PATTERN, key=p.name)
            backend.upsert_pattern(conn, p.name, p.description, example, p.updated_at)
            imported += 1
        elif (local.description, local.example) == (p.description, example):
            skipped += 1
        else:
            conflicts += 1
            if _incoming_pattern_wins(local, example, p.updated_at):
                backend.upsert_pattern(conn, p.name, p.description, example, p.updated_at)

    for key, entry in snapshot.context.items():
        local_entry = backend.get_context(conn, key)
        if local_entry is None:
            evicted += capacity.before_insert(conn, EntityKind.CONTEXT, key=key)
            backend.upsert_context(conn, key, entry.value, entry.updated_at)
            imported += 1
        elif local_entry.value == entry.value:
            skipped += 1
        else:
            conflicts += 1
            if entry.updated_at is not None and entry.updated_at > local_entry.updated_at:
                backend.upsert_context(conn, key, entry.value, entry.updated_at)

    return ImportSummary(
        imported=imported, skipped=skipped, conflicts=conflicts, evicted=evicted
    )


def _incoming_pattern_wins(local: Pattern, example: str, updated_at: str | None) -> bool:
    """Non-empty example first, then recency; local keeps ties."""
    if bool(local.example) != bool(example):
        return bool(example)
    return updated_at is not None and updated_at > local.updated_at
