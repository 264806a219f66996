"""
Integration tests for the tool dispatcher.

These tests drive a real SQLite-backed MemoryStore through Dispatcher.call
and check the behavior an agent sees: result shapes, error codes, limits,
and the ordering of admission checks.
"""

import json

import pytest

from projmem.dispatcher import ARGUMENT_MODELS, Dispatcher, ToolResult
from projmem.errors import NotFoundError
from projmem.schema import Operation
from projmem.validation import TRUNCATION_MARKER

# Long enough to be truncated, with a space near the limit
LONG_TEXT = "a" * 9999 + " " + "b" * 50


def ok(result: ToolResult):
    """Assert success and return the data."""
    assert result.success, result.to_dict()
    return result.data


# =============================================================================
# Result shape
# =============================================================================


class TestToolResult:
    """Tests for ToolResult."""

    def test_success_shape(self) -> None:
        assert ToolResult.ok({"id": 1}).to_dict() == {"ok": True, "data": {"id": 1}}

    def test_failure_shape(self) -> None:
        result = ToolResult.fail(NotFoundError(entity="pattern", key="x"))
        assert result.to_dict() == {
            "ok": False,
            "code": "NOT_FOUND",
            "message": "Pattern not found: x",
        }

    def test_every_operation_has_arguments_model(self) -> None:
        assert set(ARGUMENT_MODELS) == set(Operation)

    def test_operations_listed(self, dispatcher: Dispatcher) -> None:
        assert "purge_memory" in dispatcher.operations
        assert len(dispatcher.operations) == len(Operation)


# =============================================================================
# Decisions
# =============================================================================


class TestDecisionScenario:
    """The canonical store/recent/search/export scenario."""

    def test_store_recent_search_export(self, dispatcher: Dispatcher) -> None:
        stored = ok(
            dispatcher.call(
                "store_decision",
                {"text": "Use Redis for caching", "rationale": "sub-millisecond latency requirement"},
            )
        )
        assert stored == {"id": 1}

        recent = ok(dispatcher.call("get_recent_decisions", {"limit": 1}))["decisions"]
        assert len(recent) == 1
        assert recent[0]["id"] == 1
        assert recent[0]["text"] == "Use Redis for caching"
        assert recent[0]["rationale"] == "sub-millisecond latency requirement"

        found = ok(dispatcher.call("search_decisions", {"query": "redis"}))["decisions"]
        assert found[0]["id"] == 1

        snapshot = ok(dispatcher.call("export_memory"))
        assert len(snapshot["decisions"]) == 1
        assert snapshot["decisions"][0]["text"] == "Use Redis for caching"

    def test_empty_search_returns_empty_list(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "Use Redis"}))
        for query in ("", "   ", "?!"):
            assert ok(dispatcher.call("search_decisions", {"query": query})) == {"decisions": []}

    def test_recent_default_limit(self, dispatcher: Dispatcher) -> None:
        for i in range(12):
            ok(dispatcher.call("store_decision", {"text": f"decision {i}"}))
        recent = ok(dispatcher.call("get_recent_decisions"))["decisions"]
        assert len(recent) == 10
        assert recent[0]["text"] == "decision 11"

    def test_tags_normalized(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "x", "tags": ["perf", " cache ", "perf"]}))
        decision = ok(dispatcher.call("get_recent_decisions"))["decisions"][0]
        assert decision["tags"] == ["cache", "perf"]

    def test_oversized_text_truncated_not_refused(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "x" * 20001}))
        decision = ok(dispatcher.call("get_recent_decisions"))["decisions"][0]
        assert decision["text"] == "x" * (10000 - len(TRUNCATION_MARKER)) + TRUNCATION_MARKER
        assert len(decision["text"]) == 10000

    def test_control_bytes_stripped(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "Use\x00 Redis\x1b"}))
        decision = ok(dispatcher.call("get_recent_decisions"))["decisions"][0]
        assert decision["text"] == "Use Redis"

    def test_blank_text_stored_empty(self, dispatcher: Dispatcher) -> None:
        """Free text that sanitizes to nothing is stored, not refused."""
        ok(dispatcher.call("store_decision", {"text": "  \x00 "}))
        decision = ok(dispatcher.call("get_recent_decisions"))["decisions"][0]
        assert decision["text"] == ""


# =============================================================================
# Patterns
# =============================================================================


class TestPatterns:
    """Tests for pattern operations."""

    def test_store_and_list(self, dispatcher: Dispatcher) -> None:
        assert ok(
            dispatcher.call("store_pattern", {"name": "retry", "description": "Retry with backoff"})
        ) == {"name": "retry", "stored": True}
        patterns = ok(dispatcher.call("get_patterns"))["patterns"]
        assert [p["name"] for p in patterns] == ["retry"]
        assert patterns[0]["example"] == ""

    def test_upsert_by_name(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_pattern", {"name": "retry", "description": "v1"}))
        ok(dispatcher.call("store_pattern", {"name": "retry", "description": "v2", "example": "f()"}))
        pattern = ok(dispatcher.call("get_pattern", {"name": "retry"}))
        assert pattern["description"] == "v2"
        assert pattern["example"] == "f()"
        assert "updatedAt" in pattern

    def test_get_missing_pattern(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.call("get_pattern", {"name": "nope"}).code == "NOT_FOUND"

    def test_delete_pattern(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_pattern", {"name": "retry", "description": "d"}))
        assert ok(dispatcher.call("delete_pattern", {"name": "retry"})) == {
            "name": "retry",
            "deleted": True,
        }
        assert dispatcher.call("delete_pattern", {"name": "retry"}).code == "NOT_FOUND"

    def test_invalid_name_refused_without_write(self, dispatcher: Dispatcher) -> None:
        result = dispatcher.call("store_pattern", {"name": "bad/name", "description": "d"})
        assert result.code == "VALIDATION_ERROR"
        assert ok(dispatcher.call("get_patterns")) == {"patterns": []}


# =============================================================================
# Context
# =============================================================================


class TestContext:
    """Tests for context operations."""

    def test_set_and_get(self, dispatcher: Dispatcher) -> None:
        assert ok(dispatcher.call("set_context", {"key": "branch", "value": "main"})) == {
            "key": "branch",
            "stored": True,
        }
        entry = ok(dispatcher.call("get_context", {"key": "branch"}))
        assert entry["key"] == "branch"
        assert entry["value"] == "main"
        assert entry["updatedAt"].endswith("+00:00")

    def test_get_missing_key(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.call("get_context", {"key": "missing"}).code == "NOT_FOUND"

    def test_get_all(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("set_context", {"key": "b", "value": "2"}))
        ok(dispatcher.call("set_context", {"key": "a", "value": "1"}))
        assert ok(dispatcher.call("get_all_context")) == {"context": {"a": "1", "b": "2"}}

    def test_clear_one_and_all(self, dispatcher: Dispatcher) -> None:
        for key in ("a", "b", "c"):
            ok(dispatcher.call("set_context", {"key": key, "value": "v"}))
        assert ok(dispatcher.call("clear_context", {"key": "a"})) == {"cleared": 1}
        assert ok(dispatcher.call("clear_context")) == {"cleared": 2}
        assert ok(dispatcher.call("get_all_context")) == {"context": {}}

    @pytest.mark.parametrize("key", ["", "has space", "k" * 101, "semi;colon", "../x"])
    def test_bad_keys_refused(self, dispatcher: Dispatcher, key: str) -> None:
        result = dispatcher.call("set_context", {"key": key, "value": "v"})
        assert result.code == "VALIDATION_ERROR"
        assert ok(dispatcher.call("get_all_context")) == {"context": {}}


# =============================================================================
# Capacity
# =============================================================================


class TestCapacity:
    """Tests for capacity bounds through the dispatcher."""

    def test_decisions_never_exceed_limit(self, make_store) -> None:
        dispatcher = Dispatcher(make_store(max_decisions=3))
        for i in range(1, 5):
            ok(dispatcher.call("store_decision", {"text": f"d{i}"}))

        stats = ok(dispatcher.call("get_stats"))
        assert stats["decisionCount"] == 3
        texts = [d["text"] for d in ok(dispatcher.call("get_recent_decisions"))["decisions"]]
        assert "d1" not in texts

    def test_context_update_at_capacity_keeps_others(self, make_store) -> None:
        dispatcher = Dispatcher(make_store(max_context_keys=2))
        ok(dispatcher.call("set_context", {"key": "a", "value": "1"}))
        ok(dispatcher.call("set_context", {"key": "b", "value": "2"}))
        ok(dispatcher.call("set_context", {"key": "a", "value": "updated"}))
        assert ok(dispatcher.call("get_all_context")) == {"context": {"a": "updated", "b": "2"}}

    def test_pattern_update_at_capacity_keeps_others(self, make_store) -> None:
        dispatcher = Dispatcher(make_store(max_patterns=1))
        ok(dispatcher.call("store_pattern", {"name": "p", "description": "v1"}))
        ok(dispatcher.call("store_pattern", {"name": "p", "description": "v2"}))
        assert ok(dispatcher.call("get_stats"))["patternCount"] == 1


# =============================================================================
# Admission
# =============================================================================


class TestAdmission:
    """Tests for dispatch admission checks."""

    def test_unknown_operation(self, dispatcher: Dispatcher) -> None:
        result = dispatcher.call("drop_everything", {})
        assert result.to_dict()["code"] == "UNKNOWN_OPERATION"

    def test_unknown_argument(self, dispatcher: Dispatcher) -> None:
        result = dispatcher.call("store_decision", {"text": "x", "priority": "high"})
        assert result.code == "VALIDATION_ERROR"
        assert "priority" in result.message

    def test_non_object_arguments(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.call("store_decision", ["x"]).code == "VALIDATION_ERROR"

    def test_wrong_type(self, dispatcher: Dispatcher) -> None:
        assert dispatcher.call("get_recent_decisions", {"limit": "many"}).code == "VALIDATION_ERROR"

    def test_rate_limit(self, make_store, clock) -> None:
        """The (max+1)th call in one window is rejected; the next window admits again."""
        dispatcher = Dispatcher(make_store(rate_limit_max_ops=3, rate_limit_window_seconds=60))
        for _ in range(3):
            ok(dispatcher.call("get_stats"))

        result = dispatcher.call("get_stats")
        assert result.code == "RATE_LIMIT_EXCEEDED"

        clock.advance(60)
        ok(dispatcher.call("get_stats"))

    def test_invalid_calls_do_not_spend_budget(self, make_store) -> None:
        dispatcher = Dispatcher(make_store(rate_limit_max_ops=1))
        for _ in range(5):
            dispatcher.call("set_context", {"key": "bad key", "value": "v"})
        ok(dispatcher.call("get_stats"))

    def test_rate_limited_call_has_no_side_effect(self, make_store) -> None:
        dispatcher = Dispatcher(make_store(rate_limit_max_ops=1))
        ok(dispatcher.call("set_context", {"key": "a", "value": "1"}))
        assert dispatcher.call("set_context", {"key": "b", "value": "2"}).code == "RATE_LIMIT_EXCEEDED"

        store = dispatcher.store
        with store.connection() as conn:
            assert store.backend.context_exists(conn, "b") is False

    def test_pool_exhaustion(self, make_store) -> None:
        """With every connection held, calls time out and nothing leaks."""
        store = make_store(pool_size=1, pool_timeout_seconds=0.2)
        dispatcher = Dispatcher(store)

        held = store.pool.acquire(timeout=1)
        try:
            assert dispatcher.call("get_stats").code == "POOL_TIMEOUT"
        finally:
            store.pool.release(held)

        assert store.pool.stats()["available"] == 1
        ok(dispatcher.call("get_stats"))

    def test_connections_returned_after_failures(self, dispatcher: Dispatcher) -> None:
        dispatcher.call("get_context", {"key": "missing"})
        dispatcher.call("delete_pattern", {"name": "missing"})
        stats = dispatcher.store.pool.stats()
        assert stats["available"] == stats["size"]

    def test_unexpected_error_is_generic(self, dispatcher: Dispatcher, monkeypatch) -> None:
        def explode(conn):
            raise RuntimeError("/secret/path/memory.db exploded")

        monkeypatch.setattr(dispatcher.backend, "count_decisions", explode)
        result = dispatcher.call("get_stats")
        assert result.code == "STORAGE_ERROR"
        assert "/secret" not in result.message


# =============================================================================
# Stats, health, purge
# =============================================================================


class TestWholeStore:
    """Tests for stats, health check, and purge."""

    def test_stats(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "x"}))
        ok(dispatcher.call("set_context", {"key": "k", "value": "v"}))
        stats = ok(dispatcher.call("get_stats"))
        assert stats["decisionCount"] == 1
        assert stats["patternCount"] == 0
        assert stats["contextKeyCount"] == 1
        assert stats["limits"] == {"maxDecisions": 1000, "maxPatterns": 500, "maxContextKeys": 100}
        assert stats["storageBytes"] > 0
        assert stats["backend"] == "sqlite"

    def test_health_check(self, dispatcher: Dispatcher) -> None:
        health = ok(dispatcher.call("health_check"))
        assert health["ok"] is True
        assert health["integrityCheckPassed"] is True
        assert health["schemaVersion"] == 1
        assert health["pool"]["size"] == 5
        assert health["rateLimiter"]["maxOps"] == 100

    def test_health_check_failure(self, dispatcher: Dispatcher, monkeypatch) -> None:
        monkeypatch.setattr(dispatcher.backend, "integrity_check", lambda conn: False)
        assert dispatcher.call("health_check").code == "INTEGRITY_ERROR"

    def test_health_check_does_not_mutate(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "x"}))
        before = ok(dispatcher.call("export_memory"))
        ok(dispatcher.call("health_check"))
        after = ok(dispatcher.call("export_memory"))
        before.pop("exportedAt")
        after.pop("exportedAt")
        assert before == after

    @pytest.mark.parametrize(
        "arguments",
        [{}, {"confirm": "confirm_purge"}, {"confirm": "CONFIRM_PURGE "}, {"confirm": True}],
    )
    def test_purge_requires_exact_token(self, dispatcher: Dispatcher, arguments: dict) -> None:
        ok(dispatcher.call("store_decision", {"text": "keep"}))
        result = dispatcher.call("purge_memory", arguments)
        assert result.code == "CONFIRMATION_REQUIRED"
        assert ok(dispatcher.call("get_stats"))["decisionCount"] == 1

    def test_purge_empties_store(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "a"}))
        ok(dispatcher.call("store_pattern", {"name": "p", "description": "d"}))
        ok(dispatcher.call("set_context", {"key": "k", "value": "v"}))

        purged = ok(dispatcher.call("purge_memory", {"confirm": "CONFIRM_PURGE"}))
        assert purged == {"purged": {"decisions": 1, "patterns": 1, "context": 1}}

        stats = ok(dispatcher.call("get_stats"))
        assert (stats["decisionCount"], stats["patternCount"], stats["contextKeyCount"]) == (0, 0, 0)
        assert ok(dispatcher.call("health_check"))["schemaVersion"] == 1
        assert ok(dispatcher.call("store_decision", {"text": "fresh"})) == {"id": 1}


# =============================================================================
# Import / export
# =============================================================================


class TestImportExport:
    """Tests for import_memory and export_memory."""

    def test_merge_scenario(self, make_store) -> None:
        """B's non-empty rationale survives a merge into A."""
        store_a = Dispatcher(make_store("a.db"))
        store_b = Dispatcher(make_store("b.db"))
        ok(store_a.call("store_decision", {"text": "Use TS strict mode"}))
        ok(store_b.call("store_decision", {"text": "Use TS strict mode", "rationale": "catches null-deref bugs early"}))

        snapshot = ok(store_b.call("export_memory"))
        summary = ok(store_a.call("import_memory", {"snapshot": snapshot, "mode": "merge"}))
        assert summary == {"imported": 0, "skipped": 0, "conflicts": 1, "evicted": 0}

        decisions = ok(store_a.call("get_recent_decisions"))["decisions"]
        assert len(decisions) == 1
        assert decisions[0]["rationale"] == "catches null-deref bugs early"

    def test_round_trip_through_purge(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "A", "rationale": "why", "tags": ["t"]}))
        ok(dispatcher.call("store_decision", {"text": "B"}))
        ok(dispatcher.call("store_pattern", {"name": "p", "description": "d", "example": "e"}))
        ok(dispatcher.call("set_context", {"key": "k", "value": "v"}))

        before = ok(dispatcher.call("export_memory"))
        ok(dispatcher.call("purge_memory", {"confirm": "CONFIRM_PURGE"}))
        ok(dispatcher.call("import_memory", {"snapshot": json.dumps(before), "mode": "replace"}))
        after = ok(dispatcher.call("export_memory"))

        for snap in (before, after):
            snap.pop("exportedAt")
            for d in snap["decisions"]:
                d.pop("id")
        assert after == before

    def test_round_trip_with_truncated_text(self, dispatcher: Dispatcher) -> None:
        """Text cut at a space survives export, purge and replace unchanged."""
        ok(dispatcher.call("store_decision", {"text": LONG_TEXT, "rationale": LONG_TEXT}))
        ok(dispatcher.call("store_pattern", {"name": "p", "description": LONG_TEXT}))

        before = ok(dispatcher.call("export_memory"))
        ok(dispatcher.call("purge_memory", {"confirm": "CONFIRM_PURGE"}))
        ok(dispatcher.call("import_memory", {"snapshot": json.dumps(before), "mode": "replace"}))
        after = ok(dispatcher.call("export_memory"))

        for snap in (before, after):
            snap.pop("exportedAt")
            for d in snap["decisions"]:
                d.pop("id")
        assert after == before

    def test_merging_own_export_changes_nothing(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": LONG_TEXT}))
        snapshot = ok(dispatcher.call("export_memory"))

        summary = ok(dispatcher.call("import_memory", {"snapshot": snapshot, "mode": "merge"}))
        assert summary == {"imported": 0, "skipped": 1, "conflicts": 0, "evicted": 0}

        decisions = ok(dispatcher.call("get_recent_decisions"))["decisions"]
        assert len(decisions) == 1
        assert decisions[0]["text"] == snapshot["decisions"][0]["text"]

    def test_blank_snapshot_text_imported(self, dispatcher: Dispatcher) -> None:
        snapshot = {"schemaVersion": 1, "decisions": [{"text": " \\x00 "}]}
        summary = ok(dispatcher.call("import_memory", {"snapshot": snapshot, "mode": "merge"}))
        assert summary["imported"] == 1
        assert ok(dispatcher.call("get_recent_decisions"))["decisions"][0]["text"] == ""

    def test_version_mismatch_is_atomic(self, dispatcher: Dispatcher) -> None:
        ok(dispatcher.call("store_decision", {"text": "keep"}))
        before = ok(dispatcher.call("export_memory"))

        bad = dict(before, schemaVersion=99, decisions=[{"text": "intruder"}])
        result = dispatcher.call("import_memory", {"snapshot": bad, "mode": "replace"})
        assert result.code == "SCHEMA_VERSION_MISMATCH"

        after = ok(dispatcher.call("export_memory"))
        assert after["decisions"] == before["decisions"]

    def test_invalid_mode(self, dispatcher: Dispatcher) -> None:
        result = dispatcher.call("import_memory", {"snapshot": {"schemaVersion": 1}, "mode": "append"})
        assert result.code == "VALIDATION_ERROR"
