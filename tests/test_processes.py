"""Tests for processes.py — the in-memory process registry."""

import asyncio
import typing

import pytest

from models import Process, ProcessStatus, ProcessType
from processes import DuplicateProcessError, ProcessRegistry, ProcessValidationError


@pytest.fixture
def registry(clock):
    registry = ProcessRegistry(grace_period=0.05, clock=clock)
    yield registry
    registry.close()


def _register(registry, owner="u1", pid="t1", **extra):
    data = {"id": pid, "type": "transcription", "title": "Demo", **extra}
    return registry.create(owner, data)


class TestCreate:
    @pytest.mark.parametrize("missing", ["id", "type", "title"])
    def test_missing_required_field_is_rejected(self, registry, missing):
        data = {"id": "t1", "type": "analysis", "title": "X"}
        del data[missing]

        with pytest.raises(ProcessValidationError) as exc:
            registry.create("u1", data)

        assert exc.value.missing == [missing]
        assert len(registry) == 0
        assert registry.list("u1") == []

    def test_empty_values_count_as_missing(self, registry):
        with pytest.raises(ProcessValidationError) as exc:
            registry.create("u1", {"id": "", "type": "analysis", "title": ""})
        assert exc.value.missing == ["id", "title"]

    def test_initial_state(self, registry, clock):
        process = _register(registry, metadata={"duration_seconds": 180})

        assert process.status is ProcessStatus.IN_PROGRESS
        assert process.progress_percent == 0
        assert process.estimated_minutes == 3
        assert process.created_at == clock.now
        assert process.owner_id == "u1"
        assert process.user_name == "User"

    def test_client_cannot_preset_status_or_progress(self, registry):
        process = _register(registry, status="completed", progress_percent=90)
        assert process.status is ProcessStatus.IN_PROGRESS
        assert process.progress_percent == 0

    def test_unknown_type_becomes_generic(self, registry):
        process = registry.create("u1", {"id": "x", "type": "video-render", "title": "X"})
        assert process.type is ProcessType.GENERIC

    def test_opaque_fields_are_kept(self, registry):
        process = _register(registry, customer={"id": "c-9", "name": "ACME"})
        assert process.customer == {"id": "c-9", "name": "ACME"}

    def test_user_attribution(self, registry):
        process = registry.create(
            "u1", {"id": "x", "type": "analysis", "title": "X"}, {"name": "Ana", "email": "ana@example.com"}
        )
        assert process.user_name == "Ana"
        assert process.user_email == "ana@example.com"

    @pytest.mark.parametrize("metadata", ["abc", 5, ["customer_id"]])
    def test_metadata_must_be_an_object(self, registry, metadata):
        with pytest.raises(ProcessValidationError) as exc:
            _register(registry, metadata=metadata)

        assert exc.value.missing == ["metadata"]
        assert len(registry) == 0

    def test_duplicate_id_for_same_owner(self, registry):
        _register(registry)
        with pytest.raises(DuplicateProcessError):
            _register(registry, title="Other")
        assert registry.get("u1", "t1").title == "Demo"

    def test_same_id_under_different_owners(self, registry):
        _register(registry, owner="u1")
        _register(registry, owner="u2")
        assert len(registry.list_all()) == 2


class TestTransitions:
    def test_update_merges_and_refreshes_timestamp(self, registry, clock):
        _register(registry)
        clock.advance(seconds=30)

        process = registry.update("u1", "t1", {"progress_percent": 40, "message": "Halfway"})

        assert process.progress_percent == 40
        assert process.message == "Halfway"
        assert process.last_updated_at == clock.now
        assert registry.list("u1") == [process]

    def test_update_unknown_process_is_a_noop(self, registry):
        assert registry.update("u1", "ghost", {"progress_percent": 10}) is None
        assert len(registry) == 0

    def test_percent_is_clamped_not_rejected(self, registry):
        _register(registry)
        assert registry.update("u1", "t1", {"progress_percent": 140}).progress_percent == 100
        assert registry.update("u1", "t1", {"progress_percent": 12.6}).progress_percent == 13

    @pytest.mark.parametrize("bad", [float("inf"), float("-inf"), float("nan"), "lots", [1]])
    def test_unusable_percent_is_rejected(self, registry, bad):
        _register(registry)
        registry.update("u1", "t1", {"progress_percent": 30})

        assert registry.update("u1", "t1", {"progress_percent": bad}) is None
        assert registry.get("u1", "t1").progress_percent == 30

    def test_lower_percent_is_accepted(self, registry):
        _register(registry)
        registry.update("u1", "t1", {"progress_percent": 60})
        assert registry.update("u1", "t1", {"progress_percent": 20}).progress_percent == 20

    @pytest.mark.asyncio
    async def test_complete(self, registry, clock):
        _register(registry)
        process = registry.complete("u1", "t1", {"result_reference": "doc-42", "progress_percent": 50})

        assert process.status is ProcessStatus.COMPLETED
        assert process.progress_percent == 100
        assert process.result_reference == "doc-42"
        assert process.completed_at == clock.now

    def test_error(self, registry, clock):
        _register(registry)
        process = registry.error("u1", "t1", "upstream failure")

        assert process.status is ProcessStatus.ERROR
        assert process.error_message == "upstream failure"
        assert process.errored_at == clock.now

    @pytest.mark.asyncio
    async def test_terminal_status_is_never_reverted(self, registry):
        _register(registry)
        registry.error("u1", "t1", "boom")

        assert registry.complete("u1", "t1") is None
        assert registry.error("u1", "t1", "again") is None
        updated = registry.update("u1", "t1", {"status": "in-progress", "note": "checked"})

        assert updated.status is ProcessStatus.ERROR
        assert updated.error_message == "boom"
        assert updated.note == "checked"

    @pytest.mark.asyncio
    async def test_completed_cannot_become_error(self, registry):
        _register(registry)
        registry.complete("u1", "t1")
        assert registry.error("u1", "t1", "late failure") is None
        assert registry.get("u1", "t1").status is ProcessStatus.COMPLETED


class TestRemoval:
    def test_remove_drops_empty_owner(self, registry):
        _register(registry)
        removed = registry.remove("u1", "t1")

        assert removed.id == "t1"
        assert "u1" not in registry._owners

    def test_remove_is_idempotent(self, registry):
        assert registry.remove("u1", "nothing") is None

    @pytest.mark.asyncio
    async def test_completed_process_is_removed_after_grace_period(self, registry):
        _register(registry)
        registry.complete("u1", "t1")

        await asyncio.sleep(0.01)
        assert registry.get("u1", "t1") is not None

        await asyncio.sleep(0.1)
        assert registry.list("u1") == []

    @pytest.mark.asyncio
    async def test_errors_are_not_auto_removed(self, registry):
        _register(registry)
        registry.error("u1", "t1", "boom")

        await asyncio.sleep(0.1)
        assert registry.get("u1", "t1").status is ProcessStatus.ERROR

    @pytest.mark.asyncio
    async def test_explicit_remove_cancels_pending_removal(self, registry):
        expired = []
        registry.on_expired = lambda owner, pid: expired.append(pid)
        _register(registry)
        registry.complete("u1", "t1")
        registry.remove("u1", "t1")

        await asyncio.sleep(0.1)
        assert expired == []

    def test_expired_uses_completion_time(self, registry, clock):
        _register(registry)
        registry.complete("u1", "t1")  # no running loop: no timer, expired() is the backstop

        assert registry.expired() == []
        clock.advance(seconds=1)
        assert [p.id for p in registry.expired()] == ["t1"]
        assert registry.expired(older_than=60) == []


class TestQueries:
    def test_list_all_spans_owners(self, registry):
        _register(registry, owner="u1", pid="a")
        _register(registry, owner="u2", pid="b")
        assert sorted(p.id for p in registry.list_all()) == ["a", "b"]

    def test_list_is_a_snapshot(self, registry):
        _register(registry)
        before = registry.list("u1")
        registry.update("u1", "t1", {"progress_percent": 70})

        assert before[0].progress_percent == 0

    def test_listed_metadata_is_a_copy(self, registry):
        _register(registry, owner="u1", pid="a", metadata={"customer_id": "c1", "tags": ["x"]})

        registry.list("u1")[0].metadata["customer_id"] = "changed"
        registry.list_all()[0].metadata["tags"].append("y")

        assert registry.get("u1", "a").metadata == {"customer_id": "c1", "tags": ["x"]}

    def test_query_annotations_resolve(self):
        for method in (ProcessRegistry.list, ProcessRegistry.list_all, ProcessRegistry.in_progress):
            assert typing.get_type_hints(method)["return"] == typing.List[Process]

    def test_find(self, registry):
        _register(registry, pid="a", metadata={"customer_id": "c1"})
        _register(registry, pid="b", metadata={"customer_id": "c2"})

        found = registry.find(lambda p: p.metadata.get("customer_id") == "c2")
        assert found.id == "b"
