"""Tests for the Lifecycle State Manager."""

import pytest
from sqlalchemy import select

from conftest import make_playbook, playbook_step, tenant_collection
from playbook_engine.core.database.models import StatusTransitionLog
from playbook_engine.core.errors import AssetInUse, AssetNotFound, InvalidStatusTransition, VersionConflict
from playbook_engine.core.search.collection_stores.base import VectorEntry
from playbook_engine.playbooks.lifecycle import (
    SEARCHABLE_STATUSES,
    TRANSITIONS,
    LifecycleManager,
    can_transition,
    policy_for,
)
from playbook_engine.playbooks.models import Playbook, PlaybookStatus as S

ACME_COLLECTION = tenant_collection("acme")


@pytest.fixture
def lifecycle(db, vector_store, reference_store):
    return LifecycleManager(db, vector_store=vector_store, reference_store=reference_store)


async def _register(lifecycle, scope="acme", playbook_id="snapshot-ebs", version="1.0.0", steps=None, digest=None):
    playbook = Playbook.from_dict(make_playbook(playbook_id, version=version, steps=steps or []))
    key = f"tenants/{scope}/playbooks/{playbook_id}/{version}.json"
    return await lifecycle.register_version(scope, playbook, digest or f"hash-{playbook_id}-{version}", key)


async def _activate(lifecycle, scope="acme", playbook_id="snapshot-ebs", version="1.0.0"):
    await lifecycle.transition(scope, playbook_id, version, S.READY)
    return await lifecycle.transition(scope, playbook_id, version, S.ACTIVE)


class TestStatusTables:

    def test_searchable_statuses(self):
        assert SEARCHABLE_STATUSES == {"active", "approved", "deprecated", "needs_update", "pending_review"}

    def test_policies(self):
        assert policy_for("active").bonus_tier == "full"
        assert policy_for("deprecated").warning == "warning"
        assert policy_for("pending_review").warning == "strong_warning"
        assert policy_for("broken").searchable is False
        assert policy_for("not-a-status").searchable is False

    def test_archived_is_terminal(self):
        assert TRANSITIONS[S.ARCHIVED] == frozenset()
        assert can_transition(S.ACTIVE, S.BROKEN)
        assert not can_transition(S.DRAFT, S.ACTIVE)


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_creates_draft(self, lifecycle):
        record = await _register(lifecycle)
        assert record.status == "draft"
        assert (await lifecycle.get_version("acme", "snapshot-ebs", "1.0.0")).content_hash == "hash-snapshot-ebs-1.0.0"
        assert await lifecycle.known_scopes() == ["acme"]

    @pytest.mark.asyncio
    async def test_identical_reregister_is_no_op(self, lifecycle):
        await _register(lifecycle)
        await _activate(lifecycle)
        record = await _register(lifecycle)
        assert record.status == "active"

    @pytest.mark.asyncio
    async def test_changed_content_after_draft_conflicts(self, lifecycle):
        await _register(lifecycle)
        await _activate(lifecycle)
        with pytest.raises(VersionConflict):
            await _register(lifecycle, digest="different")

    @pytest.mark.asyncio
    async def test_draft_may_be_replaced(self, lifecycle):
        await _register(lifecycle)
        record = await _register(lifecycle, digest="second-draft")
        assert record.content_hash == "second-draft"


class TestTransitions:

    @pytest.mark.asyncio
    async def test_invalid_transition_lists_allowed(self, lifecycle):
        await _register(lifecycle)
        with pytest.raises(InvalidStatusTransition) as exc:
            await lifecycle.transition("acme", "snapshot-ebs", "1.0.0", S.ACTIVE)
        assert exc.value.details["allowed"] == ["archived", "ready"]

    @pytest.mark.asyncio
    async def test_unknown_version(self, lifecycle):
        with pytest.raises(AssetNotFound):
            await lifecycle.transition("acme", "ghost", "1.0.0", S.READY)

    @pytest.mark.asyncio
    async def test_activation_deprecates_previous_active(self, lifecycle):
        """Activating 1.2.0 deprecates the active 1.1.0."""
        await _register(lifecycle, version="1.1.0")
        await _activate(lifecycle, version="1.1.0")
        await _register(lifecycle, version="1.2.0")
        await _activate(lifecycle, version="1.2.0")

        assert (await lifecycle.get_version("acme", "snapshot-ebs", "1.1.0")).status == "deprecated"
        assert (await lifecycle.get_version("acme", "snapshot-ebs", "1.2.0")).status == "active"

    @pytest.mark.asyncio
    async def test_reactivating_older_version_deprecates_newer(self, lifecycle):
        """Only one version of an id is active, whichever was activated last."""
        await _register(lifecycle, version="1.1.0")
        await _activate(lifecycle, version="1.1.0")
        await _register(lifecycle, version="1.2.0")
        await _activate(lifecycle, version="1.2.0")
        await lifecycle.transition("acme", "snapshot-ebs", "1.1.0", S.ACTIVE)

        assert (await lifecycle.get_version("acme", "snapshot-ebs", "1.1.0")).status == "active"
        assert (await lifecycle.get_version("acme", "snapshot-ebs", "1.2.0")).status == "deprecated"
        active = [r.version for r in await lifecycle.list_versions("acme", "snapshot-ebs") if r.status == "active"]
        assert active == ["1.1.0"]

    @pytest.mark.asyncio
    async def test_other_scopes_are_untouched(self, lifecycle):
        await _register(lifecycle, scope="other", version="1.0.0")
        await _activate(lifecycle, scope="other", version="1.0.0")
        await _register(lifecycle, version="2.0.0")
        await _activate(lifecycle, version="2.0.0")
        assert (await lifecycle.get_version("other", "snapshot-ebs", "1.0.0")).status == "active"

    @pytest.mark.asyncio
    async def test_transitions_are_audited(self, lifecycle, db):
        await _register(lifecycle)
        await _activate(lifecycle)
        async with db.get_session() as session:
            result = await session.execute(select(StatusTransitionLog))
            rows = result.scalars().all()
        assert {(r.from_status, r.to_status) for r in rows} == {
            (None, "draft"), ("draft", "ready"), ("ready", "active"),
        }
        assert len(rows) == 3

    @pytest.mark.asyncio
    async def test_status_is_pushed_to_index(self, lifecycle, vector_store):
        await vector_store.create_collection(ACME_COLLECTION, 3)
        await vector_store.upsert(ACME_COLLECTION, [
            VectorEntry(id="snapshot-ebs-1.0.0", vector=[1.0, 0.0, 0.0], payload={"status": "draft"}),
        ])
        await _register(lifecycle)
        await _activate(lifecycle)
        payload = vector_store.collections[ACME_COLLECTION]["snapshot-ebs-1.0.0"].payload
        assert payload["status"] == "active"
        assert payload["execution_count"] == 0

    @pytest.mark.asyncio
    async def test_list_versions_newest_first(self, lifecycle):
        for version in ("1.0.0", "1.10.0", "1.2.0"):
            await _register(lifecycle, version=version)
        versions = await lifecycle.list_versions("acme", "snapshot-ebs")
        assert [v.version for v in versions] == ["1.10.0", "1.2.0", "1.0.0"]


class TestExecutions:

    @pytest.mark.asyncio
    async def test_counts_executions(self, lifecycle):
        await _register(lifecycle)
        await _activate(lifecycle)
        await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", True)
        record = await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", False)
        assert record.execution_count == 2
        assert record.success_count == 1
        assert record.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_five_consecutive_failures_mark_broken(self, lifecycle):
        await _register(lifecycle)
        await _activate(lifecycle)
        for _ in range(4):
            record = await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", False)
        assert record.status == "active"
        record = await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", False)
        assert record.status == "broken"
        assert "broken" not in SEARCHABLE_STATUSES

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self, lifecycle):
        await _register(lifecycle)
        await _activate(lifecycle)
        for _ in range(4):
            await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", False)
        await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", True)
        for _ in range(4):
            record = await lifecycle.record_execution("acme", "snapshot-ebs", "1.0.0", False)
        assert record.status == "active"


class TestDeletion:

    @pytest.mark.asyncio
    async def test_referenced_version_cannot_be_deleted(self, lifecycle):
        await _register(lifecycle, playbook_id="child")
        await _register(lifecycle, playbook_id="parent", steps=[playbook_step("call", "child")])
        with pytest.raises(AssetInUse) as exc:
            await lifecycle.delete_version("acme", "child", "1.0.0")
        assert exc.value.details["referenced_by"] == [
            {"scope": "acme", "playbook_id": "parent", "version": "1.0.0"},
        ]

    @pytest.mark.asyncio
    async def test_delete_archives_and_removes_from_index(self, lifecycle, vector_store, reference_store, storage):
        put = await reference_store.put_playbook("acme", make_playbook())
        await vector_store.create_collection(ACME_COLLECTION, 3)
        await vector_store.upsert(ACME_COLLECTION, [
            VectorEntry(id="snapshot-ebs-1.0.0", vector=[1.0, 0.0, 0.0], payload={"status": "active"}),
        ])
        await _register(lifecycle)

        await lifecycle.delete_version("acme", "snapshot-ebs", "1.0.0", actor="ops")

        record = await lifecycle.get_version("acme", "snapshot-ebs", "1.0.0")
        assert record.status == "archived"
        assert record.deleted_at is not None
        assert await vector_store.count(ACME_COLLECTION) == 0
        assert storage.tags[put.key] == {"retention": "expired"}
        assert await lifecycle.list_versions("acme", "snapshot-ebs") == []

    @pytest.mark.asyncio
    async def test_deleted_parent_releases_child(self, lifecycle):
        await _register(lifecycle, playbook_id="child")
        await _register(lifecycle, playbook_id="parent", steps=[playbook_step("call", "child")])
        await lifecycle.delete_version("acme", "parent", "1.0.0")
        await lifecycle.delete_version("acme", "child", "1.0.0")
        assert await lifecycle.referenced_by("acme", "child", "1.0.0") == []

    @pytest.mark.asyncio
    async def test_record_references_replaces_edges(self, lifecycle):
        """Edges recorded for an unregistered parent count until the parent drops the reference."""
        parent = Playbook.from_dict(make_playbook("parent", steps=[playbook_step("call", "child")]))
        await lifecycle.record_references("acme", parent)
        assert await lifecycle.referenced_by("acme", "child", "1.0.0") == [("acme", "parent", "1.0.0")]

        await lifecycle.record_references("acme", Playbook.from_dict(make_playbook("parent")))
        assert await lifecycle.referenced_by("acme", "child", "1.0.0") == []
