"""Tests for the Sync Engine."""

import json

import pytest

from conftest import FakeEmbeddingService, make_playbook, make_script, playbook_step, script_step, tenant_collection
from playbook_engine.core.errors import AssetInUse, AssetNotFound, ConcurrentSyncRejected
from playbook_engine.core.models.config_models import SearchConfig, SyncConfig
from playbook_engine.core.sync.marker_store import SyncStateStore
from playbook_engine.core.sync.sync_service import FULL_RESCAN, SyncService
from playbook_engine.playbooks.lifecycle import LifecycleManager
from playbook_engine.playbooks.models import Playbook, PlaybookStatus as S

COLLECTION = tenant_collection("acme")


@pytest.fixture
def state(db):
    return SyncStateStore(db)


@pytest.fixture
def lifecycle(db, vector_store, reference_store):
    return LifecycleManager(db, vector_store=vector_store, reference_store=reference_store)


def _service(reference_store, vector_store, embeddings, state, lifecycle, lock_service, **sync_overrides):
    return SyncService(
        reference_store=reference_store,
        vector_store=vector_store,
        embedding_service=embeddings,
        state=state,
        lifecycle=lifecycle,
        lock_service=lock_service,
        config=SyncConfig(**sync_overrides),
        search_config=SearchConfig(embedding_dimensions=3),
    )


@pytest.fixture
def service(reference_store, vector_store, embeddings, state, lifecycle, lock_service):
    return _service(reference_store, vector_store, embeddings, state, lifecycle, lock_service)


def _playbook(playbook_id, **fields):
    return make_playbook(
        playbook_id,
        steps=[script_step("snap", "snapshot-volume", mapping={"volume_id": "vol-1"})],
        **fields,
    )


async def _seed(reference_store, *playbook_ids, scope="acme"):
    await reference_store.put_script(scope, make_script("snapshot-volume"))
    for playbook_id in playbook_ids:
        await reference_store.put_playbook(scope, _playbook(playbook_id))


class TestSyncScope:

    @pytest.mark.asyncio
    async def test_indexes_changed_playbooks(self, service, reference_store, vector_store):
        await _seed(reference_store, "p1", "p2")
        marker, report = await service.sync_scope("acme")

        assert report.collection == COLLECTION
        assert report.collection_created is True
        assert sorted(report.indexed) == ["p1-1.0.0", "p2-1.0.0"]
        assert report.scripts_loaded == ["tenants/acme/scripts/snapshot-volume/1.0.0.json"]
        assert report.ok
        assert marker.object_key == "tenants/acme/playbooks/p2/1.0.0.json"
        assert await vector_store.count(COLLECTION) == 2

    @pytest.mark.asyncio
    async def test_payload_embeds_script_and_ranking_fields(self, service, reference_store, vector_store):
        await _seed(reference_store, "p1")
        await service.sync_scope("acme")

        payload = vector_store.collections[COLLECTION]["p1-1.0.0"].payload
        embedded = payload["steps"][0]["embedded_script"]
        assert list(embedded["implementations"]) == ["bash"]
        assert embedded["script_id"] == "snapshot-volume"
        assert payload["precedence"] == "tenant_trusted"
        assert payload["scope"] == "acme"
        assert payload["entry_id"] == "p1-1.0.0"

    @pytest.mark.asyncio
    async def test_scripts_from_global_library_are_embedded(self, service, reference_store, vector_store):
        await reference_store.put_script("global", make_script("snapshot-volume"))
        await reference_store.put_playbook("acme", _playbook("p1"))
        _, report = await service.sync_scope("acme")
        assert report.indexed == ["p1-1.0.0"]

    @pytest.mark.asyncio
    async def test_lifecycle_status_overrides_object_status(self, service, reference_store, vector_store, lifecycle):
        await _seed(reference_store, "p1")
        playbook = Playbook.from_dict(_playbook("p1"))
        await lifecycle.register_version("acme", playbook, "h", "tenants/acme/playbooks/p1/1.0.0.json")
        await lifecycle.transition("acme", "p1", "1.0.0", S.READY)
        await lifecycle.transition("acme", "p1", "1.0.0", S.PENDING_REVIEW)

        await service.sync_scope("acme")
        assert vector_store.collections[COLLECTION]["p1-1.0.0"].payload["status"] == "pending_review"

    @pytest.mark.asyncio
    async def test_second_run_without_changes_is_a_no_op(self, service, reference_store, embeddings):
        """Sync is idempotent: an unchanged store produces no work."""
        await _seed(reference_store, "p1")
        first_marker, _ = await service.sync_scope("acme")
        calls = len(embeddings.calls)

        second_marker, report = await service.sync_scope("acme")
        assert second_marker == first_marker
        assert report.examined == 0
        assert len(embeddings.calls) == calls

    @pytest.mark.asyncio
    async def test_full_rescan_reindexes_everything(self, service, reference_store, vector_store):
        await _seed(reference_store, "p1", "p2")
        await service.sync_scope("acme")
        _, report = await service.sync_scope("acme", FULL_RESCAN)
        assert sorted(report.indexed) == ["p1-1.0.0", "p2-1.0.0"]
        assert await vector_store.count(COLLECTION) == 2

    @pytest.mark.asyncio
    async def test_marker_is_persisted(self, service, reference_store, state):
        await _seed(reference_store, "p1")
        marker, _ = await service.sync_scope("acme")
        assert await state.get_marker(COLLECTION) == marker

    @pytest.mark.asyncio
    async def test_lower_key_written_in_the_same_tick_is_indexed(
        self, service, reference_store, storage, vector_store, state
    ):
        await _seed(reference_store, "zeta")
        first_marker, _ = await service.sync_scope("acme")

        put = await reference_store.put_playbook("acme", _playbook("alpha"))
        storage.objects[put.key]["last_modified"] = first_marker.last_modified

        marker, report = await service.sync_scope("acme")
        assert report.examined == 1
        assert report.indexed == ["alpha-1.0.0"]
        assert sorted(vector_store.collections[COLLECTION]) == ["alpha-1.0.0", "zeta-1.0.0"]
        assert marker.last_modified == first_marker.last_modified
        assert {key for key, _ in marker.seen} == {first_marker.object_key, put.key}
        assert await state.get_marker(COLLECTION) == marker

        _, third = await service.sync_scope("acme")
        assert third.examined == 0

    @pytest.mark.asyncio
    async def test_sync_records_reference_edges(self, service, reference_store, lifecycle):
        """A parent written straight to the store still blocks deletion of its child."""
        await _seed(reference_store, "child")
        await reference_store.put_playbook("acme", make_playbook("parent", steps=[playbook_step("call", "child")]))
        child = Playbook.from_dict(_playbook("child"))
        await lifecycle.register_version("acme", child, "h", "tenants/acme/playbooks/child/1.0.0.json")

        _, report = await service.sync_scope("acme")

        assert sorted(report.indexed) == ["child-1.0.0", "parent-1.0.0"]
        assert await lifecycle.referenced_by("acme", "child", "1.0.0") == [("acme", "parent", "1.0.0")]
        with pytest.raises(AssetInUse):
            await lifecycle.delete_version("acme", "child", "1.0.0")

    @pytest.mark.asyncio
    async def test_deleted_version_is_not_indexed(self, service, reference_store, vector_store, lifecycle):
        await _seed(reference_store, "p1")
        playbook = Playbook.from_dict(_playbook("p1"))
        await lifecycle.register_version("acme", playbook, "h", "tenants/acme/playbooks/p1/1.0.0.json")
        await lifecycle.delete_version("acme", "p1", "1.0.0")

        _, report = await service.sync_scope("acme")
        assert report.skipped == ["tenants/acme/playbooks/p1/1.0.0.json"]
        assert await vector_store.count(COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_concurrent_sync_rejected(self, service, lock_service):
        lock_service.held.add(f"sync:{COLLECTION}")
        with pytest.raises(ConcurrentSyncRejected) as exc:
            await service.sync_scope("acme")
        assert exc.value.details["collection"] == COLLECTION


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_failed_object_blocks_marker(self, service, reference_store, storage, state):
        """A failure holds the marker before the failed object; later objects are still indexed."""
        await _seed(reference_store, "p1")
        storage.put_raw("tenants/acme/playbooks/broken/1.0.0.json", b"{not json")
        await reference_store.put_playbook("acme", _playbook("p3"))

        marker, report = await service.sync_scope("acme")

        assert marker.object_key == "tenants/acme/playbooks/p1/1.0.0.json"
        assert sorted(report.indexed) == ["p1-1.0.0", "p3-1.0.0"]
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure["code"] == "SYNC_PARTIAL_FAILURE"
        assert failure["details"]["object_key"] == "tenants/acme/playbooks/broken/1.0.0.json"
        assert failure["details"]["attempts"] == 1
        ledger = await state.failures(COLLECTION)
        assert list(ledger) == ["tenants/acme/playbooks/broken/1.0.0.json"]

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_fix(self, service, reference_store, storage, state):
        await _seed(reference_store, "p1")
        storage.put_raw("tenants/acme/playbooks/broken/1.0.0.json", b"{not json")
        await service.sync_scope("acme")

        storage.put_raw(
            "tenants/acme/playbooks/broken/1.0.0.json",
            json.dumps(_playbook("broken")).encode("utf-8"),
        )
        marker, report = await service.sync_scope("acme")

        assert "broken-1.0.0" in report.indexed
        assert report.ok
        assert marker.object_key == "tenants/acme/playbooks/broken/1.0.0.json"
        assert await state.failures(COLLECTION) == {}

    @pytest.mark.asyncio
    async def test_missing_script_fails_the_playbook(self, service, reference_store):
        await reference_store.put_playbook("acme", _playbook("p1"))
        marker, report = await service.sync_scope("acme")
        assert marker is None
        assert report.failures[0]["details"]["cause"]["code"] == "ASSET_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_embedding_failure_is_retried(self, service, reference_store, embeddings):
        await _seed(reference_store, "p1")
        embeddings.fail = True
        _, report = await service.sync_scope("acme")
        assert report.indexed == []
        assert len(report.failures) == 1

        embeddings.fail = False
        _, report = await service.sync_scope("acme")
        assert report.indexed == ["p1-1.0.0"]

    @pytest.mark.asyncio
    async def test_repeated_failure_is_quarantined(
        self, reference_store, vector_store, state, lifecycle, lock_service, storage
    ):
        """After max_object_attempts the object is quarantined and the marker moves past it."""
        service = _service(
            reference_store, vector_store, FakeEmbeddingService(), state, lifecycle, lock_service,
            max_object_attempts=2,
        )
        await _seed(reference_store, "p1")
        storage.put_raw("tenants/acme/playbooks/broken/1.0.0.json", b"{not json")

        marker, report = await service.sync_scope("acme")
        assert marker.object_key == "tenants/acme/playbooks/p1/1.0.0.json"
        assert report.quarantined == []

        marker, report = await service.sync_scope("acme")
        assert report.quarantined == ["tenants/acme/playbooks/broken/1.0.0.json"]
        assert marker.object_key == "tenants/acme/playbooks/broken/1.0.0.json"
        ledger = await state.failures(COLLECTION)
        assert ledger["tenants/acme/playbooks/broken/1.0.0.json"].quarantined is True

    @pytest.mark.asyncio
    async def test_quarantined_object_is_skipped_on_rescan(
        self, reference_store, vector_store, state, lifecycle, lock_service, storage
    ):
        embeddings = FakeEmbeddingService()
        service = _service(
            reference_store, vector_store, embeddings, state, lifecycle, lock_service,
            max_object_attempts=1,
        )
        storage.put_raw("tenants/acme/playbooks/broken/1.0.0.json", b"{not json")
        await service.sync_scope("acme")

        _, report = await service.sync_scope("acme", FULL_RESCAN)
        assert report.quarantined == ["tenants/acme/playbooks/broken/1.0.0.json"]
        assert report.failures == []


class TestSyncAll:

    @pytest.mark.asyncio
    async def test_syncs_global_and_known_tenants(self, service, reference_store, vector_store, lifecycle):
        await _seed(reference_store, "g1", scope="global")
        await _seed(reference_store, "t1")
        playbook = Playbook.from_dict(_playbook("t1"))
        await lifecycle.register_version("acme", playbook, "h", "tenants/acme/playbooks/t1/1.0.0.json")

        reports = await service.sync_all()

        assert [r.scope for r in reports] == ["global", "acme"]
        assert vector_store.collections["playbooks_global"]["g1-1.0.0"].payload["precedence"] == "curated"
        assert await vector_store.count(COLLECTION) == 1


class TestSyncByCollection:

    @pytest.mark.asyncio
    async def test_global_collection_by_name(self, service, reference_store, vector_store):
        await _seed(reference_store, "g1", scope="global")
        _, report = await service.sync("playbooks_global")
        assert report.scope == "global"
        assert report.indexed == ["g1-1.0.0"]

    @pytest.mark.asyncio
    async def test_unknown_collection(self, service):
        with pytest.raises(AssetNotFound):
            await service.sync("playbooks_tenant_nobody")
