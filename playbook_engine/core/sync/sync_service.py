# ============================================================================
# playbook_engine/core/sync/sync_service.py
# ============================================================================
"""
Sync Engine: Reference Store -> vector index.

One sync processes one collection (the global library or one tenant):

    1. take the ``sync:{collection}`` lock (a second trigger is rejected)
    2. make sure the collection exists and is registered
    3. list objects not yet processed as of the marker, in (last_modified, key)
       order; objects at the marker's own timestamp are re-listed unless
       their (key, etag) was already processed
    4. load scripts into the run's catalog
    5. per playbook (concurrently, bounded): embed script implementations
       into the steps, embed the searchable text, build the payload
    6. upsert the entries, record their playbook_ref edges, then advance
       the marker past the contiguous prefix of objects that are done

An object that fails stays in the failure ledger and blocks the marker at
its position, so it is retried on the next cycle. After
``sync.max_object_attempts`` failures the object is quarantined and the
marker moves past it.

Usage:
    marker, report = await sync_service.sync_scope("tenant-a")
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from playbook_engine.core.errors import (
    AssetNotFound,
    ConcurrentSyncRejected,
    PlaybookEngineError,
    SyncPartialFailure,
)
from playbook_engine.core.models.config_models import SearchConfig, SyncConfig
from playbook_engine.core.search.collection_stores.base import (
    CollectionStoreAdapter,
    VectorEntry,
    collection_name_for_scope,
)
from playbook_engine.core.search.ranking import precedence_tier
from playbook_engine.core.storage.reference_store import (
    GLOBAL_SCOPE,
    KIND_PLAYBOOK,
    KIND_SCRIPT,
    ChangeMarker,
    ReferenceStore,
    StoredObject,
)
from playbook_engine.core.sync.marker_store import SyncStateStore
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.lifecycle import LifecycleManager, index_metadata
from playbook_engine.playbooks.models import Playbook, Script
from playbook_engine.playbooks.versioning import entry_id

logger = logging.getLogger("playbook_engine.sync")

# Outcome of one object
_DONE = "done"
_SKIPPED = "skipped"
_FAILED = "failed"
_QUARANTINED = "quarantined"

# Position before any object; passing it as since_marker rescans a whole scope
FULL_RESCAN = ChangeMarker(datetime(1970, 1, 1, tzinfo=timezone.utc), "")


@dataclass
class SyncReport:
    collection: str
    scope: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    marker_before: Optional[ChangeMarker] = None
    marker_after: Optional[ChangeMarker] = None
    collection_created: bool = False
    examined: int = 0
    indexed: List[str] = field(default_factory=list)
    scripts_loaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    quarantined: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        def marker(m: Optional[ChangeMarker]):
            if m is None:
                return None
            return {"last_modified": m.last_modified.isoformat(), "object_key": m.object_key}

        return {
            "collection": self.collection,
            "scope": self.scope,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "marker_before": marker(self.marker_before),
            "marker_after": marker(self.marker_after),
            "collection_created": self.collection_created,
            "examined": self.examined,
            "indexed": list(self.indexed),
            "scripts_loaded": list(self.scripts_loaded),
            "skipped": list(self.skipped),
            "quarantined": list(self.quarantined),
            "failures": list(self.failures),
            "ok": self.ok,
        }


def embed_script(script: Script, implementation: str) -> Dict[str, Any]:
    """Script metadata with only the chosen implementation, as stored on the step."""
    data = script.to_dict()
    data["implementations"] = {
        name: impl for name, impl in data["implementations"].items() if name == implementation
    }
    return data


class SyncService:
    """
    Args:
        reference_store: Source of playbook and script objects
        vector_store: Index to populate
        embedding_service: Provides ``get_embedding(text)``
        state: Markers, collection registry and failure ledger
        lifecycle: Source of status and execution stats
        lock_service: Provides ``lock(name, timeout)``
    """

    def __init__(
        self,
        reference_store: ReferenceStore,
        vector_store: CollectionStoreAdapter,
        embedding_service,
        state: SyncStateStore,
        lifecycle: LifecycleManager,
        lock_service,
        config: Optional[SyncConfig] = None,
        search_config: Optional[SearchConfig] = None,
    ):
        self.reference_store = reference_store
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.state = state
        self.lifecycle = lifecycle
        self.lock_service = lock_service
        self.config = config or SyncConfig()
        self.search_config = search_config or SearchConfig()

    def collection_for(self, scope: str) -> str:
        return collection_name_for_scope(scope, self.config.global_collection, self.config.tenant_collection_prefix)

    async def scope_for(self, collection: str) -> str:
        if collection == self.config.global_collection:
            return GLOBAL_SCOPE
        for registered in await self.state.list_collections():
            if registered.name == collection:
                return registered.scope
        for scope in await self.lifecycle.known_scopes():
            if self.collection_for(scope) == collection:
                return scope
        raise AssetNotFound(f"Unknown collection '{collection}'", details={"collection": collection})

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def sync(
        self, collection: str, since_marker: Optional[ChangeMarker] = None
    ) -> Tuple[Optional[ChangeMarker], SyncReport]:
        """
        Sync one collection by name.

        Raises:
            ConcurrentSyncRejected: a sync of this collection is in flight
            AssetNotFound: the collection name maps to no known scope
        """
        scope = await self.scope_for(collection)
        return await self.sync_scope(scope, since_marker)

    async def sync_scope(
        self, scope: str, since_marker: Optional[ChangeMarker] = None
    ) -> Tuple[Optional[ChangeMarker], SyncReport]:
        """
        Sync the collection of one scope.

        ``since_marker`` overrides the persisted marker. Returns the new marker
        (unchanged when nothing could be processed) and the run report.

        Raises:
            ConcurrentSyncRejected: a sync of this collection is in flight
        """
        collection = self.collection_for(scope)
        async with self.lock_service.lock(f"sync:{collection}", timeout=self.config.lock_timeout) as acquired:
            if not acquired:
                raise ConcurrentSyncRejected(
                    f"A sync of collection '{collection}' is already running",
                    details={"collection": collection, "scope": scope},
                )
            return await self._run(collection, scope, since_marker)

    async def sync_all(self) -> List[SyncReport]:
        """Sync the global collection and every tenant collection in turn."""
        scopes = [GLOBAL_SCOPE]
        for scope in await self.lifecycle.known_scopes():
            if scope not in scopes:
                scopes.append(scope)
        for registered in await self.state.list_collections():
            if registered.scope not in scopes:
                scopes.append(registered.scope)

        reports = []
        for scope in scopes:
            try:
                _, report = await self.sync_scope(scope)
            except ConcurrentSyncRejected as e:
                logger.info(f"Skipping {scope}: {e.message}")
                continue
            except Exception as e:
                logger.error(f"Sync of scope {scope} failed: {e}", exc_info=True)
                continue
            reports.append(report)
        return reports

    # -------------------------------------------------------------------------
    # One run
    # -------------------------------------------------------------------------

    async def _run(
        self, collection: str, scope: str, since_marker: Optional[ChangeMarker]
    ) -> Tuple[Optional[ChangeMarker], SyncReport]:
        report = SyncReport(collection=collection, scope=scope)
        report.collection_created = await self._ensure_collection(collection, scope)

        start = since_marker if since_marker is not None else await self.state.get_marker(collection)
        report.marker_before = start
        objects = await self.reference_store.list_changed(scope, start, limit=self.config.batch_size)
        report.examined = len(objects)
        if not objects:
            report.marker_after = start
            report.finished_at = datetime.utcnow()
            return start, report

        ledger = await self.state.failures(collection)
        outcomes: Dict[str, str] = {}
        catalog = AssetCatalog()

        for obj in objects:
            if self.state.is_quarantined(ledger.get(obj.key), obj.last_modified):
                outcomes[obj.key] = _QUARANTINED
                report.quarantined.append(obj.key)

        # Scripts first, so playbooks in the same batch can embed them
        for obj in objects:
            if obj.kind != KIND_SCRIPT or obj.key in outcomes:
                continue
            try:
                script = Script.from_dict(await self.reference_store.load_object(obj.key))
                catalog.add_script(obj.scope, script)
                outcomes[obj.key] = _DONE
                report.scripts_loaded.append(obj.key)
            except Exception as e:
                outcomes[obj.key] = await self._fail(collection, obj, e, report)

        semaphore = asyncio.Semaphore(self.config.upsert_concurrency)
        indexed: Dict[str, Playbook] = {}

        async def process(obj: StoredObject) -> None:
            async with semaphore:
                try:
                    built = await self._build_entry(catalog, obj)
                    if built is None:
                        outcomes[obj.key] = _SKIPPED
                        report.skipped.append(obj.key)
                        return
                    entry, playbook = built
                    await self.vector_store.upsert(collection, [entry])
                    outcomes[obj.key] = _DONE
                    indexed[obj.key] = playbook
                    report.indexed.append(entry.id)
                except Exception as e:
                    outcomes[obj.key] = await self._fail(collection, obj, e, report)

        await asyncio.gather(*(
            process(obj) for obj in objects
            if obj.kind == KIND_PLAYBOOK and obj.key not in outcomes
        ))

        # Serialized: reference edges, marker advance and ledger cleanup after every upsert returned
        for obj in objects:
            if obj.key in indexed:
                await self.lifecycle.record_references(obj.scope, indexed[obj.key])
        new_marker = start
        for obj in objects:
            outcome = outcomes.get(obj.key, _FAILED)
            if outcome == _FAILED:
                break
            new_marker = obj.marker if new_marker is None else new_marker.advance(obj)
        for obj in objects:
            if outcomes.get(obj.key) in (_DONE, _SKIPPED) and obj.key in ledger:
                await self.state.clear_failure(collection, obj.key)

        if new_marker is not None and new_marker != start:
            await self.state.set_marker(collection, scope, new_marker)

        report.marker_after = new_marker
        report.finished_at = datetime.utcnow()
        log = logger.warning if report.failures else logger.info
        log(
            f"Sync {collection}: examined={report.examined} indexed={len(report.indexed)} "
            f"scripts={len(report.scripts_loaded)} skipped={len(report.skipped)} "
            f"failed={len(report.failures)} quarantined={len(report.quarantined)}"
        )
        return new_marker, report

    async def _ensure_collection(self, collection: str, scope: str) -> bool:
        created = False
        if not await self.vector_store.collection_exists(collection):
            created = await self.vector_store.create_collection(
                collection, self.search_config.embedding_dimensions
            )
        if not await self.state.is_registered(collection):
            await self.state.register_collection(collection, scope, self.search_config.embedding_dimensions)
        return created

    async def _fail(self, collection: str, obj: StoredObject, error: Exception, report: SyncReport) -> str:
        details = error.to_dict() if isinstance(error, PlaybookEngineError) else {"error": str(error)}
        entry = await self.state.record_failure(
            collection,
            obj.key,
            obj.last_modified,
            str(error),
            details,
            self.config.max_object_attempts,
        )
        failure = SyncPartialFailure(
            f"Failed to sync {obj.key}: {error}",
            details={"object_key": obj.key, "attempts": entry.attempts, "cause": details},
        )
        report.failures.append(failure.to_dict())

        if entry.quarantined:
            logger.error(
                f"Quarantined {obj.key} after {entry.attempts} failed attempts: {error}",
                exc_info=not isinstance(error, PlaybookEngineError),
            )
            report.quarantined.append(obj.key)
            return _QUARANTINED
        logger.warning(f"Sync of {obj.key} failed (attempt {entry.attempts}); will retry: {error}")
        return _FAILED

    async def _build_entry(
        self, catalog: AssetCatalog, obj: StoredObject
    ) -> Optional[Tuple[VectorEntry, Playbook]]:
        """
        Index entry and parsed playbook for one object, or None when the
        version was deleted and must not be indexed.
        """
        record = await self.lifecycle.get_version(obj.scope, obj.asset_id, obj.version)
        eid = entry_id(obj.asset_id, obj.version)
        if record is not None and record.deleted_at is not None:
            await self.vector_store.delete(self.collection_for(obj.scope), [eid])
            return None

        playbook = Playbook.from_dict(await self.reference_store.load_object(obj.key))
        for step in playbook.steps:
            if step.script_ref is None:
                continue
            ref = step.script_ref
            _, script = await catalog.load_script(self.reference_store, obj.scope, ref.script_id, ref.version)
            if ref.implementation not in script.implementations:
                raise AssetNotFound(
                    f"Script '{script.script_id}' version {script.version} has no "
                    f"'{ref.implementation}' implementation",
                    details={"script_id": script.script_id, "implementation": ref.implementation},
                )
            step.embedded_script = embed_script(script, ref.implementation)

        vector = await self.embedding_service.get_embedding(playbook.embedding_text())

        payload = playbook.to_dict()
        if record is not None:
            payload.update(index_metadata(record))
        payload.update({
            "entry_id": eid,
            "scope": obj.scope,
            "object_key": obj.key,
            "author_class": playbook.author_class.value,
            "precedence": precedence_tier(obj.scope, playbook.author_class.value),
        })
        return VectorEntry(id=eid, vector=list(vector), payload=payload), playbook
