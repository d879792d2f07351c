# playbook_engine/core/storage/reference_store.py
"""
Reference Store - versioned playbook and script objects in MinIO.

Object key layout (one bucket):

    global/playbooks/{playbook_id}/{version}.json
    global/scripts/{script_id}/{version}.json
    tenants/{tenant_id}/playbooks/{playbook_id}/{version}.json
    tenants/{tenant_id}/scripts/{script_id}/{version}.json

Objects are canonical JSON (sorted keys) so that identical definitions
hash identically. A version is written once; writing different content to
an existing key raises VersionConflict unless the caller explicitly allows
overwriting (drafts).

The MinIO client is synchronous; every call runs in a worker thread.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from playbook_engine.core.errors import AssetNotFound, VersionConflict

logger = logging.getLogger("playbook_engine.reference_store")

GLOBAL_SCOPE = "global"
KIND_PLAYBOOK = "playbook"
KIND_SCRIPT = "script"
_KIND_DIRS = {KIND_PLAYBOOK: "playbooks", KIND_SCRIPT: "scripts"}
_DIR_KINDS = {v: k for k, v in _KIND_DIRS.items()}


@dataclass(frozen=True)
class ChangeMarker:
    """
    Position in a scope's change feed.

    ``last_modified`` is the newest fully-processed timestamp and
    ``object_key`` the last key processed at it. ``seen`` holds every
    ``(key, etag)`` already processed at exactly that timestamp, so an
    object written later in the same tick is still listed, whatever its key.
    """
    last_modified: datetime
    object_key: str
    seen: FrozenSet[Tuple[str, str]] = frozenset()

    def admits(self, obj: "StoredObject") -> bool:
        """Whether ``obj`` has not been processed as of this marker."""
        since = as_utc(self.last_modified)
        modified = as_utc(obj.last_modified)
        if modified != since:
            return modified > since
        if self.seen:
            return (obj.key, obj.etag) not in self.seen
        return obj.key != self.object_key

    def advance(self, obj: "StoredObject") -> "ChangeMarker":
        """The marker once ``obj`` has been processed."""
        modified = as_utc(obj.last_modified)
        if modified == as_utc(self.last_modified):
            return ChangeMarker(modified, obj.key, self.seen | {(obj.key, obj.etag)})
        return obj.marker


@dataclass
class StoredObject:
    key: str
    scope: str
    kind: str
    asset_id: str
    version: str
    last_modified: datetime
    etag: str = ""

    @property
    def marker(self) -> ChangeMarker:
        return ChangeMarker(as_utc(self.last_modified), self.key, frozenset({(self.key, self.etag)}))


@dataclass
class PutResult:
    key: str
    content_hash: str
    created: bool


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def scope_prefix(scope: str) -> str:
    if scope == GLOBAL_SCOPE:
        return "global/"
    return f"tenants/{scope}/"


def object_key(scope: str, kind: str, asset_id: str, version: str) -> str:
    return f"{scope_prefix(scope)}{_KIND_DIRS[kind]}/{asset_id}/{version}.json"


def parse_object_key(key: str) -> Optional[Tuple[str, str, str, str]]:
    """Split a key into (scope, kind, asset_id, version), or None if it is not an asset key."""
    parts = key.split("/")
    if len(parts) == 4 and parts[0] == "global":
        scope, rest = GLOBAL_SCOPE, parts[1:]
    elif len(parts) == 5 and parts[0] == "tenants":
        scope, rest = parts[1], parts[2:]
    else:
        return None
    kind_dir, asset_id, filename = rest
    if kind_dir not in _DIR_KINDS or not filename.endswith(".json"):
        return None
    return scope, _DIR_KINDS[kind_dir], asset_id, filename[: -len(".json")]


def canonical_json(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def content_hash(data: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(data)).hexdigest()


class ReferenceStore:
    """
    Async facade over MinIO for playbook and script objects.

    Args:
        storage: MinIOService (or any object with the same methods)
        bucket: Bucket holding the library
    """

    def __init__(self, storage, bucket: str):
        self.storage = storage
        self.bucket = bucket

    async def ensure_ready(self) -> None:
        await asyncio.to_thread(self.storage.ensure_bucket, self.bucket)

    # -------------------------------------------------------------------------
    # Change feed
    # -------------------------------------------------------------------------

    async def list_changed(
        self,
        scope: str,
        since_marker: Optional[ChangeMarker] = None,
        limit: Optional[int] = None,
    ) -> List[StoredObject]:
        """
        Objects of one scope not yet processed as of ``since_marker``, in
        (last_modified, key) order. Non-asset keys are ignored.
        """
        raw = await asyncio.to_thread(self.storage.list_objects, self.bucket, scope_prefix(scope), True)

        objects = []
        for info in raw:
            parsed = parse_object_key(info["key"])
            if parsed is None or parsed[0] != scope:
                continue
            _, kind, asset_id, version = parsed
            objects.append(StoredObject(
                key=info["key"],
                scope=scope,
                kind=kind,
                asset_id=asset_id,
                version=version,
                last_modified=as_utc(info["last_modified"]),
                etag=info.get("etag", ""),
            ))

        objects.sort(key=lambda o: (o.last_modified, o.key))
        if since_marker is not None:
            objects = [o for o in objects if since_marker.admits(o)]
        if limit is not None:
            objects = objects[:limit]
        return objects

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def load_object(self, key: str) -> Dict[str, Any]:
        info = await asyncio.to_thread(self.storage.get_object_info, self.bucket, key)
        if info is None:
            raise AssetNotFound(f"Object '{key}' not found", details={"key": key})
        content = await asyncio.to_thread(self.storage.get_object, self.bucket, key)
        return json.loads(content.getvalue().decode("utf-8"))

    async def get_playbook(self, scope: str, playbook_id: str, version: str) -> Dict[str, Any]:
        return await self._get(scope, KIND_PLAYBOOK, playbook_id, version)

    async def get_script(self, scope: str, script_id: str, version: str) -> Dict[str, Any]:
        return await self._get(scope, KIND_SCRIPT, script_id, version)

    async def _get(self, scope: str, kind: str, asset_id: str, version: str) -> Dict[str, Any]:
        key = object_key(scope, kind, asset_id, version)
        try:
            return await self.load_object(key)
        except AssetNotFound:
            raise AssetNotFound(
                f"{kind.capitalize()} '{asset_id}' version {version} not found in scope '{scope}'",
                details={"kind": kind, "id": asset_id, "version": version, "scope": scope},
            )

    async def exists(self, scope: str, kind: str, asset_id: str, version: str) -> bool:
        key = object_key(scope, kind, asset_id, version)
        return await asyncio.to_thread(self.storage.object_exists, self.bucket, key)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def put_playbook(self, scope: str, data: Dict[str, Any], allow_overwrite: bool = False) -> PutResult:
        return await self._put(scope, KIND_PLAYBOOK, data["playbook_id"], data["version"], data, allow_overwrite)

    async def put_script(self, scope: str, data: Dict[str, Any], allow_overwrite: bool = False) -> PutResult:
        return await self._put(scope, KIND_SCRIPT, data["script_id"], data["version"], data, allow_overwrite)

    async def _put(
        self,
        scope: str,
        kind: str,
        asset_id: str,
        version: str,
        data: Dict[str, Any],
        allow_overwrite: bool,
    ) -> PutResult:
        """
        Write one version. Re-writing identical content is a no-op.

        Raises:
            VersionConflict: the key holds different content and overwrite is not allowed
        """
        key = object_key(scope, kind, asset_id, version)
        body = canonical_json(data)
        digest = hashlib.sha256(body).hexdigest()

        if await asyncio.to_thread(self.storage.object_exists, self.bucket, key):
            existing_hash = content_hash(await self.load_object(key))
            if existing_hash == digest:
                logger.debug(f"Unchanged {kind} {asset_id}@{version}, skipping write")
                return PutResult(key=key, content_hash=digest, created=False)
            if not allow_overwrite:
                raise VersionConflict(
                    f"{kind.capitalize()} '{asset_id}' version {version} already exists with different "
                    "content. Publish a new version instead.",
                    details={"kind": kind, "id": asset_id, "version": version, "scope": scope},
                )

        await asyncio.to_thread(
            self.storage.put_object,
            self.bucket,
            key,
            BytesIO(body),
            len(body),
            "application/json",
            {"content-sha256": digest},
        )
        return PutResult(key=key, content_hash=digest, created=True)

    async def tag_for_retention(self, key: str, tag: str = "retention", value: str = "expired") -> None:
        """Mark an object for the bucket's retention-policy cleanup."""
        await asyncio.to_thread(self.storage.set_object_tags, self.bucket, key, {tag: value})
