import hashlib
import json
import math
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Configure the environment before importing engine modules.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="playbook_engine_pytest_"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR / 'default.db'}")
os.environ.setdefault("PLAYBOOK_ENGINE_CONFIG", str(_SESSION_DIR / "missing-config.yml"))
os.environ.setdefault("OPENAI_API_KEY", "")

from playbook_engine.core.errors import LLMUnavailable  # noqa: E402
from playbook_engine.core.models.config_models import SyncConfig  # noqa: E402
from playbook_engine.core.search.collection_stores.base import (  # noqa: E402
    CollectionStoreAdapter,
    VectorEntry,
    VectorFilter,
    VectorHit,
    collection_name_for_scope,
)
from playbook_engine.core.shared.database_service import DatabaseService  # noqa: E402
from playbook_engine.core.storage.reference_store import ReferenceStore  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


# =============================================================================
# IN-TEST DOUBLES
# =============================================================================


class InMemoryObjectStorage:
    """MinIO-shaped storage kept in a dict; every write advances a fake clock by one second."""

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.tags: Dict[str, Dict[str, str]] = {}
        self.clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self.clock += timedelta(seconds=1)
        return self.clock

    def put_raw(self, key: str, body: bytes, same_tick: bool = False) -> None:
        """Store ``body``; with ``same_tick`` the clock does not advance."""
        modified = self.clock if same_tick else self._tick()
        self.objects[key] = {"body": body, "last_modified": modified, "etag": hashlib.md5(body).hexdigest()}

    def ensure_bucket(self, bucket: str) -> bool:
        return True

    def object_exists(self, bucket: str, key: str) -> bool:
        return key in self.objects

    def get_object_info(self, bucket: str, key: str) -> Optional[Dict]:
        obj = self.objects.get(key)
        if obj is None:
            return None
        return {"key": key, "size": len(obj["body"]), "last_modified": obj["last_modified"]}

    def put_object(self, bucket, key, data, length, content_type="application/json", metadata=None) -> str:
        self.put_raw(key, data.read())
        return self.objects[key]["etag"]

    def get_object(self, bucket: str, key: str) -> BytesIO:
        return BytesIO(self.objects[key]["body"])

    def list_objects(self, bucket: str, prefix: str = "", recursive: bool = True) -> List[Dict]:
        return [
            {"bucket": bucket, "key": key, "size": len(obj["body"]), "etag": obj["etag"], "last_modified": obj["last_modified"]}
            for key, obj in self.objects.items()
            if key.startswith(prefix)
        ]

    def set_object_tags(self, bucket: str, key: str, tags: Dict[str, str]) -> None:
        self.tags[key] = dict(tags)

    def check_health(self):
        return True, ["test-bucket"], None


def _cosine(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryCollectionStore(CollectionStoreAdapter):
    """Brute-force cosine search with the same filter semantics as the pgvector store."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, VectorEntry]] = {}
        self.failing: set = set()

    async def create_collection(self, name: str, dimensions: int) -> bool:
        if name in self.collections:
            return False
        self.collections[name] = {}
        return True

    async def collection_exists(self, name: str) -> bool:
        return name in self.collections

    async def upsert(self, collection: str, entries: List[VectorEntry]) -> int:
        for entry in entries:
            self.collections[collection][entry.id] = VectorEntry(
                id=entry.id, vector=list(entry.vector), payload=json.loads(json.dumps(entry.payload))
            )
        return len(entries)

    async def search(self, collection, query_vector, vector_filter: Optional[VectorFilter] = None, limit=10):
        if collection in self.failing:
            raise RuntimeError(f"collection {collection} unavailable")
        vector_filter = vector_filter or VectorFilter()
        hits = []
        for entry in self.collections.get(collection, {}).values():
            payload = entry.payload
            if vector_filter.statuses and payload.get("status") not in vector_filter.statuses:
                continue
            providers = payload.get("cloud_providers") or []
            if vector_filter.cloud_provider and providers and vector_filter.cloud_provider not in providers:
                continue
            resources = payload.get("resource_types") or []
            if vector_filter.resource_types and resources and not set(resources) & set(vector_filter.resource_types):
                continue
            hits.append(VectorHit(id=entry.id, score=_cosine(query_vector, entry.vector), payload=payload))
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:limit]

    async def delete(self, collection: str, ids: List[str]) -> int:
        entries = self.collections.get(collection, {})
        return sum(1 for i in ids if entries.pop(i, None) is not None)

    async def update_metadata(self, collection: str, entry_id: str, metadata: Dict[str, Any]) -> bool:
        entry = self.collections.get(collection, {}).get(entry_id)
        if entry is None:
            return False
        entry.payload.update(metadata)
        return True

    async def count(self, collection: str) -> int:
        return len(self.collections.get(collection, {}))


class FakeLockService:
    def __init__(self):
        self.held: set = set()

    @asynccontextmanager
    async def lock(self, resource_name: str, timeout: int = 300, **kwargs):
        if resource_name in self.held:
            yield False
            return
        self.held.add(resource_name)
        try:
            yield True
        finally:
            self.held.discard(resource_name)


class FakeEmbeddingService:
    """Same vector for every text unless a substring rule matches."""

    def __init__(self, default: Optional[List[float]] = None):
        self.default = default or [1.0, 0.0, 0.0]
        self.rules: List[tuple] = []
        self.fail = False
        self.calls: List[str] = []

    def when(self, substring: str, vector: List[float]) -> None:
        self.rules.append((substring, vector))

    async def get_embedding(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding provider down")
        for substring, vector in self.rules:
            if substring in text:
                return list(vector)
        return list(self.default)


class FakeLLMService:
    def __init__(self, response: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.prompts: List[str] = []
        self.is_available = True

    async def complete_json(self, prompt: str, **kwargs) -> Dict[str, Any]:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if self.response is None:
            raise LLMUnavailable("no response configured")
        return self.response


# =============================================================================
# DEFINITION BUILDERS
# =============================================================================


def tenant_collection(tenant_id: str) -> str:
    config = SyncConfig()
    return collection_name_for_scope(tenant_id, config.global_collection, config.tenant_collection_prefix)


def make_script(
    script_id: str = "snapshot-volume",
    version: str = "1.0.0",
    duration: float = 60.0,
    parameters: Optional[List[Dict[str, Any]]] = None,
    outputs: Optional[List[Dict[str, Any]]] = None,
    permissions: Optional[List[str]] = None,
) -> Dict[str, Any]:
    return {
        "script_id": script_id,
        "version": version,
        "name": script_id.replace("-", " ").title(),
        "description": f"Runs {script_id}",
        "implementations": {
            "bash": {"language": "bash", "source": f"#!/bin/bash\n# {script_id}", "entry_point": "main"},
            "python": {"language": "python", "source": f"# {script_id}", "entry_point": "run"},
        },
        "parameters": parameters if parameters is not None else [
            {"name": "volume_id", "type": "string", "required": True},
        ],
        "outputs": outputs if outputs is not None else [{"name": "snapshot_id", "type": "string"}],
        "required_permissions": permissions if permissions is not None else ["ec2:CreateSnapshot"],
        "estimated_duration_seconds": duration,
    }


def script_step(name: str, script_id: str, version: str = "1.0.0", mapping=None, **extra) -> Dict[str, Any]:
    step = {
        "name": name,
        "description": f"Step {name}",
        "script_ref": {"script_id": script_id, "version": version, "implementation": "bash"},
        "parameter_mapping": mapping if mapping is not None else {},
    }
    step.update(extra)
    return step


def playbook_step(name: str, playbook_id: str, version: str = "1.0.0", mapping=None) -> Dict[str, Any]:
    return {
        "name": name,
        "description": f"Step {name}",
        "playbook_ref": {"playbook_id": playbook_id, "version": version},
        "parameter_mapping": mapping if mapping is not None else {},
    }


def make_playbook(
    playbook_id: str = "snapshot-ebs",
    version: str = "1.0.0",
    steps: Optional[List[Dict[str, Any]]] = None,
    parameters: Optional[List[Dict[str, Any]]] = None,
    status: str = "active",
    **fields,
) -> Dict[str, Any]:
    data = {
        "playbook_id": playbook_id,
        "version": version,
        "name": playbook_id.replace("-", " ").title(),
        "description": f"Operational playbook {playbook_id} for cloud resources",
        "keywords": ["ebs", "snapshot", "backup"],
        "use_cases": ["Back up a volume before maintenance"],
        "cloud_providers": ["aws"],
        "resource_types": ["ebs_volume"],
        "author_class": "tenant",
        "parameters": parameters if parameters is not None else [],
        "steps": steps if steps is not None else [],
        "explain_plan": {"rationale": f"Why {playbook_id}", "risks": [], "rollback_strategy": "", "success_criteria": []},
        "status": status,
    }
    data.update(fields)
    return data


def full_draft(playbook_id: str = "snapshot-ebs", version: str = "1.0.0") -> Dict[str, Any]:
    """A draft that scores 100 against the quality rubric."""
    return {
        "playbook_id": playbook_id,
        "version": version,
        "name": "Snapshot EBS volume",
        "description": "Creates a point-in-time snapshot of an EBS volume before risky maintenance work.",
        "keywords": ["ebs", "snapshot", "backup", "restore point", "volume"],
        "use_cases": ["Back up a volume before resizing it", "Take a restore point before patching"],
        "cloud_providers": ["aws"],
        "resource_types": ["ebs_volume"],
        "prerequisites": ["Caller can run ec2:CreateSnapshot on the volume"],
        "estimated_impact": "No downtime; snapshot storage cost",
        "parameters": [
            {
                "name": "volume_id",
                "type": "string",
                "description": "Volume to snapshot",
                "required": True,
                "validation": "^vol-[0-9a-f]+$",
                "extraction_hint": {"source": "estate", "path": "resource.volume_id"},
            }
        ],
        "steps": [
            script_step(
                "snapshot",
                "snapshot-volume",
                mapping={"volume_id": "${playbook.volume_id}"},
                pre_validation=[{"type": "parameter_present", "target": "volume_id"}],
                post_validation=[{"type": "resource_state", "target": "snapshot.state", "expected": "completed"}],
            )
        ],
        "explain_plan": {
            "rationale": "A snapshot gives a restore point before the volume changes.",
            "risks": ["Snapshot storage cost"],
            "rollback_strategy": "Delete the snapshot",
            "success_criteria": ["Snapshot reaches completed state"],
        },
        "testing": {"test_plan": "Run against a scratch volume", "dry_run_supported": True, "test_cases": ["happy path"]},
    }


# =============================================================================
# FIXTURES
# =============================================================================


@pytest_asyncio.fixture
async def db(tmp_path):
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def reference_store(storage):
    return ReferenceStore(storage, "test-bucket")


@pytest.fixture
def vector_store():
    return InMemoryCollectionStore()


@pytest.fixture
def lock_service():
    return FakeLockService()


@pytest.fixture
def embeddings():
    return FakeEmbeddingService()
