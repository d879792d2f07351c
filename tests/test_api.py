"""Tests for the HTTP surface: request mapping and error-to-status translation."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from playbook_engine.core.errors import (
    AssetInUse,
    AssetNotFound,
    ConcurrentSyncRejected,
    CyclicReferenceDetected,
    InvalidStatusTransition,
    PlaybookEngineError,
    QualityThresholdNotMet,
    ValidationFailed,
    VersionConflict,
)
from playbook_engine.core.search.playbook_search_service import RankedPlaybook, SearchResponse
from playbook_engine.core.sync.sync_service import FULL_RESCAN
from playbook_engine.dependencies import (
    get_lifecycle_manager,
    get_publisher,
    get_search_service,
    get_sync_service,
)
from playbook_engine.main import app, status_code_for
from playbook_engine.playbooks.models import PlaybookStatus
from playbook_engine.playbooks.publisher import PublishResult


@pytest.fixture
def services():
    search = MagicMock()
    search.search = AsyncMock(return_value=SearchResponse())
    publisher = MagicMock()
    publisher.publish = AsyncMock()
    lifecycle = MagicMock()
    lifecycle.transition = AsyncMock(return_value=SimpleNamespace(status="active"))
    lifecycle.record_execution = AsyncMock(return_value=SimpleNamespace(status="active"))
    lifecycle.list_versions = AsyncMock(return_value=[])
    lifecycle.delete_version = AsyncMock()
    sync = MagicMock()
    sync.sync_scope = AsyncMock()

    app.dependency_overrides[get_search_service] = lambda: search
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle
    app.dependency_overrides[get_sync_service] = lambda: sync
    yield SimpleNamespace(search=search, publisher=publisher, lifecycle=lifecycle, sync=sync)
    app.dependency_overrides.clear()


@pytest.fixture
def client(services):
    return TestClient(app)


# =============================================================================
# Search
# =============================================================================


class TestSearchEndpoint:

    def test_search_maps_request(self, client, services):
        services.search.search.return_value = SearchResponse(
            results=[RankedPlaybook(
                rank=1,
                playbook_id="snapshot-ebs",
                version="1.0.0",
                source="tenant",
                confidence=0.9,
                reason="best match",
                metadata={"status": "active"},
                parameters=[],
                explain_plan={"playbook_id": "snapshot-ebs"},
                steps=[],
            )],
            degraded=True,
            warnings=["Results are in composite order; the re-rank stage was unavailable"],
        )

        response = client.post("/api/v1/playbooks/search", json={
            "intent": {"action": "snapshot a volume", "cloud_provider": "aws", "resource_types": ["ebs_volume"]},
            "tenant_id": "acme",
            "filters": {"statuses": ["active"], "include_all_versions": True},
            "limit": 3,
        })

        assert response.status_code == 200
        body = response.json()
        assert body["degraded"] is True
        assert body["results"][0]["playbook_id"] == "snapshot-ebs"

        args = services.search.search.call_args
        intent = args.args[0]
        assert intent.action == "snapshot a volume"
        assert intent.resource_types == ["ebs_volume"]
        assert args.kwargs["tenant_id"] == "acme"
        assert args.kwargs["filters"].statuses == ["active"]
        assert args.kwargs["filters"].include_all_versions is True
        assert args.kwargs["limit"] == 3

    def test_search_requires_action(self, client):
        response = client.post("/api/v1/playbooks/search", json={"intent": {"action": ""}})
        assert response.status_code == 422

    def test_search_without_filters(self, client, services):
        response = client.post("/api/v1/playbooks/search", json={"intent": {"action": "restart"}})
        assert response.status_code == 200
        assert response.json() == {"results": [], "degraded": False, "warnings": []}
        assert services.search.search.call_args.kwargs["filters"] is None


# =============================================================================
# Publication and lifecycle
# =============================================================================


class TestPlaybookEndpoints:

    def test_publish(self, client, services):
        services.publisher.publish.return_value = PublishResult(
            status="published", playbook_id="p", version="1.0.0", lifecycle_status="active", quality_score=88.0,
        )
        response = client.post("/api/v1/playbooks/publish", json={
            "tenant_id": "acme",
            "playbook_draft": {"playbook_id": "p", "version": "1.0.0"},
            "referenced_script_uploads": [{"script_id": "s"}],
            "actor": "alice",
        })
        assert response.status_code == 200
        assert response.json()["lifecycle_status"] == "active"
        services.publisher.publish.assert_awaited_once_with(
            "acme", {"playbook_id": "p", "version": "1.0.0"}, [{"script_id": "s"}], actor="alice"
        )

    def test_rejected_publish_is_not_an_http_error(self, client, services):
        services.publisher.publish.return_value = PublishResult(
            status="rejected", playbook_id="p", version="1.0.0", feedback={"publishable": False},
        )
        response = client.post("/api/v1/playbooks/publish", json={"playbook_draft": {}})
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_publish_conflict_is_409(self, client, services):
        services.publisher.publish.side_effect = VersionConflict("exists", details={"version": "1.0.0"})
        response = client.post("/api/v1/playbooks/publish", json={"playbook_draft": {}})
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "VERSION_CONFLICT",
            "message": "exists",
            "details": {"version": "1.0.0"},
        }

    def test_status_update(self, client, services):
        response = client.post("/api/v1/playbooks/status", json={
            "tenant_id": "acme", "playbook_id": "p", "version": "1.0.0", "new_status": "active",
        })
        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "active"}
        args = services.lifecycle.transition.call_args
        assert args.args[:4] == ("acme", "p", "1.0.0", PlaybookStatus.ACTIVE)

    def test_unknown_status_is_422(self, client):
        response = client.post("/api/v1/playbooks/status", json={
            "playbook_id": "p", "version": "1.0.0", "new_status": "launched",
        })
        assert response.status_code == 422

    def test_invalid_transition_is_409(self, client, services):
        services.lifecycle.transition.side_effect = InvalidStatusTransition("no", details={"allowed": ["ready"]})
        response = client.post("/api/v1/playbooks/status", json={
            "playbook_id": "p", "version": "1.0.0", "new_status": "active",
        })
        assert response.status_code == 409
        assert services.lifecycle.transition.call_args.args[0] == "global"

    def test_execution_report(self, client, services):
        services.lifecycle.record_execution.return_value = SimpleNamespace(status="broken")
        response = client.post("/api/v1/playbooks/executions", json={
            "tenant_id": "acme", "playbook_id": "p", "version": "1.0.0", "success": False,
        })
        assert response.json() == {"ok": True, "status": "broken"}
        services.lifecycle.record_execution.assert_awaited_once_with("acme", "p", "1.0.0", False)

    def test_list_versions(self, client, services):
        services.lifecycle.list_versions.return_value = [SimpleNamespace(
            playbook_id="p", version="1.1.0", scope="acme", status="active", quality_score=91.0,
            execution_count=3, success_count=3, consecutive_failures=None,
        )]
        response = client.get("/api/v1/playbooks/p/versions", params={"tenant_id": "acme"})
        assert response.status_code == 200
        assert response.json()[0]["version"] == "1.1.0"
        assert response.json()[0]["consecutive_failures"] == 0

    def test_delete_missing_version_is_404(self, client, services):
        services.lifecycle.delete_version.side_effect = AssetNotFound("missing")
        response = client.delete("/api/v1/playbooks/p/versions/9.9.9")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ASSET_NOT_FOUND"

    def test_delete_referenced_version_is_409(self, client, services):
        services.lifecycle.delete_version.side_effect = AssetInUse(
            "in use", details={"referenced_by": [{"playbook_id": "parent"}]}
        )
        response = client.delete("/api/v1/playbooks/p/versions/1.0.0", params={"tenant_id": "acme"})
        assert response.status_code == 409
        assert response.json()["error"]["details"]["referenced_by"] == [{"playbook_id": "parent"}]

    def test_validation_failure_is_422(self, client, services):
        services.publisher.publish.side_effect = ValidationFailed("bad draft", issues=[{"code": "MISSING_FIELD"}])
        response = client.post("/api/v1/playbooks/publish", json={"playbook_draft": {}})
        assert response.status_code == 422
        assert response.json()["error"]["details"]["issues"] == [{"code": "MISSING_FIELD"}]


# =============================================================================
# Sync
# =============================================================================


class TestSyncEndpoint:

    def test_inline_sync(self, client, services):
        report = MagicMock()
        report.to_dict.return_value = {"scope": "acme", "indexed": ["p-1.0.0"]}
        services.sync.sync_scope.return_value = (None, report)

        response = client.post("/api/v1/sync/acme", json={"full": True})

        assert response.status_code == 200
        assert response.json()["indexed"] == ["p-1.0.0"]
        services.sync.sync_scope.assert_awaited_once_with("acme", FULL_RESCAN)

    def test_sync_without_body(self, client, services):
        report = MagicMock()
        report.to_dict.return_value = {"scope": "global"}
        services.sync.sync_scope.return_value = (None, report)
        response = client.post("/api/v1/sync/global")
        assert response.status_code == 200
        services.sync.sync_scope.assert_awaited_once_with("global", None)

    def test_concurrent_sync_is_423(self, client, services):
        services.sync.sync_scope.side_effect = ConcurrentSyncRejected("busy", details={"collection": "c"})
        response = client.post("/api/v1/sync/acme")
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "CONCURRENT_SYNC_REJECTED"


class TestStatusCodes:

    @pytest.mark.parametrize("error,expected", [
        (AssetNotFound("x"), 404),
        (VersionConflict("x"), 409),
        (AssetInUse("x"), 409),
        (InvalidStatusTransition("x"), 409),
        (ValidationFailed("x"), 422),
        (QualityThresholdNotMet("x"), 422),
        (CyclicReferenceDetected("x"), 422),
        (ConcurrentSyncRejected("x"), 423),
        (PlaybookEngineError("x"), 500),
    ])
    def test_status_code_for(self, error, expected):
        assert status_code_for(error) == expected

    def test_root(self, client):
        assert client.get("/").json()["docs"] == "/docs"
