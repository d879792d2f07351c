"""Tests for script and playbook definitions."""

import pytest

from conftest import make_playbook, make_script, playbook_step, script_step
from playbook_engine.core.errors import InvalidMappingExpression, ValidationFailed
from playbook_engine.playbooks.mappings import PlaybookParam
from playbook_engine.playbooks.models import (
    AuthorClass,
    FailureMode,
    HintSource,
    Playbook,
    PlaybookStatus,
    Script,
    StorageStrategy,
)
from playbook_engine.playbooks.versioning import entry_id, is_valid_version, version_key


class TestPlaybookFromDict:

    def test_defaults(self):
        """Missing optional fields get their documented defaults."""
        playbook = Playbook.from_dict({"playbook_id": "p", "version": "1.0.0"})
        assert playbook.status == PlaybookStatus.DRAFT
        assert playbook.author_class == AuthorClass.TENANT
        assert playbook.storage_strategy == StorageStrategy.PRIVATE_ONLY
        assert playbook.steps == []
        assert playbook.success_rate == 0.0

    def test_steps_parse_references_and_mappings(self):
        data = make_playbook(steps=[
            script_step("snap", "snapshot-volume", mapping={"volume_id": "${playbook.volume_id}"}),
            playbook_step("nested", "resize-ebs"),
        ])
        playbook = Playbook.from_dict(data)
        first, second = playbook.steps
        assert first.is_script_step and not first.is_playbook_step
        assert first.script_ref.implementation == "bash"
        assert first.parameter_mapping["volume_id"] == PlaybookParam("volume_id")
        assert second.is_playbook_step
        assert second.playbook_ref.playbook_id == "resize-ebs"

    def test_to_dict_keeps_raw_mapping_strings(self):
        data = make_playbook(steps=[
            script_step("snap", "snapshot-volume", mapping={"volume_id": "vol-${playbook.suffix}"}),
        ])
        out = Playbook.from_dict(data).to_dict()
        assert out["steps"][0]["parameter_mapping"] == {"volume_id": "vol-${playbook.suffix}"}
        assert out["status"] == "active"

    def test_invalid_enum_value_raises_validation_failed(self):
        """An unknown enum value is reported with its path."""
        with pytest.raises(ValidationFailed) as exc:
            Playbook.from_dict(make_playbook(status="launched"))
        issue = exc.value.issues[0]
        assert issue["path"] == "status"
        assert "active" in issue["details"]["valid_values"]

    def test_invalid_mapping_raises(self):
        data = make_playbook(steps=[script_step("s", "x", mapping={"a": "${bogus.ref}"})])
        with pytest.raises(InvalidMappingExpression):
            Playbook.from_dict(data)

    def test_failure_action_shorthand(self):
        """A bare string failure action is accepted; retry counts default to the backoff length."""
        step = script_step("s", "x", failure_action={"action": "retry", "backoff_seconds": [1, 5]})
        playbook = Playbook.from_dict(make_playbook(steps=[step, script_step("t", "x", failure_action="ignore")]))
        assert playbook.steps[0].failure_action.action == FailureMode.RETRY
        assert playbook.steps[0].failure_action.retries == 2
        assert playbook.steps[1].failure_action.action == FailureMode.IGNORE

    def test_extraction_hint_parsed(self):
        data = make_playbook(parameters=[{
            "name": "volume_id",
            "required": True,
            "extraction_hint": {"source": "estate", "path": "resource.id"},
        }])
        hint = Playbook.from_dict(data).parameters[0].extraction_hint
        assert hint.source == HintSource.ESTATE
        assert hint.path == "resource.id"

    def test_success_rate_is_capped(self):
        playbook = Playbook.from_dict(make_playbook(execution_count=4, success_count=6))
        assert playbook.success_rate == 1.0

    def test_embedding_text_includes_searchable_fields(self):
        text = Playbook.from_dict(make_playbook()).embedding_text()
        assert "Snapshot Ebs" in text
        assert "Use cases: Back up a volume before maintenance" in text
        assert "Keywords: ebs, snapshot, backup" in text


class TestScript:

    def test_from_dict_reads_implementations(self):
        script = Script.from_dict(make_script(duration=42))
        assert set(script.implementations) == {"bash", "python"}
        assert script.implementations["python"].entry_point == "run"
        assert script.estimated_duration_seconds == 42.0
        assert script.parameter("volume_id").required is True
        assert script.parameter("missing") is None


class TestVersioning:

    def test_version_ordering(self):
        versions = ["1.10.0", "1.2.0", "1.2", "2.0.0", "0.9.9"]
        assert sorted(versions, key=version_key) == ["0.9.9", "1.2.0", "1.2", "1.10.0", "2.0.0"]

    def test_non_numeric_versions_sort_first(self):
        assert version_key("latest") < version_key("0.0.1")

    def test_is_valid_version(self):
        assert is_valid_version("1.2.3")
        assert is_valid_version("1.2.3-rc1")
        assert not is_valid_version("v1")
        assert not is_valid_version("")

    def test_entry_id(self):
        assert entry_id("restart-ec2", "1.2.0") == "restart-ec2-1.2.0"
