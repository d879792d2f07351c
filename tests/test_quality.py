"""Tests for quality scoring and the publication gate."""

import pytest

from conftest import full_draft, make_script
from playbook_engine.core.errors import QualityThresholdNotMet
from playbook_engine.core.models.config_models import QualityConfig
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.models import Playbook, Script
from playbook_engine.playbooks.quality import (
    CategoryScore,
    QualityValidator,
    score_error_handling,
    score_metadata,
    score_parameters,
    score_testing,
)
from playbook_engine.playbooks.structure import ValidationIssue


@pytest.fixture
def validator():
    catalog = AssetCatalog()
    catalog.add_script("global", Script.from_dict(make_script("snapshot-volume")))
    return QualityValidator(catalog, QualityConfig())


def _categories():
    return [CategoryScore("metadata", 30, 30)]


class TestScoring:

    def test_full_draft_scores_100(self, validator):
        result = validator.validate("tenant-a", full_draft())
        assert result.score == 100.0
        assert result.publishable is True
        assert result.featured is True
        assert result.categories == {
            "metadata": 30.0,
            "documentation": 25.0,
            "parameters": 20.0,
            "error_handling": 15.0,
            "testing": 10.0,
        }
        assert result.improvements == []

    def test_missing_metadata_lowers_score_with_suggestions(self):
        draft = full_draft()
        draft["keywords"] = []
        draft["use_cases"] = []
        category = score_metadata(Playbook.from_dict(draft))
        assert category.score == 17
        assert "Add keywords to improve search matching" in category.missing
        assert "List the use cases this playbook covers" in category.missing

    def test_metadata_thresholds(self):
        """Full metadata points need 5 keywords, 2 use cases and prerequisites."""
        draft = full_draft()
        draft["keywords"] = ["ebs", "snapshot", "backup"]
        draft["use_cases"] = ["Back up a volume before resizing it"]
        draft["prerequisites"] = []
        category = score_metadata(Playbook.from_dict(draft))
        assert category.score == 18
        assert category.missing == [
            "Add at least 5 keywords to improve search matching",
            "List at least 2 use cases",
            "Document the prerequisites (access, resource state) for running this playbook",
        ]

    def test_short_description_earns_partial_points(self):
        draft = full_draft()
        draft["description"] = "Snapshots a volume"
        assert score_metadata(Playbook.from_dict(draft)).score == 26

    def test_playbook_without_parameters_gets_full_parameter_score(self):
        draft = full_draft()
        draft["parameters"] = []
        assert score_parameters(Playbook.from_dict(draft)).score == 20

    def test_ignored_failure_on_high_importance_step_costs_points(self):
        draft = full_draft()
        draft["steps"][0]["failure_action"] = {"action": "ignore"}
        category = score_error_handling(Playbook.from_dict(draft))
        assert category.score == 12

    def test_testing_category(self):
        draft = full_draft()
        draft["testing"] = {"test_plan": "", "dry_run_supported": True, "test_cases": []}
        assert score_testing(Playbook.from_dict(draft)).score == 3

    def test_unparseable_draft_scores_zero(self, validator):
        draft = full_draft()
        draft["steps"][0]["parameter_mapping"] = {"volume_id": "${bad.expr}"}
        result = validator.validate("tenant-a", draft)
        assert result.score == 0.0
        assert result.publishable is False
        assert result.blocking_issues[0]["code"] == "INVALID_MAPPING_EXPRESSION"


class TestGate:

    def test_49_is_blocked(self, validator):
        result = validator.decide(49.0, _categories(), [])
        assert result.publishable is False
        assert result.blocking_issues[-1]["code"] == "QUALITY_THRESHOLD_NOT_MET"
        with pytest.raises(QualityThresholdNotMet):
            result.raise_for_gate()

    def test_50_publishes_with_warning(self, validator):
        result = validator.decide(50.0, _categories(), [])
        assert result.publishable is True
        assert result.featured is False
        assert any("below the recommended 70" in w for w in result.warnings)
        result.raise_for_gate()

    def test_70_publishes_without_warning(self, validator):
        result = validator.decide(70.0, _categories(), [])
        assert result.publishable is True
        assert result.warnings == []
        assert result.featured is False

    def test_90_is_featured(self, validator):
        result = validator.decide(90.0, _categories(), [])
        assert result.publishable is True
        assert result.featured is True

    def test_structural_error_blocks_regardless_of_score(self, validator):
        issue = ValidationIssue(code="UNKNOWN_SCRIPT", message="missing", path="steps[0].script_ref")
        result = validator.decide(100.0, _categories(), [issue])
        assert result.publishable is False
        assert result.featured is False
        assert result.blocking_issues[0]["code"] == "UNKNOWN_SCRIPT"

    def test_structural_warnings_do_not_block(self, validator):
        issue = ValidationIssue(code="UNKNOWN_TARGET_PARAMETER", message="extra", path="x", severity="warning")
        result = validator.decide(80.0, _categories(), [issue])
        assert result.publishable is True
        assert result.warnings == ["extra"]

    def test_thresholds_are_configurable(self):
        strict = QualityValidator(AssetCatalog(), QualityConfig(minimum_score=80, warning_below=85, featured_score=95))
        assert strict.decide(79.0, _categories(), []).publishable is False
        assert strict.decide(90.0, _categories(), []).featured is False

    def test_strengths_listed_for_strong_categories(self, validator):
        result = validator.decide(90.0, [CategoryScore("error_handling", 15, 15), CategoryScore("testing", 2, 10)], [])
        assert result.strengths == ["Error handling: 15/15"]
