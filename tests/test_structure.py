"""Tests for structural validation of playbook drafts."""

from conftest import full_draft, make_playbook, make_script, playbook_step, script_step
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.models import Playbook, Script
from playbook_engine.playbooks.structure import StructureValidator, parse_draft


def _catalog():
    catalog = AssetCatalog()
    catalog.add_script("global", Script.from_dict(make_script("snapshot-volume")))
    return catalog


def _codes(issues, severity="error"):
    return [i.code for i in issues if i.severity == severity]


def _validate(draft, catalog=None, scope="tenant-a"):
    playbook, issues = parse_draft(draft)
    assert playbook is not None, issues
    return StructureValidator(catalog or _catalog()).validate(scope, playbook)


class TestParseDraft:

    def test_reports_every_invalid_mapping(self):
        """All bad expressions are returned, not only the first."""
        draft = make_playbook(steps=[
            script_step("a", "snapshot-volume", mapping={"volume_id": "${nope.x}"}),
            script_step("b", "snapshot-volume", mapping={"volume_id": "${also.bad}"}),
        ])
        playbook, issues = parse_draft(draft)
        assert playbook is None
        assert [i.path for i in issues] == [
            "steps[0].parameter_mapping.volume_id",
            "steps[1].parameter_mapping.volume_id",
        ]
        assert {i.code for i in issues} == {"INVALID_MAPPING_EXPRESSION"}

    def test_invalid_enum_becomes_issue(self):
        playbook, issues = parse_draft(make_playbook(author_class="robot"))
        assert playbook is None
        assert issues[0].path == "author_class"


class TestStructureValidator:

    def test_complete_draft_has_no_errors(self):
        assert _codes(_validate(full_draft())) == []

    def test_no_steps(self):
        assert "NO_STEPS" in _codes(_validate(make_playbook(steps=[])))

    def test_step_with_both_references(self):
        step = script_step("x", "snapshot-volume", mapping={"volume_id": "v"})
        step["playbook_ref"] = {"playbook_id": "other", "version": "1.0.0"}
        assert "STEP_AMBIGUOUS_REFERENCE" in _codes(_validate(make_playbook(steps=[step])))

    def test_step_with_no_reference(self):
        step = {"name": "x", "description": "nothing to call"}
        assert "STEP_MISSING_REFERENCE" in _codes(_validate(make_playbook(steps=[step])))

    def test_unknown_script_message_is_actionable(self):
        issues = _validate(make_playbook(steps=[script_step("x", "missing-script")]))
        issue = next(i for i in issues if i.code == "UNKNOWN_SCRIPT")
        assert issue.path == "steps[0].script_ref"
        assert "missing-script" in issue.message

    def test_unknown_implementation(self):
        step = script_step("x", "snapshot-volume", mapping={"volume_id": "v"})
        step["script_ref"]["implementation"] = "powershell"
        issues = _validate(make_playbook(steps=[step]))
        issue = next(i for i in issues if i.code == "UNKNOWN_IMPLEMENTATION")
        assert issue.details["available"] == ["bash", "python"]

    def test_unknown_playbook(self):
        assert "UNKNOWN_PLAYBOOK" in _codes(_validate(make_playbook(steps=[playbook_step("x", "ghost")])))

    def test_unsatisfied_required_parameter(self):
        issues = _validate(make_playbook(steps=[script_step("x", "snapshot-volume", mapping={})]))
        issue = next(i for i in issues if i.code == "UNSATISFIED_REQUIRED_PARAMETER")
        assert issue.details == {"parameter": "volume_id"}

    def test_unknown_playbook_parameter(self):
        draft = make_playbook(steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "${playbook.undeclared}"}),
        ])
        assert "UNKNOWN_PLAYBOOK_PARAMETER" in _codes(_validate(draft))

    def test_forward_step_reference(self):
        """A step may only read outputs of earlier steps."""
        draft = make_playbook(steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "${step1.output.snapshot_id}"}),
        ])
        assert "FORWARD_STEP_REFERENCE" in _codes(_validate(draft))

    def test_backward_step_reference_is_fine(self):
        draft = make_playbook(steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "v"}),
            script_step("y", "snapshot-volume", mapping={"volume_id": "${step1.output.snapshot_id}"}),
        ])
        assert _codes(_validate(draft)) == []

    def test_unknown_step_output(self):
        draft = make_playbook(steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "v"}),
            script_step("y", "snapshot-volume", mapping={"volume_id": "${step1.output.nonexistent}"}),
        ])
        assert "UNKNOWN_STEP_OUTPUT" in _codes(_validate(draft))

    def test_unknown_target_parameter_is_a_warning(self):
        draft = make_playbook(steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "v", "extra": "e"}),
        ])
        issues = _validate(draft)
        assert _codes(issues) == []
        assert "UNKNOWN_TARGET_PARAMETER" in _codes(issues, severity="warning")

    def test_invalid_version_and_identifier(self):
        draft = make_playbook("Bad ID", version="one", steps=[
            script_step("x", "snapshot-volume", mapping={"volume_id": "v"}),
        ])
        codes = _codes(_validate(draft))
        assert "INVALID_VERSION" in codes
        assert "INVALID_IDENTIFIER" in codes

    def test_cycle_through_published_playbook(self):
        """A draft that calls a playbook which calls the draft back is rejected."""
        catalog = _catalog()
        catalog.add_playbook("tenant-a", Playbook.from_dict(make_playbook("other", steps=[
            playbook_step("back", "snapshot-ebs"),
        ])))
        draft = make_playbook("snapshot-ebs", steps=[playbook_step("call", "other")])
        assert "CYCLIC_REFERENCE_DETECTED" in _codes(_validate(draft, catalog))

    def test_depth_exceeded(self):
        catalog = _catalog()
        leaf_step = script_step("leaf", "snapshot-volume", mapping={"volume_id": "v"})
        catalog.add_playbook("global", Playbook.from_dict(make_playbook("l3", steps=[leaf_step])))
        catalog.add_playbook("global", Playbook.from_dict(make_playbook("l2", steps=[playbook_step("s", "l3")])))
        catalog.add_playbook("global", Playbook.from_dict(make_playbook("l1", steps=[playbook_step("s", "l2")])))
        catalog.add_playbook("global", Playbook.from_dict(make_playbook("l0", steps=[playbook_step("s", "l1")])))
        draft = make_playbook("top", steps=[playbook_step("s", "l0")])
        assert "REFERENCE_DEPTH_EXCEEDED" in _codes(_validate(draft, catalog))

    def test_parameter_check_must_target_declared_parameter(self):
        draft = make_playbook(steps=[
            script_step(
                "x", "snapshot-volume", mapping={"volume_id": "v"},
                pre_validation=[{"type": "parameter_present", "target": "ghost"}],
            ),
        ])
        assert "UNKNOWN_PLAYBOOK_PARAMETER" in _codes(_validate(draft))


class TestDraftShape:

    def test_non_object_draft(self):
        playbook, issues = parse_draft(["not", "a", "draft"])
        assert playbook is None
        assert [(i.code, i.path) for i in issues] == [("SCHEMA_VIOLATION", "")]

    def test_step_that_is_not_an_object(self):
        draft = full_draft()
        draft["steps"].append("restart the instance")
        playbook, issues = parse_draft(draft)
        assert playbook is None
        assert issues[0].path == "steps[1]"
        assert "is not of type 'object'" in issues[0].message

    def test_nested_field_path(self):
        draft = full_draft()
        draft["steps"][0]["failure_action"] = {"action": "retry", "retries": "twice"}
        playbook, issues = parse_draft(draft)
        assert playbook is None
        assert issues[0].path == "steps[0].failure_action.retries"

    def test_well_formed_draft_passes(self):
        playbook, issues = parse_draft(full_draft())
        assert issues == []
        assert playbook.playbook_id == "snapshot-ebs"
