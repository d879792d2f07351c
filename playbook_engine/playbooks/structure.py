# playbook_engine/playbooks/structure.py
"""
Structural validation of playbook drafts.

Checks everything that would make a playbook impossible to resolve or
execute, and reports each problem as an actionable issue:

- Identity fields and version format
- Steps with zero or two references
- Unknown scripts, playbooks and implementations
- Invalid mapping expressions, unknown ``${playbook.X}`` parameters,
  forward or unknown ``${stepN.output.Y}`` references
- Required parameters of the referenced script/playbook left unmapped
- Cyclic references and nesting deeper than the depth budget

Errors block publication. Warnings are passed on to quality feedback.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from playbook_engine.core.errors import (
    AssetNotFound,
    CyclicReferenceDetected,
    InvalidMappingExpression,
    ReferenceDepthExceeded,
    ValidationFailed,
)
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.mappings import (
    PlaybookParam,
    StepOutput,
    expressions_in,
    parse_mapping_value,
)
from playbook_engine.playbooks.models import CheckType, HintSource, Playbook, Script
from playbook_engine.playbooks.resolver import DEFAULT_DEPTH_BUDGET, PlaybookResolver
from playbook_engine.playbooks.schemas import PLAYBOOK_DRAFT_JSON_SCHEMA, schema_issues
from playbook_engine.playbooks.versioning import is_valid_version

_STEP_TARGET = re.compile(r"^step(\d+)\.output\.(.+)$")


@dataclass
class ValidationIssue:
    code: str
    message: str
    path: str
    details: Dict[str, Any] = field(default_factory=dict)
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "path": self.path,
            "details": self.details,
            "severity": self.severity,
        }


def parse_draft(raw: Any) -> Tuple[Optional[Playbook], List[ValidationIssue]]:
    """
    Parse a raw draft into a Playbook, turning parse failures into issues.

    The draft's shape is checked against the JSON schema first. Every
    invalid mapping expression is reported, not just the first.
    """
    shape_issues = schema_issues(raw, PLAYBOOK_DRAFT_JSON_SCHEMA)
    if shape_issues:
        return None, [ValidationIssue(**issue) for issue in shape_issues]

    issues: List[ValidationIssue] = []
    for i, step in enumerate(raw.get("steps") or []):
        for target, value in ((step or {}).get("parameter_mapping") or {}).items():
            try:
                parse_mapping_value(value)
            except InvalidMappingExpression as e:
                issues.append(ValidationIssue(
                    code=e.code,
                    message=e.message,
                    path=f"steps[{i}].parameter_mapping.{target}",
                    details=e.details,
                ))
    if issues:
        return None, issues

    try:
        return Playbook.from_dict(raw), []
    except ValidationFailed as e:
        return None, [
            ValidationIssue(
                code=issue.get("code", e.code),
                message=issue.get("message", e.message),
                path=issue.get("path", ""),
                details=issue.get("details", {}),
            )
            for issue in e.issues
        ] or [ValidationIssue(code=e.code, message=e.message, path="")]


class StructureValidator:
    """
    Validates a parsed playbook against the catalog it will be published into.

    The catalog must already contain the draft's referenced scripts and
    playbooks (and any scripts uploaded alongside it).
    """

    def __init__(self, catalog: AssetCatalog, max_depth: int = DEFAULT_DEPTH_BUDGET):
        self.catalog = catalog
        self.max_depth = max_depth

    def validate(self, scope: str, playbook: Playbook) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        issues.extend(self._check_identity(playbook))
        issues.extend(self._check_parameters(playbook))

        declared = {p.name for p in playbook.parameters}
        # For each 1-based step index: the script it calls, if known
        step_scripts: Dict[int, Optional[Script]] = {}
        reference_errors = False

        if not playbook.steps:
            issues.append(ValidationIssue(
                code="NO_STEPS",
                message="A playbook needs at least one step",
                path="steps",
            ))

        for index, step in enumerate(playbook.steps, start=1):
            path = f"steps[{index - 1}]"
            if not step.name:
                issues.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"Step {index} has no name",
                    path=f"{path}.name",
                ))

            has_script = step.script_ref is not None
            has_playbook = step.playbook_ref is not None
            if has_script == has_playbook:
                issues.append(ValidationIssue(
                    code="STEP_AMBIGUOUS_REFERENCE" if has_script else "STEP_MISSING_REFERENCE",
                    message=(
                        f"Step {index} sets both script_ref and playbook_ref; keep exactly one"
                        if has_script else
                        f"Step {index} needs either a script_ref or a playbook_ref"
                    ),
                    path=path,
                ))
                reference_errors = True
                step_scripts[index] = None
                continue

            target_params: Optional[Dict[str, Tuple[bool, Any]]] = None
            if has_script:
                ref = step.script_ref
                found = self.catalog.find_script(scope, ref.script_id, ref.version)
                if found is None:
                    issues.append(ValidationIssue(
                        code="UNKNOWN_SCRIPT",
                        message=(
                            f"Step {index} references script '{ref.script_id}' version {ref.version}, "
                            "which is not in the library. Upload it with the draft or fix the reference."
                        ),
                        path=f"{path}.script_ref",
                        details={"script_id": ref.script_id, "version": ref.version},
                    ))
                    reference_errors = True
                    step_scripts[index] = None
                else:
                    script = found[1]
                    step_scripts[index] = script
                    if ref.implementation not in script.implementations:
                        issues.append(ValidationIssue(
                            code="UNKNOWN_IMPLEMENTATION",
                            message=(
                                f"Script '{ref.script_id}' has no '{ref.implementation}' implementation. "
                                f"Available: {', '.join(sorted(script.implementations)) or 'none'}"
                            ),
                            path=f"{path}.script_ref.implementation",
                            details={"available": sorted(script.implementations)},
                        ))
                        reference_errors = True
                    target_params = {
                        p.name: (p.required, p.default) for p in script.parameters
                    }
            else:
                ref = step.playbook_ref
                step_scripts[index] = None
                found = self.catalog.find_playbook(scope, ref.playbook_id, ref.version)
                if found is None:
                    issues.append(ValidationIssue(
                        code="UNKNOWN_PLAYBOOK",
                        message=(
                            f"Step {index} references playbook '{ref.playbook_id}' version "
                            f"{ref.version}, which is not published"
                        ),
                        path=f"{path}.playbook_ref",
                        details={"playbook_id": ref.playbook_id, "version": ref.version},
                    ))
                    reference_errors = True
                else:
                    target_params = {
                        p.name: (p.required, p.default) for p in found[1].parameters
                    }

            if target_params is not None:
                for name, (required, default) in target_params.items():
                    if required and default is None and name not in step.parameter_mapping:
                        issues.append(ValidationIssue(
                            code="UNSATISFIED_REQUIRED_PARAMETER",
                            message=f"Step {index} does not map required parameter '{name}'",
                            path=f"{path}.parameter_mapping",
                            details={"parameter": name},
                        ))
                for target in step.parameter_mapping:
                    if target not in target_params:
                        issues.append(ValidationIssue(
                            code="UNKNOWN_TARGET_PARAMETER",
                            message=f"Step {index} maps '{target}', which the target does not declare",
                            path=f"{path}.parameter_mapping.{target}",
                            severity="warning",
                        ))

            for target, value in step.parameter_mapping.items():
                for expression in expressions_in(value):
                    issue = self._check_expression(
                        expression, index, declared, step_scripts, f"{path}.parameter_mapping.{target}"
                    )
                    if issue:
                        issues.append(issue)

            for kind in ("pre_validation", "post_validation"):
                for ci, check in enumerate(getattr(step, kind)):
                    issues.extend(self._check_validation(
                        check, index, declared, kind == "post_validation", f"{path}.{kind}[{ci}]"
                    ))

        if not reference_errors and playbook.playbook_id and playbook.version:
            issues.extend(self._check_graph(scope, playbook))
        return issues

    def _check_identity(self, playbook: Playbook) -> List[ValidationIssue]:
        issues = []
        for name in ("playbook_id", "version", "name", "description"):
            if not getattr(playbook, name):
                issues.append(ValidationIssue(
                    code="MISSING_FIELD",
                    message=f"'{name}' is required",
                    path=name,
                ))
        if playbook.version and not is_valid_version(playbook.version):
            issues.append(ValidationIssue(
                code="INVALID_VERSION",
                message=f"Version '{playbook.version}' is not a semantic version like 1.2.0",
                path="version",
            ))
        if playbook.playbook_id and not re.match(r"^[a-z0-9][a-z0-9_.-]*$", playbook.playbook_id):
            issues.append(ValidationIssue(
                code="INVALID_IDENTIFIER",
                message="playbook_id may only contain lowercase letters, digits, '.', '_' and '-'",
                path="playbook_id",
            ))
        return issues

    def _check_parameters(self, playbook: Playbook) -> List[ValidationIssue]:
        issues = []
        seen = set()
        for i, param in enumerate(playbook.parameters):
            path = f"parameters[{i}]"
            if not param.name:
                issues.append(ValidationIssue(code="MISSING_FIELD", message="Parameter has no name", path=f"{path}.name"))
                continue
            if param.name in seen:
                issues.append(ValidationIssue(
                    code="DUPLICATE_PARAMETER",
                    message=f"Parameter '{param.name}' is declared twice",
                    path=path,
                ))
            seen.add(param.name)
            if param.validation:
                try:
                    re.compile(param.validation)
                except re.error as e:
                    issues.append(ValidationIssue(
                        code="INVALID_VALIDATION_PATTERN",
                        message=f"Parameter '{param.name}' has an invalid validation regex: {e}",
                        path=f"{path}.validation",
                    ))
            hint = param.extraction_hint
            if hint and hint.source in (HintSource.ESTATE, HintSource.CONTEXT) and not hint.path:
                issues.append(ValidationIssue(
                    code="INCOMPLETE_EXTRACTION_HINT",
                    message=f"Extraction hint for '{param.name}' needs a path",
                    path=f"{path}.extraction_hint",
                    severity="warning",
                ))
            if hint and hint.source == HintSource.TEMPLATE and not hint.template:
                issues.append(ValidationIssue(
                    code="INCOMPLETE_EXTRACTION_HINT",
                    message=f"Extraction hint for '{param.name}' needs a template",
                    path=f"{path}.extraction_hint",
                    severity="warning",
                ))
        return issues

    def _check_expression(
        self,
        expression,
        index: int,
        declared: set,
        step_scripts: Dict[int, Optional[Script]],
        path: str,
    ) -> Optional[ValidationIssue]:
        if isinstance(expression, PlaybookParam) and expression.name not in declared:
            return ValidationIssue(
                code="UNKNOWN_PLAYBOOK_PARAMETER",
                message=f"'{expression.to_raw()}' refers to a parameter this playbook does not declare",
                path=path,
                details={"parameter": expression.name},
            )
        if isinstance(expression, StepOutput):
            if expression.step >= index:
                return ValidationIssue(
                    code="FORWARD_STEP_REFERENCE",
                    message=(
                        f"'{expression.to_raw()}' in step {index} refers to a step that has not run yet. "
                        "Only earlier steps can be referenced."
                    ),
                    path=path,
                    details={"step": expression.step},
                )
            script = step_scripts.get(expression.step)
            if script and script.outputs and expression.output.split(".")[0] not in {o.name for o in script.outputs}:
                return ValidationIssue(
                    code="UNKNOWN_STEP_OUTPUT",
                    message=(
                        f"Step {expression.step} ({script.script_id}) has no output "
                        f"'{expression.output}'. Outputs: {', '.join(o.name for o in script.outputs)}"
                    ),
                    path=path,
                    details={"step": expression.step, "output": expression.output},
                )
        return None

    def _check_validation(self, check, index: int, declared: set, post: bool, path: str) -> List[ValidationIssue]:
        issues = []
        if check.type == CheckType.PARAMETER_PRESENT and check.target not in declared:
            issues.append(ValidationIssue(
                code="UNKNOWN_PLAYBOOK_PARAMETER",
                message=f"Check refers to undeclared parameter '{check.target}'",
                path=f"{path}.target",
            ))
        if check.type == CheckType.STEP_OUTPUT_PRESENT:
            match = _STEP_TARGET.match(check.target or "")
            limit = index if post else index - 1
            if not match:
                issues.append(ValidationIssue(
                    code="INVALID_CHECK_TARGET",
                    message="step_output_present targets look like 'stepN.output.name'",
                    path=f"{path}.target",
                ))
            elif int(match.group(1)) > limit or int(match.group(1)) < 1:
                issues.append(ValidationIssue(
                    code="FORWARD_STEP_REFERENCE",
                    message=f"Check in step {index} refers to step {match.group(1)}, which has not run yet",
                    path=f"{path}.target",
                ))
        if check.type == CheckType.OUTPUT_MATCHES and check.pattern:
            try:
                re.compile(check.pattern)
            except re.error as e:
                issues.append(ValidationIssue(
                    code="INVALID_VALIDATION_PATTERN",
                    message=f"Invalid output pattern: {e}",
                    path=f"{path}.pattern",
                ))
        return issues

    def _check_graph(self, scope: str, playbook: Playbook) -> List[ValidationIssue]:
        """Detect cycles and excessive nesting by resolving against a staged catalog."""
        staged = self.catalog.copy()
        staged.add_playbook(scope, playbook)
        resolver = PlaybookResolver(staged, depth_budget=self.max_depth)
        try:
            resolver.resolve(scope, playbook.playbook_id, playbook.version)
        except CyclicReferenceDetected as e:
            return [ValidationIssue(code=e.code, message=e.message, path="steps", details=e.details)]
        except ReferenceDepthExceeded as e:
            return [ValidationIssue(code=e.code, message=e.message, path="steps", details=e.details)]
        except AssetNotFound as e:
            return [ValidationIssue(code=e.code, message=e.message, path="steps", details=e.details)]
        return []
