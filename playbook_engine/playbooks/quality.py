# playbook_engine/playbooks/quality.py
"""
Quality & Validation Engine.

Scores a playbook draft 0-100 across five weighted categories and combines
the score with structural validation into a publication decision:

    metadata completeness   30
    documentation           25
    parameter design        20
    error handling          15
    testing                 10

Gate (defaults, configurable under ``quality`` in config.yml):
    score < 50          blocked (QualityThresholdNotMet)
    50 <= score < 70    publishable with warnings
    70 <= score < 90    publishable
    score >= 90         publishable and featured

Structural errors block publication regardless of score.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from playbook_engine.core.errors import QualityThresholdNotMet
from playbook_engine.core.models.config_models import QualityConfig
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.models import FailureMode, Importance, Playbook
from playbook_engine.playbooks.structure import StructureValidator, ValidationIssue, parse_draft

logger = logging.getLogger("playbook_engine.quality")

CATEGORY_WEIGHTS: Dict[str, float] = {
    "metadata": 30.0,
    "documentation": 25.0,
    "parameters": 20.0,
    "error_handling": 15.0,
    "testing": 10.0,
}


@dataclass
class CategoryScore:
    name: str
    score: float
    max_score: float
    missing: List[str] = field(default_factory=list)

    @property
    def ratio(self) -> float:
        return self.score / self.max_score if self.max_score else 1.0


@dataclass
class ValidationResult:
    score: float
    featured: bool
    publishable: bool
    strengths: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    blocking_issues: List[Dict[str, Any]] = field(default_factory=list)
    categories: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "featured": self.featured,
            "publishable": self.publishable,
            "strengths": list(self.strengths),
            "improvements": list(self.improvements),
            "warnings": list(self.warnings),
            "blocking_issues": list(self.blocking_issues),
            "categories": dict(self.categories),
        }

    def raise_for_gate(self) -> None:
        """Raise QualityThresholdNotMet when the score alone blocks publication."""
        for issue in self.blocking_issues:
            if issue.get("code") == QualityThresholdNotMet.code:
                raise QualityThresholdNotMet(issue["message"], details={"score": self.score})


def _ratio(items: list, predicate) -> float:
    if not items:
        return 1.0
    return sum(1 for item in items if predicate(item)) / len(items)


# =============================================================================
# CATEGORY SCORERS
# =============================================================================


def score_metadata(playbook: Playbook) -> CategoryScore:
    """Description clarity, at least 5 keywords, at least 2 use cases, documented prerequisites."""
    result = CategoryScore("metadata", 0.0, CATEGORY_WEIGHTS["metadata"])

    if playbook.name:
        result.score += 3
    else:
        result.missing.append("Give the playbook a name")

    if len(playbook.description) >= 40:
        result.score += 7
    elif playbook.description:
        result.score += 3
        result.missing.append("Expand the description to say what the playbook changes and when to use it")
    else:
        result.missing.append("Add a description")

    if len(playbook.keywords) >= 5:
        result.score += 7
    elif playbook.keywords:
        result.score += 3
        result.missing.append("Add at least 5 keywords to improve search matching")
    else:
        result.missing.append("Add keywords to improve search matching")

    if len(playbook.use_cases) >= 2:
        result.score += 6
    elif playbook.use_cases:
        result.score += 3
        result.missing.append("List at least 2 use cases")
    else:
        result.missing.append("List the use cases this playbook covers")

    if playbook.prerequisites:
        result.score += 5
    else:
        result.missing.append("Document the prerequisites (access, resource state) for running this playbook")

    for attr, hint in (
        ("cloud_providers", "Declare the cloud providers this playbook supports"),
        ("resource_types", "Declare the resource types this playbook operates on"),
    ):
        if getattr(playbook, attr):
            result.score += 1
        else:
            result.missing.append(hint)
    return result


def score_documentation(playbook: Playbook) -> CategoryScore:
    result = CategoryScore("documentation", 0.0, CATEGORY_WEIGHTS["documentation"])
    plan = playbook.explain_plan

    for value, points, hint in (
        (plan.rationale, 8, "Explain why the steps achieve the goal (explain_plan.rationale)"),
        (plan.risks, 5, "List the risks of running this playbook"),
        (plan.rollback_strategy, 6, "Describe how to roll back"),
        (plan.success_criteria, 4, "State the success criteria"),
    ):
        if value:
            result.score += points
        else:
            result.missing.append(hint)

    described = _ratio(playbook.steps, lambda s: bool(s.description))
    result.score += 2 * described
    if described < 1.0:
        result.missing.append("Describe every step")
    return result


def score_parameters(playbook: Playbook) -> CategoryScore:
    result = CategoryScore("parameters", 0.0, CATEGORY_WEIGHTS["parameters"])
    params = playbook.parameters
    if not params:
        result.score = result.max_score
        return result

    described = _ratio(params, lambda p: bool(p.description))
    hinted = _ratio(params, lambda p: p.extraction_hint is not None or p.default is not None)
    validated = _ratio(
        [p for p in params if p.type == "string"], lambda p: bool(p.validation)
    )
    optional = [p for p in params if not p.required]
    defaulted = _ratio(optional, lambda p: p.default is not None)

    result.score = 6 * described + 6 * hinted + 4 * validated + 4 * defaulted
    if described < 1.0:
        result.missing.append("Describe every parameter")
    if hinted < 1.0:
        result.missing.append("Add extraction hints so parameters can be pre-filled")
    if validated < 1.0:
        result.missing.append("Add validation patterns to string parameters")
    if defaulted < 1.0:
        result.missing.append("Give optional parameters defaults")
    return result


def score_error_handling(playbook: Playbook) -> CategoryScore:
    result = CategoryScore("error_handling", 0.0, CATEGORY_WEIGHTS["error_handling"])
    steps = playbook.steps
    if not steps:
        result.missing.append("Add steps")
        return result

    post = _ratio(steps, lambda s: bool(s.post_validation))
    pre = _ratio(steps, lambda s: bool(s.pre_validation))

    def deliberate(step) -> bool:
        action = step.failure_action
        if action.action == FailureMode.RETRY:
            return action.retries > 0
        if action.action == FailureMode.IGNORE:
            return step.importance == Importance.LOW
        return True

    failure = _ratio(steps, deliberate)
    rollback = 1.0 if playbook.explain_plan.rollback_strategy else _ratio(steps, lambda s: bool(s.rollback))

    result.score = 6 * post + 3 * pre + 3 * failure + 3 * rollback
    if post < 1.0:
        result.missing.append("Add post-validation checks to confirm each step worked")
    if pre < 1.0:
        result.missing.append("Add pre-validation checks for preconditions")
    if failure < 1.0:
        result.missing.append("Retries need a retry count; only low-importance steps should ignore failures")
    if rollback < 1.0:
        result.missing.append("Document rollback for each step or a playbook-level rollback strategy")
    return result


def score_testing(playbook: Playbook) -> CategoryScore:
    result = CategoryScore("testing", 0.0, CATEGORY_WEIGHTS["testing"])
    testing = playbook.testing
    if testing.test_plan:
        result.score += 4
    else:
        result.missing.append("Add a test plan")
    if testing.dry_run_supported:
        result.score += 3
    else:
        result.missing.append("Support a dry run")
    if testing.test_cases:
        result.score += 3
    else:
        result.missing.append("List test cases")
    return result


SCORERS = (score_metadata, score_documentation, score_parameters, score_error_handling, score_testing)


# =============================================================================
# VALIDATOR
# =============================================================================


class QualityValidator:
    """
    Combines structural validation and quality scoring.

    Usage:
        validator = QualityValidator(catalog, config_loader.get_quality_config())
        result = validator.validate("tenant-a", draft)
        if not result.publishable:
            ...
    """

    def __init__(self, catalog: AssetCatalog, config: Optional[QualityConfig] = None):
        self.catalog = catalog
        self.config = config or QualityConfig()
        self.structure = StructureValidator(catalog, max_depth=self.config.max_reference_depth)

    def score(self, playbook: Playbook) -> List[CategoryScore]:
        return [scorer(playbook) for scorer in SCORERS]

    def validate(self, scope: str, draft: Any) -> ValidationResult:
        """
        Validate a draft (raw dict or parsed Playbook).

        Never raises for a bad draft; problems come back in the result.
        """
        if isinstance(draft, Playbook):
            playbook, issues = draft, []
        else:
            playbook, issues = parse_draft(draft)

        if playbook is None:
            return ValidationResult(
                score=0.0,
                featured=False,
                publishable=False,
                improvements=["Fix the blocking issues and resubmit"],
                blocking_issues=[i.to_dict() for i in issues],
            )

        issues = self.structure.validate(scope, playbook)
        categories = self.score(playbook)
        score = round(sum(c.score for c in categories), 1)
        return self.decide(score, categories, issues)

    def decide(
        self,
        score: float,
        categories: List[CategoryScore],
        issues: List[ValidationIssue],
    ) -> ValidationResult:
        """Apply the gate to a computed score and structural issues."""
        errors = [i for i in issues if i.severity == "error"]
        result = ValidationResult(
            score=score,
            featured=score >= self.config.featured_score and not errors,
            publishable=False,
            categories={c.name: round(c.score, 1) for c in categories},
        )

        for category in categories:
            if category.ratio >= 0.8:
                result.strengths.append(
                    f"{category.name.replace('_', ' ').capitalize()}: "
                    f"{category.score:.0f}/{category.max_score:.0f}"
                )
            result.improvements.extend(category.missing)

        result.warnings.extend(i.message for i in issues if i.severity == "warning")
        result.blocking_issues.extend(i.to_dict() for i in errors)

        if score < self.config.minimum_score:
            result.blocking_issues.append({
                "code": QualityThresholdNotMet.code,
                "message": (
                    f"Quality score {score} is below the minimum of {self.config.minimum_score:g}. "
                    "Address the suggested improvements and resubmit."
                ),
                "path": "",
                "details": {"score": score, "minimum": self.config.minimum_score},
                "severity": "error",
            })
        elif score < self.config.warning_below:
            result.warnings.append(
                f"Quality score {score} is below the recommended {self.config.warning_below:g}; "
                "the playbook will publish but rank lower"
            )

        result.publishable = not result.blocking_issues
        return result
