# playbook_engine/playbooks/models.py
"""
Definitions for scripts and playbooks.

Defines the structure of the two versioned asset kinds held in the
Reference Store:
- Scripts: reusable units of work with one or more implementations
- Playbooks: ordered steps calling scripts and/or other playbooks,
  plus metadata, parameters, explain plan and lifecycle fields

Definitions are plain dataclasses with ``to_dict``/``from_dict`` so they
round-trip through JSON objects in storage and vector index payloads.
Mapping values are parsed into typed expressions on load
(see ``playbooks.mappings``).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from playbook_engine.core.errors import ValidationFailed
from playbook_engine.playbooks.mappings import MappingValue, mapping_to_raw, parse_mapping


class PlaybookStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"
    BROKEN = "broken"
    NEEDS_UPDATE = "needs_update"


class StorageStrategy(str, Enum):
    PRIVATE_ONLY = "private_only"
    PENDING_TEAM_REVIEW = "pending_team_review"
    TEAM_TRUSTED = "team_trusted"
    USE_DEFAULT = "use_default"


class AuthorClass(str, Enum):
    TENANT = "tenant"
    CURATED = "curated"
    COMMUNITY = "community"
    EXPERIMENTAL = "experimental"


class Importance(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    LOW = "low"


class FailureMode(str, Enum):
    STOP = "stop"
    IGNORE = "ignore"
    RETRY = "retry"


class HintSource(str, Enum):
    ESTATE = "estate"
    CONTEXT = "context"
    TEMPLATE = "template"
    STATIC = "static"
    ASK_USER = "ask_user"


class CheckType(str, Enum):
    PARAMETER_PRESENT = "parameter_present"
    STEP_OUTPUT_PRESENT = "step_output_present"
    RESOURCE_STATE = "resource_state"
    PERMISSION_PRESENT = "permission_present"
    OUTPUT_MATCHES = "output_matches"


E = TypeVar("E", bound=Enum)


def _enum(enum_cls: Type[E], value: Any, default: E, path: str) -> E:
    if value is None or value == "":
        return default
    try:
        return enum_cls(value)
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValidationFailed(
            f"Invalid value '{value}' at {path}. Must be one of: {', '.join(valid)}",
            issues=[{
                "code": "INVALID_FIELD_VALUE",
                "message": f"Invalid value '{value}'",
                "path": path,
                "details": {"value": value, "valid_values": valid},
            }],
        )


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# =============================================================================
# SCRIPTS
# =============================================================================


@dataclass
class ScriptImplementation:
    """One concrete implementation of a script (shell, python, terraform...)."""
    name: str
    language: str = ""
    source: str = ""
    entry_point: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "source": self.source,
            "entry_point": self.entry_point,
        }


@dataclass
class ScriptParameter:
    name: str
    type: str = "string"
    required: bool = False
    validation: Optional[str] = None
    default: Any = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "validation": self.validation,
            "default": self.default,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptParameter":
        return cls(
            name=data.get("name", ""),
            type=data.get("type", "string"),
            required=bool(data.get("required", False)),
            validation=data.get("validation"),
            default=data.get("default"),
            description=data.get("description", ""),
        )


@dataclass
class ScriptOutput:
    name: str
    type: str = "string"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "description": self.description}


@dataclass
class Script:
    """
    A reusable unit of work, identified by (script_id, version).

    Immutable once published; a new version is a new object.
    """
    script_id: str
    version: str
    name: str = ""
    description: str = ""
    implementations: Dict[str, ScriptImplementation] = field(default_factory=dict)
    parameters: List[ScriptParameter] = field(default_factory=list)
    outputs: List[ScriptOutput] = field(default_factory=list)
    required_permissions: List[str] = field(default_factory=list)
    estimated_duration_seconds: float = 0.0
    max_duration_seconds: Optional[float] = None

    @property
    def key(self) -> tuple:
        return (self.script_id, self.version)

    def parameter(self, name: str) -> Optional[ScriptParameter]:
        return next((p for p in self.parameters if p.name == name), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "script_id": self.script_id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "implementations": {
                name: impl.to_dict() for name, impl in self.implementations.items()
            },
            "parameters": [p.to_dict() for p in self.parameters],
            "outputs": [o.to_dict() for o in self.outputs],
            "required_permissions": list(self.required_permissions),
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "max_duration_seconds": self.max_duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Script":
        implementations = {
            name: ScriptImplementation(
                name=name,
                language=impl.get("language", name),
                source=impl.get("source", ""),
                entry_point=impl.get("entry_point", ""),
            )
            for name, impl in (data.get("implementations") or {}).items()
        }
        return cls(
            script_id=data.get("script_id", ""),
            version=str(data.get("version", "")),
            name=data.get("name", ""),
            description=data.get("description", ""),
            implementations=implementations,
            parameters=[ScriptParameter.from_dict(p) for p in data.get("parameters") or []],
            outputs=[
                ScriptOutput(
                    name=o.get("name", ""),
                    type=o.get("type", "string"),
                    description=o.get("description", ""),
                )
                for o in data.get("outputs") or []
            ],
            required_permissions=list(data.get("required_permissions") or []),
            estimated_duration_seconds=float(data.get("estimated_duration_seconds") or 0),
            max_duration_seconds=data.get("max_duration_seconds"),
        )


# =============================================================================
# PLAYBOOK PARTS
# =============================================================================


@dataclass
class ExtractionHint:
    """Where an upstream step may find a value for a playbook parameter."""
    source: HintSource
    path: Optional[str] = None       # estate/context lookup path
    template: Optional[str] = None   # e.g. "{resource_name}-backup"
    value: Any = None                # static default
    prompt: Optional[str] = None     # question to ask the user

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "source": self.source.value,
            "path": self.path,
            "template": self.template,
            "value": self.value,
            "prompt": self.prompt,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> "ExtractionHint":
        return cls(
            source=_enum(HintSource, data.get("source"), HintSource.ASK_USER, f"{path}.source"),
            path=data.get("path"),
            template=data.get("template"),
            value=data.get("value"),
            prompt=data.get("prompt"),
        )


@dataclass
class PlaybookParameter:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    validation: Optional[str] = None
    extraction_hint: Optional[ExtractionHint] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "default": self.default,
            "validation": self.validation,
        }
        if self.extraction_hint:
            data["extraction_hint"] = self.extraction_hint.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> "PlaybookParameter":
        hint = data.get("extraction_hint")
        return cls(
            name=data.get("name", ""),
            type=data.get("type", "string"),
            description=data.get("description", ""),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            validation=data.get("validation"),
            extraction_hint=ExtractionHint.from_dict(hint, f"{path}.extraction_hint") if hint else None,
        )


@dataclass
class ScriptRef:
    script_id: str
    version: str
    implementation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "script_id": self.script_id,
            "version": self.version,
            "implementation": self.implementation,
        }


@dataclass
class PlaybookRef:
    playbook_id: str
    version: str

    def to_dict(self) -> Dict[str, Any]:
        return {"playbook_id": self.playbook_id, "version": self.version}


@dataclass
class FailureAction:
    action: FailureMode = FailureMode.STOP
    retries: int = 0
    backoff_seconds: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "retries": self.retries,
            "backoff_seconds": list(self.backoff_seconds),
        }

    @classmethod
    def from_dict(cls, data: Any, path: str) -> "FailureAction":
        if isinstance(data, str):
            data = {"action": data}
        data = data or {}
        action = _enum(FailureMode, data.get("action"), FailureMode.STOP, f"{path}.action")
        backoff = [float(b) for b in data.get("backoff_seconds") or []]
        retries = int(data.get("retries", len(backoff) if action == FailureMode.RETRY else 0))
        return cls(action=action, retries=retries, backoff_seconds=backoff)


@dataclass
class PollConfig:
    interval_seconds: float = 5.0
    max_attempts: int = 12

    def to_dict(self) -> Dict[str, Any]:
        return {"interval_seconds": self.interval_seconds, "max_attempts": self.max_attempts}


@dataclass
class ValidationCheck:
    """
    A typed pre/post validation check.

    ``target`` meaning depends on ``type``: parameter name, step output
    reference, resource attribute path, permission or output name.
    """
    type: CheckType
    target: str = ""
    expected: Any = None
    pattern: Optional[str] = None
    description: str = ""
    poll: Optional[PollConfig] = None

    def to_dict(self) -> Dict[str, Any]:
        data = _drop_none({
            "type": self.type.value,
            "target": self.target,
            "expected": self.expected,
            "pattern": self.pattern,
            "description": self.description,
        })
        if self.poll:
            data["poll"] = self.poll.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> "ValidationCheck":
        poll = data.get("poll")
        return cls(
            type=_enum(CheckType, data.get("type"), CheckType.PARAMETER_PRESENT, f"{path}.type"),
            target=data.get("target", ""),
            expected=data.get("expected"),
            pattern=data.get("pattern"),
            description=data.get("description", ""),
            poll=PollConfig(
                interval_seconds=float(poll.get("interval_seconds", 5.0)),
                max_attempts=int(poll.get("max_attempts", 12)),
            ) if poll else None,
        )


@dataclass
class Step:
    """
    A single step: a script step (``script_ref``) or a procedure step
    (``playbook_ref``). Exactly one of the two must be set; the structural
    validator reports violations.
    """
    name: str
    description: str = ""
    script_ref: Optional[ScriptRef] = None
    playbook_ref: Optional[PlaybookRef] = None
    parameter_mapping: Dict[str, MappingValue] = field(default_factory=dict)
    failure_action: FailureAction = field(default_factory=FailureAction)
    importance: Importance = Importance.HIGH
    pre_validation: List[ValidationCheck] = field(default_factory=list)
    post_validation: List[ValidationCheck] = field(default_factory=list)
    timeout_seconds: Optional[float] = None
    rollback: Optional[str] = None
    # Denormalized by the sync engine: chosen implementation plus script metadata
    embedded_script: Optional[Dict[str, Any]] = None

    @property
    def is_script_step(self) -> bool:
        return self.script_ref is not None and self.playbook_ref is None

    @property
    def is_playbook_step(self) -> bool:
        return self.playbook_ref is not None and self.script_ref is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameter_mapping": mapping_to_raw(self.parameter_mapping),
            "failure_action": self.failure_action.to_dict(),
            "importance": self.importance.value,
            "pre_validation": [c.to_dict() for c in self.pre_validation],
            "post_validation": [c.to_dict() for c in self.post_validation],
            "timeout_seconds": self.timeout_seconds,
            "rollback": self.rollback,
        }
        if self.script_ref:
            data["script_ref"] = self.script_ref.to_dict()
        if self.playbook_ref:
            data["playbook_ref"] = self.playbook_ref.to_dict()
        if self.embedded_script is not None:
            data["embedded_script"] = self.embedded_script
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str) -> "Step":
        script_ref = data.get("script_ref")
        playbook_ref = data.get("playbook_ref")
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            script_ref=ScriptRef(
                script_id=script_ref.get("script_id", ""),
                version=str(script_ref.get("version", "")),
                implementation=script_ref.get("implementation", ""),
            ) if script_ref else None,
            playbook_ref=PlaybookRef(
                playbook_id=playbook_ref.get("playbook_id", ""),
                version=str(playbook_ref.get("version", "")),
            ) if playbook_ref else None,
            parameter_mapping=parse_mapping(data.get("parameter_mapping")),
            failure_action=FailureAction.from_dict(data.get("failure_action"), f"{path}.failure_action"),
            importance=_enum(Importance, data.get("importance"), Importance.HIGH, f"{path}.importance"),
            pre_validation=[
                ValidationCheck.from_dict(c, f"{path}.pre_validation[{i}]")
                for i, c in enumerate(data.get("pre_validation") or [])
            ],
            post_validation=[
                ValidationCheck.from_dict(c, f"{path}.post_validation[{i}]")
                for i, c in enumerate(data.get("post_validation") or [])
            ],
            timeout_seconds=data.get("timeout_seconds"),
            rollback=data.get("rollback"),
            embedded_script=data.get("embedded_script"),
        )


@dataclass
class ExplainPlan:
    rationale: str = ""
    risks: List[str] = field(default_factory=list)
    rollback_strategy: str = ""
    success_criteria: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rationale": self.rationale,
            "risks": list(self.risks),
            "rollback_strategy": self.rollback_strategy,
            "success_criteria": list(self.success_criteria),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExplainPlan":
        data = data or {}
        return cls(
            rationale=data.get("rationale", ""),
            risks=list(data.get("risks") or []),
            rollback_strategy=data.get("rollback_strategy", ""),
            success_criteria=list(data.get("success_criteria") or []),
        )


@dataclass
class TestingPlan:
    test_plan: str = ""
    dry_run_supported: bool = False
    test_cases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_plan": self.test_plan,
            "dry_run_supported": self.dry_run_supported,
            "test_cases": list(self.test_cases),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TestingPlan":
        data = data or {}
        return cls(
            test_plan=data.get("test_plan", ""),
            dry_run_supported=bool(data.get("dry_run_supported", False)),
            test_cases=list(data.get("test_cases") or []),
        )


# =============================================================================
# PLAYBOOK
# =============================================================================


@dataclass
class Playbook:
    """
    Complete definition of a playbook version, identified by
    (playbook_id, version).
    """
    playbook_id: str
    version: str
    name: str = ""
    description: str = ""
    keywords: List[str] = field(default_factory=list)
    use_cases: List[str] = field(default_factory=list)
    cloud_providers: List[str] = field(default_factory=list)
    resource_types: List[str] = field(default_factory=list)
    author_class: AuthorClass = AuthorClass.TENANT
    prerequisites: List[str] = field(default_factory=list)
    estimated_impact: str = ""
    parameters: List[PlaybookParameter] = field(default_factory=list)
    steps: List[Step] = field(default_factory=list)
    explain_plan: ExplainPlan = field(default_factory=ExplainPlan)
    testing: TestingPlan = field(default_factory=TestingPlan)
    status: PlaybookStatus = PlaybookStatus.DRAFT
    storage_strategy: StorageStrategy = StorageStrategy.PRIVATE_ONLY
    execution_count: int = 0
    success_count: int = 0
    quality_score: Optional[float] = None
    # improvements and warnings from the publish-time quality check
    quality_feedback: Dict[str, List[str]] = field(default_factory=dict)
    updated_at: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.playbook_id, self.version)

    @property
    def success_rate(self) -> float:
        if not self.execution_count:
            return 0.0
        return min(1.0, self.success_count / self.execution_count)

    def parameter(self, name: str) -> Optional[PlaybookParameter]:
        return next((p for p in self.parameters if p.name == name), None)

    def embedding_text(self) -> str:
        """Text embedded for semantic search: name, description, use cases, keywords."""
        parts = [self.name, self.description]
        if self.use_cases:
            parts.append("Use cases: " + "; ".join(self.use_cases))
        if self.keywords:
            parts.append("Keywords: " + ", ".join(self.keywords))
        return "\n".join(p for p in parts if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "keywords": list(self.keywords),
            "use_cases": list(self.use_cases),
            "cloud_providers": list(self.cloud_providers),
            "resource_types": list(self.resource_types),
            "author_class": self.author_class.value,
            "prerequisites": list(self.prerequisites),
            "estimated_impact": self.estimated_impact,
            "parameters": [p.to_dict() for p in self.parameters],
            "steps": [s.to_dict() for s in self.steps],
            "explain_plan": self.explain_plan.to_dict(),
            "testing": self.testing.to_dict(),
            "status": self.status.value,
            "storage_strategy": self.storage_strategy.value,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "quality_score": self.quality_score,
            "quality_feedback": {k: list(v) for k, v in self.quality_feedback.items()},
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Playbook":
        """Create from a dictionary (stored JSON, API draft or index payload)."""
        return cls(
            playbook_id=data.get("playbook_id", ""),
            version=str(data.get("version", "")),
            name=data.get("name", ""),
            description=data.get("description", ""),
            keywords=list(data.get("keywords") or []),
            use_cases=list(data.get("use_cases") or []),
            cloud_providers=list(data.get("cloud_providers") or []),
            resource_types=list(data.get("resource_types") or []),
            author_class=_enum(AuthorClass, data.get("author_class"), AuthorClass.TENANT, "author_class"),
            prerequisites=list(data.get("prerequisites") or []),
            estimated_impact=data.get("estimated_impact", ""),
            parameters=[
                PlaybookParameter.from_dict(p, f"parameters[{i}]")
                for i, p in enumerate(data.get("parameters") or [])
            ],
            steps=[
                Step.from_dict(s, f"steps[{i}]")
                for i, s in enumerate(data.get("steps") or [])
            ],
            explain_plan=ExplainPlan.from_dict(data.get("explain_plan")),
            testing=TestingPlan.from_dict(data.get("testing")),
            status=_enum(PlaybookStatus, data.get("status"), PlaybookStatus.DRAFT, "status"),
            storage_strategy=_enum(
                StorageStrategy, data.get("storage_strategy"), StorageStrategy.PRIVATE_ONLY, "storage_strategy"
            ),
            execution_count=int(data.get("execution_count") or 0),
            success_count=int(data.get("success_count") or 0),
            quality_score=data.get("quality_score"),
            quality_feedback={
                k: list(v or []) for k, v in (data.get("quality_feedback") or {}).items()
            },
            updated_at=data.get("updated_at"),
        )
