# playbook_engine/playbooks/resolver.py
"""
Reference Resolver.

Expands a playbook into a flat, execution-ordered list of script steps:

- Script steps get their mapping expressions substituted and the chosen
  implementation (source, entry point) attached.
- Playbook steps are expanded recursively. The child's steps are numbered
  under the parent step (step 2 of the parent becomes 2.1, 2.2, ...) and
  the child's ``${playbook.X}`` values bind to the parent step's mapping.
- Step-output references cannot be known before execution. They are
  rewritten to global step numbers and left as ``${stepN.M.output.Y}``
  tokens for the execution engine. A reference to a playbook step points
  at that step's last leaf.
- Estate and context fields are substituted from the caller's context when
  present, otherwise left as tokens.

Resolution is bounded: more than ``depth_budget`` levels of nesting raises
ReferenceDepthExceeded, a reference back onto the current chain raises
CyclicReferenceDetected.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from playbook_engine.core.errors import (
    AssetNotFound,
    CyclicReferenceDetected,
    ReferenceDepthExceeded,
)
from playbook_engine.playbooks.catalog import AssetCatalog
from playbook_engine.playbooks.mappings import (
    ContextField,
    EstateField,
    Interpolated,
    LiteralValue,
    MappingValue,
    PlaybookParam,
    StepOutput,
    lookup_path,
)
from playbook_engine.playbooks.models import CheckType, Playbook, Script, Step, ValidationCheck

logger = logging.getLogger("playbook_engine.resolver")

DEFAULT_DEPTH_BUDGET = 3

_STEP_TARGET = re.compile(r"^step(\d+)\.output\.(.+)$")

# Marks a value that could not be bound at this level; kept as a ${...} token.
_UNBOUND = object()


@dataclass
class ParameterSlot:
    """A top-level parameter of the resolved playbook, possibly pre-filled."""
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    value: Any = None
    source: Optional[str] = None  # extracted | estate | context | template | static | default
    needs_input: bool = False
    prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "value": self.value,
            "source": self.source,
            "needs_input": self.needs_input,
            "prompt": self.prompt,
        }


@dataclass
class ResolvedStep:
    number: str
    name: str
    description: str
    script_id: str
    script_version: str
    implementation: str
    language: str
    source: str
    entry_point: str
    parameters: Dict[str, Any]
    required_permissions: List[str]
    failure_action: Dict[str, Any]
    importance: str
    estimated_duration_seconds: float
    timeout_seconds: Optional[float] = None
    pre_validation: List[Dict[str, Any]] = field(default_factory=list)
    post_validation: List[Dict[str, Any]] = field(default_factory=list)
    rollback: Optional[str] = None
    origin: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "description": self.description,
            "script_id": self.script_id,
            "script_version": self.script_version,
            "implementation": self.implementation,
            "language": self.language,
            "source": self.source,
            "entry_point": self.entry_point,
            "parameters": self.parameters,
            "required_permissions": list(self.required_permissions),
            "failure_action": self.failure_action,
            "importance": self.importance,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "timeout_seconds": self.timeout_seconds,
            "pre_validation": self.pre_validation,
            "post_validation": self.post_validation,
            "rollback": self.rollback,
            "origin": list(self.origin),
        }


@dataclass
class ExplainStep:
    """
    One step of a playbook as shown in the explain plan.

    A playbook step carries the referenced playbook's node; its duration is
    that node's total.
    """
    number: str
    name: str
    description: str
    kind: str  # script | playbook
    ref: str
    estimated_duration_seconds: float = 0.0
    playbook: Optional["ExplainNode"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "ref": self.ref,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "playbook": self.playbook.to_dict() if self.playbook is not None else None,
        }


@dataclass
class ExplainNode:
    """Explain plan of one playbook in the expansion tree."""
    playbook_id: str
    version: str
    name: str
    step_number: Optional[str]
    rationale: str
    risks: List[str]
    rollback_strategy: str
    success_criteria: List[str]
    estimated_duration_seconds: float = 0.0
    steps: List[ExplainStep] = field(default_factory=list)

    @property
    def children(self) -> List["ExplainNode"]:
        """Nodes of the playbooks referenced by this playbook's steps."""
        return [s.playbook for s in self.steps if s.playbook is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "version": self.version,
            "name": self.name,
            "step_number": self.step_number,
            "rationale": self.rationale,
            "risks": list(self.risks),
            "rollback_strategy": self.rollback_strategy,
            "success_criteria": list(self.success_criteria),
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class ResolvedPlan:
    playbook_id: str
    version: str
    scope: str
    name: str
    steps: List[ResolvedStep]
    explain_plan: ExplainNode
    parameters: List[ParameterSlot]
    total_estimated_duration_seconds: float
    required_permissions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_id": self.playbook_id,
            "version": self.version,
            "scope": self.scope,
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "explain_plan": self.explain_plan.to_dict(),
            "parameters": [p.to_dict() for p in self.parameters],
            "total_estimated_duration_seconds": self.total_estimated_duration_seconds,
            "required_permissions": list(self.required_permissions),
        }


@dataclass
class _Frame:
    """Substitution context for one playbook level."""
    params: Dict[str, Any]
    step_numbers: Dict[int, str]
    prefix: str
    estate: Dict[str, Any]
    context: Dict[str, Any]


class PlaybookResolver:
    """
    Resolves playbooks held in an AssetCatalog.

    Usage:
        resolver = PlaybookResolver(catalog)
        plan = resolver.resolve("tenant-a", "backup-and-resize", "1.0.0")
    """

    def __init__(self, catalog: AssetCatalog, depth_budget: int = DEFAULT_DEPTH_BUDGET):
        self.catalog = catalog
        self.depth_budget = depth_budget

    def resolve(
        self,
        scope: str,
        playbook_id: str,
        version: str,
        slots: Optional[List[ParameterSlot]] = None,
        user_context: Optional[Dict[str, Any]] = None,
        estate: Optional[Dict[str, Any]] = None,
        depth_budget: Optional[int] = None,
    ) -> ResolvedPlan:
        """
        Resolve one playbook version.

        Args:
            scope: Scope the lookup starts from (tenant id or "global")
            slots: Pre-filled top-level parameters; defaults are used when omitted
            user_context: Values for ``${context.*}``
            estate: Values for ``${estate.*}``
            depth_budget: Maximum playbook_ref nesting (defaults to the resolver's)

        Raises:
            AssetNotFound, ReferenceDepthExceeded, CyclicReferenceDetected
        """
        budget = self.depth_budget if depth_budget is None else depth_budget
        owner_scope, playbook = self.catalog.get_playbook(scope, playbook_id, version)

        if slots is None:
            slots = default_slots(playbook)
        params: Dict[str, Any] = {}
        for slot in slots:
            if slot.value is not None and not slot.needs_input:
                params[slot.name] = slot.value

        frame = _Frame(
            params=params,
            step_numbers={},
            prefix="",
            estate=estate or {},
            context=user_context or {},
        )
        root = self._explain_node(playbook, None)
        steps: List[ResolvedStep] = []
        chain = [(owner_scope, playbook.playbook_id, playbook.version)]
        self._expand(owner_scope, playbook, frame, 0, budget, chain, steps, root)

        permissions: List[str] = []
        for step in steps:
            for permission in step.required_permissions:
                if permission not in permissions:
                    permissions.append(permission)

        return ResolvedPlan(
            playbook_id=playbook.playbook_id,
            version=playbook.version,
            scope=owner_scope,
            name=playbook.name,
            steps=steps,
            explain_plan=root,
            parameters=slots,
            total_estimated_duration_seconds=root.estimated_duration_seconds,
            required_permissions=permissions,
        )

    def _expand(
        self,
        scope: str,
        playbook: Playbook,
        frame: _Frame,
        depth: int,
        budget: int,
        chain: List[Tuple[str, str, str]],
        out: List[ResolvedStep],
        node: ExplainNode,
    ) -> None:
        origin = [f"{pid}@{ver}" for _, pid, ver in chain]
        for index, step in enumerate(playbook.steps, start=1):
            number = f"{frame.prefix}{index}"

            if step.playbook_ref is not None:
                ref = step.playbook_ref
                child_key_scope, child = self.catalog.get_playbook(scope, ref.playbook_id, ref.version)
                child_key = (child_key_scope, child.playbook_id, child.version)
                if child_key in chain:
                    cycle = [f"{pid}@{ver}" for _, pid, ver in chain] + [f"{child.playbook_id}@{child.version}"]
                    raise CyclicReferenceDetected(
                        f"Cyclic playbook reference: {' -> '.join(cycle)}",
                        details={"cycle": cycle, "step": number},
                    )
                if depth + 1 > budget:
                    raise ReferenceDepthExceeded(
                        f"Playbook reference depth exceeds {budget} at step {number} "
                        f"({child.playbook_id}@{child.version})",
                        details={"max_depth": budget, "step": number, "path": origin},
                    )

                child_params = {}
                for param in child.parameters:
                    if param.name in step.parameter_mapping:
                        value = self._substitute(step.parameter_mapping[param.name], frame)
                        if value is not _UNBOUND:
                            child_params[param.name] = value
                    elif param.default is not None:
                        child_params[param.name] = param.default

                child_frame = _Frame(
                    params=child_params,
                    step_numbers={},
                    prefix=f"{number}.",
                    estate=frame.estate,
                    context=frame.context,
                )
                child_node = self._explain_node(child, number)
                before = len(out)
                self._expand(
                    child_key_scope, child, child_frame, depth + 1, budget,
                    chain + [child_key], out, child_node,
                )
                node.steps.append(ExplainStep(
                    number=number,
                    name=step.name,
                    description=step.description,
                    kind="playbook",
                    ref=f"{child.playbook_id}@{child.version}",
                    estimated_duration_seconds=child_node.estimated_duration_seconds,
                    playbook=child_node,
                ))
                node.estimated_duration_seconds += child_node.estimated_duration_seconds
                frame.step_numbers[index] = out[-1].number if len(out) > before else number
                continue

            resolved = self._resolve_script_step(scope, step, number, frame, origin)
            out.append(resolved)
            node.steps.append(ExplainStep(
                number=number,
                name=resolved.name,
                description=resolved.description,
                kind="script",
                ref=f"{resolved.script_id}@{resolved.script_version}",
                estimated_duration_seconds=resolved.estimated_duration_seconds,
            ))
            node.estimated_duration_seconds += resolved.estimated_duration_seconds
            frame.step_numbers[index] = number

    def _resolve_script_step(
        self,
        scope: str,
        step: Step,
        number: str,
        frame: _Frame,
        origin: List[str],
    ) -> ResolvedStep:
        ref = step.script_ref
        if step.embedded_script is not None:
            script = Script.from_dict(step.embedded_script)
        else:
            _, script = self.catalog.get_script(scope, ref.script_id, ref.version)

        implementation = script.implementations.get(ref.implementation)
        if implementation is None:
            raise AssetNotFound(
                f"Script '{script.script_id}' version {script.version} has no "
                f"'{ref.implementation}' implementation",
                details={
                    "kind": "implementation",
                    "id": script.script_id,
                    "version": script.version,
                    "implementation": ref.implementation,
                    "available": sorted(script.implementations),
                },
            )

        parameters: Dict[str, Any] = {}
        for param in script.parameters:
            if param.name in step.parameter_mapping:
                value = self._substitute(step.parameter_mapping[param.name], frame)
                parameters[param.name] = (
                    step.parameter_mapping[param.name].to_raw() if value is _UNBOUND else value
                )
            elif param.default is not None:
                parameters[param.name] = param.default
        # Mappings for names the script does not declare are passed through
        for target, mapping in step.parameter_mapping.items():
            if target not in parameters:
                value = self._substitute(mapping, frame)
                parameters[target] = mapping.to_raw() if value is _UNBOUND else value

        return ResolvedStep(
            number=number,
            name=step.name,
            description=step.description,
            script_id=script.script_id,
            script_version=script.version,
            implementation=ref.implementation,
            language=implementation.language,
            source=implementation.source,
            entry_point=implementation.entry_point,
            parameters=parameters,
            required_permissions=list(script.required_permissions),
            failure_action=step.failure_action.to_dict(),
            importance=step.importance.value,
            estimated_duration_seconds=float(script.estimated_duration_seconds or 0),
            timeout_seconds=step.timeout_seconds or script.max_duration_seconds,
            pre_validation=[self._rewrite_check(c, frame) for c in step.pre_validation],
            post_validation=[self._rewrite_check(c, frame) for c in step.post_validation],
            rollback=step.rollback,
            origin=origin,
        )

    # -------------------------------------------------------------------------
    # Substitution
    # -------------------------------------------------------------------------

    def _substitute(self, value: MappingValue, frame: _Frame) -> Any:
        if isinstance(value, LiteralValue):
            return value.value
        if isinstance(value, Interpolated):
            rendered = []
            for part in value.parts:
                if isinstance(part, str):
                    rendered.append(part)
                    continue
                resolved = self._substitute(part, frame)
                rendered.append(part.to_raw() if resolved is _UNBOUND else str(resolved))
            return "".join(rendered)
        if isinstance(value, PlaybookParam):
            if value.name in frame.params:
                return frame.params[value.name]
            return _UNBOUND
        if isinstance(value, StepOutput):
            number = frame.step_numbers.get(value.step, f"{frame.prefix}{value.step}")
            return f"${{step{number}.output.{value.output}}}"
        if isinstance(value, EstateField):
            found, resolved = lookup_path(frame.estate, value.path)
            return resolved if found else _UNBOUND
        if isinstance(value, ContextField):
            found, resolved = lookup_path(frame.context, value.field)
            return resolved if found else _UNBOUND
        raise TypeError(f"Unknown mapping value {value!r}")

    def _rewrite_check(self, check: ValidationCheck, frame: _Frame) -> Dict[str, Any]:
        data = check.to_dict()
        if check.type == CheckType.STEP_OUTPUT_PRESENT:
            match = _STEP_TARGET.match(check.target)
            if match:
                local = int(match.group(1))
                number = frame.step_numbers.get(local, f"{frame.prefix}{local}")
                data["target"] = f"step{number}.output.{match.group(2)}"
        return data

    @staticmethod
    def _explain_node(playbook: Playbook, step_number: Optional[str]) -> ExplainNode:
        plan = playbook.explain_plan
        return ExplainNode(
            playbook_id=playbook.playbook_id,
            version=playbook.version,
            name=playbook.name,
            step_number=step_number,
            rationale=plan.rationale,
            risks=list(plan.risks),
            rollback_strategy=plan.rollback_strategy,
            success_criteria=list(plan.success_criteria),
        )


def default_slots(playbook: Playbook) -> List[ParameterSlot]:
    """Parameter slots filled from declared defaults only."""
    slots = []
    for param in playbook.parameters:
        has_default = param.default is not None
        slots.append(ParameterSlot(
            name=param.name,
            type=param.type,
            description=param.description,
            required=param.required,
            value=param.default,
            source="default" if has_default else None,
            needs_input=param.required and not has_default,
        ))
    return slots
