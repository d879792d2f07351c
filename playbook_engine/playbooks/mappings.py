# playbook_engine/playbooks/mappings.py
"""
Parameter-mapping expressions.

A step binds each target parameter of the script or playbook it calls to one
of a small closed set of value sources. Raw mapping values are parsed once,
when a definition is loaded, into the variants below so that substitution
never re-parses strings:

    "eu-west-1"                   -> LiteralValue("eu-west-1")
    "${playbook.instance_id}"     -> PlaybookParam("instance_id")
    "${step2.output.snapshot_id}" -> StepOutput(2, "snapshot_id")
    "${estate.resource.vpc_id}"   -> EstateField("resource.vpc_id")
    "${context.role}"             -> ContextField("role")
    "vol-${playbook.suffix}"      -> Interpolated([...])

Anything else inside ``${...}`` raises InvalidMappingExpression.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from playbook_engine.core.errors import InvalidMappingExpression

EXPRESSION_PATTERN = re.compile(r"\$\{([^}]*)\}")
_PLAYBOOK_PARAM = re.compile(r"^playbook\.([A-Za-z_][A-Za-z0-9_]*)$")
_STEP_OUTPUT = re.compile(r"^step(\d+)\.output\.([A-Za-z_][A-Za-z0-9_.]*)$")
_ESTATE_FIELD = re.compile(r"^estate\.([A-Za-z_][A-Za-z0-9_.]*)$")
_CONTEXT_FIELD = re.compile(r"^context\.([A-Za-z_][A-Za-z0-9_.]*)$")


@dataclass(frozen=True)
class LiteralValue:
    value: Any
    kind = "literal"

    def to_raw(self) -> Any:
        return self.value


@dataclass(frozen=True)
class PlaybookParam:
    name: str
    kind = "playbook_param"

    def to_raw(self) -> str:
        return f"${{playbook.{self.name}}}"


@dataclass(frozen=True)
class StepOutput:
    """Output of an earlier step, 1-based within the declaring playbook."""
    step: int
    output: str
    kind = "step_output"

    def to_raw(self) -> str:
        return f"${{step{self.step}.output.{self.output}}}"


@dataclass(frozen=True)
class EstateField:
    path: str
    kind = "estate_field"

    def to_raw(self) -> str:
        return f"${{estate.{self.path}}}"


@dataclass(frozen=True)
class ContextField:
    field: str
    kind = "context_field"

    def to_raw(self) -> str:
        return f"${{context.{self.field}}}"


Expression = Union[PlaybookParam, StepOutput, EstateField, ContextField]


@dataclass(frozen=True)
class Interpolated:
    """A string mixing literal text with embedded expressions."""
    parts: Tuple[Union[str, Expression], ...]
    kind = "interpolated"

    def to_raw(self) -> str:
        return "".join(p if isinstance(p, str) else p.to_raw() for p in self.parts)

    @property
    def expressions(self) -> List[Expression]:
        return [p for p in self.parts if not isinstance(p, str)]


MappingValue = Union[LiteralValue, PlaybookParam, StepOutput, EstateField, ContextField, Interpolated]


def parse_expression(body: str, raw: Optional[str] = None) -> Expression:
    """Parse the text between ``${`` and ``}``."""
    body = body.strip()
    match = _PLAYBOOK_PARAM.match(body)
    if match:
        return PlaybookParam(match.group(1))
    match = _STEP_OUTPUT.match(body)
    if match:
        step = int(match.group(1))
        if step < 1:
            raise InvalidMappingExpression(
                f"Step references are 1-based, got '{raw or body}'",
                details={"expression": raw or body},
            )
        return StepOutput(step, match.group(2))
    match = _ESTATE_FIELD.match(body)
    if match:
        return EstateField(match.group(1))
    match = _CONTEXT_FIELD.match(body)
    if match:
        return ContextField(match.group(1))
    raise InvalidMappingExpression(
        f"Unsupported mapping expression '{raw or '${' + body + '}'}'. Use "
        "${playbook.<param>}, ${stepN.output.<name>}, ${estate.<path>} or ${context.<field>}",
        details={"expression": raw or body},
    )


def parse_mapping_value(value: Any) -> MappingValue:
    if not isinstance(value, str) or "${" not in value:
        return LiteralValue(value)

    matches = list(EXPRESSION_PATTERN.finditer(value))
    if not matches:
        raise InvalidMappingExpression(
            f"Unterminated mapping expression in '{value}'",
            details={"expression": value},
        )
    if len(matches) == 1 and matches[0].span() == (0, len(value)):
        return parse_expression(matches[0].group(1), raw=value)

    parts: List[Union[str, Expression]] = []
    cursor = 0
    for match in matches:
        if match.start() > cursor:
            parts.append(value[cursor:match.start()])
        parts.append(parse_expression(match.group(1), raw=match.group(0)))
        cursor = match.end()
    if cursor < len(value):
        tail = value[cursor:]
        if "${" in tail:
            raise InvalidMappingExpression(
                f"Unterminated mapping expression in '{value}'",
                details={"expression": value},
            )
        parts.append(tail)
    return Interpolated(tuple(parts))


def parse_mapping(raw: Optional[Dict[str, Any]]) -> Dict[str, MappingValue]:
    return {target: parse_mapping_value(value) for target, value in (raw or {}).items()}


def mapping_to_raw(mapping: Dict[str, MappingValue]) -> Dict[str, Any]:
    return {target: value.to_raw() for target, value in mapping.items()}


def expressions_in(value: MappingValue) -> List[Expression]:
    """All expressions referenced by a mapping value."""
    if isinstance(value, Interpolated):
        return value.expressions
    if isinstance(value, LiteralValue):
        return []
    return [value]


def lookup_path(data: Any, path: str) -> Tuple[bool, Any]:
    """Walk a dotted path through nested dicts. Returns (found, value)."""
    current = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return False, None
    return True, current
