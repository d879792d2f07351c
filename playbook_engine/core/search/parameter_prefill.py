"""
Parameter pre-fill for search results.

Each top-level playbook parameter becomes a ParameterSlot. Values are taken,
in order, from:

    1. the caller's extracted_parameters
    2. the parameter's extraction hint
         estate    lookup ``path`` in the caller's estate snapshot
         context   lookup ``path`` in the caller's user context
         template  ``str.format`` over the values known so far
         static    the hint's value
         ask_user  never filled; the hint's prompt is returned
    3. the declared default

Values that fail the parameter's validation pattern are discarded. A slot
left empty is flagged ``needs_input`` when the parameter is required or the
hint asks the user.
"""

import logging
import re
import string
from typing import Any, Dict, List, Optional

from playbook_engine.playbooks.mappings import lookup_path
from playbook_engine.playbooks.models import HintSource, Playbook, PlaybookParameter
from playbook_engine.playbooks.resolver import ParameterSlot

logger = logging.getLogger("playbook_engine.search.prefill")

_FORMATTER = string.Formatter()


def _template_fields(template: str) -> List[str]:
    return [name for _, name, _, _ in _FORMATTER.parse(template) if name]


def _render_template(template: str, values: Dict[str, Any]) -> Optional[str]:
    try:
        fields = _template_fields(template)
    except ValueError:
        return None
    if any(name.split(".")[0].split("[")[0] not in values for name in fields):
        return None
    try:
        return template.format(**values)
    except (KeyError, IndexError, AttributeError, ValueError):
        return None


def _matches(param: PlaybookParameter, value: Any) -> bool:
    if not param.validation or not isinstance(value, str):
        return True
    try:
        return re.fullmatch(param.validation, value) is not None
    except re.error:
        return True


def _slot(param: PlaybookParameter) -> ParameterSlot:
    return ParameterSlot(
        name=param.name,
        type=param.type,
        description=param.description,
        required=param.required,
    )


def prefill_parameters(
    playbook: Playbook,
    extracted_parameters: Optional[Dict[str, Any]] = None,
    user_context: Optional[Dict[str, Any]] = None,
    estate: Optional[Dict[str, Any]] = None,
) -> List[ParameterSlot]:
    extracted = extracted_parameters or {}
    user_context = user_context or {}
    estate = estate or {}

    slots: Dict[str, ParameterSlot] = {}
    known: Dict[str, Any] = {}
    templated: List[PlaybookParameter] = []

    for param in playbook.parameters:
        slot = _slot(param)
        slots[param.name] = slot
        hint = param.extraction_hint

        candidates = []
        if param.name in extracted and extracted[param.name] is not None:
            candidates.append((extracted[param.name], "extracted"))
        if hint is not None:
            if hint.source == HintSource.ESTATE and hint.path:
                found, value = lookup_path(estate, hint.path)
                if found and value is not None:
                    candidates.append((value, "estate"))
            elif hint.source == HintSource.CONTEXT and hint.path:
                found, value = lookup_path(user_context, hint.path)
                if found and value is not None:
                    candidates.append((value, "context"))
            elif hint.source == HintSource.STATIC and hint.value is not None:
                candidates.append((hint.value, "static"))
            elif hint.source == HintSource.TEMPLATE and hint.template:
                templated.append(param)
            elif hint.source == HintSource.ASK_USER:
                slot.prompt = hint.prompt or f"Provide a value for {param.name}"

        for value, source in candidates:
            if _matches(param, value):
                slot.value, slot.source = value, source
                known[param.name] = value
                break
            logger.debug(f"Discarded {source} value for {param.name}: does not match {param.validation}")

    # Templates may use any value known so far, including other parameters
    for param in templated:
        slot = slots[param.name]
        if slot.value is not None:
            continue
        context = {**user_context, **extracted, **known}
        rendered = _render_template(param.extraction_hint.template, context)
        if rendered is not None and _matches(param, rendered):
            slot.value, slot.source = rendered, "template"
            known[param.name] = rendered

    for param in playbook.parameters:
        slot = slots[param.name]
        if slot.value is None and param.default is not None:
            slot.value, slot.source = param.default, "default"
        if slot.value is None:
            asks_user = param.extraction_hint is not None and param.extraction_hint.source == HintSource.ASK_USER
            slot.needs_input = param.required or asks_user
            if slot.needs_input and slot.prompt is None:
                slot.prompt = f"Provide a value for {param.name}" + (
                    f" ({param.description})" if param.description else ""
                )

    return [slots[p.name] for p in playbook.parameters]
