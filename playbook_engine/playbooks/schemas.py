# playbook_engine/playbooks/schemas.py
"""
JSON schemas for playbook drafts and script uploads.

Shape validation runs before a raw dict is parsed into the model, so a
malformed draft comes back as issues with field paths instead of failing
inside ``from_dict``. Enum values, identity fields and references are
checked later by the parser and the structural validator.

Usage:
    from playbook_engine.playbooks.schemas import PLAYBOOK_DRAFT_JSON_SCHEMA, schema_issues

    issues = schema_issues(draft, PLAYBOOK_DRAFT_JSON_SCHEMA)
"""

import logging
from typing import Any, Dict, Iterable, List, Union

import jsonschema

logger = logging.getLogger("playbook_engine.schemas")

SCHEMA_VIOLATION = "SCHEMA_VIOLATION"

_STRING = {"type": "string"}
_OPTIONAL_STRING = {"type": ["string", "null"]}
_STRING_LIST = {"type": ["array", "null"], "items": {"type": "string"}}
_NAMED = {"type": "string", "minLength": 1}

_CHECK = {
    "type": "object",
    "properties": {
        "type": _STRING,
        "target": _STRING,
        "expected": {},
        "pattern": _OPTIONAL_STRING,
        "description": _STRING,
        "poll": {
            "type": ["object", "null"],
            "properties": {
                "interval_seconds": {"type": "number", "exclusiveMinimum": 0},
                "max_attempts": {"type": "integer", "minimum": 1},
            },
        },
    },
}

_STEP = {
    "type": "object",
    "properties": {
        "name": _STRING,
        "description": _STRING,
        "script_ref": {
            "type": ["object", "null"],
            "properties": {
                "script_id": _STRING,
                "version": _NAMED,
                "implementation": _STRING,
            },
        },
        "playbook_ref": {
            "type": ["object", "null"],
            "properties": {
                "playbook_id": _STRING,
                "version": _NAMED,
            },
        },
        "parameter_mapping": {"type": ["object", "null"]},
        "failure_action": {
            "type": ["string", "object", "null"],
            "properties": {
                "action": _STRING,
                "retries": {"type": "integer", "minimum": 0},
                "backoff_seconds": {"type": "array", "items": {"type": "number", "minimum": 0}},
            },
        },
        "importance": _OPTIONAL_STRING,
        "pre_validation": {"type": ["array", "null"], "items": _CHECK},
        "post_validation": {"type": ["array", "null"], "items": _CHECK},
        "timeout_seconds": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "rollback": _OPTIONAL_STRING,
        "embedded_script": {"type": ["object", "null"]},
    },
}

_PLAYBOOK_PARAMETER = {
    "type": "object",
    "properties": {
        "name": _STRING,
        "type": _STRING,
        "description": _STRING,
        "required": {"type": "boolean"},
        "default": {},
        "validation": _OPTIONAL_STRING,
        "extraction_hint": {
            "type": ["object", "null"],
            "properties": {
                "source": _OPTIONAL_STRING,
                "path": _OPTIONAL_STRING,
                "template": _OPTIONAL_STRING,
                "value": {},
                "prompt": _OPTIONAL_STRING,
            },
        },
    },
}

PLAYBOOK_DRAFT_JSON_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "playbook_id": _STRING,
        "version": _STRING,
        "name": _STRING,
        "description": _STRING,
        "keywords": _STRING_LIST,
        "use_cases": _STRING_LIST,
        "cloud_providers": _STRING_LIST,
        "resource_types": _STRING_LIST,
        "author_class": _OPTIONAL_STRING,
        "prerequisites": _STRING_LIST,
        "estimated_impact": _OPTIONAL_STRING,
        "parameters": {"type": ["array", "null"], "items": _PLAYBOOK_PARAMETER},
        "steps": {"type": ["array", "null"], "items": _STEP},
        "explain_plan": {
            "type": ["object", "null"],
            "properties": {
                "rationale": _STRING,
                "risks": _STRING_LIST,
                "rollback_strategy": _STRING,
                "success_criteria": _STRING_LIST,
            },
        },
        "testing": {
            "type": ["object", "null"],
            "properties": {
                "test_plan": _STRING,
                "dry_run_supported": {"type": "boolean"},
                "test_cases": _STRING_LIST,
            },
        },
        "status": _OPTIONAL_STRING,
        "storage_strategy": _OPTIONAL_STRING,
        "execution_count": {"type": "integer", "minimum": 0},
        "success_count": {"type": "integer", "minimum": 0},
        "quality_score": {"type": ["number", "null"]},
        "quality_feedback": {
            "type": ["object", "null"],
            "properties": {"improvements": _STRING_LIST, "warnings": _STRING_LIST},
        },
    },
}

SCRIPT_JSON_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["script_id", "version", "implementations"],
    "properties": {
        "script_id": _NAMED,
        "version": _NAMED,
        "name": _STRING,
        "description": _STRING,
        "implementations": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "language": _STRING,
                    "source": _STRING,
                    "entry_point": _STRING,
                },
            },
        },
        "parameters": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {
                    "name": _NAMED,
                    "type": _STRING,
                    "required": {"type": "boolean"},
                    "validation": _OPTIONAL_STRING,
                    "default": {},
                    "description": _STRING,
                },
            },
        },
        "outputs": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {"name": _NAMED, "type": _STRING, "description": _STRING},
            },
        },
        "required_permissions": _STRING_LIST,
        "estimated_duration_seconds": {"type": ["number", "null"], "minimum": 0},
        "max_duration_seconds": {"type": ["number", "null"], "minimum": 0},
    },
}

def format_path(parts: Iterable[Union[str, int]], base: str = "") -> str:
    """``["steps", 0, "name"]`` -> ``steps[0].name``"""
    path = base
    for part in parts:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def schema_issues(instance: Any, schema: Dict[str, Any], base_path: str = "") -> List[Dict[str, Any]]:
    """
    Every schema violation in ``instance``, at most one per field.

    Issues are dicts in the ``ValidationIssue.to_dict()`` shape.
    """
    validator = jsonschema.Draft202012Validator(schema)
    issues: Dict[str, Dict[str, Any]] = {}

    for error in validator.iter_errors(instance):
        if error.validator == "required" and isinstance(error.instance, dict):
            for name in error.validator_value:
                if name in error.instance:
                    continue
                path = format_path(list(error.absolute_path) + [name], base_path)
                issues.setdefault(path, {
                    "code": "MISSING_FIELD",
                    "message": f"'{name}' is required",
                    "path": path,
                    "details": {},
                    "severity": "error",
                })
            continue

        path = format_path(error.absolute_path, base_path)
        issues.setdefault(path, {
            "code": SCHEMA_VIOLATION,
            "message": f"Invalid value at '{path or 'root'}': {error.message}",
            "path": path,
            "details": {"schema_path": list(error.absolute_schema_path)},
            "severity": "error",
        })

    if issues:
        logger.debug(f"Schema validation found {len(issues)} issue(s)")
    return list(issues.values())
