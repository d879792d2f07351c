# playbook_engine/playbooks/versioning.py
"""Semantic version helpers for playbook and script versions."""

import re
from typing import Tuple

_VERSION_PATTERN = re.compile(r"^(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$")


def version_key(version: str) -> Tuple[int, int, int, str]:
    """
    Sort key for a version string.

    "1.2" sorts as "1.2.0". Strings that are not dotted numbers sort before
    every numeric version, ordered lexically among themselves.
    """
    match = _VERSION_PATTERN.match(version.strip()) if version else None
    if not match:
        return (-1, -1, -1, version or "")
    major, minor, patch = (int(part) if part else 0 for part in match.groups())
    return (major, minor, patch, "")


def is_valid_version(version: str) -> bool:
    return bool(version) and _VERSION_PATTERN.match(version.strip()) is not None


def entry_id(playbook_id: str, version: str) -> str:
    """Vector index entry id for a playbook version."""
    return f"{playbook_id}-{version}"
