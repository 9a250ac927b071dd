"""Template resolution against the execution scope.

Resolves {{a.b.c}} references in node fields. Resolution always runs on a plain
data snapshot of the scope (dicts, lists and scalars only), so values produced
by handlers never leak object-model details into templates.
"""

import dataclasses
import re
from datetime import date, datetime
from typing import Dict, Any, List

from pydantic import BaseModel

from core.logging import get_logger

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{([^}]+)\}\}')

# Bare dotted path such as "input.email"
BARE_PATH_PATTERN = re.compile(r'^[A-Za-z_$][\w$]*(\.[\w$-]+)+$')

MISSING = object()


def to_plain(value: Any) -> Any:
    """Convert a value into plain structural data."""
    if isinstance(value, BaseModel):
        return to_plain(value.model_dump(mode="json", by_alias=True))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_plain(dataclasses.asdict(value))
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_plain(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def resolve_templates(value: Any, scope: Dict[str, Any], strict: bool = False) -> Any:
    """Resolve templates in a value recursively.

    Args:
        value: Field value (string, dict, list or scalar)
        scope: Execution variables; a plain snapshot is taken before resolving
        strict: Resolve a missing reference to None instead of keeping it
            verbatim. Applies to a string that is exactly one template and to
            a bare dotted path whose root variable is in scope.

    Returns:
        A new value; the input is never modified.
    """
    snapshot = to_plain(scope)
    return _resolve(value, snapshot, strict)


def _resolve(value: Any, scope: Dict[str, Any], strict: bool) -> Any:
    if isinstance(value, str):
        return _resolve_string(value, scope, strict)
    if isinstance(value, dict):
        return {k: _resolve(v, scope, strict) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(item, scope, strict) for item in value]
    return value


def _resolve_string(value: str, scope: Dict[str, Any], strict: bool) -> Any:
    if '{{' not in value:
        if BARE_PATH_PATTERN.match(value):
            resolved = lookup_path(scope, value)
            if resolved is not MISSING:
                return resolved
            if strict and value.split(".", 1)[0] in scope:
                logger.debug("Unresolved path", path=value)
                return None
        return value

    # A string that is exactly one template keeps the referenced value's type
    whole = TEMPLATE_PATTERN.fullmatch(value.strip())
    if whole:
        resolved = lookup_path(scope, whole.group(1).strip())
        if resolved is MISSING:
            logger.debug("Unresolved template", template=value)
            return None if strict else value
        return resolved

    def replace(match: "re.Match") -> str:
        resolved = lookup_path(scope, match.group(1).strip())
        if resolved is MISSING:
            logger.debug("Unresolved template", template=match.group(0))
            return match.group(0)
        return "" if resolved is None else str(resolved)

    return TEMPLATE_PATTERN.sub(replace, value)


def lookup_path(scope: Dict[str, Any], path: str) -> Any:
    """Navigate a dotted path through dicts and lists.

    Returns the MISSING sentinel when the root is not in scope or
    the path cannot be followed; a present-but-None value is returned as None.
    """
    parts: List[str] = path.split('.')
    root = parts[0]
    if root not in scope:
        return MISSING

    current = scope[root]
    for part in parts[1:]:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current
