"""Input, validation, delay and response node handlers."""

import asyncio
import re
import time
from typing import Dict, Any, List

from core.logging import get_logger
from services.errors import HandlerError
from services.execution.models import ExecutionContext
from services.execution.templates import MISSING, TEMPLATE_PATTERN, lookup_path, to_plain

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


async def handle_input(fields: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    """Handle input node execution.

    Copies every declared variable from the invocation input to the top level
    of the scope. A variable missing from the input takes its default, or None.

    Returns:
        Mapping of variable name to the value set
    """
    input_data = context.vars.get("input") or {}
    # Callers sometimes wrap the payload as {"input": {...}}
    if isinstance(input_data.get("input"), dict):
        input_data = input_data["input"]

    values = {}
    for variable in fields.get("variables") or []:
        name = variable["name"] if isinstance(variable, dict) else str(variable)
        if name in input_data:
            value = input_data[name]
        elif isinstance(variable, dict) and variable.get("default") is not None:
            value = variable["default"]
        else:
            value = None
        context.vars[name] = value
        values[name] = value

    logger.debug("Input variables set", execution_id=context.execution_id,
                 variables=list(values))
    return values


def _check_rule(rule: Dict[str, Any], value: Any) -> List[str]:
    """Apply one validation rule to a value, returning error messages."""
    errors = []

    if rule.get("required") and (value is None or value == ""):
        errors.append("Field is required")
        return errors

    if value is None:
        return errors

    expected = rule.get("type")
    match expected:
        case "number":
            if isinstance(value, bool):
                errors.append("Expected number")
            elif isinstance(value, str):
                try:
                    float(value)
                except ValueError:
                    errors.append("Expected number")
            elif not isinstance(value, (int, float)):
                errors.append("Expected number")
        case "string":
            if not isinstance(value, str):
                errors.append("Expected string")
        case "boolean":
            if not isinstance(value, bool):
                errors.append("Expected boolean")
        case "email":
            if not isinstance(value, str) or not EMAIL_PATTERN.match(value):
                errors.append("Expected email address")

    min_length = rule.get("minLength")
    max_length = rule.get("maxLength")
    if isinstance(value, (str, list)):
        if min_length is not None and len(value) < min_length:
            errors.append(f"Must be at least {min_length} characters")
        if max_length is not None and len(value) > max_length:
            errors.append(f"Must be at most {max_length} characters")

    return errors


async def handle_input_validation(fields: Dict[str, Any], context: ExecutionContext) -> bool:
    """Handle inputValidation node execution.

    Each rule's `field` is a variable path ("email", "input.email" or
    "{{input.email}}") looked up in the scope.

    Raises:
        HandlerError: "Input validation failed" with per-field error details.
    """
    scope = to_plain(context.vars)
    errors: Dict[str, List[str]] = {}

    for rule in fields.get("rules") or []:
        path = rule.get("field", "")
        template = TEMPLATE_PATTERN.fullmatch(path.strip())
        if template:
            path = template.group(1).strip()
        value = lookup_path(scope, path) if path else None
        if value is MISSING:
            value = None

        rule_errors = _check_rule(rule, value)
        if rule_errors:
            errors.setdefault(rule.get("field", path), []).extend(rule_errors)

    if errors:
        logger.info("Input validation failed", execution_id=context.execution_id,
                    fields=list(errors))
        raise HandlerError("Input validation failed", details=errors)

    return True


async def handle_delay(fields: Dict[str, Any], context: ExecutionContext,
                       max_seconds: float) -> Dict[str, Any]:
    """Handle delay node execution.

    Suspends only this execution. The wait ends early when the run is cancelled.
    """
    try:
        seconds = float(fields.get("seconds") or 0)
    except (TypeError, ValueError) as e:
        raise HandlerError(f"Invalid delay seconds: {fields.get('seconds')!r}") from e
    seconds = max(0.0, min(seconds, max_seconds))

    start_time = time.time()
    cancelled = False
    if context.cancel_event is not None:
        try:
            await asyncio.wait_for(context.cancel_event.wait(), timeout=seconds)
            cancelled = True
        except asyncio.TimeoutError:
            pass
    else:
        await asyncio.sleep(seconds)

    waited = round(time.time() - start_time, 3)
    logger.debug("Delay finished", execution_id=context.execution_id,
                 requested=seconds, waited=waited, cancelled=cancelled)
    return {"seconds": seconds, "waited": waited, "cancelled": cancelled}


async def handle_response(fields: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    """Handle response node execution.

    Returns:
        {"status": int, "body": resolved body}
    """
    status = fields.get("status", 200)
    try:
        status = int(status)
    except (TypeError, ValueError) as e:
        raise HandlerError(f"Invalid response status: {status!r}") from e

    return {"status": status, "body": fields.get("body", {})}
