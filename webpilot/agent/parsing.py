"""
Tolerant JSON extraction from model output

Models wrap JSON in prose and code fences, so the response is scanned for the
first balanced {...} object that decodes, and that object is then validated
strictly against the pydantic schema.
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from webpilot.errors import PlanParseError
from webpilot.models import ActionPlan
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

_FENCE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.S)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE.search(text or "")
    return match.group(1) if match else (text or "")


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the brace matching text[start], skipping braces inside strings."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Find the first balanced JSON object in free text.

    Fenced blocks are tried first. Candidates that are balanced but do not
    decode are skipped.

    Returns:
        The decoded dict, or None when the text holds no usable object
    """
    for source in (strip_code_fences(text), text or ""):
        pos = source.find("{")
        while pos != -1:
            end = _balanced_end(source, pos)
            if end is None:
                break
            try:
                value = json.loads(source[pos:end])
            except ValueError:
                value = None
            if isinstance(value, dict):
                return value
            pos = source.find("{", pos + 1)
    return None


def parse_json_object(text: str) -> Dict[str, Any]:
    data = extract_json_object(text)
    if data is None:
        raise PlanParseError("No JSON object found in model response")
    return data


def parse_plan(text: str) -> ActionPlan:
    """
    Parse a planner response into an ActionPlan.

    Raises:
        PlanParseError: no JSON, invalid shape, or an unfinished plan with no next action
    """
    data = parse_json_object(text)
    try:
        plan = ActionPlan.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise PlanParseError(f"Invalid plan shape at '{location}': {first.get('msg')}") from e

    if not plan.goal_completed and plan.next_action is None:
        raise PlanParseError("Plan is not complete but has no nextAction")
    return plan


def degraded_plan(reason: str) -> ActionPlan:
    """The plan returned in place of an unparseable response."""
    return ActionPlan(
        thinking=f"[System] Could not parse model response: {reason}",
        goal_completed=False,
        next_action=None,
        confidence=0.0,
        parse_error=reason,
    )
