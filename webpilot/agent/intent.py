"""
Intent routing: should a request be handled by the step-by-step agent or by
a generated page script?
"""

from typing import Optional

from webpilot.agent.parsing import extract_json_object
from webpilot.agent.prompts import build_intent_prompt
from webpilot.errors import AgentError
from webpilot.services.llm import ModelService
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

AGENT = "AGENT"
SCRIPT = "SCRIPT"
AUTO = "AUTO"
MODES = (AUTO, AGENT, SCRIPT)


async def determine_intent(model: ModelService, user_prompt: str) -> str:
    """Classify a prompt as AGENT or SCRIPT. Any failure falls back to AGENT."""
    try:
        response = await model.complete(build_intent_prompt(user_prompt), json_mode=True)
    except AgentError as e:
        logger.error(f"[INTENT] Intent check failed, defaulting to AGENT: {e}")
        return AGENT

    data = extract_json_object(response)
    if data is None:
        logger.error("[INTENT] No JSON found in response, defaulting to AGENT")
        return AGENT

    intent = str(data.get("intent") or AGENT).upper()
    if intent not in (AGENT, SCRIPT):
        return AGENT
    logger.info(f"[INTENT] {intent}: {data.get('reason', '')}")
    return intent


async def resolve_mode(model: ModelService, user_prompt: str, mode: Optional[str]) -> str:
    """Explicit AGENT/SCRIPT wins; AUTO (or nothing) asks the model."""
    mode = (mode or AUTO).upper()
    if mode in (AGENT, SCRIPT):
        logger.info(f"[INTENT] User selected mode: {mode}")
        return mode
    return await determine_intent(model, user_prompt)
