"""
Model service

Thin wrapper around a LangChain chat model: JSON mode, optional streaming,
inter-call rate limiting, and translation of every failure into a
TransportError with API keys redacted.
"""

import asyncio
import re
import time
from typing import Callable, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from webpilot.config import AgentConfig
from webpilot.errors import TransportError
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are an automation assistant. Output pure JSON only."

_API_KEY_PATTERN = re.compile(r"sk-[A-Za-z0-9_-]+")


def redact(message: str) -> str:
    """Strip anything that looks like an API key from an error message."""
    return _API_KEY_PATTERN.sub("[API_KEY_REDACTED]", message or "")


def create_llm(config: AgentConfig) -> ChatOpenAI:
    """Build the chat model for an OpenAI-compatible endpoint (OpenRouter by default)."""
    if not config.llm_api_key:
        raise TransportError("API key not configured. Set LLM_API_KEY in your .env file")

    logger.info(f"[MODEL] {config.llm_model}")
    logger.info(f"[API] {config.llm_api_base}")

    return ChatOpenAI(
        model=config.llm_model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        api_key=config.llm_api_key,
        base_url=config.llm_api_base,
    )


class ModelService:
    """complete(prompt) -> text, for the planner, intent router and script generator."""

    def __init__(
        self,
        llm: BaseChatModel,
        min_interval: float = 0.5,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm
        self.min_interval = min_interval
        self.system_prompt = system_prompt
        self.clock = clock
        self.call_count = 0
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def _throttle(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                elapsed = self.clock() - self._last_call
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
            self._last_call = self.clock()

    async def complete(
        self,
        prompt: str,
        json_mode: bool = True,
        streaming: bool = False,
        on_token: Optional[Callable[[str], None]] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        """
        Send one prompt and return the model's text.

        Args:
            prompt: User message
            json_mode: Ask the endpoint for a JSON object response
            streaming: Stream tokens; on_token receives the accumulated text
            on_token: Progress callback for streaming
            system_prompt: Overrides the default system message

        Returns:
            The raw response text (not parsed)

        Raises:
            TransportError: the endpoint failed, rejected the request, or returned nothing
        """
        await self._throttle()
        self.call_count += 1

        messages = [
            SystemMessage(content=system_prompt or self.system_prompt),
            HumanMessage(content=prompt),
        ]
        runnable = self.llm.bind(response_format={"type": "json_object"}) if json_mode else self.llm

        try:
            if streaming:
                text = ""
                async for chunk in runnable.astream(messages):
                    piece = chunk.content if isinstance(chunk.content, str) else ""
                    if not piece:
                        continue
                    text += piece
                    if on_token:
                        on_token(text)
            else:
                response = await runnable.ainvoke(messages)
                text = response.content if isinstance(response.content, str) else str(response.content)
        except TransportError:
            raise
        except Exception as e:
            message = redact(str(e)) or type(e).__name__
            logger.error(f"[MODEL] Call #{self.call_count} failed: {message}")
            raise TransportError(message) from e

        if not text or not text.strip():
            raise TransportError("Invalid API response structure: empty content")

        logger.debug(f"[MODEL] Call #{self.call_count} returned {len(text)} chars")
        return text
