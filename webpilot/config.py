"""
Runtime configuration

Values come from the environment (a .env file is loaded first). Every limit and
timeout the orchestrator, planner and executor use lives here so tests can
shrink them.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


class AgentConfig(BaseModel):
    """All tunables for one agent process."""

    # Model service
    llm_api_key: Optional[str] = None
    llm_model: str = "google/gemini-2.0-flash-001"
    llm_api_base: str = "https://openrouter.ai/api/v1"
    temperature: float = 0.2
    max_tokens: int = 2000
    streaming: bool = True
    api_min_interval: float = 0.5  # seconds between model calls

    # Persistence
    state_dir: str = "state"
    encryption_key: Optional[str] = None

    # Guardrails
    max_steps: int = 50
    history_soft_cap: int = 30
    history_keep: int = 20
    context_window: int = 15
    loop_window: int = 3
    max_sessions: int = 10
    max_observations: int = 20

    # Executor timing (seconds)
    stability_debounce: float = 0.5
    stability_timeout: float = 2.0
    navigation_timeout: float = 15.0
    scroll_settle: float = 0.3
    default_wait_ms: int = 1000

    # Orchestrator wake-ups (seconds)
    next_step_delay: float = 1.0
    page_load_continue_delay: float = 1.0
    click_navigation_timeout: float = 9.0
    click_settle_timeout: float = 2.0
    retry_delay: float = 2.0
    empty_snapshot_retry_delay: float = 2.0
    confirmation_timeout: Optional[float] = Field(default=300.0)

    # Script generation
    script_max_turns: int = 50
    script_history_chars: int = 12000

    # Browser
    headless: bool = False

    @classmethod
    def from_env(cls) -> "AgentConfig":
        confirmation = os.getenv("CONFIRMATION_TIMEOUT", "300")
        return cls(
            llm_api_key=os.getenv("LLM_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", cls.model_fields["llm_model"].default),
            llm_api_base=os.getenv("LLM_API_BASE_URL", cls.model_fields["llm_api_base"].default),
            streaming=_env_bool("LLM_STREAMING", "true"),
            state_dir=os.getenv("WEBPILOT_STATE_DIR", "state"),
            encryption_key=os.getenv("ENCRYPTION_KEY"),
            max_steps=int(os.getenv("MAX_STEPS", "50")),
            navigation_timeout=_env_float("NAVIGATION_TIMEOUT", 15.0),
            stability_timeout=_env_float("STABILITY_TIMEOUT", 2.0),
            # "none" disables the confirmation timeout entirely
            confirmation_timeout=None if confirmation.lower() == "none" else float(confirmation),
            headless=_env_bool("BROWSER_HEADLESS"),
        )
