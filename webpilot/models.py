"""
Data models shared by the planner, executor, memory and orchestrator.

Everything here round-trips through JSON because the orchestrator checkpoints
after every transition. Field aliases match the camelCase keys the model is
asked to emit (goalCompleted, updatedGoalStack, nextAction.action).
"""

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Action kinds that are expected to change page state
MUTATING_KINDS = frozenset({"click", "fill", "navigate", "submit"})

# Action kinds after which the executor waits for the DOM to settle
STABILIZING_KINDS = frozenset({"click", "navigate", "fill", "select"})

# Kinds that end a tool loop rather than acting on the page
FINISHING_KINDS = frozenset({"finish", "FINISH"})

CREATE_SCRIPT_KIND = "create_script"
LOOP_DETECTED_KIND = "SYSTEM_LOOP_DETECTED"

PAGE_CHANGED = "PAGE_CHANGED"
PAGE_SAME = "PAGE_SAME"

StepResultTag = Literal["changed", "same", "failed", "unknown"]
SessionStatus = Literal["running", "completed", "failed", "stopped", "abandoned"]


class NextAction(BaseModel):
    """A single proposed action. `kind` is sent by the model as "action"."""

    model_config = ConfigDict(populate_by_name=True)

    kind: str = Field(alias="action")
    target: Optional[str] = None
    value: Optional[str] = None
    description: str = ""

    @field_validator("target", "value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return v if isinstance(v, str) else str(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v: Any) -> str:
        return "" if v is None else str(v)

    def signature(self) -> str:
        return f"{self.kind}:{self.target}"


class ActionPlan(BaseModel):
    """The model's proposal for the next step."""

    model_config = ConfigDict(populate_by_name=True)

    thinking: str = ""
    goal_completed: bool = Field(default=False, alias="goalCompleted")
    updated_goal_stack: List[str] = Field(default_factory=list, alias="updatedGoalStack")
    next_action: Optional[NextAction] = Field(default=None, alias="nextAction")
    confidence: float = 0.5
    parse_error: Optional[str] = None

    @field_validator("thinking", mode="before")
    @classmethod
    def _thinking(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("updated_goal_stack", mode="before")
    @classmethod
    def _goal_stack(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(g) for g in v if g is not None and str(g).strip()]

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, value))

    @field_validator("next_action", mode="before")
    @classmethod
    def _empty_action(cls, v: Any) -> Any:
        # {"action": null, ...} is how models spell "no action"
        if isinstance(v, dict) and not (v.get("action") or v.get("kind")):
            return None
        return v

    @model_validator(mode="after")
    def _completed_has_no_action(self) -> "ActionPlan":
        if self.goal_completed:
            self.next_action = None
        return self


class HistoryEntry(BaseModel):
    """One line of the agent's action history."""

    thought: str = ""
    action: Optional[NextAction] = None
    note: Optional[str] = None
    success: Optional[bool] = None
    state_change: Optional[str] = None
    error: Optional[str] = None
    system: bool = False
    compressed_count: Optional[int] = None

    @property
    def kind(self) -> Optional[str]:
        return self.action.kind if self.action else None


class Step(BaseModel):
    index: int
    kind: str
    target: Optional[str] = None
    value: Optional[str] = None
    description: str = ""
    result: StepResultTag = "unknown"
    success: Optional[bool] = None
    error: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class Milestone(BaseModel):
    label: str
    step_index: int
    timestamp: float = Field(default_factory=time.time)


class Observation(BaseModel):
    text: str
    timestamp: float = Field(default_factory=time.time)


class Session(BaseModel):
    id: str
    goal: str
    started_at: float
    ended_at: Optional[float] = None
    status: SessionStatus = "running"
    surface_id: Optional[str] = None
    url: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)
    goal_stack: List[str] = Field(default_factory=list)
    milestones: List[Milestone] = Field(default_factory=list)
    observations: List[Observation] = Field(default_factory=list)
    last_page_hash: Optional[str] = None


class SessionContext(BaseModel):
    """The bounded slice of a session that is fed back into the planner prompt."""

    goal: str = "Unknown"
    goal_stack: List[str] = Field(default_factory=list)
    milestones: List[Milestone] = Field(default_factory=list)
    recent_steps: List[Step] = Field(default_factory=list)
    observations: List[Observation] = Field(default_factory=list)
    step_count: int = 0
    url: Optional[str] = None
    started_at: Optional[float] = None


class StepResult(BaseModel):
    success: bool = False
    error: Optional[str] = None
    caused_navigation_hint: bool = False
    verified: Optional[bool] = None
    executed_at: float = Field(default_factory=time.time)


class PageSnapshot(BaseModel):
    url: str = ""
    title: str = ""
    text: str = ""
    dom_tree: str = ""
    interactive_elements: List[Dict[str, Any]] = Field(default_factory=list)
    content_hash: Optional[str] = None
    restricted: bool = False

    def looks_empty(self) -> bool:
        inputs = [e for e in self.interactive_elements if e.get("role") == "input"]
        return not inputs and len(self.interactive_elements) < 2


class SafetyReport(BaseModel):
    safe: bool
    warnings: List[str] = Field(default_factory=list)


class GeneratedScript(BaseModel):
    id: str
    name: str
    matches: str
    enabled: bool = True
    created_at: float = Field(default_factory=time.time)
    blocked_reason: Optional[str] = None
    explanation: str = ""


class SurfaceEvent(BaseModel):
    """Inbound message for the orchestrator: page events, wake-ups, control messages."""

    kind: Literal["page_loaded", "surface_closed", "wakeup", "message"]
    surface_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
