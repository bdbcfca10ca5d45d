"""
Error taxonomy for the agent.

Fatal errors end the task, recoverable ones are turned into history entries
so the model can see them on the next turn.
"""


class AgentError(Exception):
    """Base class for every error raised by webpilot."""


class TransportError(AgentError):
    """Model service unreachable, rejected the request, or sent a malformed envelope."""


class PlanParseError(AgentError):
    """Model output without a usable JSON plan."""


class ProbeError(AgentError):
    """A page operation failed for a reason other than a missing element."""


class ActionNotFoundError(ProbeError):
    """The action's target element is not on the page."""

    def __init__(self, target: str):
        super().__init__(f"Element not found: {target}")
        self.target = target


class SurfaceGoneError(ProbeError):
    """The controlled page/tab was closed."""

    def __init__(self, surface_id: str):
        super().__init__(f"Surface {surface_id} is gone")
        self.surface_id = surface_id


class NavigationTimeout(AgentError):
    """The page did not report load completion in time. Treated as a warning."""


class GuardViolation(AgentError):
    """A supervisory guard rejected the model's proposal."""


class StepLimitExceeded(AgentError):
    """The task ran more steps than allowed."""


class ScriptGenerationError(AgentError):
    """The script-generation loop finished without code."""


class UnsafeScriptError(AgentError):
    """Generated code matched the safety blocklist and was not executed."""

    def __init__(self, warnings):
        super().__init__(f"Code blocked for safety: {warnings[0] if warnings else 'unknown'}")
        self.warnings = list(warnings)
