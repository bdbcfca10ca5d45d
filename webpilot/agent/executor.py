"""
Step executor

Applies one planned action to a page through the PageProbe, then waits for
the page to settle. Fills are read back and retried once on mismatch.
Failures become a failed StepResult so the planner can see them; only a
closed surface propagates.
"""

import asyncio
import re
from typing import Any, Dict, Optional

from webpilot.config import AgentConfig
from webpilot.errors import ActionNotFoundError, NavigationTimeout, ProbeError, SurfaceGoneError
from webpilot.models import STABILIZING_KINDS, NextAction, StepResult
from webpilot.tools.page_probe import PageProbe, navigation_url
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER = re.compile(r"\{\{memory\.(\w+)\}\}")

PRIMITIVE_KINDS = frozenset({"navigate", "fill", "click", "scroll", "select"})


def resolve_placeholders(action: NextAction, user_memory: Optional[Dict[str, Any]]) -> NextAction:
    """Replace {{memory.<key>}} tokens in the value. Unknown keys are left as they are."""
    if not action.value or not user_memory:
        return action

    def lookup(match: re.Match) -> str:
        value = user_memory.get(match.group(1))
        return str(value) if value else match.group(0)

    return action.model_copy(update={"value": PLACEHOLDER.sub(lookup, action.value)})


def parse_wait_ms(value: Optional[str], default: int = 1000) -> int:
    """Leading integer of the value, e.g. "2000", "1500ms". Default if none."""
    match = re.match(r"\s*(\d+)", value or "")
    return int(match.group(1)) if match else default


def values_match(current: str, expected: str) -> bool:
    """Substring match in either direction, to tolerate reformatting (e.g. phone numbers)."""
    if not current:
        return not expected
    return expected in current or current in expected


class Executor:
    """Runs one action at a time against a surface."""

    def __init__(self, probe: PageProbe, config: Optional[AgentConfig] = None):
        self.probe = probe
        self.config = config or AgentConfig()

    async def execute(
        self,
        surface_id: str,
        action: NextAction,
        user_memory: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """
        Execute one action.

        Args:
            surface_id: Target page
            action: The planned action
            user_memory: Values for {{memory.<key>}} placeholders

        Returns:
            StepResult; failures are reported, not raised

        Raises:
            SurfaceGoneError: the target page was closed
        """
        resolved = resolve_placeholders(action, user_memory)
        kind = resolved.kind
        result = StepResult()

        logger.info(f"[EXECUTOR] {kind} target={resolved.target!r} ({resolved.description})")

        try:
            if kind == "wait":
                await asyncio.sleep(parse_wait_ms(resolved.value, self.config.default_wait_ms) / 1000)
            elif kind not in PRIMITIVE_KINDS:
                raise ProbeError(f"Unknown action: {kind}")
            else:
                outcome = await self.probe.perform(surface_id, resolved)

                if kind == "navigate":
                    await self._wait_for_navigation(surface_id, navigation_url(resolved))
                elif kind == "fill":
                    result.verified = await self._verify_fill(surface_id, resolved)
                elif kind == "click":
                    result.caused_navigation_hint = bool(outcome.get("is_link"))
                elif kind == "scroll":
                    await asyncio.sleep(self.config.scroll_settle)

                if kind in STABILIZING_KINDS:
                    stable = await self.probe.wait_for_stability(
                        surface_id, self.config.stability_debounce, self.config.stability_timeout
                    )
                    if not stable:
                        logger.debug("[EXECUTOR] Stability wait timed out, proceeding")

            result.success = True

        except SurfaceGoneError:
            raise
        except NavigationTimeout as e:
            logger.warning(f"[EXECUTOR] {e}, proceeding")
            result.success = True
        except ActionNotFoundError as e:
            result.error = str(e)
            logger.warning(f"[EXECUTOR] {e}")
        except ProbeError as e:
            result.error = str(e)
            logger.error(f"[EXECUTOR] Step failed: {e}")

        return result

    async def _wait_for_navigation(self, surface_id: str, url: Optional[str]) -> None:
        loaded = await self.probe.wait_for_load(surface_id, self.config.navigation_timeout)
        if not loaded:
            # Soft: the loop proceeds and the next snapshot shows whatever loaded
            logger.warning(
                f"[EXECUTOR] No load event for {url} within {self.config.navigation_timeout}s, proceeding"
            )

    async def _verify_fill(self, surface_id: str, action: NextAction) -> bool:
        """Read the field back; on mismatch refill once. The retry is not re-checked."""
        expected = action.value or ""
        try:
            current = await self.probe.read_value(surface_id, action.target or "")
        except ActionNotFoundError:
            current = ""

        if values_match(current, expected):
            return True

        logger.warning(f"[EXECUTOR] Verify failed for {action.target} (got {current!r}), retrying once...")
        await self.probe.fill(surface_id, action.target or "", expected)
        return False
