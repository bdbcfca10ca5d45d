"""
UI notifications

Best-effort messages to whatever renders the agent's status for a surface
(an overlay, a console). Delivery failures are logged and never interrupt
the task.
"""

from typing import Any, Dict, Optional

from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

UPDATE_OVERLAY = "UPDATE_OVERLAY"
SHOW_CONFIRM = "SHOW_CONFIRM"
THINKING_UPDATE = "AI_THINKING_UPDATE"
THINKING_DONE = "AI_THINKING_DONE"


class Notifier:
    """Base notifier. Subclasses override `deliver`; this one only logs."""

    def deliver(self, surface_id: Optional[str], message: Dict[str, Any]) -> None:
        logger.debug(f"[NOTIFY] {surface_id}: {message}")

    def notify(self, surface_id: Optional[str], message: Dict[str, Any]) -> None:
        try:
            self.deliver(surface_id, message)
        except Exception as e:
            logger.warning(f"[NOTIFY] Could not deliver {message.get('type')} to {surface_id}: {e}")

    def update_overlay(self, surface_id: Optional[str], text: str) -> None:
        self.notify(surface_id, {"type": UPDATE_OVERLAY, "text": text})

    def show_confirm(self, surface_id: Optional[str], text: str) -> None:
        self.notify(surface_id, {"type": SHOW_CONFIRM, "text": text})

    def thinking_update(self, surface_id: Optional[str], content: str) -> None:
        self.notify(surface_id, {"type": THINKING_UPDATE, "content": content})

    def thinking_done(self, surface_id: Optional[str]) -> None:
        self.notify(surface_id, {"type": THINKING_DONE})
