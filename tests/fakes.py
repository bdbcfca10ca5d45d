"""
In-memory stand-ins for the page probe, the model service and the notifier
"""

import json
from typing import Any, Dict, List, Optional

from webpilot.errors import ActionNotFoundError, ProbeError, SurfaceGoneError, TransportError
from webpilot.models import PageSnapshot
from webpilot.services.notifier import Notifier
from webpilot.tools.page_probe import PageProbe, hash_content, is_restricted_url

SURFACE = "tab-1"

DEFAULT_ELEMENTS = [
    {"id": "name", "tag": "input", "role": "input", "visual_label": "Name"},
    {"id": "email", "tag": "input", "role": "input", "visual_label": "Email"},
    {"id": "submit", "tag": "button", "role": "button", "text": "Submit"},
    {"id": "docs", "tag": "a", "role": "link", "text": "Docs"},
]


class FakeProbe(PageProbe):
    """A single scripted page. `version` bumps whenever an action changes the page."""

    def __init__(self, url: str = "https://example.com/form", elements: Optional[List[Dict[str, Any]]] = None):
        super().__init__()
        self.url = url
        self.title = "Example"
        self.text = "Example form"
        self.elements = list(DEFAULT_ELEMENTS if elements is None else elements)
        self.values: Dict[str, str] = {}
        self.version = 0
        self.closed = False
        self.snapshot_errors = 0
        self.empty_snapshots = 0
        self.click_changes_page = False
        self.fill_transform = None
        self.injected: List[str] = []
        self.calls: List[tuple] = []

    def _check(self, surface_id: str) -> None:
        if self.closed:
            raise SurfaceGoneError(surface_id)

    def _require(self, target: str) -> None:
        if target not in {e["id"] for e in self.elements}:
            raise ActionNotFoundError(target)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def get_snapshot(self, surface_id: str) -> PageSnapshot:
        self._check(surface_id)
        self.calls.append(("snapshot",))
        if self.snapshot_errors:
            self.snapshot_errors -= 1
            raise ProbeError("Execution context was destroyed")
        elements = self.elements
        if self.empty_snapshots:
            self.empty_snapshots -= 1
            elements = []
        dom_tree = "\n".join(f'<{e["tag"]} ai-id="{e["id"]}">' for e in elements)
        return PageSnapshot(
            url=self.url,
            title=self.title,
            text=self.text,
            dom_tree=dom_tree,
            interactive_elements=elements,
            content_hash=hash_content(self.url, str(self.version), self.text),
            restricted=is_restricted_url(self.url),
        )

    async def current_url(self, surface_id: str) -> str:
        self._check(surface_id)
        return self.url

    async def navigate(self, surface_id: str, url: str) -> None:
        self._check(surface_id)
        self.calls.append(("navigate", url))
        self.url = url
        self.version += 1

    async def wait_for_load(self, surface_id: str, timeout: float) -> bool:
        return True

    async def fill(self, surface_id: str, target: str, value: str) -> None:
        self._check(surface_id)
        self._require(target)
        self.calls.append(("fill", target, value))
        self.values[target] = self.fill_transform(value) if self.fill_transform else value
        self.version += 1

    async def read_value(self, surface_id: str, target: str) -> str:
        self._check(surface_id)
        self._require(target)
        return self.values.get(target, "")

    async def click(self, surface_id: str, target: str) -> bool:
        self._check(surface_id)
        self._require(target)
        self.calls.append(("click", target))
        if self.click_changes_page:
            self.version += 1
        return any(e["id"] == target and e.get("role") == "link" for e in self.elements)

    async def scroll(self, surface_id: str, target: Optional[str]) -> None:
        self._check(surface_id)
        self.calls.append(("scroll", target))

    async def select(self, surface_id: str, target: str, value: str) -> None:
        self._check(surface_id)
        self._require(target)
        self.calls.append(("select", target, value))

    async def wait_for_stability(self, surface_id: str, debounce: float, timeout: float) -> bool:
        self.calls.append(("stability",))
        return True

    async def search_text(self, surface_id: str, query: str) -> Dict[str, Any]:
        self.calls.append(("search_text", query))
        return {"count": 1, "results": [{"tag": "div", "className": "ad-banner", "text": query}]}

    async def inspect_selector(self, surface_id: str, selector: str) -> Dict[str, Any]:
        self.calls.append(("inspect_selector", selector))
        return {"found": True, "count": 1, "html": f'<div class="{selector}"></div>'}

    async def inject_script(self, surface_id: str, code: str) -> None:
        self._check(surface_id)
        self.injected.append(code)


class FakeModel:
    """Scripted ModelService: pops one response per call. Dicts are sent as JSON."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.prompts: List[str] = []

    async def complete(self, prompt, json_mode=True, streaming=False, on_token=None, system_prompt=None):
        self.prompts.append(prompt)
        if not self.responses:
            raise TransportError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        text = response if isinstance(response, str) else json.dumps(response)
        if on_token:
            on_token(text)
        return text


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages: List[tuple] = []

    def deliver(self, surface_id, message):
        self.messages.append((surface_id, message))

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for _, m in self.messages if m.get("type") == msg_type]


def plan(action=None, target=None, value=None, completed=False, stack=None, thinking="Next step", description=""):
    """A planner response as the model would send it."""
    return {
        "thinking": thinking,
        "updatedGoalStack": stack if stack is not None else [],
        "goalCompleted": completed,
        "nextAction": None
        if action is None
        else {"action": action, "target": target, "value": value, "description": description},
        "confidence": 0.8,
    }
