"""
Script generation

An interactive tool loop in which the model explores the page (SEARCH_TEXT,
INSPECT_SELECTOR) before submitting a user script (FINISH). Generated scripts
are stored as metadata in `userScripts` plus the code under `ujs_<id>`, are
checked by the safety validator, and are injected only when safe. Enabled
scripts are re-injected whenever a matching page loads.
"""

import json
import re
import time
import uuid
from typing import Any, Dict, List, Optional, Pattern

from webpilot.agent.parsing import extract_json_object
from webpilot.agent.planner import LoopDetector
from webpilot.agent.prompts import build_force_finish_prompt, build_script_prompt
from webpilot.config import AgentConfig
from webpilot.errors import ProbeError, ScriptGenerationError, SurfaceGoneError, UnsafeScriptError
from webpilot.models import GeneratedScript
from webpilot.services.llm import ModelService
from webpilot.services.safety import PatternSafetyValidator
from webpilot.tools.page_probe import PageProbe
from webpilot.utils.logging import get_logger
from webpilot.utils.store import StateStore

logger = get_logger(__name__)

USER_SCRIPTS_KEY = "userScripts"
MAX_PATTERN_LENGTH = 500

SEARCH_TEXT = "SEARCH_TEXT"
INSPECT_SELECTOR = "INSPECT_SELECTOR"
FINISH = "FINISH"

_PLACEHOLDER_URLS = {"", "URL", "Current URL"}


def code_key(script_id: str) -> str:
    return f"ujs_{script_id}"


def create_match_regex(pattern: Optional[str]) -> Optional[Pattern]:
    """Glob-style URL pattern (only * is special) to an anchored regex. None if unusable."""
    if not pattern or not isinstance(pattern, str) or not pattern.strip():
        return None
    if len(pattern) > MAX_PATTERN_LENGTH:
        logger.warning("[SCRIPT] Match pattern too long, ignored")
        return None
    escaped = re.escape(pattern).replace(r"\*", ".*")
    return re.compile(f"^{escaped}$")


class ScriptLibrary:
    """Persisted user scripts."""

    def __init__(self, store: StateStore):
        self.store = store

    def list_scripts(self) -> List[GeneratedScript]:
        return [GeneratedScript.model_validate(s) for s in self.store.get(USER_SCRIPTS_KEY) or []]

    def get_code(self, script_id: str) -> Optional[str]:
        return self.store.get(code_key(script_id))

    def save(self, code: str, explanation: str, url: str) -> GeneratedScript:
        script = GeneratedScript(
            id=str(uuid.uuid4()),
            name=(explanation or "")[:20] or "AI Script",
            matches=url.split("?")[0] + "*",
            enabled=True,
            created_at=time.time(),
            explanation=explanation or "",
        )
        scripts = self.list_scripts()
        scripts.append(script)
        self.store.set(code_key(script.id), code)
        self._write(scripts)
        logger.info(f"[SCRIPT] Saved script {script.id} ({script.name!r}, matches {script.matches})")
        return script

    def block(self, script_id: str, reason: str) -> None:
        scripts = self.list_scripts()
        for script in scripts:
            if script.id == script_id:
                script.enabled = False
                script.blocked_reason = reason
        self._write(scripts)

    def matching(self, url: str) -> List[GeneratedScript]:
        """Enabled scripts whose pattern matches url."""
        matched = []
        for script in self.list_scripts():
            if not script.enabled:
                continue
            regex = create_match_regex(script.matches)
            if regex and regex.match(url):
                matched.append(script)
        return matched

    def _write(self, scripts: List[GeneratedScript]) -> None:
        self.store.set(USER_SCRIPTS_KEY, [s.model_dump(mode="json") for s in scripts])


class ScriptGenerator:
    """Model-driven tool loop producing a page script."""

    def __init__(
        self,
        model: ModelService,
        probe: PageProbe,
        store: StateStore,
        validator: Optional[PatternSafetyValidator] = None,
        config: Optional[AgentConfig] = None,
    ):
        self.model = model
        self.probe = probe
        self.library = ScriptLibrary(store)
        self.validator = validator or PatternSafetyValidator()
        self.config = config or AgentConfig()

    def _truncate(self, history: List[Dict[str, str]]) -> None:
        """Replace ~20% of the earliest turns (after the first) with a marker once history gets long."""
        if sum(len(h["content"]) for h in history) <= self.config.script_history_chars:
            return
        remove = int(len(history) * 0.2)
        if remove > 0:
            history[1 : 1 + remove] = [
                {"role": "system", "content": f"[... Removed {remove} earlier steps to save memory ...]"}
            ]

    async def _resolve_url(self, surface_id: str, url: Optional[str]) -> str:
        if url and url not in _PLACEHOLDER_URLS:
            return url
        try:
            return await self.probe.current_url(surface_id) or "*"
        except ProbeError:
            return "*"

    async def _run_tool(self, surface_id: str, tool: str, arg: str, history: List[Dict[str, str]]) -> None:
        try:
            if tool == SEARCH_TEXT:
                result = await self.probe.search_text(surface_id, arg)
                history.append({"role": "assistant", "content": f'Tool: SEARCH_TEXT("{arg}")'})
                history.append(
                    {
                        "role": "system",
                        "content": f"Found {result.get('count', 0)} matches:\n"
                        + json.dumps(result.get("results", []), ensure_ascii=False)[:3000],
                    }
                )
            elif tool == INSPECT_SELECTOR:
                result = await self.probe.inspect_selector(surface_id, arg)
                history.append({"role": "assistant", "content": f'Tool: INSPECT_SELECTOR("{arg}")'})
                history.append(
                    {"role": "system", "content": f"Result: {json.dumps(result, ensure_ascii=False)[:1500]}"}
                )
            else:
                history.append(
                    {"role": "system", "content": "Error: Unknown tool. Use SEARCH_TEXT, INSPECT_SELECTOR, or FINISH."}
                )
        except SurfaceGoneError:
            raise
        except ProbeError as e:
            history.append({"role": "system", "content": f"Error: {tool} failed: {e}"})

    async def generate(
        self,
        surface_id: str,
        url: Optional[str],
        prompt: str,
        context_history: Optional[List[Dict[str, Any]]] = None,
    ) -> GeneratedScript:
        """
        Generate, store and (if safe) inject a script.

        Args:
            surface_id: Page to explore and inject into
            url: Page URL (resolved from the surface when missing)
            prompt: What the script should do
            context_history: Agent history to replicate (history-to-script conversion)

        Returns:
            The stored script metadata

        Raises:
            ScriptGenerationError: no code even after the forced finish
            UnsafeScriptError: code was stored disabled and not injected
            TransportError: the model service failed
        """
        url = await self._resolve_url(surface_id, url)

        title, text = "", ""
        try:
            snapshot = await self.probe.get_snapshot(surface_id)
            title, text = snapshot.title, snapshot.text
        except SurfaceGoneError:
            raise
        except ProbeError as e:
            logger.error(f"[SCRIPT] Page analysis failed: {e}")

        existing = [f"- {s.name} (Matches: {s.matches})" for s in self.library.list_scripts()]
        history: List[Dict[str, str]] = []
        detector = LoopDetector(self.config.loop_window)
        final_code, explanation = "", ""

        for turn in range(self.config.script_max_turns):
            logger.info(f"[SCRIPT] Turn {turn + 1}/{self.config.script_max_turns}")
            self._truncate(history)

            response = await self.model.complete(
                build_script_prompt(url, title, text, prompt, existing, context_history or [], history),
                json_mode=True,
            )
            action = extract_json_object(response)
            if action is None:
                history.append({"role": "system", "content": "Error: Invalid JSON format. Please try again."})
                continue

            tool = str(action.get("tool") or "").upper()
            arg = "" if action.get("arg") is None else str(action.get("arg"))

            if detector.record(f"{tool}:{arg}", finishing=tool == FINISH):
                logger.warning(f"[SCRIPT] Loop detected: {tool}:{arg}")
                history.append(
                    {
                        "role": "system",
                        "content": "WARNING: You are repeating the same action repeatedly. "
                        "Try a different query, or use FINISH if you are stuck.",
                    }
                )
                continue

            if tool == FINISH:
                final_code = action.get("code") or ""
                explanation = action.get("explanation") or ""
                break

            await self._run_tool(surface_id, tool, arg, history)

        if not final_code:
            logger.warning("[SCRIPT] Max turns reached. Forcing conclusion.")
            final_code, explanation = await self._force_finish(history)

        if not final_code:
            raise ScriptGenerationError("AI failed to generate code even after forced finish.")

        script = self.library.save(final_code, explanation, url)

        report = self.validator.validate(final_code)
        if not report.safe:
            self.library.block(script.id, "; ".join(report.warnings))
            logger.error(f"[SCRIPT] Code blocked due to safety issues: {report.warnings}")
            raise UnsafeScriptError(report.warnings)

        try:
            await self.probe.inject_script(surface_id, final_code)
        except ProbeError as e:
            logger.error(f"[SCRIPT] Immediate run failed: {e}")
        return script

    async def _force_finish(self, history: List[Dict[str, str]]):
        response = await self.model.complete(build_force_finish_prompt(history), json_mode=True)
        action = extract_json_object(response) or {}
        if str(action.get("tool") or "").upper() == FINISH and action.get("code"):
            return action["code"], action.get("explanation") or "Forced generation after timeout"
        logger.error("[SCRIPT] Force finish failed")
        return "", ""

    async def inject_matching(self, surface_id: str, url: str) -> int:
        """Inject every enabled script matching url. Returns how many were injected."""
        injected = 0
        for script in self.library.matching(url):
            code = self.library.get_code(script.id)
            if not code:
                continue
            if not self.validator.validate(code).safe:
                logger.warning(f"[SCRIPT] Skipping unsafe stored script {script.id}")
                continue
            try:
                await self.probe.inject_script(surface_id, code)
                injected += 1
            except ProbeError as e:
                logger.error(f"[SCRIPT] Injection of {script.id} failed: {e}")
        if injected:
            logger.info(f"[SCRIPT] Injected {injected} script(s) for {url}")
        return injected
