#!/usr/bin/env python3
"""
webpilot - Console Edition

Drives one Playwright page with the step-by-step agent (or generates a page
script), showing every status update, model thought and confirmation prompt
in the console.

Usage:
    webpilot                                        # Interactive mode
    webpilot "your task here" --url https://...     # Single task, then interactive
    webpilot "hide the sidebar" --mode SCRIPT       # Generate a page script
"""

import argparse
import asyncio
import time
from typing import Any, Dict, List, Optional

from webpilot.agent.intent import MODES
from webpilot.config import AgentConfig
from webpilot.errors import AgentError
from webpilot.graph.state import TERMINAL_PHASES
from webpilot.orchestrator import Orchestrator
from webpilot.services.llm import ModelService, create_llm
from webpilot.services.notifier import SHOW_CONFIRM, THINKING_DONE, THINKING_UPDATE, UPDATE_OVERLAY, Notifier
from webpilot.tools.page_probe import PlaywrightPageProbe
from webpilot.utils.logging import get_logger
from webpilot.utils.store import StateStore

logger = get_logger(__name__)

BROWSER_STATE_KEY = "browserState"
POLL_INTERVAL = 0.5


class ConsoleAgentObserver(Notifier):
    """Renders notifier messages in the console."""

    def __init__(self):
        self.last_status: Optional[str] = None
        self.last_thinking = ""
        self.thought_count = 0

    def log_separator(self, title: str = "", char: str = "=", length: int = 80):
        """Log a visual separator."""
        if title:
            side_len = (length - len(title) - 2) // 2
            separator = char * side_len + f" {title} " + char * side_len
            if len(separator) < length:
                separator += char
        else:
            separator = char * length
        logger.info(separator)

    def deliver(self, surface_id: Optional[str], message: Dict[str, Any]) -> None:
        msg_type = message.get("type")

        if msg_type == UPDATE_OVERLAY:
            text = message.get("text", "")
            if text != self.last_status:
                self.last_status = text
                logger.info(f"[STATUS] {text}")
        elif msg_type == THINKING_UPDATE:
            self.last_thinking = message.get("content", "")
        elif msg_type == THINKING_DONE:
            if self.last_thinking:
                self.thought_count += 1
                preview = self.last_thinking
                if len(preview) > 500:
                    preview = preview[:500] + "..."
                self.log_separator(f"[BRAIN] MODEL RESPONSE #{self.thought_count}", "-")
                logger.info(f"   {preview}")
            self.last_thinking = ""
        elif msg_type == SHOW_CONFIRM:
            logger.warning("=" * 60)
            logger.warning(f"⚠️  CONFIRMATION REQUIRED: {message.get('text', '')}")
            logger.warning("=" * 60)
        else:
            logger.debug(f"[NOTIFY] {surface_id}: {message}")

    def log_task_completion(self, state: Dict[str, Any], duration: float):
        """Log task completion."""
        phase = state.get("phase", "unknown")
        self.log_separator(f"TASK {phase.upper()}", "=")
        logger.info(f"[RESULT] {state.get('step_info', '')}")
        if state.get("last_error"):
            logger.info(f"[ERROR] {state['last_error']}")
        logger.info(f"[DURATION] {duration:.2f}s")
        logger.info(f"[STEPS] {state.get('step_count', 0)}")


class WebPilotConsole:
    """Console front end: owns the browser, the store and the orchestrator."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.observer = ConsoleAgentObserver()
        self.store = StateStore(config.state_dir, config.encryption_key)
        self.probe = PlaywrightPageProbe()
        self.orchestrator: Optional[Orchestrator] = None
        self.surface_id: Optional[str] = None

        self._playwright = None
        self.browser = None
        self.context = None
        self.page = None
        self._runner: Optional[asyncio.Task] = None

    def initialize_model(self) -> ModelService:
        """Initialize the model service."""
        logger.info("[INIT] Initializing Language Model...")
        llm = create_llm(self.config)
        return ModelService(llm, min_interval=self.config.api_min_interval)

    async def initialize_browser(self, url: Optional[str] = None):
        """Launch Chromium, restoring cookies/localStorage saved by the previous run."""
        logger.info("[BROWSER] Initializing Playwright browser...")
        from playwright.async_api import async_playwright

        logger.info(f"[HEADLESS] {self.config.headless}")
        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=["--start-maximized"] if not self.config.headless else [],
        )

        context_options: Dict[str, Any] = {"viewport": {"width": 1920, "height": 1080}}
        storage_state = self.store.get(BROWSER_STATE_KEY)
        if storage_state:
            context_options["storage_state"] = storage_state
            logger.info("📁 Loaded saved browser state")

        self.context = await self.browser.new_context(**context_options)
        self.page = await self.context.new_page()
        self.surface_id = self.probe.register(self.page)

        if url:
            logger.info(f"[BROWSER] Opening {url}")
            await self.page.goto(url, wait_until="domcontentloaded")

        logger.info(f"[SUCCESS] Browser initialized, controlling {self.surface_id}")

    async def save_browser_state(self):
        if not self.context:
            return
        try:
            self.store.set(BROWSER_STATE_KEY, await self.context.storage_state())
            logger.info("💾 Browser state saved")
        except Exception as e:
            logger.warning(f"[BROWSER] Could not save browser state: {e}")

    async def ask_confirmation(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            answer = await loop.run_in_executor(None, input, "Switch to script mode? (yes/no): ")
        except (EOFError, KeyboardInterrupt):
            return False
        return answer.strip().lower() in ("yes", "y")

    async def run_task(self, goal: str, mode: str = "AUTO") -> Dict[str, Any]:
        """Run one task to a terminal state, answering confirmation prompts on the console."""
        task_start_time = time.time()
        self.observer.log_separator(f"TASK: {goal[:50]}{'...' if len(goal) > 50 else ''}", "=")

        response = await self.orchestrator.handle_message(
            {"type": "SMART_START", "surface_id": self.surface_id, "goal": goal, "mode": mode}
        )
        if response.get("mode") != "AGENT":
            if response.get("status") == "ok":
                script = response["script"]
                logger.info(f"[SCRIPT] Saved {script['name']!r} for {script['matches']}")
            else:
                logger.error(f"[SCRIPT] {response.get('error')}")
            return response
        if response.get("status") != "started":
            logger.error(f"[ERROR] {response.get('error')}")
            return response

        try:
            while True:
                state = self.orchestrator.load_state()
                if state.get("waiting_for_confirmation"):
                    approved = await self.ask_confirmation()
                    await self.orchestrator.handle_message({"type": "CONFIRM_RESULT", "result": approved})
                    continue
                if not state.get("active") and state.get("phase") in TERMINAL_PHASES:
                    break
                await asyncio.sleep(POLL_INTERVAL)
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("[INTERRUPT] Stopping task")
            self.orchestrator.stop_task()
            raise

        await self.orchestrator.wait_idle()
        state = self.orchestrator.load_state()
        self.observer.log_task_completion(state, time.time() - task_start_time)
        await self.save_browser_state()
        return state

    async def interactive_mode(self, mode: str):
        """Read tasks from the console until exit."""
        logger.info("[INTERACTIVE] ENTERING INTERACTIVE MODE")
        logger.info("[HELP] Enter your web automation tasks below ('exit' to quit)")
        self.observer.log_separator("READY FOR COMMANDS", "-")

        loop = asyncio.get_running_loop()
        while True:
            try:
                user_input = (await loop.run_in_executor(None, input, "\n[TASK] Your task: ")).strip()
            except (EOFError, KeyboardInterrupt):
                logger.info("\n[INTERRUPT] Interrupted by user")
                break
            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                logger.info("[EXIT] Goodbye!")
                break
            try:
                await self.run_task(user_input, mode)
            except AgentError as e:
                logger.error(f"[ERROR] {e}")

    async def cleanup(self):
        """Clean up resources."""
        logger.info("[CLEANUP] Cleaning up resources...")
        if self.orchestrator:
            await self.orchestrator.close()
        if self._runner:
            await asyncio.gather(self._runner, return_exceptions=True)
        await self.save_browser_state()
        for resource in (self.context, self.browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.debug(f"[CLEANUP] {e}")
        if self._playwright:
            await self._playwright.stop()
        logger.info("[SUCCESS] Cleanup completed")

    async def run(
        self,
        task: Optional[str] = None,
        url: Optional[str] = None,
        mode: str = "AUTO",
        memory: Optional[Dict[str, str]] = None,
    ):
        """Main run method."""
        try:
            model = self.initialize_model()
            await self.initialize_browser(url)
            self.orchestrator = Orchestrator(self.config, self.store, self.probe, model, self.observer)
            if memory:
                values = self.orchestrator.load_user_memory()
                values.update(memory)
                self.orchestrator.set_user_memory(values)

            # A task from a previous run cannot continue on this fresh page
            self.orchestrator.stop_task()
            self._runner = asyncio.create_task(self.orchestrator.run())

            if task:
                await self.run_task(task, mode)
            await self.interactive_mode(mode)
        except KeyboardInterrupt:
            logger.info("\n[INTERRUPT] Interrupted by user")
        except AgentError as e:
            logger.error(f"[ERROR] Fatal error: {e}")
        finally:
            await self.cleanup()


def parse_memory(pairs: List[str]) -> Dict[str, str]:
    """KEY=VALUE pairs to a dict."""
    values = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
        values[key.strip()] = value
    return values


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="webpilot - LLM-driven browser automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  webpilot                                                 # Interactive mode
  webpilot "Search for laptops" --url https://example.com
  webpilot "Always hide the cookie banner" --mode SCRIPT
  webpilot "Fill in the signup form" --memory email=me@example.com
        """,
    )
    parser.add_argument("task", nargs="?", help="Task to execute (if not provided, enters interactive mode)")
    parser.add_argument("--url", help="Page to open before the first task")
    parser.add_argument("--mode", default="AUTO", type=str.upper, choices=MODES, help="Routing mode")
    parser.add_argument(
        "--memory",
        action="append",
        metavar="KEY=VALUE",
        help="Value the agent may use as {{memory.KEY}} (repeatable)",
    )
    args = parser.parse_args()

    try:
        memory = parse_memory(args.memory)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    console = WebPilotConsole(AgentConfig.from_env())
    asyncio.run(console.run(args.task, args.url, args.mode, memory))


if __name__ == "__main__":
    main()
