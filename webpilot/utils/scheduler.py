"""
Durable wake-ups

A wake-up is a named one-shot timer. Its due time is persisted so that a
process started after a restart can re-arm it with restore(). When a wake-up
fires it is removed from the store and delivered to the orchestrator as a
SurfaceEvent(kind="wakeup").
"""

import asyncio
import time
from typing import Callable, Dict

from webpilot.models import SurfaceEvent
from webpilot.utils.logging import get_logger
from webpilot.utils.store import StateStore

logger = get_logger(__name__)

WAKEUPS_KEY = "wakeups"


class WakeupScheduler:
    """Persisted named timers delivered through a callback."""

    def __init__(
        self,
        store: StateStore,
        post: Callable[[SurfaceEvent], None],
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.post = post
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    def _load(self) -> Dict[str, float]:
        return dict(self.store.get(WAKEUPS_KEY) or {})

    def _save(self, wakeups: Dict[str, float]) -> None:
        self.store.set(WAKEUPS_KEY, wakeups)

    def pending(self) -> Dict[str, float]:
        """Persisted wake-ups as name -> due time (epoch seconds)."""
        return self._load()

    def schedule(self, name: str, delay: float) -> float:
        """
        Arm (or re-arm) a wake-up. Scheduling a name that is already pending
        replaces it.

        Returns:
            The due time
        """
        due_at = self.clock() + max(0.0, delay)
        wakeups = self._load()
        wakeups[name] = due_at
        self._save(wakeups)
        self._arm(name, due_at)
        logger.debug(f"[SCHEDULER] {name} in {delay:.1f}s")
        return due_at

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task and not task.done():
            task.cancel()
        wakeups = self._load()
        if wakeups.pop(name, None) is not None:
            self._save(wakeups)

    def clear_all(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._save({})

    def restore(self) -> int:
        """Re-arm every persisted wake-up. Overdue ones fire immediately."""
        wakeups = self._load()
        for name, due_at in wakeups.items():
            self._arm(name, due_at)
        if wakeups:
            logger.info(f"[SCHEDULER] Restored {len(wakeups)} wake-up(s): {', '.join(wakeups)}")
        return len(wakeups)

    def _arm(self, name: str, due_at: float) -> None:
        old = self._tasks.pop(name, None)
        if old and not old.done():
            old.cancel()
        self._tasks[name] = asyncio.get_running_loop().create_task(self._fire_at(name, due_at))

    async def _fire_at(self, name: str, due_at: float) -> None:
        await asyncio.sleep(max(0.0, due_at - self.clock()))

        wakeups = self._load()
        if wakeups.get(name) != due_at:
            # Replaced or cancelled by another process since this timer was armed
            return
        del wakeups[name]
        self._save(wakeups)
        self._tasks.pop(name, None)

        logger.info(f"[SCHEDULER] Wake-up fired: {name}")
        self.post(SurfaceEvent(kind="wakeup", payload={"name": name}))

    async def close(self) -> None:
        """Cancel in-process timers without touching the persisted record."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
