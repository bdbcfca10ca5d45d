"""
Session memory

Durable, bounded record of automation attempts. One session is active at a
time; it carries the goal stack, the full step log, milestones and recent
observations. Only a sliding window of it is fed back to the planner.
"""

import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from webpilot.models import Milestone, NextAction, Observation, Session, SessionContext, Step
from webpilot.utils.logging import get_logger
from webpilot.utils.store import StateStore

logger = get_logger(__name__)

SESSION_STORAGE_KEY = "sessionMemory"


class SessionMemory:
    """Sessions persisted as one `sessionMemory` record: {sessions, activeSessionId}."""

    def __init__(
        self,
        store: StateStore,
        max_sessions: int = 10,
        context_window: int = 15,
        max_observations: int = 20,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_sessions = max_sessions
        self.context_window = context_window
        self.max_observations = max_observations
        self.clock = clock

    # --- storage -------------------------------------------------------

    def _load(self) -> Tuple[Dict[str, Session], Optional[str]]:
        raw = self.store.get(SESSION_STORAGE_KEY) or {}
        sessions = {sid: Session.model_validate(s) for sid, s in (raw.get("sessions") or {}).items()}
        return sessions, raw.get("activeSessionId")

    def _save(self, sessions: Dict[str, Session], active_id: Optional[str]) -> None:
        self.store.set(
            SESSION_STORAGE_KEY,
            {
                "sessions": {sid: s.model_dump(mode="json") for sid, s in sessions.items()},
                "activeSessionId": active_id,
            },
        )

    def _update(self, session_id: str, mutate: Callable[[Session], None]) -> bool:
        sessions, active_id = self._load()
        session = sessions.get(session_id)
        if session is None:
            logger.warning(f"[MEMORY] Session not found: {session_id}")
            return False
        if session.status != "running":
            # Ended sessions are frozen; late writes from a discarded turn are dropped
            logger.debug(f"[MEMORY] Session {session_id} is {session.status}, update ignored")
            return False
        mutate(session)
        self._save(sessions, active_id)
        return True

    # --- lifecycle -----------------------------------------------------

    def create_session(self, goal: str, surface_id: Optional[str] = None, url: Optional[str] = None) -> str:
        """
        Start a new active session. The previously active one is marked
        `abandoned`, and the oldest sessions beyond max_sessions are evicted.

        Returns:
            The new session id
        """
        sessions, active_id = self._load()
        now = self.clock()

        previous = sessions.get(active_id) if active_id else None
        if previous is not None and previous.status == "running":
            previous.status = "abandoned"
            previous.ended_at = now

        session_id = f"sess_{int(now * 1000)}_{uuid.uuid4().hex[:6]}"
        sessions[session_id] = Session(
            id=session_id,
            goal=goal,
            started_at=now,
            surface_id=surface_id,
            url=url,
            goal_stack=[goal],
        )

        if len(sessions) > self.max_sessions:
            oldest = sorted(sessions, key=lambda sid: sessions[sid].started_at)
            for sid in oldest[: len(sessions) - self.max_sessions]:
                del sessions[sid]
                logger.debug(f"[MEMORY] Evicted session {sid}")

        self._save(sessions, session_id)
        logger.info(f"[MEMORY] Session created: {session_id}")
        return session_id

    def end_session(self, session_id: str, status: str = "completed") -> bool:
        sessions, active_id = self._load()
        session = sessions.get(session_id)
        if session is None:
            return False
        if session.status != "running":
            logger.debug(f"[MEMORY] Session {session_id} already ended ({session.status})")
            return False

        session.status = status
        session.ended_at = self.clock()
        if active_id == session_id:
            active_id = None

        self._save(sessions, active_id)
        logger.info(f"[MEMORY] Session ended: {session_id} ({status})")
        return True

    # --- step log ------------------------------------------------------

    def add_step(
        self,
        session_id: str,
        action: NextAction,
        result: str = "unknown",
        success: Optional[bool] = None,
        error: Optional[str] = None,
    ) -> Optional[Step]:
        added: List[Step] = []

        def mutate(session: Session) -> None:
            step = Step(
                index=len(session.steps) + 1,
                kind=action.kind,
                target=action.target,
                value=action.value,
                description=action.description,
                result=result,
                success=success,
                error=error,
                timestamp=self.clock(),
            )
            session.steps.append(step)
            added.append(step)

        self._update(session_id, mutate)
        return added[0] if added else None

    def update_goal_stack(self, session_id: str, goal_stack: List[str]) -> bool:
        """Replace the goal stack. An empty stack is ignored so a running session never loses its focus."""
        if not goal_stack:
            return False

        def mutate(session: Session) -> None:
            session.goal_stack = list(goal_stack)

        return self._update(session_id, mutate)

    def add_observation(self, session_id: str, text: str) -> bool:
        def mutate(session: Session) -> None:
            session.observations.append(Observation(text=text, timestamp=self.clock()))
            session.observations = session.observations[-self.max_observations:]

        return self._update(session_id, mutate)

    def add_milestone(self, session_id: str, label: str) -> bool:
        def mutate(session: Session) -> None:
            session.milestones.append(
                Milestone(label=label, step_index=len(session.steps), timestamp=self.clock())
            )

        ok = self._update(session_id, mutate)
        if ok:
            logger.info(f"[MEMORY] Milestone: {label}")
        return ok

    def get_milestones(self, session_id: str) -> List[Milestone]:
        session = self.get_session(session_id)
        return list(session.milestones) if session else []

    def update_page_hash(self, session_id: str, page_hash: Optional[str]) -> bool:
        def mutate(session: Session) -> None:
            session.last_page_hash = page_hash

        return self._update(session_id, mutate)

    def get_last_page_hash(self, session_id: str) -> Optional[str]:
        session = self.get_session(session_id)
        return session.last_page_hash if session else None

    # --- queries -------------------------------------------------------

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        sessions, _ = self._load()
        return sessions.get(session_id)

    def get_context(self, session_id: Optional[str], window: Optional[int] = None) -> SessionContext:
        """The bounded slice of a session used in the planner prompt."""
        session = self.get_session(session_id)
        if session is None:
            return SessionContext()

        window = window or self.context_window
        return SessionContext(
            goal=session.goal,
            goal_stack=session.goal_stack,
            milestones=session.milestones,
            recent_steps=session.steps[-window:],
            observations=session.observations[-5:],
            step_count=len(session.steps),
            url=session.url,
            started_at=session.started_at,
        )

    def get_active_session_id(self) -> Optional[str]:
        _, active_id = self._load()
        return active_id

    def get_active_session(self) -> Optional[Session]:
        sessions, active_id = self._load()
        return sessions.get(active_id) if active_id else None

    def has_active_session(self) -> bool:
        session = self.get_active_session()
        return session is not None and session.status == "running"

    def get_all_sessions(self) -> List[Session]:
        """All retained sessions, newest first."""
        sessions, _ = self._load()
        return sorted(sessions.values(), key=lambda s: s.started_at, reverse=True)

    def clear_all_sessions(self) -> None:
        self._save({}, None)
        logger.info("[MEMORY] All sessions cleared")
