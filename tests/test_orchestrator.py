"""
Tests for the orchestrator: planning turns through the graph, control
messages, page events, wake-ups and resume
"""

import pytest

from fakes import SURFACE, FakeModel, plan
from webpilot.errors import TransportError
from webpilot.graph.state import Phase, create_initial_state
from webpilot.models import HistoryEntry, NextAction, SurfaceEvent
from webpilot.orchestrator import AGENT_STATE_KEY, Orchestrator
from webpilot.services.notifier import SHOW_CONFIRM, THINKING_DONE, UPDATE_OVERLAY
from webpilot.utils.scheduler import WAKEUPS_KEY

HIDE_ADS = "document.querySelectorAll('.ad-banner').forEach(el => el.remove());"

FINISH_SCRIPT = {"tool": "FINISH", "arg": "", "code": HIDE_ADS, "explanation": "Hide ad banners"}


async def no_sleep(_seconds):
    return None


def make(config, store, probe, notifier, responses=()):
    model = FakeModel(list(responses))
    return Orchestrator(config, store, probe, model, notifier, sleep=no_sleep), model


def queued(orch):
    return [e.payload.get("name") or e.kind for e in list(orch.inbox._queue) if e is not None]


def overlay_texts(notifier):
    return [m["text"] for m in notifier.of_type(UPDATE_OVERLAY)]


@pytest.mark.asyncio
async def test_start_runs_first_turn_and_schedules_next(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("fill", "name", "Ada", thinking="Fill the name")])

    response = await orch.handle_message({"type": "START_TASK", "surface_id": SURFACE, "goal": "Sign up as Ada"})
    assert response["status"] == "started"
    assert queued(orch) == ["next_step"]

    await orch.drain()

    state = orch.load_state()
    assert state["active"] is True
    assert state["phase"] == Phase.PLANNING
    assert state["step_count"] == 1
    [entry] = [HistoryEntry.model_validate(h) for h in state["action_history"]]
    assert entry.success is True
    assert entry.state_change == "PAGE_CHANGED"
    assert entry.thought == "Fill the name"
    assert probe.values["name"] == "Ada"
    assert set(orch.scheduler.pending()) == {"next_step"}

    session = orch.memory.get_session(state["session_id"])
    assert [s.kind for s in session.steps] == ["fill"]
    assert notifier.of_type(THINKING_DONE)
    await orch.close()


@pytest.mark.asyncio
async def test_start_requires_surface_and_goal(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    response = await orch.handle_message({"type": "START_TASK", "goal": "x"})
    assert response["status"] == "error"
    assert orch.load_state()["phase"] == Phase.IDLE
    await orch.close()


@pytest.mark.asyncio
async def test_step_limit_ends_task(config, store, probe, notifier):
    orch, model = make(config, store, probe, notifier, [plan("scroll", "down")])
    await orch.start_task(SURFACE, "Scroll forever")
    state = orch.load_state()
    state["step_count"] = 51
    orch.save_state(state)

    state = await orch.run_turn()

    assert state["active"] is False
    assert state["phase"] == Phase.ERROR
    assert "Too many steps (51)" in state["step_info"]
    assert model.prompts == []
    assert orch.memory.get_session(state["session_id"]).status == "failed"
    await orch.close()


@pytest.mark.asyncio
async def test_long_history_is_compressed_before_planning(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("scroll", "down")])
    await orch.start_task(SURFACE, "Read the page")
    state = orch.load_state()
    state["action_history"] = [
        HistoryEntry(thought=f"step {i}", action=NextAction(kind="scroll", target=f"s{i}"), success=True).model_dump(
            mode="json"
        )
        for i in range(31)
    ]
    state["step_count"] = 31
    orch.save_state(state)

    state = await orch.run_turn()

    history = [HistoryEntry.model_validate(h) for h in state["action_history"]]
    assert len(history) == 22
    assert history[0].compressed_count == 11
    assert history[1].thought == "step 11"
    assert history[-1].action.kind == "scroll"
    assert state["step_count"] == 32
    await orch.close()


class StoppingModel(FakeModel):
    """Stops the task while the model call is in flight."""

    def __init__(self, responses):
        super().__init__(responses)
        self.orchestrator = None

    async def complete(self, prompt, **kwargs):
        self.orchestrator.stop_task()
        return await super().complete(prompt, **kwargs)


@pytest.mark.asyncio
async def test_stop_during_turn_discards_turn_result(config, store, probe, notifier):
    model = StoppingModel([plan("fill", "name", "Ada")])
    orch = Orchestrator(config, store, probe, model, notifier, sleep=no_sleep)
    model.orchestrator = orch
    await orch.start_task(SURFACE, "Sign up")

    state = await orch.run_turn()

    assert state["phase"] == Phase.STOPPED
    assert state["active"] is False
    assert state["step_info"] == "⛔️ Stopped by user"
    assert state["action_history"] == []
    assert orch.scheduler.pending() == {}
    assert orch.memory.get_session(state["session_id"]).status == "stopped"
    await orch.close()


@pytest.mark.asyncio
async def test_stop_during_completing_turn_keeps_session_stopped(config, store, probe, notifier):
    model = StoppingModel([plan(completed=True, stack=["Check the inbox"], thinking="All done")])
    orch = Orchestrator(config, store, probe, model, notifier, sleep=no_sleep)
    model.orchestrator = orch
    await orch.start_task(SURFACE, "Sign up")

    state = await orch.run_turn()

    assert state["phase"] == Phase.STOPPED
    session = orch.memory.get_session(state["session_id"])
    assert session.status == "stopped"
    assert session.milestones == []
    assert session.observations == []
    assert session.goal_stack == ["Sign up"]
    assert not any(t.startswith("✅ Done") for t in overlay_texts(notifier))
    await orch.close()


@pytest.mark.asyncio
async def test_stop_message_when_idle_is_harmless(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    assert await orch.handle_message({"type": "STOP_TASK"}) == {"status": "stopped"}
    assert orch.load_state()["phase"] == Phase.IDLE
    await orch.close()


@pytest.mark.asyncio
async def test_script_proposal_asks_explicit_agent_tasks(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("create_script", description="Hide all ads")])
    await orch.start_task(SURFACE, "Hide the ads", initial_mode="AGENT")

    state = await orch.run_turn()

    assert state["phase"] == Phase.AWAITING_CONFIRMATION
    assert state["waiting_for_confirmation"] is True
    assert notifier.of_type(SHOW_CONFIRM)
    assert "confirmation_timeout" in orch.scheduler.pending()

    # A waiting task does not plan
    assert (await orch.run_turn())["step_count"] == 1
    await orch.close()


@pytest.mark.asyncio
async def test_rejected_proposal_continues_as_agent(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("create_script")])
    await orch.start_task(SURFACE, "Hide the ads", initial_mode="AGENT")
    await orch.run_turn()
    orch.inbox.get_nowait()

    response = await orch.handle_message({"type": "CONFIRM_RESULT", "result": False})

    assert response == {"status": "ok"}
    state = orch.load_state()
    assert state["phase"] == Phase.PLANNING
    assert state["waiting_for_confirmation"] is False
    assert state["step_info"] == "👌 Continuing as Agent..."
    assert state["step_count"] == 2
    last = HistoryEntry.model_validate(state["action_history"][-1])
    assert last.system is True
    assert "rejected" in last.thought
    assert "confirmation_timeout" not in orch.scheduler.pending()
    assert queued(orch) == ["next_step"]
    await orch.close()


@pytest.mark.asyncio
async def test_approved_proposal_hands_history_to_script_generation(config, store, probe, notifier):
    orch, model = make(config, store, probe, notifier, [plan("create_script", thinking="Ads keep coming back"), FINISH_SCRIPT])
    await orch.start_task(SURFACE, "Hide the ads", initial_mode="AGENT")
    await orch.run_turn()

    response = await orch.handle_message({"type": "CONFIRM_RESULT", "result": True})

    assert response["status"] == "ok"
    assert response["script"]["name"] == "Hide ad banners"
    state = orch.load_state()
    assert state["phase"] == Phase.FINISHED
    assert state["handoff"] == "script"
    assert "PREVIOUS AGENT HISTORY" in model.prompts[-1]
    assert orch.memory.get_session(state["session_id"]).status == "completed"
    await orch.close()


@pytest.mark.asyncio
async def test_confirm_without_pending_proposal_is_ignored(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    await orch.start_task(SURFACE, "Anything")
    assert await orch.handle_message({"type": "CONFIRM_RESULT", "result": True}) == {"status": "ignored"}
    await orch.close()


@pytest.mark.asyncio
async def test_confirmation_timeout_counts_as_rejection(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("create_script")])
    await orch.start_task(SURFACE, "Hide the ads", initial_mode="AGENT")
    await orch.run_turn()

    await orch.on_wakeup("confirmation_timeout")

    state = orch.load_state()
    assert state["phase"] == Phase.PLANNING
    assert "No answer" in state["action_history"][-1]["thought"]
    await orch.close()


@pytest.mark.asyncio
async def test_auto_routed_task_switches_to_script_without_asking(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("create_script"), FINISH_SCRIPT])
    await orch.start_task(SURFACE, "Hide the ads")

    await orch.drain()

    state = orch.load_state()
    assert state["phase"] == Phase.FINISHED
    assert state["active"] is False
    assert notifier.of_type(SHOW_CONFIRM) == []
    assert probe.injected == [HIDE_ADS]
    assert any(t.startswith("✅ Script saved") for t in overlay_texts(notifier))
    await orch.close()


@pytest.mark.asyncio
async def test_navigation_waits_for_page_load_event(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("navigate", "https://example.com/docs")])
    await orch.start_task(SURFACE, "Open the docs")

    state = await orch.run_turn()

    assert state["waiting_for_load"] is True
    assert state["phase"] == Phase.AWAITING_PAGE_LOAD
    assert probe.url == "https://example.com/docs"
    assert set(orch.scheduler.pending()) == {"navigation_timeout"}

    orch.inbox.get_nowait()
    probe._emit(SurfaceEvent(kind="page_loaded", surface_id=SURFACE, payload={"url": probe.url}))
    await orch.drain()

    state = orch.load_state()
    assert state["waiting_for_load"] is False
    assert state["step_info"] == "👀 Page loaded, continuing..."
    assert set(orch.scheduler.pending()) == {"continue_loop"}
    await orch.close()


@pytest.mark.asyncio
async def test_page_load_for_other_surface_is_ignored(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("navigate", "https://example.com/docs")])
    await orch.start_task(SURFACE, "Open the docs")
    await orch.run_turn()

    await orch.on_page_loaded("tab-9", "https://example.com/")

    assert orch.load_state()["waiting_for_load"] is True
    await orch.close()


@pytest.mark.asyncio
async def test_navigation_timeout_continues_optimistically(config, store, probe, notifier):
    orch, _ = make(
        config,
        store,
        probe,
        notifier,
        [plan("navigate", "https://example.com/docs"), plan(completed=True, thinking="Docs are open")],
    )
    await orch.start_task(SURFACE, "Open the docs")
    await orch.run_turn()

    await orch.on_wakeup("navigation_timeout")

    state = orch.load_state()
    assert state["phase"] == Phase.FINISHED
    assert state["active"] is False
    assert state["step_info"] == "✅ Done: Docs are open"
    session = orch.memory.get_session(state["session_id"])
    assert session.status == "completed"
    assert session.milestones[-1].label == "Completed: Open the docs"
    await orch.close()


@pytest.mark.asyncio
async def test_closed_surface_ends_task_silently(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("scroll", "down")])
    await orch.start_task(SURFACE, "Read")
    probe.closed = True

    state = await orch.run_turn()

    assert state["phase"] == Phase.ERROR
    assert state["active"] is False
    assert not any(t.startswith("❌ Error") for t in overlay_texts(notifier))
    await orch.close()


@pytest.mark.asyncio
async def test_surface_closed_event_fails_task(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    await orch.start_task(SURFACE, "Read")
    orch.inbox.get_nowait()

    probe._emit(SurfaceEvent(kind="surface_closed", surface_id=SURFACE))
    await orch.drain()

    state = orch.load_state()
    assert state["phase"] == Phase.ERROR
    assert orch.memory.get_session(state["session_id"]).status == "failed"
    await orch.close()


@pytest.mark.asyncio
async def test_snapshot_failure_schedules_retry(config, store, probe, notifier):
    orch, model = make(config, store, probe, notifier)
    await orch.start_task(SURFACE, "Read")
    probe.snapshot_errors = 1

    state = await orch.run_turn()

    assert state["active"] is True
    assert model.prompts == []
    assert set(orch.scheduler.pending()) == {"retry_loop"}
    await orch.close()


@pytest.mark.asyncio
async def test_unparseable_response_adds_system_entry(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, ["I think I should click something"])
    await orch.start_task(SURFACE, "Sign up")

    state = await orch.run_turn()

    [entry] = state["action_history"]
    assert entry["system"] is True
    assert entry["thought"].startswith("Your previous response could not be parsed")
    assert state["active"] is True
    assert set(orch.scheduler.pending()) == {"next_step"}
    await orch.close()


@pytest.mark.asyncio
async def test_repeated_action_is_not_executed(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("click", "submit")])
    await orch.start_task(SURFACE, "Submit")
    state = orch.load_state()
    state["recent_signatures"] = ["click:submit", "click:submit"]
    orch.save_state(state)

    state = await orch.run_turn()

    assert probe.count("click") == 0
    [entry] = state["action_history"]
    assert "WARNING: You are repeating the same action (click:submit)" in entry["thought"]
    await orch.close()


@pytest.mark.asyncio
async def test_transport_failure_ends_task(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [TransportError("Model request failed: 503")])
    await orch.start_task(SURFACE, "Sign up")

    state = await orch.run_turn()

    assert state["phase"] == Phase.ERROR
    assert state["last_error"] == "Model request failed: 503"
    assert "❌ Error: Model request failed: 503" in overlay_texts(notifier)
    assert notifier.of_type(THINKING_DONE)
    assert orch.memory.get_session(state["session_id"]).status == "failed"
    await orch.close()


@pytest.mark.asyncio
async def test_resume_queues_turn_for_active_task(config, store, probe, notifier):
    store.set(AGENT_STATE_KEY, create_initial_state("task-1", "Sign up", SURFACE, None))
    orch, _ = make(config, store, probe, notifier)

    state = await orch.resume()

    assert state["task_id"] == "task-1"
    assert queued(orch) == ["next_step"]
    await orch.close()


@pytest.mark.asyncio
async def test_resume_rearms_persisted_wakeups(config, store, probe, notifier):
    state = create_initial_state("task-1", "Open docs", SURFACE, None)
    state.update({"waiting_for_load": True, "phase": Phase.AWAITING_PAGE_LOAD})
    store.set(AGENT_STATE_KEY, state)
    store.set(WAKEUPS_KEY, {"navigation_timeout": 4102444800.0})
    orch, _ = make(config, store, probe, notifier)

    await orch.resume()

    assert queued(orch) == []
    assert set(orch.scheduler.pending()) == {"navigation_timeout"}
    await orch.close()


@pytest.mark.asyncio
async def test_status_and_unknown_messages(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    assert (await orch.handle_message({"type": "GET_STATUS"}))["phase"] == Phase.IDLE
    response = await orch.handle_message({"type": "DANCE"})
    assert response == {"status": "error", "error": "Unknown message type: DANCE"}
    await orch.close()


@pytest.mark.asyncio
async def test_convert_history_requires_history(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier)
    response = await orch.handle_message({"type": "CONVERT_HISTORY_TO_SCRIPT", "surface_id": SURFACE})
    assert response == {"status": "error", "error": "No history found"}
    await orch.close()


@pytest.mark.asyncio
async def test_smart_start_routes_reusable_requests_to_scripts(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [{"intent": "SCRIPT", "reason": "reusable"}, FINISH_SCRIPT])

    response = await orch.handle_message({"type": "SMART_START", "surface_id": SURFACE, "goal": "Always hide ads"})

    assert response["mode"] == "SCRIPT"
    assert response["status"] == "ok"
    assert orch.load_state()["phase"] == Phase.IDLE
    await orch.close()


@pytest.mark.asyncio
async def test_smart_start_with_explicit_agent_mode(config, store, probe, notifier):
    orch, model = make(config, store, probe, notifier)

    response = await orch.handle_message(
        {"type": "SMART_START", "surface_id": SURFACE, "goal": "Click login", "mode": "agent"}
    )

    assert response["mode"] == "AGENT"
    assert response["status"] == "started"
    assert orch.load_state()["initial_mode"] == "AGENT"
    assert model.prompts == []
    await orch.close()


@pytest.mark.asyncio
async def test_user_memory_fills_placeholders(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan("fill", "email", "{{memory.email}}")])
    orch.set_user_memory({"email": "ada@example.com"})
    await orch.start_task(SURFACE, "Enter my email")

    await orch.run_turn()

    assert probe.values["email"] == "ada@example.com"
    await orch.close()


@pytest.mark.asyncio
async def test_completion_after_unreadable_reply_compares_with_pre_action_page(config, store, probe, notifier):
    probe.click_changes_page = True
    orch, _ = make(
        config,
        store,
        probe,
        notifier,
        [plan("click", "submit"), "no json here", plan(completed=True, thinking="Signed up")],
    )
    await orch.start_task(SURFACE, "Sign up")
    await orch.run_turn()

    # The unreadable reply lands on the turn after the click
    await orch.on_wakeup("navigation_timeout")
    assert orch.load_state()["action_history"][-1]["system"] is True

    state = await orch.run_turn()

    assert state["phase"] == Phase.FINISHED
    assert state["step_info"] == "✅ Done: Signed up"
    await orch.close()


@pytest.mark.asyncio
async def test_completing_root_goal_records_one_milestone(config, store, probe, notifier):
    orch, _ = make(config, store, probe, notifier, [plan(completed=True, stack=["Check the inbox"], thinking="Done")])
    await orch.start_task(SURFACE, "Sign up")

    state = await orch.run_turn()

    session = orch.memory.get_session(state["session_id"])
    assert [m.label for m in session.milestones] == ["Completed: Sign up"]
    assert session.status == "completed"
    await orch.close()
