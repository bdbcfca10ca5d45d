"""
Shared fixtures
"""

import pytest

from fakes import FakeProbe, RecordingNotifier
from webpilot.config import AgentConfig
from webpilot.utils.store import StateStore


@pytest.fixture
def config():
    # Real timing constants are kept for wake-ups (they are never awaited in
    # tests); in-process sleeps are shrunk to zero.
    return AgentConfig(
        llm_api_key="sk-test",
        streaming=False,
        api_min_interval=0,
        stability_debounce=0,
        stability_timeout=0,
        scroll_settle=0,
        default_wait_ms=0,
        empty_snapshot_retry_delay=0,
    )


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"), encryption_key="test-key")


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def notifier():
    return RecordingNotifier()
