import asyncio
import heapq
import itertools
from datetime import datetime, timedelta

import pytest

from mindship.config.config import DialogueConfig, HeartbeatConfig, SessionConfig, SignalConfig
from mindship.models.focus_session import FocusTask
from mindship.services.clock import Timer
from mindship.services.database import DatabaseManager

class ManualClock:
    """Virtual clock; timers fire only when the test advances time"""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, 0)):
        self.current = start
        self._timers = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self.current

    def call_later(self, delay, callback, *args) -> Timer:
        timer = Timer(callback, *args)
        due = self.current + timedelta(seconds=max(0.0, delay))
        heapq.heappush(self._timers, (due, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        target = self.current + timedelta(seconds=seconds)
        while self._timers and self._timers[0][0] <= target:
            due, _, timer = heapq.heappop(self._timers)
            self.current = max(self.current, due)
            timer.run()
        self.current = target

    async def sleep(self, delay: float) -> None:
        self.advance(delay)
        await asyncio.sleep(0)

    @property
    def pending(self):
        return [timer for _, _, timer in self._timers if timer.active]

@pytest.fixture
def clock():
    return ManualClock()

@pytest.fixture
def candidates():
    """List acting as the candidate sink"""
    return []

@pytest.fixture
def signal_config():
    return SignalConfig()

@pytest.fixture
def heartbeat_config():
    return HeartbeatConfig(interval_seconds=60, max_retries=3, retry_backoff_seconds=1)

@pytest.fixture
def session_config():
    return SessionConfig(sustained_drift_seconds=300)

@pytest.fixture
def dialogue_config():
    return DialogueConfig()

@pytest.fixture
def task():
    return FocusTask(
        task_name="Write thesis chapter",
        goal_text="Finish the related-work section",
        related_apps=["overleaf.com", "zotero"],
    )

@pytest.fixture
def db():
    """Provide a test database instance"""
    db = DatabaseManager(":memory:")  # Use in-memory database for testing
    yield db
    db.close()

@pytest.fixture
def file_db(tmp_path):
    db = DatabaseManager(tmp_path / "mindship_test.db")
    yield db
    db.close()
