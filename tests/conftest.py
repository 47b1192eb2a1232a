"""
Pytest configuration and shared fixtures for SynapScript tests.
"""

import sys
import threading
from pathlib import Path
from typing import Generator, List

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from synapscript.runner import db
from synapscript.runner.events import Event, EventBus
from synapscript.runner.executor import AutomationEngine
from synapscript.runner.materializer import CodeMaterializer
from synapscript.runner.process import ProcessRunner


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self):
        self.events: List[Event] = []
        self._lock = threading.Lock()
        self._terminal = threading.Event()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)
        if event.type in ('automation-complete', 'automation-failed'):
            self._terminal.set()

    def types(self) -> List[str]:
        with self._lock:
            return [e.type for e in self.events]

    def of_type(self, event_type: str) -> List[Event]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]

    def wait_for_terminal(self, timeout: float = 10) -> bool:
        return self._terminal.wait(timeout)


@pytest.fixture
def db_path(tmp_path) -> Path:
    """Initialized database in a temporary directory."""
    path = tmp_path / 'synapscript.db'
    db.init_database(path)
    return path


@pytest.fixture
def artifacts_dir(tmp_path) -> Path:
    path = tmp_path / 'artifacts'
    path.mkdir()
    return path


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> EventRecorder:
    recorder = EventRecorder()
    bus.subscribe(recorder)
    return recorder


@pytest.fixture
def engine(db_path, bus, artifacts_dir) -> Generator[AutomationEngine, None, None]:
    """Engine with a paused scheduler so no real ticks fire."""
    runner = ProcessRunner()
    engine = AutomationEngine(
        db_path=db_path,
        bus=bus,
        runner=runner,
        materializer=CodeMaterializer(runner, artifacts_dir=artifacts_dir, timeout=5),
        step_timeout=10
    )
    engine.scheduler.start(paused=True)
    yield engine
    engine.shutdown()


def pytest_configure(config):
    """Add custom markers"""
    config.addinivalue_line(
        "markers", "slow: tests that wait on real process timeouts"
    )
