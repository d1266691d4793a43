import io

import pytest
from rich.console import Console

from director.scene_runner import SceneRunner
from director.scenes import scene_from_dict
from director.validation import ValidationService


class FakeClient:
    """Stands in for ProtocolClient; records every command."""

    def __init__(self, replies=None, fail=None):
        self.replies = replies or {}
        self.fail = fail or {}
        self.sent = []
        self.notified = []
        self.connected = False
        self.closed = False

    async def connect(self):
        self.connected = True

    async def send(self, action, params=None):
        self.sent.append((action, params or {}))
        if action in self.fail:
            raise self.fail[action]
        return {"ok": True, **self.replies.get(action, {})}

    def notify(self, action, params=None):
        self.notified.append((action, params or {}))

    async def close(self):
        self.connected = False
        self.closed = True

    def actions(self):
        return [action for action, _ in self.sent]


class FakeRecorder:
    """Stands in for Recorder without spawning a capture process."""

    def __init__(self, stop_error=None):
        self.stop_error = stop_error
        self.recording = False
        self.started = []
        self.stop_calls = 0
        self.force_stopped = 0
        self.listeners = {}

    def on(self, event, callback):
        self.listeners.setdefault(event, []).append(callback)

    def is_recording(self):
        return self.recording

    async def start(self, output, region=None, audio=False):
        self.started.append({"output": output, "region": region, "audio": audio})
        self.recording = True

    async def stop(self):
        self.stop_calls += 1
        self.recording = False
        if self.stop_error:
            raise self.stop_error
        return self.started[-1]["output"]

    def force_stop(self):
        self.force_stopped += 1
        self.recording = False


class FakeTelemetry:
    """Stands in for TelemetryClient."""

    def __init__(self, events=None, targets=None, navigate_ok=True):
        self.events = list(events or [])
        self.targets = targets or {}
        self.navigate_ok = navigate_ok
        self.navigated = []
        self.cleared = 0
        self.polls = 0

    async def get_events(self):
        self.polls += 1
        return list(self.events)

    async def clear_events(self):
        self.cleared += 1
        self.events = []
        return True

    async def get_targets(self):
        return dict(self.targets)

    async def navigate(self, section):
        self.navigated.append(section)
        return self.navigate_ok


class RecordingSleep:
    """asyncio.sleep replacement that only records the requested seconds."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def telemetry():
    return FakeTelemetry()


@pytest.fixture
def make_scene():
    def _make(sequence, **sections):
        data = {"scene": sections.pop("scene", {"name": "test-scene"}), "sequence": sequence}
        data.update(sections)
        return scene_from_dict(data)
    return _make


@pytest.fixture
def make_runner(client, recorder, telemetry, sleep):
    def _make(scene, **kwargs):
        validator = ValidationService(telemetry, grace_ms=0, poll_ms=0, sleep=sleep)
        options = dict(
            client=client,
            recorder=recorder,
            telemetry=telemetry,
            validator=validator,
            console=Console(file=io.StringIO()),
            sleep=sleep,
        )
        options.update(kwargs)
        return SceneRunner(scene, **options)
    return _make
