"""Shared test fixtures for forkchat test suite."""

import asyncio

import pytest

from forkchat.config import ForkchatConfig
from forkchat.events import EventCollector
from forkchat.gateway import GatewayResponse
from forkchat.models import Role, Turn
from forkchat.store import ChatStore


class FakeGateway:
    """In-process gateway with scripted outcomes.

    Each script step is consumed by one call: an exception is raised, a
    string becomes the response token, None produces `resp_N`. Calls past
    the end of the script succeed with auto tokens. `gates[i]` holds call i
    until the event is set.
    """

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls: list[dict] = []
        self.gates: dict[int, asyncio.Event] = {}
        self._counter = 0

    async def complete(self, input_text, *, kind, continuation_token=None, instructions=None):
        index = len(self.calls)
        self.calls.append({
            "input": input_text,
            "kind": kind,
            "continuation_token": continuation_token,
            "instructions": instructions,
        })
        gate = self.gates.get(index)
        if gate is not None:
            await gate.wait()

        step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        self._counter += 1
        token = step if isinstance(step, str) else f"resp_{self._counter}"
        return GatewayResponse(continuation_token=token, output_text=f"reply to: {input_text}")

    def gate(self, index: int) -> asyncio.Event:
        """Hold call `index` until the returned event is set."""
        event = asyncio.Event()
        self.gates[index] = event
        return event

    def get_stats(self) -> dict:
        return {"request_count": len(self.calls), "avg_latency_ms": 0.0}


class FakeSummarizer:
    """Summarizer stand-in that records calls and can hang or fail."""

    def __init__(self, text="• summarized", error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls: list[list[Turn]] = []

    async def summarize(self, turns):
        self.calls.append(list(turns))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.text


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class EventRecorder:
    """Collects every emitted event."""

    def __init__(self):
        self.events: list[dict] = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e["event_type"] == event_type]


def make_branch_turns(count: int) -> list[Turn]:
    """Alternating user/assistant turns, user first."""
    turns = []
    for i in range(count):
        if i % 2 == 0:
            turns.append(Turn.create(Role.USER, f"question {i}"))
        else:
            turns.append(Turn.create(Role.ASSISTANT, f"answer {i}", continuation_ref=f"b_{i}"))
    return turns


@pytest.fixture
def gateway():
    """Provide a FakeGateway with an empty script."""
    return FakeGateway()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def events(recorder):
    """Provide an EventCollector wired to an EventRecorder."""
    collector = EventCollector(session_id="test")
    collector.add_listener(recorder)
    return collector


@pytest.fixture
def store(tmp_path):
    """Provide a ChatStore backed by a temporary database."""
    return ChatStore(db_path=tmp_path / "test_forkchat.db")


@pytest.fixture
def config(tmp_path):
    """Provide a config that keeps all state under tmp_path."""
    cfg = ForkchatConfig()
    cfg.gateway.api_key = "sk-test"
    cfg.store.db_path = str(tmp_path / "session.db")
    return cfg
