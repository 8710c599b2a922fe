"""
Shared test fixtures: a controllable millisecond clock, scripted remotes
and a sleep that records delays instead of waiting.
"""
import asyncio

import pytest


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ScriptedRemote:
    """
    Async remote fetch returning (or raising) scripted outcomes in order.

    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        # Yield once, like a real network call
        await asyncio.sleep(0)
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return RecordingSleep()
