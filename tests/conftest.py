from types import SimpleNamespace

import pytest


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return SimpleNamespace(
        get_user_model=lambda user_id: "x-ai/grok-4-fast:free",
        get_system_prompt=lambda user_id: "Be brief.",
    )
