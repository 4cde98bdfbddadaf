# tests/conftest.py
from __future__ import annotations

import pytest

from custody.config import SimulationConfig
from custody.engine import CustodyEngine
from custody.service import CustodyService

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""
    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manual_cfg() -> SimulationConfig:
    return SimulationConfig(simulation_mode="manual", debug_ledger=False)


@pytest.fixture
def engine(manual_cfg, clock) -> CustodyEngine:
    return CustodyEngine(cfg=manual_cfg, seed=1, clock=clock)


@pytest.fixture
def on_demand_engine(clock) -> CustodyEngine:
    return CustodyEngine(cfg=SimulationConfig(simulation_mode="on_demand"), seed=1, clock=clock)


@pytest.fixture
def service(engine) -> CustodyService:
    return CustodyService(engine)
