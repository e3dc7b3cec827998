from __future__ import annotations

import pytest

from lattice_audio import ToneEngine
from lattice_model import LatticeStore
from lattice_session import LatticeSession


def _advance(engine: ToneEngine, seconds: float, block: int = 1024) -> None:
    remaining = int(seconds * engine.sample_rate)
    while remaining > 0:
        n = min(block, remaining)
        engine.render(n)
        engine.poll()
        remaining -= n


@pytest.fixture
def advance():
    """Render and poll an offline engine forward by some seconds."""
    return _advance


@pytest.fixture
def engine() -> ToneEngine:
    eng = ToneEngine(realtime=False)
    yield eng
    eng.close()


@pytest.fixture
def store() -> LatticeStore:
    s = LatticeStore()
    s.build_initial()
    return s


@pytest.fixture
def session(engine: ToneEngine) -> LatticeSession:
    return LatticeSession(engine=engine)
