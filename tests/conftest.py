import os
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from circuits import CircuitBreakerRepository, CircuitBreakerService


class FakeClock:
  """Settable clock. Call to read; advance() to move forward."""

  def __init__(self, start: datetime) -> None:
    self.now = start

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += timedelta(seconds=seconds)


class FakeDisplay:
  """Records every grid sent. Set error to make the next sends raise."""

  def __init__(self) -> None:
    self.sent: list[list[list[int]]] = []
    self.error: Exception | None = None

  def send_layout(self, grid: list[list[int]]) -> None:
    if self.error is not None:
      raise self.error
    self.sent.append(grid)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
  """In-memory SQLite shared across threads through a single connection."""
  engine = create_engine(
    'sqlite://',
    connect_args={'check_same_thread': False},
    poolclass=StaticPool,
  )
  SQLModel.metadata.create_all(engine)
  yield engine
  engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock(datetime(2025, 11, 26, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def circuit_breaker(engine: Engine, clock: FakeClock) -> CircuitBreakerService:
  service = CircuitBreakerService(CircuitBreakerRepository(engine), recovery_timeout=300, clock=clock)
  service.initialize()
  return service


@pytest.fixture
def display() -> FakeDisplay:
  return FakeDisplay()


@pytest.fixture
def make_grid() -> Callable[[int], list[list[int]]]:
  """Return a factory for a valid 6x22 grid filled with one code."""

  def _make(code: int = 0) -> list[list[int]]:
    return [[code] * 22 for _ in range(6)]

  return _make


@pytest.fixture
def require_env(request: pytest.FixtureRequest) -> None:
  """Skip the test if any env vars listed in @pytest.mark.require_env are unset."""
  marker = request.node.get_closest_marker('require_env')
  if marker is None:
    return
  for var in marker.args:
    if not os.environ.get(var, '').strip():
      pytest.skip(f'{var!r} not set')
