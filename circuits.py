# circuits.py
#
# Circuit breakers: persisted on/off/half_open switches that gate updates.
#
# Two kinds of circuit share one table:
#   manual     MASTER (global kill switch) and SLEEP_MODE (quiet hours). Only
#              an explicit set_circuit_state() changes them.
#   provider   one per AI provider. Consecutive failures trip the circuit to
#              'off'; after the recovery timeout the next availability check
#              moves it to 'half_open', and two successes close it again.
#
# A circuit is "open" (blocking) when its stored state is 'off', whatever its
# kind. SLEEP_MODE is driven with inverted words: turning it 'on' (asleep)
# stores 'off', see control_state().
#
# Every read path used to gate traffic fails open: a storage error is logged
# and the gated action is allowed.

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from exceptions import CircuitNotFoundError, CircuitTypeError, ProviderAuthenticationError


def _utc_now() -> datetime:
  return datetime.now(timezone.utc)


class CircuitType(str, Enum):
  MANUAL = 'manual'
  PROVIDER = 'provider'


class CircuitState(str, Enum):
  ON = 'on'
  OFF = 'off'
  HALF_OPEN = 'half_open'


@dataclass(frozen=True)
class CircuitDefinition:
  circuit_id: str
  circuit_type: CircuitType
  default_state: CircuitState
  description: str
  failure_threshold: int = 5


MANUAL_CIRCUITS: tuple[CircuitDefinition, ...] = (
  CircuitDefinition(
    'MASTER',
    CircuitType.MANUAL,
    CircuitState.ON,
    'Global kill switch - blocks all updates when off',
  ),
  CircuitDefinition(
    'SLEEP_MODE',
    CircuitType.MANUAL,
    CircuitState.ON,
    'Quiet hours mode - blocks all updates while asleep (stored off)',
  ),
)

PROVIDER_CIRCUITS: tuple[CircuitDefinition, ...] = (
  CircuitDefinition(
    'PROVIDER_OPENAI',
    CircuitType.PROVIDER,
    CircuitState.ON,
    'Auto-trips on OpenAI API failures',
  ),
  CircuitDefinition(
    'PROVIDER_ANTHROPIC',
    CircuitType.PROVIDER,
    CircuitState.ON,
    'Auto-trips on Anthropic API failures',
  ),
)

CIRCUIT_DEFINITIONS: dict[str, CircuitDefinition] = {d.circuit_id: d for d in MANUAL_CIRCUITS + PROVIDER_CIRCUITS}

# Successes needed in half_open before a provider circuit closes.
HALF_OPEN_SUCCESSES = 2

DEFAULT_RECOVERY_TIMEOUT = 300


def provider_circuit_id(provider: str) -> str:
  """Map a provider name ('openai') or circuit id ('PROVIDER_OPENAI') to a circuit id."""
  name = provider.upper()
  return name if name.startswith('PROVIDER_') else f'PROVIDER_{name}'


# Circuits whose on/off controls name the mode rather than the gate.
INVERTED_CONTROLS = frozenset({'SLEEP_MODE'})


def control_state(circuit_id: str, state: CircuitState | str) -> CircuitState:
  """Translate between a user-facing on/off and the stored state.

  For SLEEP_MODE 'on' means asleep, which is stored as 'off' (blocking), and
  'off' means awake. The mapping is its own inverse, so it also turns a
  stored state back into the word shown to users. Other circuits pass through.
  """
  state = CircuitState(state)
  if circuit_id not in INVERTED_CONTROLS or state is CircuitState.HALF_OPEN:
    return state
  return CircuitState.OFF if state is CircuitState.ON else CircuitState.ON


# --- Storage ---


class CircuitBreakerState(SQLModel, table=True):
  """Persisted state of one circuit."""

  __tablename__ = 'circuit_breaker_state'

  id: int | None = Field(default=None, primary_key=True)
  circuit_id: str = Field(unique=True, index=True)
  circuit_type: str
  state: str
  default_state: str
  description: str | None = None
  failure_count: int = 0
  success_count: int = 0
  failure_threshold: int = 5
  last_failure_at: datetime | None = None
  last_success_at: datetime | None = None
  state_changed_at: datetime | None = None
  created_at: datetime = Field(default_factory=_utc_now)
  updated_at: datetime = Field(default_factory=_utc_now)


def create_store_engine(url: str) -> Engine:
  """Create the engine for the circuit store.

  SQLite connections are shared between the scheduler, webhook, and watcher
  threads, so the same-thread check is disabled.
  """
  connect_args = {'check_same_thread': False} if url.startswith('sqlite') else {}
  return create_engine(url, connect_args=connect_args)


class CircuitBreakerRepository:
  """Row-level access to circuit_breaker_state. Errors propagate to the caller."""

  def __init__(self, engine: Engine) -> None:
    self._engine = engine

  def create_tables(self) -> None:
    SQLModel.metadata.create_all(self._engine, tables=[CircuitBreakerState.__table__])  # type: ignore[attr-defined]

  def _session(self) -> Session:
    return Session(self._engine, expire_on_commit=False)

  def get_state(self, circuit_id: str) -> CircuitBreakerState | None:
    with self._session() as session:
      return session.exec(select(CircuitBreakerState).where(CircuitBreakerState.circuit_id == circuit_id)).first()

  def get_all_states(self) -> list[CircuitBreakerState]:
    with self._session() as session:
      return list(session.exec(select(CircuitBreakerState).order_by(CircuitBreakerState.circuit_id)))

  def get_states_by_type(self, circuit_type: CircuitType) -> list[CircuitBreakerState]:
    with self._session() as session:
      query = (
        select(CircuitBreakerState)
        .where(CircuitBreakerState.circuit_type == circuit_type.value)
        .order_by(CircuitBreakerState.circuit_id)
      )
      return list(session.exec(query))

  def initialize_circuit(self, definition: CircuitDefinition) -> bool:
    """Insert a row for definition unless one exists. Returns True if inserted."""
    with self._session() as session:
      existing = session.exec(
        select(CircuitBreakerState).where(CircuitBreakerState.circuit_id == definition.circuit_id)
      ).first()
      if existing is not None:
        return False
      session.add(
        CircuitBreakerState(
          circuit_id=definition.circuit_id,
          circuit_type=definition.circuit_type.value,
          state=definition.default_state.value,
          default_state=definition.default_state.value,
          description=definition.description,
          failure_threshold=definition.failure_threshold,
        )
      )
      session.commit()
      return True

  def update(self, circuit_id: str, **fields: object) -> CircuitBreakerState | None:
    """Apply field updates to a row and stamp updated_at. Returns None if absent."""
    with self._session() as session:
      row = session.exec(select(CircuitBreakerState).where(CircuitBreakerState.circuit_id == circuit_id)).first()
      if row is None:
        return None
      for name, value in fields.items():
        setattr(row, name, value)
      row.updated_at = _utc_now()
      session.add(row)
      session.commit()
      return row


# --- Service ---


@dataclass
class ProviderCircuitStatus:
  circuit_id: str
  state: str
  failure_count: int
  success_count: int
  failure_threshold: int
  last_failure_at: datetime | None
  last_success_at: datetime | None
  state_changed_at: datetime | None
  can_attempt: bool
  reset_timeout_seconds: int


def _as_utc(value: datetime) -> datetime:
  # SQLite drops tzinfo on round trip; stored values are always UTC.
  return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class CircuitBreakerService:
  """Reads and transitions circuit state.

  All transitions that read then write a row run under one lock so that
  concurrent failure reports from different threads are not lost.
  """

  def __init__(
    self,
    repository: CircuitBreakerRepository,
    recovery_timeout: int = DEFAULT_RECOVERY_TIMEOUT,
    clock: Callable[[], datetime] = _utc_now,
  ) -> None:
    self._repo = repository
    self._recovery_timeout = recovery_timeout
    self._clock = clock
    self._lock = threading.Lock()
    self._initialized = False

  def initialize(self) -> None:
    """Create the table and seed every built-in circuit. Safe to call again."""
    if self._initialized:
      return
    self._repo.create_tables()
    for definition in CIRCUIT_DEFINITIONS.values():
      try:
        if self._repo.initialize_circuit(definition):
          print(f'Circuits: created {definition.circuit_id} ({definition.default_state.value})')
      except SQLAlchemyError as e:
        print(f'Warning: failed to initialize circuit {definition.circuit_id}: {e}')
    self._initialized = True

  # --- Checks (fail-open) ---

  def is_circuit_open(self, circuit_id: str) -> bool:
    """Return True if the circuit currently blocks its gated action."""
    try:
      row = self._repo.get_state(circuit_id)
    except Exception as e:  # noqa: BLE001
      print(f'Warning: circuit check for {circuit_id} failed, allowing: {e}')
      return False
    if row is None:
      return False
    return row.state == CircuitState.OFF.value

  def is_provider_available(self, provider: str) -> bool:
    """Return True if calls to the provider may be attempted.

    An 'off' circuit whose recovery timeout has elapsed moves to 'half_open'
    here and reports available so one probe can go through.
    """
    circuit_id = provider_circuit_id(provider)
    try:
      with self._lock:
        row = self._repo.get_state(circuit_id)
        if row is None or row.state != CircuitState.OFF.value:
          return True
        if not self._recovery_due(row):
          return False
        self._repo.update(
          circuit_id,
          state=CircuitState.HALF_OPEN.value,
          success_count=0,
          state_changed_at=self._clock(),
        )
        print(f'Circuits: {circuit_id} off -> half_open after {self._recovery_timeout}s')
        return True
    except Exception as e:  # noqa: BLE001
      print(f'Warning: provider check for {circuit_id} failed, allowing: {e}')
      return True

  def _recovery_due(self, row: CircuitBreakerState) -> bool:
    changed = row.state_changed_at or row.last_failure_at
    if changed is None:
      return True
    return (self._clock() - _as_utc(changed)).total_seconds() >= self._recovery_timeout

  # --- Transitions ---

  def set_circuit_state(self, circuit_id: str, state: CircuitState | str) -> CircuitBreakerState:
    """Force a circuit into state. Turning a provider circuit on clears its counters.

    Raises CircuitNotFoundError for an unknown id and ValueError for an
    unknown state.
    """
    new_state = CircuitState(state)
    with self._lock:
      row = self._repo.get_state(circuit_id)
      if row is None:
        raise CircuitNotFoundError(circuit_id)
      fields: dict[str, object] = {'state': new_state.value, 'state_changed_at': self._clock()}
      if row.circuit_type == CircuitType.PROVIDER.value and new_state is CircuitState.ON:
        fields.update(failure_count=0, success_count=0)
      updated = self._repo.update(circuit_id, **fields)
    print(f'Circuits: {circuit_id} {row.state} -> {new_state.value}')
    return updated or row

  def record_failure(self, provider: str, error: BaseException | None = None) -> None:
    """Count a failed provider call and trip the circuit when warranted.

    Authentication errors trip on the first failure. A failure while
    half_open re-opens immediately.
    """
    circuit_id = provider_circuit_id(provider)
    try:
      with self._lock:
        row = self._repo.get_state(circuit_id)
        if row is None or row.circuit_type != CircuitType.PROVIDER.value:
          print(f'Warning: record_failure ignored for non-provider circuit {circuit_id}')
          return
        now = self._clock()
        count = row.failure_count + 1
        fields: dict[str, object] = {'failure_count': count, 'last_failure_at': now}
        threshold = 1 if isinstance(error, ProviderAuthenticationError) else row.failure_threshold
        trip = row.state == CircuitState.HALF_OPEN.value or (row.state == CircuitState.ON.value and count >= threshold)
        if trip:
          fields.update(state=CircuitState.OFF.value, success_count=0, state_changed_at=now)
        self._repo.update(circuit_id, **fields)
    except SQLAlchemyError as e:
      print(f'Warning: failed to record failure for {circuit_id}: {e}')
      return
    if trip:
      print(f'Circuits: {circuit_id} tripped off after {count} failure(s)')

  def record_success(self, provider: str) -> None:
    """Count a successful provider call; two in a row close a half_open circuit."""
    circuit_id = provider_circuit_id(provider)
    closed = False
    try:
      with self._lock:
        row = self._repo.get_state(circuit_id)
        if row is None or row.circuit_type != CircuitType.PROVIDER.value:
          return
        now = self._clock()
        successes = row.success_count + 1
        fields: dict[str, object] = {'failure_count': 0, 'success_count': successes, 'last_success_at': now}
        if row.state == CircuitState.HALF_OPEN.value and successes >= HALF_OPEN_SUCCESSES:
          fields.update(state=CircuitState.ON.value, success_count=0, state_changed_at=now)
          closed = True
        self._repo.update(circuit_id, **fields)
    except SQLAlchemyError as e:
      print(f'Warning: failed to record success for {circuit_id}: {e}')
      return
    if closed:
      print(f'Circuits: {circuit_id} half_open -> on')

  def reset_provider_circuit(self, circuit_id: str) -> CircuitBreakerState:
    """Close a provider circuit and clear its counters."""
    with self._lock:
      row = self._repo.get_state(circuit_id)
      if row is None:
        raise CircuitNotFoundError(circuit_id)
      if row.circuit_type != CircuitType.PROVIDER.value:
        raise CircuitTypeError('reset is only for provider circuits')
      updated = self._repo.update(
        circuit_id,
        state=CircuitState.ON.value,
        failure_count=0,
        success_count=0,
        state_changed_at=self._clock(),
      )
    print(f'Circuits: {circuit_id} reset')
    return updated or row

  # --- Queries ---

  def get_circuit_status(self, circuit_id: str) -> CircuitBreakerState | None:
    return self._repo.get_state(circuit_id)

  def get_all_circuits(self) -> list[CircuitBreakerState]:
    return self._repo.get_all_states()

  def get_circuits_by_type(self, circuit_type: CircuitType | str) -> list[CircuitBreakerState]:
    return self._repo.get_states_by_type(CircuitType(circuit_type))

  def get_provider_status(self, circuit_id: str) -> ProviderCircuitStatus | None:
    row = self._repo.get_state(provider_circuit_id(circuit_id))
    if row is None or row.circuit_type != CircuitType.PROVIDER.value:
      return None
    can_attempt = row.state != CircuitState.OFF.value or self._recovery_due(row)
    return ProviderCircuitStatus(
      circuit_id=row.circuit_id,
      state=row.state,
      failure_count=row.failure_count,
      success_count=row.success_count,
      failure_threshold=row.failure_threshold,
      last_failure_at=row.last_failure_at,
      last_success_at=row.last_success_at,
      state_changed_at=row.state_changed_at,
      can_attempt=can_attempt,
      reset_timeout_seconds=self._recovery_timeout,
    )
