# triggers.py
#
# Home Assistant state-change triggers: YAML loading, validation, hot reload,
# and matching.
#
# triggers.yaml:
#
#   triggers:
#     - name: Front door
#       entity_pattern: binary_sensor.front_door   # exact
#       state_filter: "on"                         # optional, str or list
#       debounce_seconds: 60                       # optional, default 0
#     - name: Any person
#       entity_pattern: "person.*"                 # glob
#     - name: Garage
#       entity_pattern: "/^cover\\..*garage/i"     # /regex/flags
#
# Patterns are compiled once when a matcher is built or updated, so a bad
# regex fails the load rather than the first event.

import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

FILE_WATCH_DEBOUNCE_SECONDS = 0.5

# JavaScript-style flags accepted after the closing slash. g and y have no
# meaning for a single test and are accepted for compatibility.
_REGEX_FLAGS: dict[str, int] = {
  'i': re.IGNORECASE,
  'm': re.MULTILINE,
  's': re.DOTALL,
  'u': 0,
  'g': 0,
  'y': 0,
}


@dataclass(frozen=True)
class TriggerConfig:
  """One trigger definition. The name identifies it and must be unique."""

  name: str
  entity_pattern: str
  state_filter: tuple[str, ...] | None = None
  debounce_seconds: float = 0


@dataclass
class TriggersConfig:
  triggers: list[TriggerConfig] = field(default_factory=list)


@dataclass
class TriggerMatchResult:
  matched: bool
  trigger: TriggerConfig | None = None
  debounced: bool = False


def is_regex_pattern(pattern: str) -> bool:
  return pattern.startswith('/') and len(pattern) > 1 and '/' in pattern[1:]


def compile_entity_pattern(pattern: str, trigger_name: str = '') -> Callable[[str], bool]:
  """Return a predicate for an exact, glob, or /regex/flags entity pattern.

  Raises ValueError for an invalid regex or unknown flag.
  """
  if is_regex_pattern(pattern):
    last_slash = pattern.rindex('/')
    body, flag_chars = pattern[1:last_slash], pattern[last_slash + 1 :]
    flags = 0
    try:
      for ch in flag_chars:
        if ch not in _REGEX_FLAGS:
          raise re.error(f'unknown flag {ch!r}')
        flags |= _REGEX_FLAGS[ch]
      regex = re.compile(body, flags)
    except re.error as e:
      raise ValueError(f'Invalid regex pattern in trigger "{trigger_name}": {pattern}. {e}') from None
    return lambda entity_id: regex.search(entity_id) is not None

  if '*' in pattern or '?' in pattern:
    translated = re.escape(pattern).replace(r'\*', '.*').replace(r'\?', '.')
    glob = re.compile(translated)
    return lambda entity_id: glob.fullmatch(entity_id) is not None

  return lambda entity_id: entity_id == pattern


# --- Loading ---


def _validate_trigger(raw: Any, index: int) -> TriggerConfig:
  if not isinstance(raw, dict):
    raise ValueError(f'Trigger at index {index} must be a mapping')
  name = raw.get('name')
  if not isinstance(name, str) or not name:
    raise ValueError(f'Trigger at index {index} is missing required field: name (string)')
  pattern = raw.get('entity_pattern')
  if not isinstance(pattern, str) or not pattern:
    raise ValueError(f'Trigger at index {index} is missing required field: entity_pattern (string)')
  compile_entity_pattern(pattern, name)

  state_filter = raw.get('state_filter')
  if state_filter is not None:
    if isinstance(state_filter, str):
      state_filter = (state_filter,)
    elif isinstance(state_filter, list) and all(isinstance(s, str) for s in state_filter):
      state_filter = tuple(state_filter)
    else:
      raise ValueError(f'Trigger "{name}" has invalid state_filter: must be string or list of strings')

  debounce = raw.get('debounce_seconds', 0)
  if isinstance(debounce, bool) or not isinstance(debounce, (int, float)):
    raise ValueError(f'Trigger "{name}" has invalid debounce_seconds: must be a number')
  if debounce < 0:
    raise ValueError(f'Trigger "{name}" has invalid debounce_seconds: must be non-negative (got {debounce})')

  return TriggerConfig(name=name, entity_pattern=pattern, state_filter=state_filter, debounce_seconds=debounce)


def _check_unique_names(triggers: list[TriggerConfig]) -> None:
  seen: set[str] = set()
  for trigger in triggers:
    if trigger.name in seen:
      raise ValueError(f'Duplicate trigger name "{trigger.name}": names must be unique')
    seen.add(trigger.name)


def parse_triggers(data: Any) -> TriggersConfig:
  """Validate parsed YAML and return the trigger list. Raises ValueError."""
  if not isinstance(data, dict):
    raise ValueError('Trigger configuration must be a mapping')
  raw_triggers = data.get('triggers')
  if not isinstance(raw_triggers, list):
    raise ValueError('Trigger configuration must contain a "triggers" list')
  triggers = [_validate_trigger(raw, i) for i, raw in enumerate(raw_triggers)]
  _check_unique_names(triggers)
  return TriggersConfig(triggers)


def load_triggers(path: Path) -> TriggersConfig:
  """Read and validate a triggers YAML file.

  Raises FileNotFoundError when the file is missing and ValueError for YAML
  syntax or validation errors.
  """
  if not path.exists():
    raise FileNotFoundError(
      f'Trigger config not found at {path.resolve()}. Copy triggers.example.yaml to {path.name} and edit it.'
    )
  try:
    with open(path) as f:
      data = yaml.safe_load(f)
  except yaml.YAMLError as e:
    raise ValueError(f'Invalid YAML in {path.name}: {e}') from None
  return parse_triggers(data)


class TriggerConfigLoader:
  """Loads a triggers file and reloads it when it changes on disk.

  A daemon thread polls the file's mtime. Changes are coalesced through a
  short timer so an editor's burst of writes triggers one reload. Listeners
  registered with on() receive 'config_reloaded' (TriggersConfig) or
  'error' (Exception); reload failures never propagate.
  """

  _EVENTS = ('config_reloaded', 'error')

  def __init__(
    self,
    path: Path,
    poll_interval: float = 1.0,
    debounce: float = FILE_WATCH_DEBOUNCE_SECONDS,
  ) -> None:
    self.path = path
    self._poll_interval = poll_interval
    self._debounce = debounce
    self._current: TriggersConfig | None = None
    self._listeners: dict[str, list[Callable[[Any], None]]] = {e: [] for e in self._EVENTS}
    self._stop = threading.Event()
    self._thread: threading.Thread | None = None
    self._timer: threading.Timer | None = None
    self._timer_lock = threading.Lock()
    self._mtime: float | None = None

  def on(self, event: str, callback: Callable[[Any], None]) -> None:
    if event not in self._listeners:
      raise ValueError(f'Unknown trigger loader event: {event!r}')
    self._listeners[event].append(callback)

  def _emit(self, event: str, payload: Any) -> None:
    for callback in list(self._listeners[event]):
      try:
        callback(payload)
      except Exception as e:  # noqa: BLE001
        print(f'Triggers: {event} listener failed: {e}')

  def load(self) -> TriggersConfig:
    """Load the file now. Errors propagate to the caller."""
    self._current = load_triggers(self.path)
    self._mtime = self._read_mtime()
    print(f'Triggers: loaded {len(self._current.triggers)} trigger(s) from {self.path}')
    return self._current

  def get_current_config(self) -> TriggersConfig | None:
    return self._current

  def reload(self) -> None:
    try:
      config = self.load()
    except (OSError, ValueError) as e:
      print(f'Triggers: reload failed, keeping previous config: {e}')
      self._emit('error', e)
      return
    self._emit('config_reloaded', config)

  def _read_mtime(self) -> float | None:
    try:
      return self.path.stat().st_mtime
    except OSError:
      return None

  def check_for_changes(self) -> None:
    mtime = self._read_mtime()
    if mtime != self._mtime:
      self._mtime = mtime
      self._schedule_reload()

  def _schedule_reload(self) -> None:
    with self._timer_lock:
      if self._timer is not None:
        self._timer.cancel()
      self._timer = threading.Timer(self._debounce, self.reload)
      self._timer.daemon = True
      self._timer.start()

  def _watch(self) -> None:
    while not self._stop.wait(self._poll_interval):
      self.check_for_changes()

  def start_watching(self) -> None:
    if self._thread is not None:
      return
    if self._mtime is None:
      self._mtime = self._read_mtime()
    self._stop.clear()
    self._thread = threading.Thread(target=self._watch, name='trigger-watcher', daemon=True)
    self._thread.start()
    print(f'Triggers: watching {self.path} for changes')

  def stop_watching(self) -> None:
    self._stop.set()
    with self._timer_lock:
      if self._timer is not None:
        self._timer.cancel()
        self._timer = None
    if self._thread is not None:
      self._thread.join(timeout=self._poll_interval + 1)
      self._thread = None


# --- Matching ---


class TriggerMatcher:
  """First-match-wins trigger lookup with per-trigger debounce.

  Debounce state is keyed by trigger name, so a reload keeps the window of
  any trigger whose name survives.
  """

  def __init__(
    self,
    triggers: list[TriggerConfig],
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._clock = clock
    self._last_fired: dict[str, float] = {}
    self._compiled = self._compile(triggers)

  @staticmethod
  def _compile(triggers: list[TriggerConfig]) -> list[tuple[TriggerConfig, Callable[[str], bool]]]:
    _check_unique_names(triggers)
    return [(t, compile_entity_pattern(t.entity_pattern, t.name)) for t in triggers]

  @property
  def triggers(self) -> list[TriggerConfig]:
    return [t for t, _ in self._compiled]

  def match(self, entity_id: str, state: str) -> TriggerMatchResult:
    for trigger, matches in self._compiled:
      if not matches(entity_id):
        continue
      if trigger.state_filter is not None and state not in trigger.state_filter:
        continue
      debounced = self._is_debounced(trigger)
      if not debounced:
        self._last_fired[trigger.name] = self._clock()
      return TriggerMatchResult(matched=True, trigger=trigger, debounced=debounced)
    return TriggerMatchResult(matched=False)

  def _is_debounced(self, trigger: TriggerConfig) -> bool:
    if trigger.debounce_seconds <= 0:
      return False
    last = self._last_fired.get(trigger.name)
    if last is None:
      return False
    return self._clock() - last < trigger.debounce_seconds

  def update_triggers(self, triggers: list[TriggerConfig]) -> None:
    """Swap in a new trigger list. Raises ValueError and keeps the old list on a bad pattern or duplicate name."""
    compiled = self._compile(triggers)
    keep = {t.name for t in triggers}
    self._last_fired = {name: ts for name, ts in self._last_fired.items() if name in keep}
    self._compiled = compiled

  def cleanup(self) -> None:
    self._last_fired.clear()
