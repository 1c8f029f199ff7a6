# events.py
#
# Event intake: an in-process event bus and the handler that turns Home
# Assistant events into major updates.
#
# Events are dicts of the form {'event_type': str, 'data': dict}. The webhook
# server publishes them to the bus; the handler subscribes to:
#   vestaboard_refresh  always; forces a major update
#   state_changed       only when a trigger matcher is configured; a matching,
#                       non-debounced state change forces a major update
#
# Callbacks run on the publisher's thread. Handler errors are logged and never
# propagate back to the publisher.

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from circuits import CircuitBreakerService
from content import GenerationContext
from orchestrator import ContentOrchestrator, circuit_block_reason
from triggers import TriggerMatcher

Event = dict[str, Any]
EventCallback = Callable[[Event], None]

REFRESH_EVENT = 'vestaboard_refresh'
STATE_CHANGED_EVENT = 'state_changed'


class EventSource(Protocol):
  def subscribe_to_events(self, event_type: str, callback: EventCallback) -> Callable[[], None]: ...


class EventBus:
  """Thread-safe publish/subscribe keyed by event_type."""

  def __init__(self) -> None:
    self._subscribers: dict[str, list[EventCallback]] = {}
    self._lock = threading.Lock()

  def subscribe_to_events(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
    with self._lock:
      self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe() -> None:
      with self._lock:
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
          callbacks.remove(callback)

    return unsubscribe

  def subscriber_count(self, event_type: str) -> int:
    with self._lock:
      return len(self._subscribers.get(event_type, []))

  def publish(self, event: Event) -> int:
    """Deliver event to every subscriber of its type. Returns the number notified."""
    event_type = event.get('event_type')
    if not isinstance(event_type, str):
      raise ValueError('event must have a string event_type')
    with self._lock:
      callbacks = list(self._subscribers.get(event_type, []))
    for callback in callbacks:
      try:
        callback(event)
      except Exception as e:  # noqa: BLE001
        print(f'Events: subscriber for {event_type!r} failed: {e}')
    return len(callbacks)


def _local_now() -> datetime:
  return datetime.now().astimezone()


class EventHandler:
  def __init__(
    self,
    source: EventSource,
    orchestrator: ContentOrchestrator,
    trigger_matcher: TriggerMatcher | None = None,
    circuit_breaker: CircuitBreakerService | None = None,
    clock: Callable[[], datetime] = _local_now,
  ) -> None:
    self._source = source
    self._orchestrator = orchestrator
    self._matcher = trigger_matcher
    self._circuit_breaker = circuit_breaker
    self._clock = clock
    self._unsubscribers: list[Callable[[], None]] = []
    self._state_unsubscribe: Callable[[], None] | None = None

  def initialize(self) -> None:
    self._unsubscribers.append(self._source.subscribe_to_events(REFRESH_EVENT, self.handle_refresh))
    if self._matcher is not None:
      self._subscribe_state_changes()
    print(f'Events: listening for {REFRESH_EVENT}' + (f' and {STATE_CHANGED_EVENT}' if self._matcher else ''))

  def _subscribe_state_changes(self) -> None:
    if self._state_unsubscribe is None:
      self._state_unsubscribe = self._source.subscribe_to_events(STATE_CHANGED_EVENT, self.handle_state_changed)

  def shutdown(self) -> None:
    for unsubscribe in self._unsubscribers:
      unsubscribe()
    self._unsubscribers.clear()
    if self._state_unsubscribe is not None:
      self._state_unsubscribe()
      self._state_unsubscribe = None
    if self._matcher is not None:
      self._matcher.cleanup()

  def update_trigger_matcher(self, matcher: TriggerMatcher) -> None:
    """Swap the matcher in place, subscribing to state changes if not yet subscribed."""
    if self._matcher is not None and self._matcher is not matcher:
      self._matcher.cleanup()
    self._matcher = matcher
    self._subscribe_state_changes()

  def handle_refresh(self, event: Event) -> None:
    print('Events: refresh requested')
    self._trigger_update(event.get('data') or {})

  def handle_state_changed(self, event: Event) -> None:
    if self._matcher is None:
      return
    data = event.get('data') or {}
    entity_id = data.get('entity_id')
    new_state = data.get('new_state') or {}
    state = new_state.get('state') if isinstance(new_state, dict) else None
    if not isinstance(entity_id, str) or state is None:
      return

    result = self._matcher.match(entity_id, str(state))
    if not result.matched or result.trigger is None:
      return
    if result.debounced:
      print(f'Events: {entity_id} matched {result.trigger.name!r} but is debounced')
      return
    print(f'Events: {entity_id} -> {state} matched {result.trigger.name!r}')
    self._trigger_update(data)

  def _trigger_update(self, event_data: dict[str, Any]) -> None:
    reason = circuit_block_reason(self._circuit_breaker)
    if reason is not None:
      print(f'Events: update skipped ({reason})')
      return
    try:
      result = self._orchestrator.generate_and_send(GenerationContext('major', self._clock(), event_data=event_data))
    except Exception as e:  # noqa: BLE001
      print(f'Events: update failed: {e}')
      return
    if not result.success and not result.blocked:
      print('Events: update did not reach the board')
