from datetime import datetime
from typing import Any
from unittest.mock import MagicMock

import pytest

from circuits import CircuitBreakerService
from events import REFRESH_EVENT, STATE_CHANGED_EVENT, EventBus, EventHandler
from orchestrator import SendResult
from triggers import TriggerConfig, TriggerMatcher

_NOW = datetime(2025, 11, 26, 10, 30)


def _state_event(entity_id: str, state: Any) -> dict[str, Any]:
  return {
    'event_type': STATE_CHANGED_EVENT,
    'data': {'entity_id': entity_id, 'new_state': {'state': state}},
  }


def _orchestrator() -> MagicMock:
  orchestrator = MagicMock()
  orchestrator.generate_and_send.return_value = SendResult(success=True)
  return orchestrator


def _handler(
  bus: EventBus,
  orchestrator: MagicMock,
  matcher: TriggerMatcher | None = None,
  circuit_breaker: Any = None,
) -> EventHandler:
  handler = EventHandler(bus, orchestrator, matcher, circuit_breaker, clock=lambda: _NOW)
  handler.initialize()
  return handler


def _door_matcher(debounce: float = 0) -> TriggerMatcher:
  return TriggerMatcher([TriggerConfig('Door', 'binary_sensor.*_door', ('on',), debounce)])


# --- EventBus ---


def test_publish_delivers_to_subscribers_of_type() -> None:
  bus = EventBus()
  refreshes: list[dict[str, Any]] = []
  others: list[dict[str, Any]] = []
  bus.subscribe_to_events('vestaboard_refresh', refreshes.append)
  bus.subscribe_to_events('other', others.append)
  event = {'event_type': 'vestaboard_refresh', 'data': {}}
  assert bus.publish(event) == 1
  assert refreshes == [event]
  assert others == []


def test_unsubscribe_stops_delivery() -> None:
  bus = EventBus()
  received: list[dict[str, Any]] = []
  unsubscribe = bus.subscribe_to_events('x', received.append)
  assert bus.subscriber_count('x') == 1
  unsubscribe()
  unsubscribe()
  assert bus.subscriber_count('x') == 0
  assert bus.publish({'event_type': 'x'}) == 0
  assert received == []


def test_failing_subscriber_does_not_block_others(capsys: pytest.CaptureFixture[str]) -> None:
  bus = EventBus()

  def broken(event: dict[str, Any]) -> None:
    raise RuntimeError('subscriber bug')

  received: list[dict[str, Any]] = []
  bus.subscribe_to_events('x', broken)
  bus.subscribe_to_events('x', received.append)
  assert bus.publish({'event_type': 'x'}) == 2
  assert len(received) == 1
  assert 'subscriber bug' in capsys.readouterr().out


@pytest.mark.parametrize('event', [{}, {'event_type': 5}, {'event_type': None}])
def test_publish_requires_string_event_type(event: dict[str, Any]) -> None:
  with pytest.raises(ValueError, match='string event_type'):
    EventBus().publish(event)


# --- EventHandler: refresh ---


def test_initialize_without_matcher_only_listens_for_refresh() -> None:
  bus = EventBus()
  _handler(bus, _orchestrator())
  assert bus.subscriber_count(REFRESH_EVENT) == 1
  assert bus.subscriber_count(STATE_CHANGED_EVENT) == 0


def test_initialize_with_matcher_listens_for_state_changes() -> None:
  bus = EventBus()
  _handler(bus, _orchestrator(), _door_matcher())
  assert bus.subscriber_count(STATE_CHANGED_EVENT) == 1


def test_refresh_triggers_major_update_with_event_data() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator)
  bus.publish({'event_type': REFRESH_EVENT, 'data': {'reason': 'button'}})
  context = orchestrator.generate_and_send.call_args.args[0]
  assert context.update_type == 'major'
  assert context.timestamp == _NOW
  assert context.event_data == {'reason': 'button'}


def test_refresh_without_data_passes_empty_dict() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator)
  bus.publish({'event_type': REFRESH_EVENT})
  assert orchestrator.generate_and_send.call_args.args[0].event_data == {}


def test_orchestrator_error_is_swallowed(capsys: pytest.CaptureFixture[str]) -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  orchestrator.generate_and_send.side_effect = RuntimeError('board offline')
  _handler(bus, orchestrator)
  bus.publish({'event_type': REFRESH_EVENT})
  assert 'Events: update failed: board offline' in capsys.readouterr().out


def test_refresh_skipped_when_master_off(circuit_breaker: CircuitBreakerService) -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  circuit_breaker.set_circuit_state('MASTER', 'off')
  _handler(bus, orchestrator, circuit_breaker=circuit_breaker)
  bus.publish({'event_type': REFRESH_EVENT})
  orchestrator.generate_and_send.assert_not_called()


# --- EventHandler: state_changed ---


def test_matching_state_change_triggers_update() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator, _door_matcher())
  bus.publish(_state_event('binary_sensor.front_door', 'on'))
  context = orchestrator.generate_and_send.call_args.args[0]
  assert context.event_data['entity_id'] == 'binary_sensor.front_door'


def test_state_filter_mismatch_is_ignored() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator, _door_matcher())
  bus.publish(_state_event('binary_sensor.front_door', 'off'))
  orchestrator.generate_and_send.assert_not_called()


def test_no_match_skips_circuit_check() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  breaker = MagicMock()
  _handler(bus, orchestrator, _door_matcher(), breaker)
  bus.publish(_state_event('light.kitchen', 'on'))
  breaker.is_circuit_open.assert_not_called()
  orchestrator.generate_and_send.assert_not_called()


def test_debounced_match_is_ignored(capsys: pytest.CaptureFixture[str]) -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator, _door_matcher(debounce=300))
  bus.publish(_state_event('binary_sensor.front_door', 'on'))
  bus.publish(_state_event('binary_sensor.front_door', 'on'))
  assert orchestrator.generate_and_send.call_count == 1
  assert 'is debounced' in capsys.readouterr().out


@pytest.mark.parametrize(
  'event',
  [
    {'event_type': STATE_CHANGED_EVENT},
    {'event_type': STATE_CHANGED_EVENT, 'data': {'entity_id': 'binary_sensor.front_door'}},
    {'event_type': STATE_CHANGED_EVENT, 'data': {'entity_id': 7, 'new_state': {'state': 'on'}}},
    {'event_type': STATE_CHANGED_EVENT, 'data': {'entity_id': 'binary_sensor.front_door', 'new_state': 'on'}},
  ],
)
def test_malformed_state_change_is_ignored(event: dict[str, Any]) -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  _handler(bus, orchestrator, _door_matcher())
  bus.publish(event)
  orchestrator.generate_and_send.assert_not_called()


@pytest.mark.parametrize('circuit_id', ['MASTER', 'SLEEP_MODE'])
def test_state_change_blocked_by_circuit(
  circuit_breaker: CircuitBreakerService,
  capsys: pytest.CaptureFixture[str],
  circuit_id: str,
) -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  circuit_breaker.set_circuit_state(circuit_id, 'off')
  _handler(bus, orchestrator, _door_matcher(), circuit_breaker)
  bus.publish(_state_event('binary_sensor.front_door', 'on'))
  orchestrator.generate_and_send.assert_not_called()
  assert 'update skipped' in capsys.readouterr().out


# --- EventHandler: lifecycle ---


def test_update_trigger_matcher_subscribes_once() -> None:
  bus = EventBus()
  orchestrator = _orchestrator()
  handler = _handler(bus, orchestrator)
  handler.update_trigger_matcher(_door_matcher())
  handler.update_trigger_matcher(_door_matcher())
  assert bus.subscriber_count(STATE_CHANGED_EVENT) == 1
  bus.publish(_state_event('binary_sensor.front_door', 'on'))
  orchestrator.generate_and_send.assert_called_once()


def test_update_trigger_matcher_cleans_up_previous() -> None:
  old = MagicMock()
  handler = _handler(EventBus(), _orchestrator(), old)
  handler.update_trigger_matcher(_door_matcher())
  old.cleanup.assert_called_once()


def test_shutdown_unsubscribes_everything() -> None:
  bus = EventBus()
  matcher = MagicMock()
  handler = _handler(bus, _orchestrator(), matcher)
  handler.shutdown()
  assert bus.subscriber_count(REFRESH_EVENT) == 0
  assert bus.subscriber_count(STATE_CHANGED_EVENT) == 0
  matcher.cleanup.assert_called_once()
