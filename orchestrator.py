# orchestrator.py
#
# One major update, end to end:
#   circuit gates → select → generate (static fallback on failure) → frame →
#   validate grid → send → cache.
#
# Blocking by a circuit is a normal outcome reported in SendResult, not an
# error. Generation and transport failures are logged and reported as
# success=False so the scheduler and event handlers never see an exception.

from dataclasses import dataclass
from typing import Protocol

from circuits import CircuitBreakerService
from content import (
  ContentGenerator,
  GeneratedContent,
  GenerationContext,
  grid_errors,
  validate_generator_output,
)
from frame import FrameDecorator
from selector import ContentSelector


class Display(Protocol):
  def send_layout(self, grid: list[list[int]]) -> None: ...


@dataclass
class SendResult:
  success: bool
  blocked: bool = False
  block_reason: str | None = None
  circuit_state: dict[str, bool] | None = None


def circuit_block_reason(circuit_breaker: CircuitBreakerService | None) -> str | None:
  """Return why updates are blocked right now, or None if they may proceed.

  MASTER is checked before SLEEP_MODE. Check failures allow the update.
  """
  if circuit_breaker is None:
    return None
  for circuit_id, reason in (('MASTER', 'master_circuit_off'), ('SLEEP_MODE', 'sleep_mode_active')):
    try:
      if circuit_breaker.is_circuit_open(circuit_id):
        return reason
    except Exception as e:  # noqa: BLE001
      print(f'Warning: {circuit_id} check failed, allowing update: {e}')
  return None


class ContentOrchestrator:
  def __init__(
    self,
    selector: ContentSelector,
    decorator: FrameDecorator,
    display: Display,
    fallback_generator: ContentGenerator,
    circuit_breaker: CircuitBreakerService | None = None,
  ) -> None:
    self._selector = selector
    self._decorator = decorator
    self._display = display
    self._fallback = fallback_generator
    self._circuit_breaker = circuit_breaker
    self._cached: GeneratedContent | None = None

  def get_cached_content(self) -> GeneratedContent | None:
    return self._cached

  def clear_cache(self) -> None:
    self._cached = None

  def generate_and_send(self, context: GenerationContext) -> SendResult:
    reason = circuit_block_reason(self._circuit_breaker)
    if reason == 'master_circuit_off':
      print('Orchestrator: MASTER circuit is off, update blocked')
      return SendResult(success=False, blocked=True, block_reason=reason)
    if reason == 'sleep_mode_active':
      print('Orchestrator: sleep mode active, update blocked')
      return SendResult(
        success=False,
        blocked=True,
        block_reason=reason,
        circuit_state={'master': False, 'sleep_mode': True},
      )

    content = self._generate(context)
    if content is None:
      return SendResult(success=False)

    try:
      frame = self._decorator.decorate(content, context.timestamp)
    except Exception as e:  # noqa: BLE001
      print(f'Orchestrator: frame decoration failed: {e}')
      return SendResult(success=False)
    for warning in frame.warnings:
      print(f'Warning: {warning}')

    errors = grid_errors(frame.layout)
    if errors:
      print(f'Orchestrator: refusing to send invalid layout: {errors[0]}')
      return SendResult(success=False)

    try:
      self._display.send_layout(frame.layout)
    except Exception as e:  # noqa: BLE001
      print(f'Orchestrator: send failed: {e}')
      return SendResult(success=False)

    if context.update_type == 'major':
      self._cached = content
    return SendResult(success=True)

  def _generate(self, context: GenerationContext) -> GeneratedContent | None:
    """Run the selected generator, falling back to the static generator.

    Returns None only when the fallback fails too.
    """
    selected = self._selector.select(context)
    if selected is None:
      print('Orchestrator: no generator selected, using fallback')
    else:
      generator_id = selected.registration.id
      try:
        content = selected.generator.generate(context)
        result = validate_generator_output(content)
        if result.valid:
          print(f'Orchestrator: generated content with {generator_id}')
          return content
        print(f'Orchestrator: {generator_id} returned invalid content: {"; ".join(result.errors)}, using fallback')
      except Exception as e:  # noqa: BLE001
        print(f'Orchestrator: {generator_id} failed: {e}, using fallback')

    try:
      content = self._fallback.generate(context)
    except Exception as e:  # noqa: BLE001
      print(f'Orchestrator: fallback generator failed: {e}')
      return None
    result = validate_generator_output(content)
    if not result.valid:
      print(f'Orchestrator: fallback returned invalid content: {"; ".join(result.errors)}')
      return None
    return content
