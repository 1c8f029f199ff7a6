# generators.py
#
# Concrete content generators and their default registrations.
#
#   StaticFallbackGenerator  random .txt file from a directory; last resort
#   NotificationGenerator    Home Assistant entity change → short notice
#   TemplateGenerator        JSON format/variables templates (programmatic)
#   AIPromptGenerator        prompt → text through a failover list of providers,
#                            gated by provider circuit breakers
#   MinorUpdateGenerator     re-frames the cached major content with a fresh
#                            timestamp for the once-a-minute tick
#
# Every generator exposes generate(context) and validate(); the minor update
# generator also exposes should_skip().

import json
import random
import re
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import integrations.vestaboard as vestaboard
from circuits import CircuitBreakerService
from content import (
  GeneratedContent,
  GenerationContext,
  GeneratorKind,
  ValidationResult,
)
from frame import FrameDecorator
from selector import ContentPriority, ContentRegistry, GeneratorRegistration

# --- Static fallback ---


class StaticFallbackGenerator:
  def __init__(self, directory: Path | str = Path('content') / 'fallback') -> None:
    self.directory = Path(directory)

  def validate(self) -> ValidationResult:
    if not str(self.directory).strip():
      return ValidationResult(False, ['Fallback directory path is empty'])
    if not self.directory.is_dir():
      return ValidationResult(False, [f'Fallback directory not found: {self.directory}'])
    return ValidationResult(True)

  def generate(self, context: GenerationContext) -> GeneratedContent:
    files = sorted(self.directory.glob('*.txt'))
    if not files:
      raise FileNotFoundError(f'No .txt files found in fallback directory: {self.directory}')
    chosen = random.choice(files)  # nosec B311
    return GeneratedContent(
      text=chosen.read_text(encoding='utf-8').strip(),
      metadata={'source': 'static-fallback', 'directory': str(self.directory), 'file': chosen.name},
    )


# --- Notifications ---

# Display words for common binary states, by entity domain.
_STATE_WORDS: dict[str, dict[str, str]] = {
  'binary_sensor': {'on': 'OPEN', 'off': 'CLOSED'},
  'cover': {'open': 'OPEN', 'closed': 'CLOSED', 'opening': 'OPENING', 'closing': 'CLOSING'},
  'person': {'home': 'HOME', 'not_home': 'AWAY'},
}
_MOTION_WORDS = {'on': 'DETECTED', 'off': 'CLEAR'}


def _friendly_name(entity_id: str, new_state: dict[str, Any] | None) -> str:
  attributes = (new_state or {}).get('attributes') or {}
  name = attributes.get('friendly_name')
  if isinstance(name, str) and name.strip():
    return name.upper()
  object_id = entity_id.split('.', 1)[-1]
  return object_id.replace('_', ' ').upper()


class NotificationGenerator:
  """Formats a Home Assistant state change as "NAME / IS STATE" text."""

  def __init__(self, event_pattern: re.Pattern[str], display_name: str) -> None:
    self.event_pattern = event_pattern
    self.display_name = display_name

  def matches_event(self, identifier: str) -> bool:
    return bool(self.event_pattern.search(identifier))

  def validate(self) -> ValidationResult:
    if not isinstance(self.event_pattern, re.Pattern):
      return ValidationResult(False, ['event_pattern must be a compiled regular expression'])
    return ValidationResult(True)

  def generate(self, context: GenerationContext) -> GeneratedContent:
    if not context.event_data:
      raise ValueError('NotificationGenerator requires event_data in context')
    return GeneratedContent(
      text=self.format_notification(context.event_data),
      metadata={'source': 'notification', 'notification': self.display_name},
    )

  def format_notification(self, event_data: dict[str, Any]) -> str:
    data = event_data.get('data') if isinstance(event_data.get('data'), dict) else event_data
    entity_id = str(data.get('entity_id') or event_data.get('event_type') or '')
    new_state = data.get('new_state') if isinstance(data.get('new_state'), dict) else None
    state = str((new_state or {}).get('state') or data.get('state') or '').lower()

    domain = entity_id.split('.', 1)[0]
    words = _MOTION_WORDS if entity_id.endswith('_motion') else _STATE_WORDS.get(domain, {})
    state_word = words.get(state, state.replace('_', ' ').upper())

    name = _friendly_name(entity_id, new_state)
    lines = [name]
    if state_word:
      lines.append(f'IS {state_word}')
    return '\n'.join(lines)


# (id, display name, pattern) for the built-in Home Assistant notifications.
NOTIFICATION_CONFIGS: tuple[tuple[str, str, re.Pattern[str]], ...] = (
  ('ha-notification-door', 'Door Notification', re.compile(r'^binary_sensor\..*_door$')),
  ('ha-notification-person', 'Person Notification', re.compile(r'^person\..*$')),
  ('ha-notification-motion', 'Motion Notification', re.compile(r'^binary_sensor\..*_motion$')),
  ('ha-notification-garage', 'Garage Notification', re.compile(r'^cover\..*garage.*$', re.IGNORECASE)),
)


def register_notifications(registry: ContentRegistry) -> None:
  for generator_id, display_name, pattern in NOTIFICATION_CONFIGS:
    registry.register(
      GeneratorRegistration(
        id=generator_id,
        name=display_name,
        priority=ContentPriority.NOTIFICATION,
        kind=GeneratorKind.NOTIFICATION,
        event_trigger_pattern=pattern,
        tags=('notification', 'home-assistant'),
      ),
      NotificationGenerator(pattern, display_name),
    )


# --- Templates ---


class TemplateGenerator:
  """Renders one JSON template file.

  File format:
    {"templates": [{"format": ["LINE", "{var}"]}, ...],
     "variables": {"var": [["OPTION LINE"], ["OTHER", "OPTION"]]}}
  """

  def __init__(self, path: Path) -> None:
    self.path = path

  def _load(self) -> dict[str, Any]:
    with open(self.path) as f:
      return json.load(f)

  def validate(self) -> ValidationResult:
    try:
      data = self._load()
    except (OSError, json.JSONDecodeError) as e:
      return ValidationResult(False, [f'{self.path.name}: {e}'])
    errors: list[str] = []
    templates = data.get('templates')
    if not isinstance(templates, list) or not templates:
      errors.append(f'{self.path.name}: "templates" must be a non-empty list')
    else:
      for i, template in enumerate(templates):
        fmt = template.get('format') if isinstance(template, dict) else None
        if not isinstance(fmt, list) or not all(isinstance(line, str) for line in fmt):
          errors.append(f'{self.path.name}: templates[{i}].format must be a list of strings')
    variables = data.get('variables', {})
    if not isinstance(variables, dict):
      errors.append(f'{self.path.name}: "variables" must be an object')
    return ValidationResult(not errors, errors)

  def generate(self, context: GenerationContext) -> GeneratedContent:
    data = self._load()
    template = random.choice(data['templates'])  # nosec B311
    lines = vestaboard.expand_format(template['format'], data.get('variables', {}))
    return GeneratedContent(
      text='\n'.join(lines),
      metadata={'source': 'template', 'file': self.path.name},
    )


def register_templates(registry: ContentRegistry, template_dir: Path) -> int:
  """Register one P2 generator per valid *.json file. Returns the count registered."""
  if not template_dir.is_dir():
    return 0
  count = 0
  for path in sorted(template_dir.glob('*.json')):
    generator = TemplateGenerator(path)
    result = generator.validate()
    if not result.valid:
      print(f'Warning: skipping template {path.name}: {"; ".join(result.errors)}')
      continue
    registry.register(
      GeneratorRegistration(
        id=f'template-{path.stem}',
        name=path.stem.replace('_', ' ').title(),
        priority=ContentPriority.NORMAL,
        kind=GeneratorKind.PROGRAMMATIC,
        tags=('template',),
      ),
      generator,
    )
    count += 1
  return count


# --- AI ---


class AIProvider(Protocol):
  name: str

  def complete(self, system_prompt: str, user_prompt: str) -> str: ...


_PLACEHOLDER = re.compile(r'\{(\w+)\}')


def _fill(prompt: str, values: dict[str, str]) -> str:
  # Unknown placeholders are left as written.
  return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), prompt)


class AIPromptGenerator:
  """Asks each provider in turn until one returns text.

  Providers whose circuit is open are skipped. Each attempt is reported to
  the circuit breaker so repeated failures trip the provider's circuit.
  Raises RuntimeError when every provider is skipped or fails.
  """

  def __init__(
    self,
    system_prompt: str,
    user_prompt: str,
    providers: Sequence[AIProvider],
    circuit_breaker: CircuitBreakerService | None = None,
  ) -> None:
    self.system_prompt = system_prompt
    self.user_prompt = user_prompt
    self.providers = list(providers)
    self.circuit_breaker = circuit_breaker

  def validate(self) -> ValidationResult:
    errors: list[str] = []
    if not self.system_prompt.strip():
      errors.append('system prompt is empty')
    if not self.user_prompt.strip():
      errors.append('user prompt is empty')
    if not self.providers:
      errors.append('no AI providers configured')
    return ValidationResult(not errors, errors)

  def format_user_prompt(self, context: GenerationContext) -> str:
    values = {
      'date': context.timestamp.strftime('%A, %B %d, %Y'),
      'time': context.timestamp.strftime('%H:%M'),
      'update_type': context.update_type,
    }
    if context.personality is not None:
      values.update(
        mood=context.personality.mood,
        energy=context.personality.energy,
        humor=context.personality.humor,
        obsession=context.personality.obsession,
      )
    prompt = _fill(self.user_prompt, values)
    if context.event_data:
      prompt = f'{prompt}\n\nEvent: {json.dumps(context.event_data, default=str)}'
    return prompt

  def generate(self, context: GenerationContext) -> GeneratedContent:
    user_prompt = self.format_user_prompt(context)
    first_error: BaseException | None = None
    last_error: BaseException | None = None
    for index, provider in enumerate(self.providers):
      if self.circuit_breaker is not None and not self.circuit_breaker.is_provider_available(provider.name):
        print(f'AI: skipping {provider.name}, circuit open')
        continue
      try:
        text = provider.complete(self.system_prompt, user_prompt)
      except Exception as e:  # noqa: BLE001
        print(f'AI: {provider.name} failed: {e}')
        if self.circuit_breaker is not None:
          self.circuit_breaker.record_failure(provider.name, e)
        first_error = first_error or e
        last_error = e
        continue
      if self.circuit_breaker is not None:
        self.circuit_breaker.record_success(provider.name)
      metadata: dict[str, Any] = {'source': 'ai', 'provider': provider.name}
      if index > 0:
        metadata['failed_over'] = True
        if first_error is not None:
          metadata['primary_error'] = str(first_error)
      return GeneratedContent(text=text.strip(), metadata=metadata)
    if last_error is None:
      raise RuntimeError('All AI providers unavailable (circuits open)')
    raise RuntimeError(f'All AI providers failed: {last_error}') from last_error


# --- Minor updates ---


class MinorUpdateGenerator:
  """Refreshes the clock on the last major content without regenerating it.

  Text content is re-framed with the tick's timestamp. Layout content owns
  the whole board, so it is returned unchanged and should_skip() reports True
  so the scheduler leaves the board alone.
  """

  def __init__(
    self,
    get_cached: Callable[[], GeneratedContent | None],
    decorator: FrameDecorator,
  ) -> None:
    self._get_cached = get_cached
    self._decorator = decorator

  def validate(self) -> ValidationResult:
    return ValidationResult(True)

  def should_skip(self) -> bool:
    cached = self._get_cached()
    return cached is None or cached.output_mode == 'layout'

  def generate(self, context: GenerationContext) -> GeneratedContent:
    cached = self._get_cached()
    if cached is None:
      raise ValueError('No cached content available for minor update')
    if cached.output_mode == 'layout':
      return cached
    when: datetime = context.timestamp
    frame = self._decorator.decorate_text(cached.text, when)
    metadata = {
      **cached.metadata,
      'minor_update': True,
      'updated_at': when.isoformat(),
      'warnings': frame.warnings,
    }
    return GeneratedContent.from_layout(frame.layout, **metadata)
