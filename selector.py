# selector.py
#
# Content registry and priority-based generator selection.
#
# Selection walks a fixed priority table:
#   P0 NOTIFICATION  event-driven, first registration whose trigger pattern
#                    matches the event_type or entity_id
#   P2 NORMAL        random pick among generators eligible for the update type
#   P3 FALLBACK      first registered fallback
# and returns None when nothing applies.

import random
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from content import ContentGenerator, GenerationContext, GeneratorKind


class ContentPriority(IntEnum):
  NOTIFICATION = 0
  NORMAL = 2
  FALLBACK = 3


@dataclass(frozen=True)
class GeneratorRegistration:
  id: str
  name: str
  priority: ContentPriority
  kind: GeneratorKind
  event_trigger_pattern: re.Pattern[str] | None = None
  update_types: frozenset[str] = frozenset({'major'})
  tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class RegisteredGenerator:
  registration: GeneratorRegistration
  generator: ContentGenerator


class ContentRegistry:
  """Generators keyed by registration id, kept in registration order."""

  def __init__(self) -> None:
    self._entries: dict[str, RegisteredGenerator] = {}

  def register(self, registration: GeneratorRegistration, generator: ContentGenerator) -> None:
    if registration.id in self._entries:
      raise ValueError(f'Generator with id {registration.id!r} is already registered')
    self._entries[registration.id] = RegisteredGenerator(registration, generator)

  def unregister(self, generator_id: str) -> bool:
    return self._entries.pop(generator_id, None) is not None

  def get(self, generator_id: str) -> RegisteredGenerator | None:
    return self._entries.get(generator_id)

  def get_all(self) -> list[RegisteredGenerator]:
    return list(self._entries.values())

  def get_by_priority(self, priority: ContentPriority) -> list[RegisteredGenerator]:
    return [e for e in self._entries.values() if e.registration.priority == priority]

  def get_by_kind(self, kind: GeneratorKind) -> list[RegisteredGenerator]:
    return [e for e in self._entries.values() if e.registration.kind == kind]

  def clear(self) -> None:
    self._entries.clear()

  def __len__(self) -> int:
    return len(self._entries)


def _event_identifiers(event_data: dict[str, Any]) -> list[str]:
  # A state_changed payload carries both event_type and entity_id; patterns
  # may target either.
  found: list[str] = []
  for value in (event_data.get('event_type'), event_data.get('entity_id')):
    if isinstance(value, str) and value:
      found.append(value)
  data = event_data.get('data')
  if isinstance(data, dict) and isinstance(data.get('entity_id'), str):
    found.append(data['entity_id'])
  return found


class ContentSelector:
  def __init__(
    self,
    registry: ContentRegistry,
    choice: Callable[[Sequence[RegisteredGenerator]], RegisteredGenerator] = random.choice,
  ) -> None:
    self._registry = registry
    self._choice = choice

  def select(self, context: GenerationContext) -> RegisteredGenerator | None:
    if context.event_data:
      match = self._select_notification(context.event_data)
      if match is not None:
        return match

    eligible = [
      e
      for e in self._registry.get_by_priority(ContentPriority.NORMAL)
      if context.update_type in e.registration.update_types
    ]
    if eligible:
      return self._choice(eligible)

    fallbacks = self._registry.get_by_priority(ContentPriority.FALLBACK)
    return fallbacks[0] if fallbacks else None

  def _select_notification(self, event_data: dict[str, Any]) -> RegisteredGenerator | None:
    identifiers = _event_identifiers(event_data)
    if not identifiers:
      return None
    for entry in self._registry.get_by_priority(ContentPriority.NOTIFICATION):
      pattern = entry.registration.event_trigger_pattern
      if pattern is not None and any(pattern.search(i) for i in identifiers):
        return entry
    return None
