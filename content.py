# content.py
#
# Shared content types passed between generators, the frame decorator, the
# orchestrator, and the minute scheduler, plus the shape checks applied to
# generator output and rendered grids.

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Protocol

from exceptions import ContentValidationError

BOARD_ROWS = 6
BOARD_COLS = 22

UpdateType = Literal['major', 'minor']
OutputMode = Literal['text', 'layout']


@dataclass(frozen=True)
class PersonalityDimensions:
  mood: str
  energy: str
  humor: str
  obsession: str


@dataclass
class Layout:
  character_codes: list[list[int]]


@dataclass
class GeneratedContent:
  """Output of a generator.

  Text content is framed by the decorator. Layout content is a pre-rendered
  6×22 grid and is sent as-is.
  """

  text: str = ''
  output_mode: OutputMode = 'text'
  layout: Layout | None = None
  metadata: dict[str, Any] = field(default_factory=dict)

  @classmethod
  def from_layout(cls, character_codes: list[list[int]], **metadata: Any) -> 'GeneratedContent':
    return cls(output_mode='layout', layout=Layout(character_codes), metadata=dict(metadata))


@dataclass
class GenerationContext:
  update_type: UpdateType
  timestamp: datetime
  event_data: dict[str, Any] | None = None
  personality: PersonalityDimensions | None = None
  previous_content: GeneratedContent | None = None


@dataclass
class ValidationResult:
  valid: bool
  errors: list[str] = field(default_factory=list)


class GeneratorKind(str, Enum):
  NOTIFICATION = 'notification'
  AI = 'ai'
  PROGRAMMATIC = 'programmatic'
  STATIC = 'static'
  MINOR = 'minor'


class ContentGenerator(Protocol):
  def generate(self, context: GenerationContext) -> GeneratedContent: ...

  def validate(self) -> ValidationResult: ...


def grid_errors(grid: Any) -> list[str]:
  """Return the reasons grid is not a 6×22 matrix of non-negative ints."""
  if not isinstance(grid, list):
    return ['grid must be a list of rows']
  if len(grid) != BOARD_ROWS:
    return [f'grid must have {BOARD_ROWS} rows, got {len(grid)}']
  errors: list[str] = []
  for i, row in enumerate(grid):
    if not isinstance(row, list) or len(row) != BOARD_COLS:
      size = len(row) if isinstance(row, list) else type(row).__name__
      errors.append(f'row {i} must have {BOARD_COLS} columns, got {size}')
      continue
    # bool is an int subclass and never a valid code
    if any(not isinstance(code, int) or isinstance(code, bool) or code < 0 for code in row):
      errors.append(f'row {i} contains a value that is not a non-negative integer')
  return errors


def is_valid_grid(grid: Any) -> bool:
  return not grid_errors(grid)


def require_grid(grid: Any) -> list[list[int]]:
  """Return grid unchanged, or raise ContentValidationError describing the first problem."""
  errors = grid_errors(grid)
  if errors:
    raise ContentValidationError(f'invalid layout: {errors[0]}')
  return grid


def validate_generator_output(content: Any) -> ValidationResult:
  """Check that a generator returned one of the two GeneratedContent shapes."""
  if not isinstance(content, GeneratedContent):
    return ValidationResult(False, [f'expected GeneratedContent, got {type(content).__name__}'])
  if content.output_mode == 'text':
    if not isinstance(content.text, str) or not content.text.strip():
      return ValidationResult(False, ['text content is empty'])
    return ValidationResult(True)
  if content.output_mode == 'layout':
    if content.layout is None:
      return ValidationResult(False, ['layout content has no character codes'])
    errors = grid_errors(content.layout.character_codes)
    return ValidationResult(not errors, errors)
  return ValidationResult(False, [f'unknown output mode {content.output_mode!r}'])
