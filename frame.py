# frame.py
#
# Frame decorator: lays text content into the standard 6×22 board frame.
#
#   rows 0-4, cols 0-20  word-wrapped content text
#   row 5,    cols 0-20  info bar: "WED 26NOV 10:30 ■72F"
#   rows 0-5, col 21     color bar
#
# Layout content is already a full frame and passes through untouched.
# Data sources (weather, color bar) are optional and degrade to warnings on
# failure so a flaky upstream never blocks an update.

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import integrations.vestaboard as vestaboard
from content import BOARD_COLS, BOARD_ROWS, GeneratedContent
from exceptions import ContentValidationError
from integrations.weather import Conditions

TEXT_ROWS = 5
TEXT_COLS = 21

FALLBACK_COLORS: list[int] = [
  vestaboard.RED,
  vestaboard.ORANGE,
  vestaboard.YELLOW,
  vestaboard.GREEN,
  vestaboard.BLUE,
  vestaboard.VIOLET,
]

_DAYS = ('MON', 'TUE', 'WED', 'THU', 'FRI', 'SAT', 'SUN')
_MONTHS = ('JAN', 'FEB', 'MAR', 'APR', 'MAY', 'JUN', 'JUL', 'AUG', 'SEP', 'OCT', 'NOV', 'DEC')


class WeatherSource(Protocol):
  def get_current_conditions(self) -> Conditions: ...


ColorSource = Callable[[datetime], list[int]]


@dataclass
class FrameResult:
  layout: list[list[int]]
  warnings: list[str] = field(default_factory=list)


def format_info_bar(when: datetime, conditions: Conditions | None = None) -> list[int]:
  """Return the 21 character codes of the info bar.

  Temperature, when known, follows a color chip reflecting the conditions.
  Trailing padding leaves room for three-digit temperatures.
  """
  info = f'{_DAYS[when.weekday()]} {when.day}{_MONTHS[when.month - 1]} {when:%H:%M}'
  chip = -1
  if conditions is not None:
    chip = len(info) + 1
    info = f'{info}  {conditions.temperature}{conditions.unit}'
  codes = vestaboard.encode_line(info[:TEXT_COLS], TEXT_COLS)
  if 0 <= chip < TEXT_COLS:
    codes[chip] = conditions.color_code  # type: ignore[union-attr]
  return codes


def _fallback_layout(text: str) -> list[list[int]]:
  first_line = text.splitlines()[0] if text else ''
  layout = [[0] * BOARD_COLS for _ in range(BOARD_ROWS)]
  layout[0] = vestaboard.encode_line(first_line, BOARD_COLS)
  return layout


class FrameDecorator:
  def __init__(
    self,
    weather: WeatherSource | None = None,
    colors: ColorSource | None = None,
    clock: Callable[[], datetime] = datetime.now,
  ) -> None:
    self._weather = weather
    self._colors = colors
    self._clock = clock

  def decorate(self, content: GeneratedContent, when: datetime | None = None) -> FrameResult:
    """Return the 6×22 grid for content.

    Layout content is returned as-is without touching any data source.
    Raises ContentValidationError for layout content with no codes.
    """
    if content.output_mode == 'layout':
      if content.layout is None:
        raise ContentValidationError('layout content has no character codes')
      return FrameResult(content.layout.character_codes)
    return self.decorate_text(content.text, when)

  def decorate_text(self, text: str, when: datetime | None = None) -> FrameResult:
    when = when or self._clock()
    try:
      return self._compose(text, when)
    except Exception as e:  # noqa: BLE001
      print(f'Warning: frame generation failed: {e}')
      return FrameResult(_fallback_layout(text), [f'Frame generation failed: {e}'])

  def _compose(self, text: str, when: datetime) -> FrameResult:
    warnings: list[str] = []

    sanitized, unsupported = vestaboard.sanitize_text(text)
    if unsupported:
      warnings.append(f'Unsupported characters replaced with space: {", ".join(unsupported)}')
    lines = vestaboard.wrap_lines(sanitized.split('\n'), TEXT_COLS)
    if len(lines) > TEXT_ROWS:
      warnings.append(f'Content truncated: {len(lines)} lines reduced to {TEXT_ROWS}')

    conditions: Conditions | None = None
    if self._weather is not None:
      try:
        conditions = self._weather.get_current_conditions()
      except Exception as e:  # noqa: BLE001
        warnings.append(f'Weather unavailable: {e}')

    colors = FALLBACK_COLORS
    if self._colors is not None:
      try:
        colors = self._colors(when)
      except Exception as e:  # noqa: BLE001
        warnings.append(f'Color bar unavailable: {e}')

    text_grid = vestaboard.build_grid(lines, TEXT_ROWS, TEXT_COLS)
    rows = text_grid + [format_info_bar(when, conditions)]
    layout = [row + [colors[i] if i < len(colors) else vestaboard.WHITE] for i, row in enumerate(rows)]
    return FrameResult(layout, warnings)
