# integrations/vestaboard.py
#
# Vestaboard Flagship (6×22) client and character encoder.
#   get_state()     reads the current board layout.
#   send_layout()   writes a pre-rendered character code grid to the board.
#
# The text helpers (wrap_lines, encode_line, build_grid, expand_format) turn
# display text into character codes. They take explicit widths so the frame
# decorator can lay text into the 21-column content area and the 1-column
# color bar separately.
#
# Two transports share one wire format, a raw JSON array-of-arrays of
# character codes with no wrapper key:
#   cloud   https://rw.vestaboard.com with X-Vestaboard-Read-Write-Key
#   local   <local_api_url>/local-api/message with X-Vestaboard-Local-Api-Key,
#           used when [vestaboard].local_api_url is set
# Both go through fetch_with_retry, so 429s and 5xx responses are retried.

import json
import random
import re
import unicodedata
from enum import Enum
from typing import Literal

import requests

from integrations.http import fetch_with_retry

# --- API configuration ---

_HOST = 'https://rw.vestaboard.com'
_LOCAL_PATH = '/local-api/message'
_TIMEOUT = 10

ROWS = 6
COLS = 22


def _endpoint() -> tuple[str, dict[str, str]]:
  """Return (url, headers) for the configured transport.

  Imports config inside the function so the module can be imported without a
  config file present (e.g. in tests that don't exercise the API).
  """
  import config as _config_mod

  api_key = _config_mod.get('vestaboard', 'api_key')
  local_url = _config_mod.get_optional('vestaboard', 'local_api_url').rstrip('/')
  if local_url:
    return local_url + _LOCAL_PATH, {'X-Vestaboard-Local-Api-Key': api_key, 'Content-Type': 'application/json'}
  return _HOST, {'X-Vestaboard-Read-Write-Key': api_key, 'Content-Type': 'application/json'}


# --- Character codes ---
# https://docs.vestaboard.com/docs/characterCodes
#
# Index = character code, value = canonical display character.
# Empty string marks reserved or unused code positions.
# fmt: off
_CHAR_MAP: tuple[str, ...] = (
  ' ',                                                              # 0 blank
  'A', 'B', 'C', 'D', 'E', 'F', 'G', 'H', 'I', 'J', 'K', 'L', 'M',  # 1-13
  'N', 'O', 'P', 'Q', 'R', 'S', 'T', 'U', 'V', 'W', 'X', 'Y', 'Z',  # 14-26
  '1', '2', '3', '4', '5', '6', '7', '8', '9', '0',                 # 27-36
  '!', '@', '#', '$', '(', ')',                                     # 37-42
  '', '-', '', '+', '&', '=', ';', ':',                             # 43-50
  '', "'", '"', '%', ',', '.',                                      # 51-56
  '', '', '/', '?', '',                                             # 57-61
  '°',                                                              # 62 degree sign
)
# fmt: on

# ANSI terminal representations for color chip codes 63-70.
# Code 71 (filled) is board-color-dependent and handled separately.
_COLOR_DISPLAY: tuple[str, ...] = (
  '\033[38;2;194;57;35m▉',  # 63 red
  '\033[38;2;236;116;36m▉',  # 64 orange
  '\033[38;2;254;179;54m▉',  # 65 yellow
  '\033[38;2;58;140;66m▉',  # 66 green
  '\033[38;2;48;118;202m▉',  # 67 blue
  '\033[38;2;93;47;124m▉',  # 68 violet
  '\033[38;2;255;255;255m▉',  # 69 white
  '\033[38;2;0;0;0m▉',  # 70 black
)

# Reverse lookup for encoding: character → code.
_CHAR_CODES: dict[str, int] = {ch: code for code, ch in enumerate(_CHAR_MAP) if ch}
_CHAR_CODES['❤️'] = 62
_CHAR_CODES['❤'] = 62

# Named color codes, shared with the frame decorator and weather integration.
RED = 63
ORANGE = 64
YELLOW = 65
GREEN = 66
BLUE = 67
VIOLET = 68
WHITE = 69
BLACK = 70

# Color square emoji encode straight to color chips.
_CHAR_CODES.update({'🟥': RED, '🟧': ORANGE, '🟨': YELLOW, '🟩': GREEN, '🟦': BLUE, '🟪': VIOLET, '⬜': WHITE, '⬛': BLACK})

# Truncation strategy: how to shorten a line that exceeds the column width.
#   hard       cut at the column limit, mid-word if necessary (default)
#   word       cut at the last full word that fits
#   ellipsis   cut at the last full word and append '...'
TruncationStrategy = Literal['hard', 'word', 'ellipsis']

# Short color tags usable in text content and templates.
# Each tag is exactly 3 characters and encodes to a Vestaboard color square.
_COLOR_TAGS: dict[str, int] = {
  '[R]': RED,
  '[O]': ORANGE,
  '[Y]': YELLOW,
  '[G]': GREEN,
  '[B]': BLUE,
  '[V]': VIOLET,
  '[W]': WHITE,
  '[K]': BLACK,
}

# Sentinels for brace escaping in expand_format. These bytes cannot appear
# in user-supplied content, so they serve as safe placeholders for {{ and }}.
_ESC_BRACE_OPEN = '\x00'
_ESC_BRACE_CLOSE = '\x01'


def _next_token(text: str, i: int) -> tuple[str, int]:
  """Return (raw_token, chars_consumed) for the source token starting at i.

  Recognises multi-char sequences in priority order:
    ❤️  (2 chars)        1 display char; encodes to code 62
    [X] color tag        1 display char; encodes to a color square
    [[X]] escaped tag    3 display chars; encodes as literal [, X, ]
    any single char      1 display char
  """
  if text[i : i + 2] == '❤️':
    return ('❤️', 2)
  tag3 = text[i : i + 3]
  if tag3 in _COLOR_TAGS:
    return (tag3, 3)
  if (
    text[i : i + 2] == '[[' and i + 4 < len(text) and f'[{text[i + 2]}]' in _COLOR_TAGS and text[i + 3 : i + 5] == ']]'
  ):
    return (text[i : i + 5], 5)
  return (text[i], 1)


# --- Board color ---


class VestaboardColor(Enum):
  BLACK = 0  # standard black board: code 71 (filled) renders white
  WHITE = 1  # white board: code 71 (filled) renders black


# --- Rendering ---


def _display_char(code: int, color: VestaboardColor = VestaboardColor.BLACK) -> str:
  if code < len(_CHAR_MAP):
    return _CHAR_MAP[code] or ' '
  color_idx = code - RED
  if 0 <= color_idx < len(_COLOR_DISPLAY):
    return _COLOR_DISPLAY[color_idx]
  if code == 71:
    return '\033[38;2;255;255;255m▉' if color is VestaboardColor.BLACK else '\033[38;2;0;0;0m▉'
  return '?'


def render_grid(
  grid: list[list[int]],
  color: VestaboardColor = VestaboardColor.BLACK,
) -> str:
  """Render a character code grid as a bordered string for console output."""
  width = len(grid[0]) if grid else COLS
  bar = '─' * (width + 2)
  lines = [f'┌{bar}┐']
  for row in grid:
    cells = ''.join(f'{_display_char(x, color)}\033[0m' for x in row)
    lines.append(f'│ {cells} │')
  lines.append(f'└{bar}┘')
  return '\n'.join(lines)


# --- State ---


class VestaboardState:
  """Snapshot of the current board layout returned by get_state().

  The cloud API wraps the layout in message metadata; the local API returns
  the bare grid, leaving id and appeared empty.
  """

  def __init__(
    self,
    state: dict | list,
    color: VestaboardColor = VestaboardColor.BLACK,
  ) -> None:
    self.id: str = ''
    self.appeared: int | str = ''  # int (virtual) or str (physical)
    if isinstance(state, list):
      self.layout: list[list[int]] = state
    else:
      current = state['currentMessage']
      self.id = current['id']
      self.appeared = current['appeared']
      self.layout = json.loads(current['layout'])
    self.color = color

  def __str__(self) -> str:
    return render_grid(self.layout, self.color)


# --- Encoding ---


def _encode_char(ch: str) -> int:
  """Map a single character to its Vestaboard code (0 = blank if unknown).

  Accented and diacritic characters are normalized via NFKD decomposition
  before lookup: ï → i, é → e, ñ → n, ü → u, etc.
  """
  normalized = unicodedata.normalize('NFKD', ch).encode('ascii', 'ignore').decode('ascii')
  return _CHAR_CODES.get((normalized or ch).upper(), 0)


def is_supported(ch: str) -> bool:
  """Return True if a single character has a Vestaboard code."""
  return ch == ' ' or _encode_char(ch) != 0


def sanitize_text(text: str) -> tuple[str, list[str]]:
  """Replace characters with no Vestaboard code by spaces.

  Returns (sanitized_text, unsupported) where unsupported lists each
  offending character once, in order of appearance. Color tags and the heart
  sequence are kept intact, as are newlines separating rows.
  """
  out: list[str] = []
  unsupported: list[str] = []
  i = 0
  while i < len(text):
    tok, consumed = _next_token(text, i)
    i += consumed
    if consumed == 1 and tok != '\n' and not is_supported(tok):
      if tok not in unsupported:
        unsupported.append(tok)
      out.append(' ')
    else:
      out.append(tok)
  return ''.join(out), unsupported


def encode_line(text: str, cols: int = COLS) -> list[int]:
  """Encode a text string into a row of `cols` integer character codes.

  Handles the two-character ❤️ emoji sequence, three-character color tags
  (e.g. [G], [R]), and five-character escaped color tags (e.g. [[G]] encodes
  as literal [, G, ] rather than a color square). Output is truncated to
  `cols` characters and zero-padded on the right.
  """
  codes: list[int] = []
  i = 0
  while i < len(text) and len(codes) < cols:
    tok, consumed = _next_token(text, i)
    i += consumed
    if tok == '❤️':
      codes.append(62)
    elif tok in _COLOR_TAGS:
      codes.append(_COLOR_TAGS[tok])
    elif len(tok) == 5:  # escaped color tag [[X]]: emit [, X, ] individually
      for ch in ('[', tok[2], ']'):
        if len(codes) < cols:
          codes.append(_encode_char(ch))
    else:
      codes.append(_encode_char(tok))
  codes += [0] * (cols - len(codes))
  return codes


def expand_format(
  fmt: list[str],
  variables: dict[str, list],
) -> list[str]:
  """Expand a format list into concrete lines by substituting {variable}
  placeholders.

  A format entry that is exactly '{variable}' is replaced by all lines from
  the chosen option (which may expand a single entry into multiple output
  lines). An inline '{variable}' within other text is replaced by the first
  line of the chosen option.

  Options are chosen at random.

  Brace escaping: '{{' and '}}' produce literal '{' and '}' without
  triggering variable substitution.
  """
  chosen: dict[str, list[str]] = {name: random.choice(options) for name, options in variables.items()}  # nosec B311

  def _sub(match: re.Match[str]) -> str:
    opt = chosen.get(match.group(1), [''])
    return opt[0] if opt else ''

  lines: list[str] = []
  for entry in fmt:
    entry = entry.replace('{{', _ESC_BRACE_OPEN).replace('}}', _ESC_BRACE_CLOSE)
    m = re.fullmatch(r'\{(\w+)\}', entry.strip())
    if m:
      lines.extend(chosen.get(m.group(1), ['']))
    else:
      result = re.sub(r'\{(\w+)\}', _sub, entry)
      lines.append(result.replace(_ESC_BRACE_OPEN, '{').replace(_ESC_BRACE_CLOSE, '}'))

  return lines


def display_len(text: str) -> int:
  """Count display characters, treating ❤️ and color tags as single chars.

  Escaped color tags (e.g. [[G]]) count as 3 display chars (literal [, G, ]).
  """
  count = 0
  i = 0
  while i < len(text):
    tok, consumed = _next_token(text, i)
    i += consumed
    count += 3 if len(tok) == 5 else 1
  return count


def truncate_line(
  text: str,
  max_cols: int,
  strategy: TruncationStrategy = 'hard',
) -> str:
  """Truncate text to at most max_cols display characters.

  Multi-char tokens (❤️, color tags, escaped color tags) are never split.
  """
  if display_len(text) <= max_cols:
    return text
  target = max_cols - (3 if strategy == 'ellipsis' else 0)
  result: list[str] = []
  last_word_end = -1  # len(result) just before the most recent space
  count = 0
  i = 0
  while i < len(text) and count < target:
    tok, consumed = _next_token(text, i)
    tok_display = 3 if len(tok) == 5 else 1
    if count + tok_display > target:
      break
    if tok_display == 1 and tok == ' ' and strategy in ('word', 'ellipsis'):
      last_word_end = len(result)
    result.append(tok)
    i += consumed
    count += tok_display
  if strategy == 'hard' or last_word_end < 0:
    return ''.join(result)
  base = ''.join(result[:last_word_end])
  return base + ('...' if strategy == 'ellipsis' else '')


def wrap_lines(
  lines: list[str],
  cols: int = COLS,
  truncation: TruncationStrategy = 'hard',
) -> list[str]:
  """Word-wrap lines to fit `cols`, returning every wrapped row.

  Each input line is split on spaces and words are packed greedily into rows.
  A word that alone exceeds `cols` is truncated using `truncation`. Lines
  are never joined together; short lines pass through unchanged. The caller
  decides how many rows to keep.
  """
  result: list[str] = []
  for line in lines:
    if display_len(line) <= cols:
      result.append(line)
      continue
    if truncation == 'ellipsis':
      result.append(truncate_line(line, cols, 'ellipsis'))
      continue
    current: list[str] = []
    current_len = 0
    for word in line.split(' '):
      word_len = display_len(word)
      if word_len > cols:
        if current:
          result.append(' '.join(current))
          current = []
          current_len = 0
        result.append(truncate_line(word, cols, truncation))
        continue
      if not current:
        current = [word]
        current_len = word_len
      elif current_len + 1 + word_len <= cols:
        current.append(word)
        current_len += 1 + word_len
      else:
        result.append(' '.join(current))
        current = [word]
        current_len = word_len
    if current:
      result.append(' '.join(current))
  return result


def build_grid(lines: list[str], rows: int = ROWS, cols: int = COLS) -> list[list[int]]:
  """Encode lines into a rows × cols integer grid.

  Lines past `rows` are dropped. Missing rows are filled with blanks.
  """
  grid = [encode_line(line, cols) for line in lines[:rows]]
  while len(grid) < rows:
    grid.append([0] * cols)
  return grid


# --- API calls ---


class BoardLockedError(Exception):
  """Raised when the Vestaboard returns 423 (rate-limited or quiet hours)."""


class DuplicateContentError(Exception):
  """Raised when send_layout() POSTs the same content already on the board (HTTP 409)."""


class EmptyBoardError(Exception):
  """Raised when get_state() finds no message on a fresh board (HTTP 404)."""


def _raise_for_status(r: requests.Response) -> None:
  """Re-raise HTTP errors with a message that cannot carry the API key."""
  try:
    r.raise_for_status()
  except requests.HTTPError as e:
    raise requests.HTTPError(f'Vestaboard API error: {e.response.status_code} {e.response.reason}') from None


def _request(method: str, **kwargs: object) -> requests.Response:
  url, headers = _endpoint()
  try:
    return fetch_with_retry(method, url, headers=headers, timeout=_TIMEOUT, **kwargs)
  except requests.HTTPError as e:
    raise requests.HTTPError(f'Vestaboard API error: {e.response.status_code} {e.response.reason}') from None


def get_state(color: VestaboardColor = VestaboardColor.BLACK) -> VestaboardState:
  """Fetch and return the current board state."""
  r = _request('GET')
  if r.status_code == 404:
    raise EmptyBoardError('board has no current message')
  _raise_for_status(r)
  return VestaboardState(r.json(), color)


def send_layout(grid: list[list[int]]) -> None:
  """Write a 6×22 character code grid to the Vestaboard.

  Rate limits and server errors are retried. Raises DuplicateContentError on
  HTTP 409, BoardLockedError on HTTP 423, and requests.HTTPError for anything
  else, with the API key kept out of the message.
  """
  print(render_grid(grid))
  r = _request('POST', json=grid)
  if r.status_code == 409:
    raise DuplicateContentError('board already shows this content')
  if r.status_code == 423:
    raise BoardLockedError('board is locked (rate-limited or quiet hours)')
  _raise_for_status(r)
