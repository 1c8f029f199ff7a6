# config.py
#
# config.toml loader and typed accessors.
#
# load_config() runs once at startup; everything else reads the module-level
# cache and is safe from any thread. Integration modules import config inside
# their functions so they stay importable in tests without a config file.
#
# Any value can be overridden from the environment as
# CONDUCTOR_<SECTION>_<KEY>, e.g. CONDUCTOR_VESTABOARD_API_KEY. Overrides
# replace values but never create sections: a feature whose section is absent
# from config.toml stays disabled.

import os
import re
import sys
import tomllib
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CONFIG_PATH = Path('config.toml')
_EXAMPLE_PATH = Path('config.example.toml')
_ENV_PREFIX = 'CONDUCTOR_'

_config: dict = {}


def load_config() -> None:
  """Read config.toml from the working directory into the cache.

  Prints a hint to stderr and exits 1 if the file is missing.
  tomllib.TOMLDecodeError propagates for malformed files.
  """
  global _config
  if not _CONFIG_PATH.exists():
    print(
      f'Error: config.toml not found. Copy {_EXAMPLE_PATH} to config.toml and fill in your values.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  with open(_CONFIG_PATH, 'rb') as f:
    _config = tomllib.load(f)


def env_var_name(section: str, key: str) -> str:
  return f'{_ENV_PREFIX}{section}_{key}'.upper()


def _lookup(section: str, key: str) -> Any:
  override = os.environ.get(env_var_name(section, key))
  if override:
    return override
  return _config.get(section, {}).get(key)


def has_section(section: str) -> bool:
  return section in _config


def get(section: str, key: str) -> str:
  """Return a required value as a string.

  Raises ValueError naming the key when it is missing or empty.
  """
  value = _lookup(section, key)
  if value is None or value == '':
    raise ValueError(
      f'Missing required config key [{section}].{key} in config.toml (or set {env_var_name(section, key)})'
    )
  return str(value)


def get_optional(section: str, key: str, default: str = '') -> str:
  value = _lookup(section, key)
  return default if value is None else str(value)


def get_optional_int(section: str, key: str, default: int) -> int:
  """Return an integer value, or default if absent.

  A value that is not an integer prints a warning and yields default.
  """
  value = _lookup(section, key)
  if value is None:
    return default
  if isinstance(value, bool):
    print(f'Warning: invalid [{section}].{key} {value!r}, defaulting to {default}')
    return default
  try:
    return int(value)
  except (TypeError, ValueError):
    print(f'Warning: invalid [{section}].{key} {value!r}, defaulting to {default}')
    return default


def write_section_values(section: str, values: dict[str, str | int]) -> None:
  """Persist key = value lines into [section] of config.toml.

  Rewrites only the lines for the given keys, replacing an active or
  commented-out line if one exists and appending to the section otherwise.
  Comments and other sections are left alone. The cache is updated too.

  Raises FileNotFoundError without config.toml and ValueError when the
  section header is missing.
  """
  if not _CONFIG_PATH.exists():
    raise FileNotFoundError(f'config.toml not found at {_CONFIG_PATH.resolve()}')

  lines = _CONFIG_PATH.read_text().splitlines(keepends=True)
  header = f'[{section}]'
  try:
    start = next(i for i, line in enumerate(lines) if line.strip() == header) + 1
  except StopIteration:
    raise ValueError(f'No {header} section found in config.toml') from None
  end = next((i for i in range(start, len(lines)) if lines[i].lstrip().startswith('[')), len(lines))

  body = lines[start:end]
  for key, value in values.items():
    rendered = f'{key} = "{value}"\n' if isinstance(value, str) else f'{key} = {value}\n'
    existing = re.compile(rf'^#?\s*{re.escape(key)}\s*=')
    index = next((j for j, line in enumerate(body) if existing.match(line)), None)
    if index is None:
      body.append(rendered)
    else:
      body[index] = rendered

  lines[start:end] = body
  _CONFIG_PATH.write_text(''.join(lines))
  _config.setdefault(section, {}).update(values)


# --- Typed settings ---


def get_timezone() -> ZoneInfo | None:
  """Return [scheduler].timezone, or None for the system local timezone.

  None works directly with datetime.astimezone(). Raises ValueError for an
  unknown IANA name.
  """
  tz_name = get_optional('scheduler', 'timezone')
  if not tz_name:
    return None
  try:
    return ZoneInfo(tz_name)
  except (ZoneInfoNotFoundError, ValueError):
    raise ValueError(
      f'Unknown timezone {tz_name!r} in [scheduler].timezone; '
      'use an IANA name such as "America/Los_Angeles" or "Europe/London"'
    ) from None


def get_database_url() -> str:
  """Return the SQLAlchemy URL for the circuit store.

  [circuits].database is a SQLite file path (default circuits.db); a value
  containing '://' is already a URL and passes through unchanged.
  """
  database = get_optional('circuits', 'database', 'circuits.db')
  if '://' in database:
    return database
  return f'sqlite:///{database}'


def get_recovery_timeout() -> int:
  """Return seconds a tripped provider circuit waits before a half-open probe."""
  timeout = get_optional_int('circuits', 'recovery_timeout', 300)
  if timeout < 0:
    raise ValueError(f'[circuits].recovery_timeout must be non-negative, got {timeout}')
  return timeout


def get_triggers_path() -> Path | None:
  """Return the trigger YAML path, or None when the [triggers] section is absent."""
  if not has_section('triggers'):
    return None
  return Path(get_optional('triggers', 'path', 'triggers.yaml'))


def get_content_dirs() -> tuple[Path, Path]:
  """Return (fallback_dir, template_dir) from [content]."""
  return (
    Path(get_optional('content', 'fallback_dir', 'content/fallback')),
    Path(get_optional('content', 'template_dir', 'content/templates')),
  )


def validate_config() -> list[str]:
  """Check the loaded config for problems that would only surface later.

  Returns one message per problem; an empty list means the config is usable.
  """
  errors: list[str] = []

  def _check(check: Any) -> None:
    try:
      check()
    except ValueError as e:
      errors.append(str(e))

  _check(lambda: get('vestaboard', 'api_key'))
  _check(get_timezone)
  _check(get_recovery_timeout)

  major_cron = get_optional('scheduler', 'major_cron')
  if major_cron and len(major_cron.split()) != 5:
    errors.append(f'[scheduler].major_cron must have 5 fields, got {major_cron!r}')

  if has_section('weather'):
    _check(lambda: get('weather', 'city'))
    units = get_optional('weather', 'units', 'imperial')
    if units not in ('imperial', 'metric'):
      errors.append(f'[weather].units must be "imperial" or "metric", got {units!r}')

  if has_section('webhook'):
    port = get_optional_int('webhook', 'port', 8080)
    if not 0 <= port <= 65535:
      errors.append(f'[webhook].port must be between 0 and 65535, got {port}')

  return errors
