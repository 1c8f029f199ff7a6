# Live-API test setup.
#
# Values from a project-root .env are loaded for any variable not already in
# the environment, so CI secrets win. Every test in this directory is marked
# integration and is deselected by default (see addopts in pyproject.toml).

import os
from pathlib import Path

import pytest

import config as _cfg

_HERE = Path(__file__).resolve().parent
_ENV_FILE = _HERE.parent.parent / '.env'

_ENV_VARS: dict[str, str] = {
  'VESTABOARD_VIRTUAL_API_KEY': 'Read/Write key for a virtual Vestaboard',
}

_missing_skips: list[str] = []


def _read_env_file(path: Path) -> dict[str, str]:
  values: dict[str, str] = {}
  if not path.is_file():
    return values
  for raw in path.read_text().splitlines():
    line = raw.strip().removeprefix('export ').strip()
    key, sep, value = line.partition('=')
    if line.startswith('#') or not sep or not key.strip():
      continue
    values[key.strip()] = value.strip().strip('"').strip("'")
  return values


for _key, _value in _read_env_file(_ENV_FILE).items():
  os.environ.setdefault(_key, _value)


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
  for item in items:
    if _HERE in item.path.parents:
      item.add_marker(pytest.mark.integration)


@pytest.fixture()
def virtual_board(require_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
  """Point the board client at the virtual board through the env override."""
  monkeypatch.setattr(_cfg, '_config', {'vestaboard': {}})
  monkeypatch.setenv(_cfg.env_var_name('vestaboard', 'api_key'), os.environ['VESTABOARD_VIRTUAL_API_KEY'])


def pytest_runtest_logreport(report: pytest.TestReport) -> None:
  if report.skipped and report.when == 'setup' and 'not set' in str(report.longrepr):
    _missing_skips.append(report.nodeid)


def pytest_terminal_summary(terminalreporter: pytest.TerminalReporter) -> None:
  if not _missing_skips:
    return
  terminalreporter.section('integration env')
  for var, desc in _ENV_VARS.items():
    status = 'set' if os.environ.get(var, '').strip() else 'MISSING'
    terminalreporter.write_line(f'{var}: {status} ({desc})')
  terminalreporter.write_line(f'{len(_missing_skips)} integration test(s) skipped for missing env vars')
