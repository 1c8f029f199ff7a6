import tomllib
from pathlib import Path
from typing import Any

import pytest

import config as _mod


@pytest.fixture
def cfg(monkeypatch: pytest.MonkeyPatch) -> Any:
  """Return a setter that replaces the config cache for one test."""

  def _set(data: dict) -> dict:
    monkeypatch.setattr(_mod, '_config', data)
    return data

  return _set


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Any:
  """Return a writer for a temporary config.toml wired into the module."""
  path = tmp_path / 'config.toml'
  monkeypatch.setattr(_mod, '_CONFIG_PATH', path)
  monkeypatch.setattr(_mod, '_config', {})

  def _write(text: str) -> Path:
    path.write_text(text)
    return path

  return _write


# --- load_config ---


def test_load_config_missing_file_exits(
  tmp_path: Path,
  monkeypatch: pytest.MonkeyPatch,
  capsys: pytest.CaptureFixture[str],
) -> None:
  monkeypatch.chdir(tmp_path)
  with pytest.raises(SystemExit) as exc_info:
    _mod.load_config()
  assert exc_info.value.code == 1
  assert 'config.example.toml' in capsys.readouterr().err


def test_load_config_reads_sections(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.chdir(tmp_path)
  (tmp_path / 'config.toml').write_text('[vestaboard]\napi_key = "abc"\n\n[circuits]\nrecovery_timeout = 60\n')
  _mod.load_config()
  assert _mod._config == {'vestaboard': {'api_key': 'abc'}, 'circuits': {'recovery_timeout': 60}}


def test_load_config_invalid_toml_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.chdir(tmp_path)
  (tmp_path / 'config.toml').write_text('[vestaboard\napi_key = ')
  with pytest.raises(tomllib.TOMLDecodeError):
    _mod.load_config()


# --- get / get_optional / has_section ---


def test_get_returns_string(cfg: Any) -> None:
  cfg({'webhook': {'port': 8080}})
  assert _mod.get('webhook', 'port') == '8080'


@pytest.mark.parametrize('data', [{}, {'vestaboard': {}}, {'vestaboard': {'api_key': ''}}])
def test_get_missing_or_empty_raises(cfg: Any, data: dict) -> None:
  cfg(data)
  with pytest.raises(ValueError, match=r'\[vestaboard\]\.api_key.*CONDUCTOR_VESTABOARD_API_KEY'):
    _mod.get('vestaboard', 'api_key')


def test_get_optional_default_and_value(cfg: Any) -> None:
  cfg({'webhook': {'bind': '0.0.0.0'}})
  assert _mod.get_optional('webhook', 'bind', '127.0.0.1') == '0.0.0.0'
  assert _mod.get_optional('webhook', 'secret') == ''
  assert _mod.get_optional('missing', 'key', 'fallback') == 'fallback'


def test_has_section(cfg: Any) -> None:
  cfg({'webhook': {}})
  assert _mod.has_section('webhook')
  assert not _mod.has_section('triggers')


# --- environment overrides ---


def test_env_var_name() -> None:
  assert _mod.env_var_name('vestaboard', 'api_key') == 'CONDUCTOR_VESTABOARD_API_KEY'


def test_env_overrides_file_value(cfg: Any, monkeypatch: pytest.MonkeyPatch) -> None:
  cfg({'vestaboard': {'api_key': 'from-file'}})
  monkeypatch.setenv('CONDUCTOR_VESTABOARD_API_KEY', 'from-env')
  assert _mod.get('vestaboard', 'api_key') == 'from-env'


def test_env_supplies_missing_value(cfg: Any, monkeypatch: pytest.MonkeyPatch) -> None:
  cfg({})
  monkeypatch.setenv('CONDUCTOR_WEBHOOK_PORT', '9090')
  assert _mod.get_optional_int('webhook', 'port', 8080) == 9090


def test_empty_env_value_is_ignored(cfg: Any, monkeypatch: pytest.MonkeyPatch) -> None:
  cfg({'vestaboard': {'api_key': 'from-file'}})
  monkeypatch.setenv('CONDUCTOR_VESTABOARD_API_KEY', '')
  assert _mod.get('vestaboard', 'api_key') == 'from-file'


def test_env_never_creates_sections(cfg: Any, monkeypatch: pytest.MonkeyPatch) -> None:
  cfg({})
  monkeypatch.setenv('CONDUCTOR_TRIGGERS_PATH', 'triggers.yaml')
  assert not _mod.has_section('triggers')
  assert _mod.get_triggers_path() is None


# --- get_optional_int ---


@pytest.mark.parametrize(
  ('value', 'expected'),
  [(None, 8080), (9000, 9000), ('9001', 9001), ('eighty', 8080), (True, 8080)],
)
def test_get_optional_int(cfg: Any, value: Any, expected: int) -> None:
  cfg({} if value is None else {'webhook': {'port': value}})
  assert _mod.get_optional_int('webhook', 'port', 8080) == expected


def test_get_optional_int_invalid_warns(cfg: Any, capsys: pytest.CaptureFixture[str]) -> None:
  cfg({'webhook': {'port': 'eighty'}})
  _mod.get_optional_int('webhook', 'port', 8080)
  assert "Warning: invalid [webhook].port 'eighty', defaulting to 8080" in capsys.readouterr().out


# --- typed settings ---


def test_get_timezone(cfg: Any) -> None:
  cfg({})
  assert _mod.get_timezone() is None
  cfg({'scheduler': {'timezone': 'Europe/London'}})
  assert str(_mod.get_timezone()) == 'Europe/London'


@pytest.mark.parametrize('name', ['Not/ATimezone', '../etc/passwd'])
def test_get_timezone_invalid_raises(cfg: Any, name: str) -> None:
  cfg({'scheduler': {'timezone': name}})
  with pytest.raises(ValueError, match='Unknown timezone'):
    _mod.get_timezone()


@pytest.mark.parametrize(
  ('database', 'expected'),
  [
    (None, 'sqlite:///circuits.db'),
    ('/data/state.db', 'sqlite:////data/state.db'),
    ('postgresql://u@db/board', 'postgresql://u@db/board'),
  ],
)
def test_get_database_url(cfg: Any, database: str | None, expected: str) -> None:
  cfg({} if database is None else {'circuits': {'database': database}})
  assert _mod.get_database_url() == expected


def test_get_recovery_timeout(cfg: Any) -> None:
  cfg({})
  assert _mod.get_recovery_timeout() == 300
  cfg({'circuits': {'recovery_timeout': 60}})
  assert _mod.get_recovery_timeout() == 60
  cfg({'circuits': {'recovery_timeout': -5}})
  with pytest.raises(ValueError, match='non-negative'):
    _mod.get_recovery_timeout()


def test_get_triggers_path(cfg: Any) -> None:
  cfg({'triggers': {}})
  assert _mod.get_triggers_path() == Path('triggers.yaml')
  cfg({'triggers': {'path': '/etc/board/triggers.yaml'}})
  assert _mod.get_triggers_path() == Path('/etc/board/triggers.yaml')


def test_get_content_dirs(cfg: Any) -> None:
  cfg({})
  assert _mod.get_content_dirs() == (Path('content/fallback'), Path('content/templates'))
  cfg({'content': {'fallback_dir': 'a', 'template_dir': 'b'}})
  assert _mod.get_content_dirs() == (Path('a'), Path('b'))


# --- validate_config ---


def test_validate_config_minimal_is_clean(cfg: Any) -> None:
  cfg({'vestaboard': {'api_key': 'k'}})
  assert _mod.validate_config() == []


def test_validate_config_collects_all_errors(cfg: Any) -> None:
  cfg(
    {
      'scheduler': {'timezone': 'Mars/Olympus', 'major_cron': '*/15 * *'},
      'circuits': {'recovery_timeout': -1},
      'weather': {'units': 'kelvin'},
      'webhook': {'port': 70000},
    }
  )
  errors = _mod.validate_config()
  assert len(errors) == 7
  joined = '\n'.join(errors)
  for fragment in ('api_key', 'Mars/Olympus', 'recovery_timeout', 'major_cron', '[weather].city', 'kelvin', '70000'):
    assert fragment in joined


def test_validate_config_skips_absent_optional_sections(cfg: Any) -> None:
  cfg({'vestaboard': {'api_key': 'k'}, 'scheduler': {'major_cron': '0 8 * * 1-5'}})
  assert _mod.validate_config() == []


# --- write_section_values ---


def test_write_replaces_active_key(config_file: Any) -> None:
  path = config_file('[webhook]\nsecret = "old"\nport = 8080\n')
  _mod.write_section_values('webhook', {'secret': 'new'})
  assert path.read_text() == '[webhook]\nsecret = "new"\nport = 8080\n'


def test_write_replaces_commented_key(config_file: Any) -> None:
  path = config_file('[webhook]\n# secret = ""\nport = 8080\n')
  _mod.write_section_values('webhook', {'secret': 'tok123'})
  assert path.read_text() == '[webhook]\nsecret = "tok123"\nport = 8080\n'


def test_write_appends_to_section_not_file(config_file: Any) -> None:
  path = config_file('[webhook]\nport = 8080\n[triggers]\npath = "triggers.yaml"\n')
  _mod.write_section_values('webhook', {'secret': 's', 'bind': '0.0.0.0'})
  text = path.read_text()
  assert text.index('secret = "s"') < text.index('[triggers]')
  assert 'bind = "0.0.0.0"' in text
  assert 'path = "triggers.yaml"' in text


def test_write_renders_ints_unquoted(config_file: Any) -> None:
  path = config_file('[webhook]\n')
  _mod.write_section_values('webhook', {'port': 9000})
  assert 'port = 9000\n' in path.read_text()


def test_write_updates_cache(config_file: Any) -> None:
  config_file('[webhook]\n')
  _mod.write_section_values('webhook', {'secret': 'fresh'})
  assert _mod.get('webhook', 'secret') == 'fresh'


def test_write_missing_section_raises(config_file: Any) -> None:
  config_file('[vestaboard]\napi_key = "k"\n')
  with pytest.raises(ValueError, match=r'No \[webhook\] section'):
    _mod.write_section_values('webhook', {'secret': 's'})


def test_write_missing_file_raises(config_file: Any) -> None:
  with pytest.raises(FileNotFoundError):
    _mod.write_section_values('webhook', {'secret': 's'})
