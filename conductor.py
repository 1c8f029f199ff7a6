# conductor.py
#
# Entry point for the split-flap content engine.
#
#   conductor run                 start the scheduler, event intake, and webhook
#   conductor generate            send one major update and exit
#   conductor circuit status      print every circuit's state
#   conductor circuit on ID       force a circuit on
#   conductor circuit off ID      force a circuit off
#                                 (SLEEP_MODE: on = asleep, off = awake)
#   conductor circuit reset ID    close a provider circuit and clear its counters
#
# All commands read config.toml from the working directory. Board, scheduler,
# and data source settings are described in config.example.toml.

import argparse
import importlib.metadata
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler

import config as _config_mod
import integrations.vestaboard as vestaboard
from circuits import (
  CircuitBreakerRepository,
  CircuitBreakerService,
  CircuitBreakerState,
  CircuitState,
  control_state,
  create_store_engine,
)
from content import GenerationContext, GeneratorKind
from cron import CronScheduler, add_major_update_job
from events import EventBus, EventHandler
from exceptions import CircuitNotFoundError, CircuitTypeError
from frame import FrameDecorator
from generators import (
  MinorUpdateGenerator,
  StaticFallbackGenerator,
  register_notifications,
  register_templates,
)
from orchestrator import ContentOrchestrator
from selector import ContentPriority, ContentRegistry, ContentSelector, GeneratorRegistration
from server import start_server
from triggers import TriggerConfigLoader, TriggerMatcher, TriggersConfig

_STATE_LABELS = {
  CircuitState.ON.value: 'ON (enabled)',
  CircuitState.OFF.value: 'OFF (disabled)',
  CircuitState.HALF_OPEN.value: 'HALF_OPEN (testing)',
}


def _validate_startup() -> None:
  """Exit with a clear message when config.toml is unusable.

  A directory in its place usually means a container runtime created the
  mount point because the host file did not exist.
  """
  config_path = Path('config.toml')
  if config_path.is_dir():
    print(
      f'Error: {config_path.resolve()} is a directory. '
      'Delete it, create a proper config.toml file there, and restart.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  if config_path.exists() and config_path.stat().st_size == 0:
    print(
      'Error: config.toml is empty. Copy config.example.toml and fill in your values.',
      file=sys.stderr,
    )
    raise SystemExit(1)


def _check_config() -> None:
  """Exit 1 listing every config problem that would break the runtime."""
  errors = _config_mod.validate_config()
  if not errors:
    return
  for error in errors:
    print(f'Error: {error}', file=sys.stderr)
  raise SystemExit(1)


def _local_now() -> datetime:
  return datetime.now().astimezone(_config_mod.get_timezone())


def _version() -> str:
  try:
    return importlib.metadata.version('splitflap-conductor')
  except importlib.metadata.PackageNotFoundError:
    return 'dev'


# --- Wiring ---


def build_circuit_breaker() -> CircuitBreakerService:
  engine = create_store_engine(_config_mod.get_database_url())
  service = CircuitBreakerService(
    CircuitBreakerRepository(engine),
    recovery_timeout=_config_mod.get_recovery_timeout(),
  )
  service.initialize()
  return service


def build_registry(fallback: StaticFallbackGenerator, template_dir: Path) -> ContentRegistry:
  registry = ContentRegistry()
  register_notifications(registry)
  count = register_templates(registry, template_dir)
  print(f'Content: {count} template generator(s) from {template_dir}')
  registry.register(
    GeneratorRegistration(
      id='static-fallback',
      name='Static Fallback',
      priority=ContentPriority.FALLBACK,
      kind=GeneratorKind.STATIC,
      tags=('fallback',),
    ),
    fallback,
  )
  return registry


def build_orchestrator(circuit_breaker: CircuitBreakerService | None) -> tuple[ContentOrchestrator, FrameDecorator]:
  fallback_dir, template_dir = _config_mod.get_content_dirs()
  fallback = StaticFallbackGenerator(fallback_dir)
  result = fallback.validate()
  if not result.valid:
    print(f'Warning: {"; ".join(result.errors)}')

  weather: Any = None
  if _config_mod.has_section('weather'):
    import integrations.weather as weather

  decorator = FrameDecorator(weather=weather, clock=_local_now)
  orchestrator = ContentOrchestrator(
    selector=ContentSelector(build_registry(fallback, template_dir)),
    decorator=decorator,
    display=vestaboard,
    fallback_generator=fallback,
    circuit_breaker=circuit_breaker,
  )
  return orchestrator, decorator


def _start_triggers(handler: EventHandler) -> TriggerConfigLoader | None:
  path = _config_mod.get_triggers_path()
  if path is None:
    return None
  loader = TriggerConfigLoader(path)
  try:
    triggers = loader.load()
  except (OSError, ValueError) as e:
    print(f'Warning: event triggers disabled: {e}')
    return None
  matcher = TriggerMatcher(triggers.triggers)
  handler.update_trigger_matcher(matcher)

  def _on_reload(config: TriggersConfig) -> None:
    try:
      matcher.update_triggers(config.triggers)
    except ValueError as e:
      print(f'Triggers: keeping previous triggers: {e}')
      return
    print(f'Triggers: now matching {len(config.triggers)} trigger(s)')

  loader.on('config_reloaded', _on_reload)
  loader.start_watching()
  return loader


# --- Commands ---


def cmd_run(args: argparse.Namespace) -> None:
  _check_config()
  circuit_breaker = build_circuit_breaker()
  orchestrator, decorator = build_orchestrator(circuit_breaker)
  print(f'Starting splitflap-conductor v{_version()}')

  print('Current message:')
  try:
    print(vestaboard.get_state())
  except vestaboard.EmptyBoardError:
    print('(no current message)')
  except Exception as e:  # noqa: BLE001
    print(f'Warning: could not read board state: {e}')

  scheduler = BackgroundScheduler(
    misfire_grace_time=300,
    timezone=_config_mod.get_timezone(),
  )
  cron = CronScheduler(
    MinorUpdateGenerator(orchestrator.get_cached_content, decorator),
    vestaboard,
    orchestrator,
    scheduler,
    circuit_breaker=circuit_breaker,
    clock=_local_now,
  )
  scheduler.start()
  cron.start()
  major_cron = _config_mod.get_optional('scheduler', 'major_cron')
  if major_cron:
    add_major_update_job(scheduler, orchestrator, major_cron, clock=_local_now)
    print(f'Scheduler: major updates on {major_cron!r}')

  bus = EventBus()
  handler = EventHandler(bus, orchestrator, circuit_breaker=circuit_breaker, clock=_local_now)
  handler.initialize()
  loader = _start_triggers(handler)

  if _config_mod.has_section('webhook'):
    start_server(circuit_breaker, bus)

  if not args.no_initial:
    orchestrator.generate_and_send(GenerationContext('major', _local_now()))

  try:
    while True:
      time.sleep(1)
  except KeyboardInterrupt:
    print('Shutting down')
    if loader is not None:
      loader.stop_watching()
    handler.shutdown()
    cron.stop()
    scheduler.shutdown()


def cmd_generate(args: argparse.Namespace) -> None:
  _check_config()
  circuit_breaker = build_circuit_breaker()
  orchestrator, _ = build_orchestrator(circuit_breaker)
  result = orchestrator.generate_and_send(GenerationContext('major', _local_now()))
  if result.blocked:
    print(f'Update blocked: {result.block_reason}')
    return
  if not result.success:
    raise SystemExit(1)


def format_circuit(circuit: CircuitBreakerState) -> str:
  shown = control_state(circuit.circuit_id, circuit.state).value
  label = _STATE_LABELS.get(shown, shown)
  line = f'{circuit.circuit_id:<20} {label}'
  if circuit.circuit_type == 'provider':
    line += f'  failures: {circuit.failure_count}/{circuit.failure_threshold}'
  return line


def cmd_circuit(args: argparse.Namespace) -> None:
  service = build_circuit_breaker()
  if args.action == 'status':
    for circuit in service.get_all_circuits():
      print(format_circuit(circuit))
    return

  if not args.circuit_id:
    print(f'Error: circuit {args.action} requires a circuit ID', file=sys.stderr)
    raise SystemExit(2)
  try:
    if args.action == 'reset':
      circuit = service.reset_provider_circuit(args.circuit_id)
    else:
      circuit = service.set_circuit_state(args.circuit_id, control_state(args.circuit_id, args.action))
  except CircuitNotFoundError as e:
    print(f'Error: {e}', file=sys.stderr)
    raise SystemExit(1) from None
  except CircuitTypeError:
    print('Error: reset is only available for provider circuits; use on or off for manual circuits', file=sys.stderr)
    raise SystemExit(1) from None
  print(format_circuit(circuit))


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog='conductor', description='Split-flap board content engine')
  sub = parser.add_subparsers(dest='command', required=True)

  run = sub.add_parser('run', help='Run the scheduler and event listener')
  run.add_argument('--no-initial', action='store_true', help='Skip the major update sent at startup')
  run.set_defaults(func=cmd_run)

  generate = sub.add_parser('generate', help='Send one major update and exit')
  generate.set_defaults(func=cmd_generate)

  circuit = sub.add_parser('circuit', help='Inspect or change circuit breakers')
  circuit.add_argument('action', choices=['status', 'on', 'off', 'reset'])
  circuit.add_argument('circuit_id', nargs='?', help='e.g. MASTER, SLEEP_MODE, PROVIDER_OPENAI')
  circuit.set_defaults(func=cmd_circuit)
  return parser


def main(argv: list[str] | None = None) -> None:
  args = build_parser().parse_args(argv)
  _validate_startup()
  _config_mod.load_config()
  args.func(args)


if __name__ == '__main__':
  main()
