# cron.py
#
# Minute-aligned minor updates, plus the optional cron-driven major update.
#
# CronScheduler arms a 60-second APScheduler interval job whose first run
# lands on the next wall-clock minute boundary, so the info bar clock flips
# in step with real time. Each tick re-frames the cached major content with
# the new time and sends it straight to the board; it never calls the
# generator pipeline.

from collections.abc import Callable
from datetime import datetime, timedelta

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler

from circuits import CircuitBreakerService
from content import GenerationContext, require_grid
from exceptions import ContentValidationError
from generators import MinorUpdateGenerator
from orchestrator import ContentOrchestrator, Display

MINUTE_INTERVAL_SECONDS = 60

_MINOR_JOB_ID = 'minor-update'
_MAJOR_JOB_ID = 'major-update'


def _local_now() -> datetime:
  return datetime.now().astimezone()


def seconds_until_next_minute(now: datetime) -> float:
  """Return the delay from now to the next :00 second boundary.

  Exactly on a boundary, the next boundary is a full minute away.
  """
  return MINUTE_INTERVAL_SECONDS - (now.second + now.microsecond / 1_000_000)


def parse_cron(cron: str) -> dict[str, str]:
  minute, hour, day, month, day_of_week = cron.split()
  return {'minute': minute, 'hour': hour, 'day': day, 'month': month, 'day_of_week': day_of_week}


class CronScheduler:
  def __init__(
    self,
    minor_generator: MinorUpdateGenerator,
    display: Display,
    orchestrator: ContentOrchestrator,
    scheduler: BaseScheduler,
    circuit_breaker: CircuitBreakerService | None = None,
    clock: Callable[[], datetime] = _local_now,
  ) -> None:
    self._minor = minor_generator
    self._display = display
    self._orchestrator = orchestrator
    self._scheduler = scheduler
    self._circuit_breaker = circuit_breaker
    self._clock = clock
    self._job: Job | None = None

  @property
  def is_running(self) -> bool:
    return self._job is not None

  def start(self) -> None:
    """Arm the minute job. Restarting replaces the existing job."""
    if self._job is not None:
      self.stop()
    now = self._clock()
    delay = seconds_until_next_minute(now)
    self._job = self._scheduler.add_job(
      self.run_minor_update,
      trigger='interval',
      seconds=MINUTE_INTERVAL_SECONDS,
      next_run_time=now + timedelta(seconds=delay),
      id=_MINOR_JOB_ID,
      replace_existing=True,
      coalesce=True,
      max_instances=1,
    )
    print(f'Cron: minor updates start in {delay:.1f}s, then every {MINUTE_INTERVAL_SECONDS}s')

  def stop(self) -> None:
    """Remove the minute job. Safe to call when not running."""
    if self._job is None:
      return
    try:
      self._job.remove()
    except JobLookupError:
      pass
    self._job = None
    print('Cron: minor updates stopped')

  def run_minor_update(self) -> None:
    if self._orchestrator.get_cached_content() is None:
      print('Cron: minor update skipped, waiting for first major update')
      return

    if self._circuit_breaker is not None:
      try:
        if self._circuit_breaker.is_circuit_open('SLEEP_MODE'):
          print('Cron: SLEEP_MODE circuit is active, blocking minor update')
          return
      except Exception as e:  # noqa: BLE001
        print(f'Warning: SLEEP_MODE check failed, continuing: {e}')

    try:
      if self._minor.should_skip():
        print('Cron: minor update skipped, cached content is full frame')
        return
      content = self._minor.generate(GenerationContext('minor', self._clock()))
      if content.layout is None:
        raise ContentValidationError('minor update produced no layout.character_codes')
      self._display.send_layout(require_grid(content.layout.character_codes))
      print('Cron: minor update sent')
    except Exception as e:  # noqa: BLE001
      print(f'Failed to run minor update: {e}')


def add_major_update_job(
  scheduler: BaseScheduler,
  orchestrator: ContentOrchestrator,
  cron: str,
  clock: Callable[[], datetime] = _local_now,
) -> Job:
  """Schedule periodic major updates on a five-field cron expression."""

  def _run() -> None:
    result = orchestrator.generate_and_send(GenerationContext('major', clock()))
    if result.blocked:
      print(f'Cron: major update blocked ({result.block_reason})')

  return scheduler.add_job(
    _run,
    trigger='cron',
    id=_MAJOR_JOB_ID,
    replace_existing=True,
    coalesce=True,
    max_instances=1,
    **parse_cron(cron),  # type: ignore[arg-type]
  )
