# integrations/http.py
#
# Shared HTTP plumbing for the board client and data sources.
#
# fetch_with_retry: requests.request with exponential backoff. Retries 5xx
# responses, 429 rate limits (honouring a numeric Retry-After), timeouts and
# connection errors. Every other status goes straight back to the caller so
# each integration can map it to its own error.
# CacheEntry: last-known-good value stamped with time.monotonic(), used to
# keep the info bar populated through short upstream outages.

import importlib.metadata
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests

_PACKAGE = 'splitflap-conductor'

# Upper bound on a server-requested Retry-After wait. A board that asks for
# longer is effectively locked; give up and let the next update try.
MAX_RETRY_AFTER = 30.0

_ua_cache: str | None = None


def user_agent() -> str:
  """Return the User-Agent sent to third-party APIs, resolved once per process."""
  global _ua_cache
  if _ua_cache is None:
    try:
      version = importlib.metadata.version(_PACKAGE)
    except importlib.metadata.PackageNotFoundError:
      version = 'dev'
    _ua_cache = f'{_PACKAGE}/{version}'
  return _ua_cache


def _retry_after(response: requests.Response) -> float | None:
  value = response.headers.get('Retry-After')
  try:
    seconds = float(value)
  except (TypeError, ValueError):
    return None
  return seconds if seconds >= 0 else None


def _is_retryable(response: requests.Response) -> bool:
  return response.status_code == 429 or response.status_code >= 500


def fetch_with_retry(
  method: str,
  url: str,
  *,
  attempts: int = 3,
  backoff: float = 1.0,
  **kwargs: Any,
) -> requests.Response:
  """Send an HTTP request, retrying transient failures.

  Args:
    method:   HTTP method ('GET', 'POST', ...).
    url:      Request URL.
    attempts: Total tries including the first (default 3).
    backoff:  Base delay in seconds; the wait before try n is
              backoff * 2**(n - 2). A 429 with Retry-After waits that long
              instead, unless it exceeds MAX_RETRY_AFTER.
    **kwargs: Passed through to requests.request (params, json, headers,
              timeout, ...).

  Raises the last HTTPError, Timeout, or ConnectionError once every attempt
  is used, and ValueError if attempts is below 1.
  """
  if attempts < 1:
    raise ValueError('attempts must be at least 1')

  host = urlparse(url).netloc or url
  last_exc: Exception | None = None
  delay = 0.0

  for attempt in range(1, attempts + 1):
    if attempt > 1:
      time.sleep(delay)
    delay = backoff * 2 ** (attempt - 1)
    try:
      r = requests.request(method, url, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as e:
      last_exc = e
    else:
      if not _is_retryable(r):
        return r
      last_exc = requests.HTTPError(f'HTTP {r.status_code} {r.reason}', response=r)
      wait = _retry_after(r) if r.status_code == 429 else None
      if wait is not None:
        if wait > MAX_RETRY_AFTER:
          break
        delay = wait
    if attempt < attempts:
      print(f'Warning: {method} {host} failed ({last_exc}), retry {attempt}/{attempts - 1} in {delay:g}s')

  assert last_exc is not None
  raise last_exc


@dataclass
class CacheEntry:
  """A timestamped last-known-good value."""

  value: Any
  cached_at: float = field(default_factory=time.monotonic)

  def age(self) -> float:
    return time.monotonic() - self.cached_at

  def is_valid(self, ttl: float) -> bool:
    """Return True if the entry is no older than ttl seconds."""
    return self.age() <= ttl
