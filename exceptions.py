# exceptions.py
#
# Shared exception types used across the orchestrator, circuit breaker,
# generators, and integrations.
#
# Kept in a standalone module so that integrations can import directly
# without going through `conductor`, which avoids the dual-module identity
# problem that arises when conductor.py runs as __main__.


class IntegrationDataUnavailableError(Exception):
  """Raised by an integration when it has no current data to display.

  Callers treat this as an expected empty state (e.g. weather API down with
  an expired cache) and degrade instead of failing the whole update.
  """


class CircuitNotFoundError(KeyError):
  """Raised when an operation names a circuit that does not exist."""

  def __init__(self, circuit_id: str) -> None:
    super().__init__(circuit_id)
    self.circuit_id = circuit_id

  def __str__(self) -> str:
    return f'Circuit not found: {self.circuit_id}'


class CircuitTypeError(ValueError):
  """Raised when an operation is not valid for the circuit's type."""


class ProviderAuthenticationError(Exception):
  """Raised by an AI provider when its credentials are rejected.

  Trips the provider's circuit on the first occurrence since retrying with
  the same key cannot succeed.
  """


class ContentValidationError(ValueError):
  """Raised when generated content or a rendered grid has the wrong shape."""
