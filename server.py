# server.py
#
# HTTP admin and event intake, served from a background daemon thread.
#
#   GET  /circuits               list all circuits
#   GET  /circuits/<id>          one circuit
#   POST /circuits/<id>/on       set state on
#   POST /circuits/<id>/off      set state off
#                                (SLEEP_MODE: on = asleep, off = awake)
#   POST /circuits/<id>/reset    reset a provider circuit
#   POST /events                 publish {"event_type": ..., "data": {...}}
#
# Every request must carry the shared secret in the X-Webhook-Secret header
# or, for senders that cannot set headers, a ?secret= query parameter.
# Responses are JSON: {"success": bool, "data"?, "error"?, "message"?}.

import json
import secrets
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

import config as _config_mod
from circuits import CircuitBreakerService, CircuitBreakerState, control_state
from events import EventBus
from exceptions import CircuitNotFoundError, CircuitTypeError

# Maximum request body size. Event payloads are small JSON objects.
_MAX_BODY = 64 * 1024

_ACTION_MESSAGES = {'on': 'enabled', 'off': 'disabled', 'reset': 'reset'}


def serialize_circuit(circuit: CircuitBreakerState) -> dict[str, Any]:
  return circuit.model_dump(mode='json', exclude={'id'})


def _make_handler(
  secret: str,
  circuit_breaker: CircuitBreakerService | None,
  bus: EventBus | None,
) -> type:
  """Return a request handler class bound to the given secret and services."""

  class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
      parts = self._authorized_parts()
      if parts is None:
        return
      if parts == ['circuits']:
        self._list_circuits()
      elif len(parts) == 2 and parts[0] == 'circuits':
        self._get_circuit(parts[1])
      else:
        self._error(404, 'Not found')

    def do_POST(self) -> None:  # noqa: N802
      parts = self._authorized_parts()
      if parts is None:
        return
      if parts == ['events']:
        self._publish_event()
      elif len(parts) == 3 and parts[0] == 'circuits' and parts[2] in _ACTION_MESSAGES:
        self._circuit_action(parts[1], parts[2])
      else:
        self._error(404, 'Not found')

    def _authorized_parts(self) -> list[str] | None:
      parsed = urlparse(self.path)
      header_secret = self.headers.get('X-Webhook-Secret', '')
      query_secret = parse_qs(parsed.query).get('secret', [''])[0]
      provided = header_secret or query_secret
      if not secrets.compare_digest(provided, secret):
        print(f'Webhook: rejected {self.command} {parsed.path}, invalid or missing secret')
        self._error(401, 'Unauthorized')
        return None
      return [p for p in parsed.path.strip('/').split('/') if p]

    # --- Circuits ---

    def _list_circuits(self) -> None:
      if circuit_breaker is None:
        self._error(503, 'Circuit breaker service unavailable')
        return
      try:
        circuits = circuit_breaker.get_all_circuits()
      except Exception as e:  # noqa: BLE001
        print(f'Webhook: listing circuits failed: {e}')
        self._error(500, 'Internal error')
        return
      self._json(200, {'success': True, 'data': [serialize_circuit(c) for c in circuits]})

    def _get_circuit(self, circuit_id: str) -> None:
      if circuit_breaker is None:
        self._error(503, 'Circuit breaker service unavailable')
        return
      try:
        circuit = circuit_breaker.get_circuit_status(circuit_id)
      except Exception as e:  # noqa: BLE001
        print(f'Webhook: reading circuit {circuit_id} failed: {e}')
        self._error(500, 'Internal error')
        return
      if circuit is None:
        self._error(404, f'Circuit not found: {circuit_id}')
        return
      self._json(200, {'success': True, 'data': serialize_circuit(circuit)})

    def _circuit_action(self, circuit_id: str, action: str) -> None:
      if circuit_breaker is None:
        self._error(503, 'Circuit breaker service unavailable')
        return
      try:
        if action == 'reset':
          circuit = circuit_breaker.reset_provider_circuit(circuit_id)
        else:
          circuit = circuit_breaker.set_circuit_state(circuit_id, control_state(circuit_id, action))
      except CircuitNotFoundError:
        self._error(404, f'Circuit not found: {circuit_id}')
        return
      except CircuitTypeError:
        self._error(400, 'Reset is only available for provider circuits. Use /on or /off for manual circuits.')
        return
      except Exception as e:  # noqa: BLE001
        print(f'Webhook: {action} on circuit {circuit_id} failed: {e}')
        self._error(500, 'Internal error')
        return
      self._json(
        200,
        {
          'success': True,
          'data': serialize_circuit(circuit),
          'message': f'Circuit {circuit_id} {_ACTION_MESSAGES[action]}',
        },
      )

    # --- Events ---

    def _publish_event(self) -> None:
      if bus is None:
        self._error(503, 'Event bus unavailable')
        return
      try:
        content_length = min(int(self.headers.get('Content-Length') or 0), _MAX_BODY)
      except ValueError:
        content_length = 0
      body = self.rfile.read(content_length)
      try:
        payload = json.loads(body) if body else {}
      except json.JSONDecodeError:
        self._error(400, 'Invalid JSON')
        return
      event_type = payload.get('event_type') if isinstance(payload, dict) else None
      if not isinstance(event_type, str) or not event_type:
        self._error(400, 'Missing event_type')
        return
      data = payload.get('data') or {}
      if not isinstance(data, dict):
        self._error(400, 'data must be an object')
        return
      # Deliver off the request thread so a slow update never holds the sender.
      threading.Thread(
        target=bus.publish,
        args=({'event_type': event_type, 'data': data},),
        daemon=True,
      ).start()
      self._json(202, {'success': True, 'message': f'Event {event_type} accepted'})

    # --- Responses ---

    def _error(self, code: int, message: str) -> None:
      self._json(code, {'success': False, 'error': message})

    def _json(self, code: int, payload: dict[str, Any]) -> None:
      body = json.dumps(payload).encode()
      self.send_response(code)
      self.send_header('Content-Type', 'application/json')
      self.send_header('Content-Length', str(len(body)))
      self.end_headers()
      self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
      pass  # suppress default per-request access log lines

  return _Handler


def start_server(
  circuit_breaker: CircuitBreakerService | None,
  bus: EventBus | None,
) -> ThreadingHTTPServer:
  """Start the HTTP listener in a background daemon thread.

  Reads [webhook] config for port (default 8080) and bind address (default
  127.0.0.1). Generates a shared secret if none is configured, persists it to
  config.toml, and prints it once. Raises OSError if the port is in use.
  """
  port = _config_mod.get_optional_int('webhook', 'port', 8080)
  bind = _config_mod.get_optional('webhook', 'bind', '127.0.0.1')

  secret = _config_mod.get_optional('webhook', 'secret')
  if not secret:
    secret = secrets.token_urlsafe(32)
    _config_mod.write_section_values('webhook', {'secret': secret})
    print(
      f'Webhook secret generated and saved to config.toml:\n'
      f'  {secret}\n'
      f'Send it as X-Webhook-Secret from Home Assistant or your admin tools.'
    )

  server = ThreadingHTTPServer((bind, port), _make_handler(secret, circuit_breaker, bus))
  threading.Thread(target=server.serve_forever, daemon=True).start()
  print(f'Webhook listener started on {bind}:{port}')
  return server
