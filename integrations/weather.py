# integrations/weather.py
#
# Current weather conditions via Open-Meteo, for the frame decorator's info
# bar.
#
# The city is forward-geocoded to coordinates on first call using the
# Open-Meteo geocoding API (no API key required); the coordinates are cached
# for the process lifetime. The last successful reading is kept for
# _CONDITIONS_CACHE_TTL seconds and served when the forecast API fails.
#
# Required config.toml keys ([weather]):
#   city     City name, optionally with a US state or ISO country suffix to
#            disambiguate (e.g. "Santa Clara, CA" or "Paris, FR").
#
# Optional config.toml keys:
#   units    "imperial" (°F, default) or "metric" (°C)

from dataclasses import dataclass

import requests

import integrations.vestaboard as vestaboard
from exceptions import IntegrationDataUnavailableError
from integrations.http import CacheEntry, fetch_with_retry, user_agent

_GEOCODING_URL = 'https://geocoding-api.open-meteo.com/v1/search'
_FORECAST_URL = 'https://api.open-meteo.com/v1/forecast'

# WMO weather interpretation codes → (condition label, condition kind).
# The kind drives the info bar color; see weather_color().
_WMO_CONDITIONS: dict[int, tuple[str, str]] = {
  0: ('CLEAR', 'clear'),
  1: ('MOSTLY CLEAR', 'clear'),
  2: ('PARTLY CLOUDY', 'cloudy'),
  3: ('OVERCAST', 'cloudy'),
  45: ('FOG', 'fog'),
  48: ('RIME FOG', 'fog'),
  51: ('LIGHT DRIZZLE', 'rainy'),
  53: ('DRIZZLE', 'rainy'),
  55: ('HEAVY DRIZZLE', 'rainy'),
  56: ('FRZ DRIZZLE', 'rainy'),
  57: ('HVY FRZ DRZL', 'rainy'),
  61: ('LIGHT RAIN', 'rainy'),
  63: ('RAIN', 'rainy'),
  65: ('HEAVY RAIN', 'pouring'),
  66: ('FRZ RAIN', 'rainy'),
  67: ('HVY FRZ RAIN', 'pouring'),
  71: ('LIGHT SNOW', 'snowy'),
  73: ('SNOW', 'snowy'),
  75: ('HEAVY SNOW', 'snowy'),
  77: ('SNOW GRAINS', 'snowy'),
  80: ('LIGHT SHOWERS', 'rainy'),
  81: ('SHOWERS', 'rainy'),
  82: ('HEAVY SHOWERS', 'pouring'),
  85: ('SNOW SHOWERS', 'snowy'),
  86: ('HVY SNOW SHWR', 'snowy'),
  95: ('THUNDERSTORM', 'lightning'),
  96: ('STORM + HAIL', 'lightning'),
  99: ('STORM + HAIL', 'lightning'),
}

_PRECIPITATION_KINDS: frozenset[str] = frozenset({'rainy', 'pouring', 'snowy', 'hail'})

# (hot, warm, cold) thresholds per unit. Above hot is red, above warm is
# orange, below cold is blue, anything else is green.
_TEMP_BANDS: dict[str, tuple[int, int, int]] = {
  'F': (85, 74, 60),
  'C': (29, 23, 16),
}

# US state/territory abbreviations, used to detect "City, ST" notation and
# narrow geocoding requests to the United States.
# fmt: off
_US_STATE_CODES: frozenset[str] = frozenset([
  'AL', 'AK', 'AZ', 'AR', 'CA', 'CO', 'CT', 'DE', 'FL', 'GA', 'HI', 'ID', 'IL',
  'IN', 'IA', 'KS', 'KY', 'LA', 'ME', 'MD', 'MA', 'MI', 'MN', 'MS', 'MO', 'MT',
  'NE', 'NV', 'NH', 'NJ', 'NM', 'NY', 'NC', 'ND', 'OH', 'OK', 'OR', 'PA', 'RI',
  'SC', 'SD', 'TN', 'TX', 'UT', 'VT', 'VA', 'WA', 'WV', 'WI', 'WY', 'DC',
])
# fmt: on

# Module-level geocoding cache: (latitude, longitude). None = not yet populated.
_geocode_cache: tuple[float, float] | None = None

_conditions_cache: CacheEntry | None = None
_CONDITIONS_CACHE_TTL = 3600


@dataclass(frozen=True)
class Conditions:
  """Current weather reading reduced to what the info bar shows."""

  temperature: int
  unit: str  # 'F' or 'C'
  condition: str
  color_code: int


def weather_color(kind: str, temperature: float, unit: str) -> int:
  """Return the Vestaboard color code for a condition kind and temperature.

  Severe or notable conditions win over temperature: lightning is yellow,
  any precipitation is blue, fog is white.
  """
  if kind == 'lightning':
    return vestaboard.YELLOW
  if kind in _PRECIPITATION_KINDS:
    return vestaboard.BLUE
  if kind == 'fog':
    return vestaboard.WHITE
  hot, warm, cold = _TEMP_BANDS.get(unit, _TEMP_BANDS['F'])
  if temperature > hot:
    return vestaboard.RED
  if temperature > warm:
    return vestaboard.ORANGE
  if temperature < cold:
    return vestaboard.BLUE
  return vestaboard.GREEN


def _parse_city_config(city_config: str) -> tuple[str, str | None]:
  """Parse a city config string into (query_name, country_code).

  Examples:
    "Santa Clara, CA" -> ("Santa Clara", "US")
    "Paris, FR"       -> ("Paris", "FR")
    "London"          -> ("London", None)
  """
  if ',' not in city_config:
    return city_config.strip(), None
  city, suffix = city_config.split(',', 1)
  suffix = suffix.strip().upper()
  if suffix in _US_STATE_CODES:
    return city.strip(), 'US'
  if len(suffix) == 2:
    return city.strip(), suffix
  return city_config.strip(), None


def _geocode(city_query: str, country_code: str | None) -> tuple[float, float]:
  """Resolve a city name to (latitude, longitude).

  Raises IntegrationDataUnavailableError if the city cannot be resolved or
  the request fails. count=2 is used with a country code because Open-Meteo
  sometimes returns nothing for count=1 + countryCode.
  """
  count = 2 if country_code else 1
  params: dict[str, str | int] = {'name': city_query, 'count': count, 'format': 'json'}
  if country_code:
    params['countryCode'] = country_code
  try:
    r = fetch_with_retry('GET', _GEOCODING_URL, params=params, headers={'User-Agent': user_agent()}, timeout=10)
    r.raise_for_status()
  except requests.RequestException as e:
    raise IntegrationDataUnavailableError(f'Weather: geocoding failed: {e}') from None

  results = r.json().get('results', [])
  if not results:
    raise IntegrationDataUnavailableError('Weather: city not found, check the [weather] city setting in config.toml')

  loc = results[0]
  return float(loc['latitude']), float(loc['longitude'])


def get_current_conditions() -> Conditions:
  """Fetch the current temperature and condition for the configured city.

  On transient API failure, returns the last reading if it is within
  _CONDITIONS_CACHE_TTL. Raises IntegrationDataUnavailableError on cold start
  or once the cache has expired.
  """
  global _geocode_cache, _conditions_cache

  import config as _config_mod

  city_config = _config_mod.get('weather', 'city')
  units = _config_mod.get_optional('weather', 'units') or 'imperial'
  unit = 'F' if units == 'imperial' else 'C'

  if _geocode_cache is None:
    _geocode_cache = _geocode(*_parse_city_config(city_config))
  lat, lon = _geocode_cache

  try:
    r = fetch_with_retry(
      'GET',
      _FORECAST_URL,
      headers={'User-Agent': user_agent()},
      params={
        'latitude': lat,
        'longitude': lon,
        'current': 'temperature_2m,weather_code',
        'temperature_unit': 'fahrenheit' if unit == 'F' else 'celsius',
        'timezone': 'auto',
      },
      timeout=10,
    )
    r.raise_for_status()
  except requests.RequestException as e:
    print(f'Weather: forecast error: {e}')
    if _conditions_cache is not None and _conditions_cache.is_valid(_CONDITIONS_CACHE_TTL):
      return _conditions_cache.value
    raise IntegrationDataUnavailableError(f'Weather: forecast error: {e}') from None

  current = r.json()['current']
  temperature = round(float(current['temperature_2m']))
  label, kind = _WMO_CONDITIONS.get(int(current['weather_code']), ('UNKNOWN', 'unknown'))
  result = Conditions(
    temperature=temperature,
    unit=unit,
    condition=label,
    color_code=weather_color(kind, temperature, unit),
  )
  _conditions_cache = CacheEntry(result)
  return result
