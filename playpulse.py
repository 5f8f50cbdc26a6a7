#!/usr/bin/env python3
"""
PlayPulse - live play-session tracking for a personal game library.

Shared helpers used by the rest of the project: logging setup, configuration
loading, time helpers, and the Steam presence client that reports what a
user is playing right now.
"""

import json
import logging
import os
import re
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, NamedTuple, Optional

import requests
from dotenv import find_dotenv, load_dotenv

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root PlayPulse logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger('playpulse')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


logger = logging.getLogger('playpulse')


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (the DB storage format)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as naive UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    """Whole minutes between *started_at* and *now*, rounded down.

    A start time in the future (clock skew between hosts) yields 0.
    """
    seconds = (now - started_at).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


# ---------------------------------------------------------------------------
# Steam ID helpers
# ---------------------------------------------------------------------------

_STEAM_ID64_RE = re.compile(r'^7656119\d{10}$')
_PROFILE_URL_RE = re.compile(r'steamcommunity\.com/profiles/(\d+)')
_CUSTOM_URL_RE = re.compile(r'steamcommunity\.com/id/([^/]+)')

_PLACEHOLDER_VALUES = {'DEMO_MODE', 'DEMO_ID', 'DEMO_KEY', 'YOUR_STEAM_API_KEY_HERE',
                       'YOUR_STEAM_ID_HERE'}


def is_placeholder_value(value: str) -> bool:
    """Check if a value is a placeholder/demo sentinel that should not be used for real API calls."""
    if not value or not isinstance(value, str):
        return True
    return value.startswith('YOUR_') or value in _PLACEHOLDER_VALUES


def is_valid_steam_id(steam_id: str) -> bool:
    """Return True for a 17-digit 64-bit SteamID starting with 7656119."""
    if not steam_id or not isinstance(steam_id, str):
        return False
    return bool(_STEAM_ID64_RE.match(steam_id))


def validate_steam_id(value: str) -> str:
    """Normalise a SteamID64 or a ``/profiles/<id>`` URL to a bare SteamID64.

    Raises:
        InvalidSteamIdError: for custom ``/id/<name>`` URLs (they need a
            vanity lookup) and for anything else that is not a SteamID64.
    """
    trimmed = (value or '').strip()
    if is_valid_steam_id(trimmed):
        return trimmed

    match = _PROFILE_URL_RE.search(trimmed)
    if match and is_valid_steam_id(match.group(1)):
        return match.group(1)

    if _CUSTOM_URL_RE.search(trimmed):
        raise InvalidSteamIdError(
            'Custom Steam URLs are not supported. Please use your Steam ID64 '
            'or profile URL with ID.')

    raise InvalidSteamIdError(
        'Invalid Steam ID format. Please provide a Steam ID64 or profile URL.')


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SteamAPIError(Exception):
    """A Steam Web API call failed.

    Attributes:
        code:   Short machine-readable reason (``API_ERROR``, ``NETWORK_ERROR`` ...).
        status: HTTP status code when one was received, else ``None``.
    """

    def __init__(self, message: str, code: str = 'API_ERROR', status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class SteamRateLimitError(SteamAPIError):
    """Too many requests, either per the local limiter or an HTTP 429."""

    def __init__(self, message: str = 'Rate limit exceeded. Please try again later.'):
        super().__init__(message, code='RATE_LIMITED', status=429)


class SteamPrivacyError(SteamAPIError):
    """The profile or game details are private (HTTP 403)."""

    def __init__(self, message: str = 'Steam profile is private. Please make your '
                                      'profile and game details public.'):
        super().__init__(message, code='PRIVATE_PROFILE', status=403)


class InvalidSteamIdError(SteamAPIError):
    def __init__(self, message: str = 'Invalid Steam ID'):
        super().__init__(message, code='INVALID_STEAM_ID', status=400)


# ---------------------------------------------------------------------------
# Presence client
# ---------------------------------------------------------------------------

class PresenceSignal(NamedTuple):
    """What a platform reports the user is doing at one point in time."""
    is_playing: bool
    external_game_id: Optional[str] = None
    game_name: Optional[str] = None


NOT_PLAYING = PresenceSignal(False, None, None)


class RateLimiter:
    """Sliding-window request limiter.

    Steam allows roughly 200 Web API calls per 5 minutes per key; the limiter
    refuses calls beyond that instead of letting Steam answer with a 429.
    """

    def __init__(self, max_requests: int = 200, window_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: List[float] = []
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        self._requests = [t for t in self._requests if now - t < self.window_seconds]

    def can_make_request(self) -> bool:
        with self._lock:
            self._prune(self._clock())
            return len(self._requests) < self.max_requests

    def record_request(self) -> None:
        with self._lock:
            self._requests.append(self._clock())

    def wait_time(self) -> float:
        """Seconds until the oldest request leaves the window (0 when free)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._requests) < self.max_requests:
                return 0.0
            return self.window_seconds - (now - self._requests[0])


class SteamPresenceClient:
    """Reads a user's in-game status from the Steam Web API."""

    BASE_URL = "https://api.steampowered.com"

    def __init__(self, api_key: str, timeout: int = 10,
                 rate_limiter: Optional[RateLimiter] = None) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter()
        self._log = logging.getLogger('playpulse.steam')

    def _request(self, url: str, params: Dict) -> Dict:
        if not self.rate_limiter.can_make_request():
            wait = int(self.rate_limiter.wait_time()) + 1
            raise SteamRateLimitError(
                f'Rate limit exceeded. Please wait {wait} seconds.')
        if is_placeholder_value(self.api_key):
            raise SteamAPIError('Steam API key not configured', 'NO_API_KEY', 500)

        self.rate_limiter.record_request()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise SteamAPIError(f'Failed to fetch from Steam API: {e}', 'NETWORK_ERROR') from e

        if response.status_code == 429:
            raise SteamRateLimitError()
        if response.status_code == 403:
            raise SteamPrivacyError()
        if response.status_code != 200:
            raise SteamAPIError(
                f'Steam API request failed: HTTP {response.status_code}',
                'API_ERROR', response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise SteamAPIError(f'Invalid JSON from Steam API: {e}', 'BAD_RESPONSE') from e

    def get_player_summary(self, steam_id: str) -> Optional[Dict]:
        """Return the GetPlayerSummaries entry for *steam_id*, or None.

        When the user is in game the entry carries ``gameid`` (app id) and
        ``gameextrainfo`` (game name).
        """
        valid_id = validate_steam_id(steam_id)
        url = f"{self.BASE_URL}/ISteamUser/GetPlayerSummaries/v0002/"
        data = self._request(url, {
            'key': self.api_key,
            'steamids': valid_id,
            'format': 'json',
        })
        players = data.get('response', {}).get('players', [])
        return players[0] if players else None

    def get_currently_playing(self, steam_id: str) -> PresenceSignal:
        player = self.get_player_summary(steam_id)
        if not player or not player.get('gameid'):
            return NOT_PLAYING
        self._log.debug("%s is playing %s (%s)", steam_id,
                        player.get('gameextrainfo'), player.get('gameid'))
        return PresenceSignal(
            is_playing=True,
            external_game_id=str(player['gameid']),
            game_name=player.get('gameextrainfo') or None,
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict = {
    'steam_api_key': '',
    'api_url': 'http://localhost:5000',
    'log_level': 'INFO',
    'active_interval': 90,
    'idle_interval': 180,
    'backoff_seconds': 300,
    'abandon_after_hours': 6,
}

# environment variable -> (config key, type)
_ENV_OVERRIDES = {
    'STEAM_API_KEY': ('steam_api_key', str),
    'PLAYPULSE_API_URL': ('api_url', str),
    'PLAYPULSE_LOG_LEVEL': ('log_level', str),
    'PLAYPULSE_ACTIVE_INTERVAL': ('active_interval', float),
    'PLAYPULSE_IDLE_INTERVAL': ('idle_interval', float),
    'PLAYPULSE_BACKOFF_SECONDS': ('backoff_seconds', float),
    'PLAYPULSE_ABANDON_HOURS': ('abandon_after_hours', float),
}


def load_config(config_path: str = 'config.json') -> Dict:
    """Load configuration from an optional JSON file plus environment variables.

    Values from ``.env`` / the process environment take precedence over the
    file, which takes precedence over :data:`DEFAULT_CONFIG`.  Unparseable
    numeric overrides are logged and ignored.
    """
    load_dotenv(find_dotenv(usecwd=True))
    config = dict(DEFAULT_CONFIG)

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config.update(json.load(f))
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Could not load %s: %s", config_path, e)

    for env_name, (key, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or raw == '':
            continue
        try:
            config[key] = cast(raw)
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", env_name, raw)

    return config


def build_presence_client(config: Dict) -> Optional[SteamPresenceClient]:
    """Return a Steam presence client, or None when no API key is configured."""
    api_key = config.get('steam_api_key', '')
    if is_placeholder_value(api_key):
        logger.info("STEAM_API_KEY not set; presence tracking disabled")
        return None
    return SteamPresenceClient(api_key)
