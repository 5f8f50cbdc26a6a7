#!/usr/bin/env python3
"""
Client-side polling driver for live session tracking.

:class:`SessionTracker` calls a session backend on a schedule, keeps the
last known active session, and exposes live values for a UI:

* ``active_session``             the open session dict, or ``None``
* ``session_duration_minutes``   refreshed every second from ``started_at``
* ``today_playtime_minutes``     completed minutes today + the live counter
* ``is_rate_limited``            set while backing off from Steam
* ``clear_rate_limit_warning()``

Polling intervals (seconds) follow Steam's budget of ~200 requests per
5 minutes shared with other features::

    active session   90
    idle            180
    rate limited    300

Usage
-----
    backend = HttpSessionBackend('http://localhost:5000', 'alice')
    tracker = SessionTracker(backend)
    tracker.add_listener(lambda state: print(state['session_duration_minutes']))
    tracker.start()
    ...
    tracker.set_visible(False)   # window hidden: no polling at all
    tracker.set_visible(True)    # immediate poll, timer restarts
    tracker.stop()
"""

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import requests

from playpulse import SteamRateLimitError, elapsed_minutes, parse_timestamp, utcnow

logger = logging.getLogger('playpulse.tracker')

ACTIVE_SESSION_INTERVAL = 90
IDLE_INTERVAL = 180
RATE_LIMIT_BACKOFF = 300
DURATION_REFRESH_INTERVAL = 1.0


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class LocalSessionBackend:
    """Runs the reconciler in-process, one database session per call."""

    def __init__(self, session_service, username: str, session_factory=None) -> None:
        if session_factory is None:
            import database
            session_factory = database.SessionLocal
        self._service = session_service
        self._username = username
        self._session_factory = session_factory

    def sync(self) -> Dict:
        db = self._session_factory()
        try:
            return self._service.sync_with_presence(db, self._username)
        finally:
            db.close()

    def get_today_completed_minutes(self) -> int:
        db = self._session_factory()
        try:
            return self._service.get_today_playtime(db, self._username)['completed_minutes']
        finally:
            db.close()


class HttpSessionBackend:
    """Talks to the PlayPulse web API (``playpulse_web.py``)."""

    def __init__(self, base_url: str, username: str, timeout: int = 10) -> None:
        self.base_url = base_url.rstrip('/')
        self.username = username
        self.timeout = timeout
        self.session = requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/users/{self.username}/sessions/{path}"

    def sync(self) -> Dict:
        resp = self.session.post(self._url('sync'), timeout=self.timeout)
        if resp.status_code == 429:
            try:
                data = resp.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                data = {'active_session': None, 'action': 'failed', 'error': resp.text}
            data['rate_limited'] = True
            return data
        resp.raise_for_status()
        return resp.json()

    def get_today_completed_minutes(self) -> int:
        resp = self.session.get(self._url('today'), timeout=self.timeout)
        resp.raise_for_status()
        return int(resp.json().get('completed_minutes', 0))


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class _DurationTicker:
    """Calls *callback* every *interval* seconds on a daemon thread until stopped."""

    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name='playpulse-duration')

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._callback()


class SessionTracker:
    """Polls a session backend and exposes live session state.

    Only one poll runs at a time: a tick that fires while a poll is still
    in flight is dropped.  Polling is suspended while the consumer is not
    visible.  All public properties are safe to read from any thread.
    """

    def __init__(self, backend, enabled: bool = True,
                 active_interval: float = ACTIVE_SESSION_INTERVAL,
                 idle_interval: float = IDLE_INTERVAL,
                 backoff_seconds: float = RATE_LIMIT_BACKOFF,
                 duration_refresh: float = DURATION_REFRESH_INTERVAL,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = utcnow) -> None:
        self._backend = backend
        self.enabled = enabled
        self.active_interval = active_interval
        self.idle_interval = idle_interval
        self.backoff_seconds = backoff_seconds
        self.duration_refresh = duration_refresh
        self._clock = clock
        self._now = now

        self._lock = threading.Lock()
        self._in_flight = threading.Lock()
        self._active_session: Optional[Dict] = None
        self._session_started_at: Optional[datetime] = None
        self._duration_minutes = 0
        self._today_completed_minutes = 0
        self._rate_limited_until: Optional[float] = None
        self._last_sync: Optional[datetime] = None
        self._ticker: Optional[_DurationTicker] = None
        self._listeners: List[Callable[[Dict], None]] = []

        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._visible = threading.Event()
        self._visible.set()
        self._wake = threading.Event()
        self._poll_now = False

    # ------------------------------------------------------------------
    # Exposed state
    # ------------------------------------------------------------------

    @property
    def active_session(self) -> Optional[Dict]:
        with self._lock:
            return self._active_session

    @property
    def session_duration_minutes(self) -> int:
        with self._lock:
            return self._duration_minutes

    @property
    def today_playtime_minutes(self) -> int:
        with self._lock:
            return self._today_completed_minutes + self._duration_minutes

    @property
    def is_rate_limited(self) -> bool:
        with self._lock:
            return self._check_rate_limit_locked()

    @property
    def is_tracking(self) -> bool:
        """True while a poll is in flight."""
        return self._in_flight.locked()

    @property
    def last_sync(self) -> Optional[datetime]:
        with self._lock:
            return self._last_sync

    @property
    def visible(self) -> bool:
        return self._visible.is_set()

    @property
    def polling_interval(self) -> float:
        with self._lock:
            if self._check_rate_limit_locked():
                return self.backoff_seconds
            return self.active_interval if self._active_session else self.idle_interval

    def _check_rate_limit_locked(self) -> bool:
        if self._rate_limited_until is not None and self._clock() >= self._rate_limited_until:
            self._rate_limited_until = None
        return self._rate_limited_until is not None

    def snapshot(self) -> Dict:
        """All exposed values in one dict (what listeners receive)."""
        with self._lock:
            rate_limited = self._check_rate_limit_locked()
            return {
                'active_session': self._active_session,
                'session_duration_minutes': self._duration_minutes,
                'today_playtime_minutes': self._today_completed_minutes + self._duration_minutes,
                'is_rate_limited': rate_limited,
                'is_tracking': self._in_flight.locked(),
                'last_sync': self._last_sync,
            }

    def clear_rate_limit_warning(self) -> None:
        """Dismiss the rate-limit notice and return to the normal interval."""
        with self._lock:
            self._rate_limited_until = None
        self._wake.set()
        self._notify()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[Dict], None]) -> Callable[[], None]:
        """Register *callback* for state changes.  Returns a remover."""
        with self._lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)
        return remove

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        state = self.snapshot()
        for callback in listeners:
            try:
                callback(state)
            except Exception:
                logger.exception("Session tracker listener failed")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def sync(self) -> bool:
        """Run one poll now.

        Returns:
            ``False`` when the poll was skipped (tracker disabled or another
            poll still in flight), ``True`` otherwise.
        """
        if not self.enabled:
            return False
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Poll already in flight, dropping tick")
            return False

        interval_before = self.polling_interval
        try:
            result = self._backend.sync()
            if result.get('rate_limited'):
                self._enter_backoff(result.get('error'))
            elif result.get('error'):
                logger.info("Session sync reported: %s", result['error'])
            else:
                self._apply_session(result.get('active_session'))
                completed = self._backend.get_today_completed_minutes()
                with self._lock:
                    self._rate_limited_until = None
                    self._today_completed_minutes = completed
                    self._last_sync = self._now()
        except SteamRateLimitError as e:
            self._enter_backoff(str(e))
        except Exception as e:
            logger.error("Session sync failed: %s", e)
        finally:
            self._in_flight.release()

        if self.polling_interval != interval_before:
            self._wake.set()
        self._notify()
        return True

    def _enter_backoff(self, message: Optional[str]) -> None:
        logger.warning("Rate limited, backing off for %ss: %s", self.backoff_seconds, message)
        with self._lock:
            self._rate_limited_until = self._clock() + self.backoff_seconds

    def _apply_session(self, session: Optional[Dict]) -> None:
        with self._lock:
            previous = self._active_session
            self._active_session = session
            if session is None:
                ticker, self._ticker = self._ticker, None
                self._session_started_at = None
                self._duration_minutes = 0
                restart = False
            else:
                self._session_started_at = parse_timestamp(session.get('started_at'))
                restart = (previous is None or previous.get('id') != session.get('id')
                           or self._ticker is None)
                ticker = self._ticker if restart else None
        if ticker is not None:
            ticker.stop()
        if session is not None:
            self._refresh_duration()
            if restart:
                new_ticker = _DurationTicker(self.duration_refresh, self._on_tick)
                with self._lock:
                    self._ticker = new_ticker
                new_ticker.start()

    def _refresh_duration(self) -> bool:
        """Recompute the live minute counter.  Returns True if it changed."""
        with self._lock:
            if self._session_started_at is None:
                return False
            minutes = elapsed_minutes(self._session_started_at, self._now())
            changed = minutes != self._duration_minutes
            self._duration_minutes = minutes
        return changed

    def _on_tick(self) -> None:
        if self._refresh_duration():
            self._notify()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _dispatch_tick(self) -> None:
        threading.Thread(target=self.sync, daemon=True, name='playpulse-poll').start()

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._visible.wait()
            if self._stopping.is_set():
                break
            if self._poll_now:
                self._poll_now = False
                self._dispatch_tick()
            woken = self._wake.wait(timeout=self.polling_interval)
            self._wake.clear()
            if self._stopping.is_set():
                break
            if woken or not self._visible.is_set():
                # interval changed, visibility changed, or an immediate poll
                # was requested: re-evaluate from the top
                continue
            self._dispatch_tick()

    def start(self) -> bool:
        """Start polling (with an immediate first poll).  No-op when disabled."""
        if not self.enabled:
            logger.debug("Session tracking disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stopping.clear()
        self._poll_now = True
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name='playpulse-tracker')
        self._thread.start()
        logger.info("Session tracker started")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling and the live duration timer."""
        self._stopping.set()
        self._visible.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._lock:
            ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.stop()
        logger.info("Session tracker stopped")

    def set_visible(self, visible: bool) -> None:
        """Tell the tracker whether its consumer is on screen.

        Hidden: the interval timer is suspended and no ticks fire.
        Visible again: an immediate poll fires and the timer restarts.
        """
        if visible:
            if self._visible.is_set():
                return
            self._poll_now = True
            self._visible.set()
        else:
            self._visible.clear()
        self._wake.set()
