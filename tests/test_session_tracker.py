#!/usr/bin/env python3
"""
Tests for the polling driver in session_tracker.py.

Most tests call ``tracker.sync()`` directly with a fake backend and fake
clocks; the scheduling tests use tiny intervals and poll for the expected
state.

Run with:
    python -m pytest tests/test_session_tracker.py
"""
import os
import sys
import threading
import time
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import requests

import database
from app.services import SessionService
from playpulse import PresenceSignal, SteamRateLimitError
from session_tracker import (HttpSessionBackend, LocalSessionBackend, SessionTracker,
                             _DurationTicker)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

T0 = datetime(2026, 3, 14, 20, 0, 0)

PORTAL_SESSION = {'id': 1, 'external_game_id': '620', 'status': 'active',
                  'started_at': T0.isoformat(), 'game': {'title': 'Portal 2'}}
TF2_SESSION = {'id': 2, 'external_game_id': '440', 'status': 'active',
               'started_at': (T0 + timedelta(minutes=30)).isoformat(),
               'game': {'title': 'Team Fortress 2'}}


def _ok(session=None, action='unchanged'):
    return {'active_session': session, 'action': action, 'error': None, 'rate_limited': False}


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _FakeBackend:
    def __init__(self):
        self.result = _ok()
        self.error = None
        self.completed_minutes = 0
        self.calls = 0
        self.gate = None
        self.entered = threading.Event()

    def sync(self):
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return dict(self.result)

    def get_today_completed_minutes(self):
        return self.completed_minutes


class _Value:
    """Mutable stand-in for a clock callable."""

    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


class _TrackerTestCase(unittest.TestCase):

    def setUp(self):
        self.backend = _FakeBackend()
        self.clock = _Value(1000.0)
        self.now = _Value(T0)
        self.tracker = self._make_tracker()

    def _make_tracker(self, **kwargs):
        return SessionTracker(self.backend, clock=self.clock, now=self.now, **kwargs)

    def tearDown(self):
        self.tracker.stop(timeout=1.0)


# ===========================================================================
# Single polls
# ===========================================================================

class TestSyncState(_TrackerTestCase):

    def test_initial_state(self):
        self.assertIsNone(self.tracker.active_session)
        self.assertEqual(self.tracker.session_duration_minutes, 0)
        self.assertFalse(self.tracker.is_rate_limited)
        self.assertFalse(self.tracker.is_tracking)
        self.assertIsNone(self.tracker.last_sync)

    def test_disabled_tracker_never_polls(self):
        tracker = self._make_tracker(enabled=False)
        self.assertFalse(tracker.sync())
        self.assertFalse(tracker.start())
        self.assertEqual(self.backend.calls, 0)

    def test_successful_poll_updates_state(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.backend.completed_minutes = 30
        self.now.value = T0 + timedelta(minutes=12, seconds=30)
        self.assertTrue(self.tracker.sync())
        self.assertEqual(self.tracker.active_session['id'], 1)
        self.assertEqual(self.tracker.session_duration_minutes, 12)
        self.assertEqual(self.tracker.today_playtime_minutes, 42)
        self.assertEqual(self.tracker.last_sync, self.now.value)

    def test_session_end_resets_duration(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.now.value = T0 + timedelta(minutes=5)
        self.tracker.sync()
        self.backend.result = _ok(None, 'ended')
        self.backend.completed_minutes = 5
        self.tracker.sync()
        self.assertIsNone(self.tracker.active_session)
        self.assertEqual(self.tracker.session_duration_minutes, 0)
        self.assertEqual(self.tracker.today_playtime_minutes, 5)

    def test_error_result_keeps_previous_session(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self.backend.result = {'active_session': None, 'action': 'failed',
                               'error': 'Steam API request failed: HTTP 503',
                               'rate_limited': False}
        self.assertTrue(self.tracker.sync())
        self.assertEqual(self.tracker.active_session['id'], 1)
        self.assertFalse(self.tracker.is_rate_limited)

    def test_backend_exception_is_contained(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self.backend.error = RuntimeError('connection reset')
        self.assertTrue(self.tracker.sync())
        self.assertEqual(self.tracker.active_session['id'], 1)
        self.assertFalse(self.tracker.is_tracking)


class TestPollingInterval(_TrackerTestCase):

    def test_idle_then_active_then_idle(self):
        self.assertEqual(self.tracker.polling_interval, 180)
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self.assertEqual(self.tracker.polling_interval, 90)
        self.backend.result = _ok(None, 'ended')
        self.tracker.sync()
        self.assertEqual(self.tracker.polling_interval, 180)

    def test_custom_intervals(self):
        tracker = self._make_tracker(active_interval=30, idle_interval=60)
        self.assertEqual(tracker.polling_interval, 60)


class TestRateLimitBackoff(_TrackerTestCase):

    def _rate_limited(self):
        self.backend.result = {'active_session': None, 'action': 'failed',
                               'error': 'Rate limit exceeded', 'rate_limited': True}

    def test_rate_limited_result_enters_backoff(self):
        self._rate_limited()
        self.tracker.sync()
        self.assertTrue(self.tracker.is_rate_limited)
        self.assertEqual(self.tracker.polling_interval, 300)

    def test_raised_rate_limit_enters_backoff(self):
        self.backend.error = SteamRateLimitError()
        self.tracker.sync()
        self.assertTrue(self.tracker.is_rate_limited)

    def test_backoff_keeps_session(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self._rate_limited()
        self.tracker.sync()
        self.assertEqual(self.tracker.active_session['id'], 1)

    def test_backoff_expires_after_window(self):
        self._rate_limited()
        self.tracker.sync()
        self.clock.value += 299
        self.assertTrue(self.tracker.is_rate_limited)
        self.clock.value += 1
        self.assertFalse(self.tracker.is_rate_limited)
        self.assertEqual(self.tracker.polling_interval, 180)

    def test_clear_warning(self):
        self._rate_limited()
        self.tracker.sync()
        self.tracker.clear_rate_limit_warning()
        self.assertFalse(self.tracker.is_rate_limited)
        self.assertEqual(self.tracker.polling_interval, 180)

    def test_successful_poll_clears_flag(self):
        self._rate_limited()
        self.tracker.sync()
        self.backend.result = _ok()
        self.tracker.sync()
        self.assertFalse(self.tracker.is_rate_limited)


class TestOverlappingPolls(_TrackerTestCase):

    def test_tick_during_poll_is_dropped(self):
        self.backend.gate = threading.Event()
        worker = threading.Thread(target=self.tracker.sync)
        worker.start()
        try:
            self.assertTrue(self.backend.entered.wait(2))
            self.assertTrue(self.tracker.is_tracking)
            self.assertFalse(self.tracker.sync())
        finally:
            self.backend.gate.set()
            worker.join(2)
        self.assertEqual(self.backend.calls, 1)
        self.assertFalse(self.tracker.is_tracking)


class TestListeners(_TrackerTestCase):

    def test_listener_receives_snapshot(self):
        states = []
        self.tracker.add_listener(states.append)
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self.assertEqual(states[-1]['active_session']['id'], 1)
        self.assertIn('today_playtime_minutes', states[-1])

    def test_remove_listener(self):
        states = []
        remove = self.tracker.add_listener(states.append)
        remove()
        remove()
        self.tracker.sync()
        self.assertEqual(states, [])

    def test_failing_listener_does_not_break_others(self):
        states = []

        def broken(state):
            raise ValueError('boom')
        self.tracker.add_listener(broken)
        self.tracker.add_listener(states.append)
        self.assertTrue(self.tracker.sync())
        self.assertEqual(len(states), 1)


# ===========================================================================
# Live duration
# ===========================================================================

class TestDurationTicker(_TrackerTestCase):

    def setUp(self):
        super().setUp()
        self.tracker = self._make_tracker(duration_refresh=0.01)

    def test_duration_follows_clock_while_open(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        self.assertEqual(self.tracker.session_duration_minutes, 0)
        self.now.value = T0 + timedelta(minutes=7, seconds=59)
        self.assertTrue(_wait_for(lambda: self.tracker.session_duration_minutes == 7))

    def test_ticker_runs_only_while_session_open(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        ticker = self.tracker._ticker
        self.assertTrue(ticker.running)
        self.backend.result = _ok(None, 'ended')
        self.tracker.sync()
        self.assertIsNone(self.tracker._ticker)
        self.assertTrue(_wait_for(lambda: not ticker.running))

    def test_switch_restarts_from_new_start(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.now.value = T0 + timedelta(minutes=40)
        self.tracker.sync()
        self.assertEqual(self.tracker.session_duration_minutes, 40)
        self.backend.result = _ok(TF2_SESSION, 'switched')
        self.tracker.sync()
        self.assertEqual(self.tracker.session_duration_minutes, 10)

    def test_future_start_shows_zero(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.now.value = T0 - timedelta(minutes=2)
        self.tracker.sync()
        self.assertEqual(self.tracker.session_duration_minutes, 0)

    def test_listener_told_when_minute_rolls_over(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        states = []
        self.tracker.add_listener(states.append)
        self.now.value = T0 + timedelta(minutes=1)
        self.assertTrue(_wait_for(
            lambda: any(s['session_duration_minutes'] == 1 for s in states)))

    def test_stop_stops_ticker(self):
        self.backend.result = _ok(PORTAL_SESSION, 'started')
        self.tracker.sync()
        ticker = self.tracker._ticker
        self.tracker.stop()
        self.assertTrue(_wait_for(lambda: not ticker.running))


class TestDurationTickerThread(unittest.TestCase):

    def test_calls_back_until_stopped(self):
        calls = []
        ticker = _DurationTicker(0.01, lambda: calls.append(1))
        ticker.start()
        self.assertTrue(_wait_for(lambda: len(calls) >= 3))
        ticker.stop()
        self.assertFalse(ticker.running)


# ===========================================================================
# Scheduling
# ===========================================================================

class TestScheduling(_TrackerTestCase):

    def test_start_polls_immediately(self):
        self.assertTrue(self.tracker.start())
        self.assertTrue(_wait_for(lambda: self.backend.calls >= 1))

    def test_ticks_repeat_at_interval(self):
        self.tracker = self._make_tracker(idle_interval=0.02)
        self.tracker.start()
        self.assertTrue(_wait_for(lambda: self.backend.calls >= 3))

    def test_hidden_tracker_does_not_poll(self):
        self.tracker = self._make_tracker(idle_interval=0.02)
        self.tracker.set_visible(False)
        self.tracker.start()
        time.sleep(0.15)
        self.assertEqual(self.backend.calls, 0)
        self.assertFalse(self.tracker.visible)

    def test_becoming_visible_polls_immediately(self):
        self.tracker.start()
        self.assertTrue(_wait_for(lambda: self.backend.calls == 1))
        self.tracker.set_visible(False)
        self.tracker.set_visible(True)
        # idle interval is 180s, so the second call can only be the immediate poll
        self.assertTrue(_wait_for(lambda: self.backend.calls == 2))

    def test_stop_ends_loop(self):
        self.tracker.start()
        thread = self.tracker._thread
        self.tracker.stop()
        self.assertFalse(thread.is_alive())


# ===========================================================================
# Backends
# ===========================================================================

class TestHttpSessionBackend(unittest.TestCase):

    def setUp(self):
        self.backend = HttpSessionBackend('http://localhost:5000/', 'alice')
        self.backend.session = MagicMock()

    def _response(self, status, payload):
        resp = MagicMock()
        resp.status_code = status
        resp.json.return_value = payload
        if status >= 400:
            resp.raise_for_status.side_effect = requests.HTTPError(f'{status} error')
        return resp

    def test_sync_posts_to_user_endpoint(self):
        self.backend.session.post.return_value = self._response(200, _ok(PORTAL_SESSION))
        result = self.backend.sync()
        self.assertEqual(result['active_session']['id'], 1)
        url = self.backend.session.post.call_args[0][0]
        self.assertEqual(url, 'http://localhost:5000/api/users/alice/sessions/sync')

    def test_429_reported_as_rate_limited(self):
        self.backend.session.post.return_value = self._response(
            429, {'active_session': None, 'action': 'failed', 'error': 'Rate limit exceeded'})
        self.assertTrue(self.backend.sync()['rate_limited'])

    def test_429_with_plain_text_body_still_rate_limited(self):
        resp = self._response(429, None)
        resp.json.side_effect = ValueError('Expecting value')
        resp.text = 'Too Many Requests'
        self.backend.session.post.return_value = resp
        result = self.backend.sync()
        self.assertTrue(result['rate_limited'])
        self.assertEqual(result['error'], 'Too Many Requests')

        tracker = SessionTracker(self.backend)
        try:
            tracker.sync()
            self.assertTrue(tracker.is_rate_limited)
        finally:
            tracker.stop()

    def test_server_error_raises(self):
        self.backend.session.post.return_value = self._response(500, {})
        with self.assertRaises(requests.HTTPError):
            self.backend.sync()

    def test_today_minutes(self):
        self.backend.session.get.return_value = self._response(
            200, {'completed_minutes': 55, 'active_minutes': 3, 'total_minutes': 58})
        self.assertEqual(self.backend.get_today_completed_minutes(), 55)
        url = self.backend.session.get.call_args[0][0]
        self.assertTrue(url.endswith('/api/users/alice/sessions/today'))


class _StaticPresence:
    def __init__(self, signal):
        self.signal = signal

    def get_currently_playing(self, steam_id):
        return self.signal


class TestLocalSessionBackend(unittest.TestCase):

    def setUp(self):
        engine = create_engine('sqlite:///:memory:', connect_args={"check_same_thread": False},
                               poolclass=StaticPool)
        database.Base.metadata.create_all(engine)
        self.factory = sessionmaker(bind=engine)
        db = self.factory()
        user = database.create_or_update_user(db, 'alice', '76561198000000001')
        database.add_library_entry(db, user, 'Portal 2', '620')
        db.close()
        self.presence = _StaticPresence(PresenceSignal(True, '620', 'Portal 2'))
        service = SessionService(database, self.presence, clock=lambda: T0)
        self.backend = LocalSessionBackend(service, 'alice', session_factory=self.factory)

    def test_sync_runs_reconciler(self):
        result = self.backend.sync()
        self.assertEqual(result['action'], 'started')
        self.assertEqual(self.backend.sync()['action'], 'unchanged')

    def test_today_minutes(self):
        self.assertEqual(self.backend.get_today_completed_minutes(), 0)

    def test_drives_tracker(self):
        tracker = SessionTracker(self.backend, now=lambda: T0 + timedelta(minutes=3))
        try:
            tracker.sync()
            self.assertEqual(tracker.active_session['external_game_id'], '620')
            self.assertEqual(tracker.session_duration_minutes, 3)
        finally:
            tracker.stop()


if __name__ == '__main__':
    unittest.main()
