#!/usr/bin/env python3
"""
Tests for the Flask JSON API in playpulse_web.py.

The module-level database session factory is swapped for an in-memory
SQLite one and the session service gets a fake presence source.

Run with:
    python -m pytest tests/test_web.py
"""
import os
import sys
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
import playpulse_web
from app.events import LibraryEvents
from app.services import LibraryService, SessionService
from playpulse import NOT_PLAYING, PresenceSignal, SteamRateLimitError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

T0 = datetime(2026, 3, 14, 20, 0, 0)


class _FakePresence:
    def __init__(self):
        self.signal = NOT_PLAYING
        self.error = None

    def get_currently_playing(self, steam_id):
        if self.error is not None:
            raise self.error
        return self.signal


class _WebTestCase(unittest.TestCase):

    def setUp(self):
        engine = create_engine('sqlite:///:memory:', connect_args={"check_same_thread": False},
                               poolclass=StaticPool)
        database.Base.metadata.create_all(engine)
        factory = sessionmaker(bind=engine)

        db = factory()
        user = database.create_or_update_user(db, 'alice', '76561198000000001')
        entry = database.add_library_entry(db, user, 'Portal 2', '620')
        self.entry_id = entry.id
        self.portal_game_id = entry.game_id
        database.add_library_entry(db, user, 'Team Fortress 2', '440')
        db.close()

        self.now = [T0]
        self.presence = _FakePresence()
        events = LibraryEvents()
        session_service = SessionService(database, self.presence, events=events,
                                         clock=lambda: self.now[0])
        library_service = LibraryService(database, events=events)

        for target, value in ((database, {'SessionLocal': factory}),
                              (playpulse_web, {'_session_service': session_service,
                                               '_library_service': library_service})):
            for name, obj in value.items():
                patcher = patch.object(target, name, obj)
                patcher.start()
                self.addCleanup(patcher.stop)

        playpulse_web.app.config['TESTING'] = True
        self.client = playpulse_web.app.test_client()

    def _sync(self, username='alice'):
        return self.client.post(f'/api/users/{username}/sessions/sync')

    def _play(self, signal, minutes=0):
        self.now[0] += timedelta(minutes=minutes)
        self.presence.signal = signal
        return self._sync()


class TestHealth(_WebTestCase):

    def test_health(self):
        resp = self.client.get('/api/health')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'ok')


class TestSyncEndpoint(_WebTestCase):

    def test_start_then_end(self):
        resp = self._play(PresenceSignal(True, '620', 'Portal 2'))
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data['action'], 'started')
        self.assertEqual(data['active_session']['game']['title'], 'Portal 2')

        data = self._play(NOT_PLAYING, minutes=25).get_json()
        self.assertEqual(data['action'], 'ended')
        self.assertIsNone(data['active_session'])

    def test_unknown_user_is_404(self):
        resp = self._sync('nobody')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()['error'], 'User not found')

    def test_rate_limited_is_429(self):
        self.presence.error = SteamRateLimitError()
        resp = self._sync()
        self.assertEqual(resp.status_code, 429)
        self.assertTrue(resp.get_json()['rate_limited'])

    def test_database_unavailable_is_503(self):
        with patch.object(database, 'SessionLocal', None):
            resp = self._sync()
        self.assertEqual(resp.status_code, 503)

    def test_user_lookup_failure_is_not_404(self):
        down = database.PersistenceError('connection refused')
        with patch.object(database, 'get_user_by_username', side_effect=down):
            sync = self._sync()
            active = self.client.get('/api/users/alice/sessions/active')
        self.assertNotEqual(sync.status_code, 404)
        self.assertEqual(sync.get_json()['action'], 'failed')
        self.assertEqual(active.status_code, 503)

    def test_persistence_error_is_503(self):
        with patch.object(database, 'get_session_history',
                          side_effect=database.PersistenceError('locked')):
            resp = self.client.get('/api/users/alice/sessions/history')
        self.assertEqual(resp.status_code, 503)


class TestSessionQueries(_WebTestCase):

    def test_active_session(self):
        self.assertIsNone(self.client.get('/api/users/alice/sessions/active')
                          .get_json()['active_session'])
        self._play(PresenceSignal(True, '440', 'Team Fortress 2'))
        active = self.client.get('/api/users/alice/sessions/active').get_json()['active_session']
        self.assertEqual(active['external_game_id'], '440')

    def test_today(self):
        self._play(PresenceSignal(True, '620', 'Portal 2'))
        self._play(NOT_PLAYING, minutes=30)
        self._play(PresenceSignal(True, '440', 'Team Fortress 2'), minutes=5)
        self.now[0] += timedelta(minutes=4)
        data = self.client.get('/api/users/alice/sessions/today').get_json()
        self.assertEqual(data, {'completed_minutes': 30, 'active_minutes': 4,
                                'total_minutes': 34})

    def test_history_with_filter_and_limit(self):
        self._play(PresenceSignal(True, '620', 'Portal 2'))
        self._play(PresenceSignal(True, '440', 'Team Fortress 2'), minutes=10)
        self._play(NOT_PLAYING, minutes=10)
        data = self.client.get('/api/users/alice/sessions/history').get_json()
        self.assertEqual(data['count'], 2)
        data = self.client.get('/api/users/alice/sessions/history?limit=1').get_json()
        self.assertEqual(data['sessions'][0]['external_game_id'], '440')
        data = self.client.get(
            f'/api/users/alice/sessions/history?game_id={self.portal_game_id}').get_json()
        self.assertEqual([s['external_game_id'] for s in data['sessions']], ['620'])

    def test_cleanup(self):
        self._play(PresenceSignal(True, '620', 'Portal 2'))
        self.now[0] += timedelta(hours=8)
        data = self.client.post('/api/users/alice/sessions/cleanup').get_json()
        self.assertEqual(data['closed'], 1)

    def test_playtime_by_day(self):
        self._play(PresenceSignal(True, '620', 'Portal 2'))
        self._play(NOT_PLAYING, minutes=20)
        days = self.client.get('/api/users/alice/stats/playtime?days=3').get_json()['days']
        self.assertEqual([d['total_minutes'] for d in days], [0, 0, 20])

    def test_bad_days_argument_falls_back(self):
        days = self.client.get('/api/users/alice/stats/playtime?days=abc').get_json()['days']
        self.assertEqual(len(days), 7)


class TestLibraryEndpoints(_WebTestCase):

    def test_library_listing(self):
        data = self.client.get('/api/users/alice/library').get_json()
        self.assertEqual(data['count'], 2)
        self.assertEqual(data['games'][0]['title'], 'Portal 2')

    def test_set_status(self):
        resp = self.client.put(f'/api/users/alice/library/{self.entry_id}/status',
                               json={'status': 'completed'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'completed')

    def test_set_status_invalid(self):
        resp = self.client.put(f'/api/users/alice/library/{self.entry_id}/status',
                               json={'status': 'shelved'})
        self.assertEqual(resp.status_code, 400)

    def test_set_status_missing_entry(self):
        resp = self.client.put('/api/users/alice/library/999/status',
                               json={'status': 'completed'})
        self.assertEqual(resp.status_code, 404)


if __name__ == '__main__':
    unittest.main()
