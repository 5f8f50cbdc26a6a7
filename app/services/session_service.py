"""Business logic for live play sessions: presence reconciliation and stats."""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from playpulse import SteamAPIError, SteamRateLimitError, elapsed_minutes, utcnow

# Values of the ``action`` key in sync results.
ACTION_NONE = 'none'            # not playing, nothing open
ACTION_UNCHANGED = 'unchanged'  # still playing the game of the open session
ACTION_STARTED = 'started'
ACTION_ENDED = 'ended'
ACTION_SWITCHED = 'switched'    # old session ended, new one started
ACTION_SKIPPED = 'skipped'      # playing a game that is not in the library
ACTION_FAILED = 'failed'


class SessionService:
    """Keeps stored play sessions in step with platform presence.

    :meth:`sync_with_presence` is the reconciler: one presence observation,
    at most one corrective transition.  It never raises; every outcome is
    reported as a result dict::

        {'active_session': dict | None, 'action': str,
         'error': str | None, 'rate_limited': bool}

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers control the session lifecycle.
    """

    def __init__(self, db_module, presence_client=None, events=None,
                 clock: Callable[[], datetime] = utcnow,
                 abandon_after_hours: float = 6) -> None:
        """
        Args:
            db_module:       The imported ``database`` module.
            presence_client: Object with ``get_currently_playing(steam_id)``
                             returning a :class:`~playpulse.PresenceSignal`.
            events:          Optional :class:`~app.events.LibraryEvents`
                             channel notified on session start/end.
            clock:           Returns "now" as naive UTC.
            abandon_after_hours: Age after which an open session is swept.
        """
        self._db = db_module
        self._presence = presence_client
        self._events = events
        self._clock = clock
        self.abandon_after_hours = abandon_after_hours
        self._log = logging.getLogger('playpulse.sessions')

    # ------------------------------------------------------------------
    # Reconciler
    # ------------------------------------------------------------------

    @staticmethod
    def _result(active_session=None, action: str = ACTION_NONE,
                error: Optional[str] = None, rate_limited: bool = False) -> Dict:
        return {
            'active_session': active_session,
            'action': action,
            'error': error,
            'rate_limited': rate_limited,
        }

    def sync_with_presence(self, db, username: str) -> Dict:
        """Reconcile *username*'s stored session with what Steam reports."""
        try:
            user = self._db.get_user_by_username(db, username)
        except self._db.PersistenceError as e:
            self._log.error("Session sync failed for %s: %s", username, e)
            return self._result(action=ACTION_FAILED, error=str(e))
        if not user:
            return self._result(error='User not found')
        if not user.steam_id:
            return self._result(error='No Steam connected')
        if self._presence is None:
            return self._result(error='Presence source not configured')

        try:
            signal = self._presence.get_currently_playing(user.steam_id)
        except SteamRateLimitError as e:
            self._log.warning("Presence fetch rate limited for %s: %s", username, e)
            return self._result(action=ACTION_FAILED, error=str(e), rate_limited=True)
        except SteamAPIError as e:
            self._log.warning("Presence fetch failed for %s: %s", username, e)
            return self._result(action=ACTION_FAILED, error=str(e))
        except Exception as e:
            self._log.exception("Unexpected presence failure for %s", username)
            return self._result(action=ACTION_FAILED, error=str(e))

        try:
            active = self._db.get_active_session(db, user.id)
        except self._db.PersistenceError as e:
            self._log.error("Session sync failed for %s: %s", username, e)
            return self._result(action=ACTION_FAILED, error=str(e))

        if not signal.is_playing:
            if active is None:
                return self._result()
            error = self._end(db, user, active)
            if error:
                return self._result(self._db.session_to_dict(active), ACTION_FAILED, error)
            return self._result(action=ACTION_ENDED)

        if active is not None and active.external_game_id == str(signal.external_game_id):
            return self._result(self._db.session_to_dict(active), ACTION_UNCHANGED)

        switching = active is not None
        if switching:
            error = self._end(db, user, active)
            if error:
                return self._result(self._db.session_to_dict(active), ACTION_FAILED, error)

        try:
            new_session = self._start(db, user, signal)
        except self._db.PersistenceError as e:
            self._log.error("Failed to start session for %s: %s", username, e)
            return self._result(action=ACTION_FAILED, error=str(e))

        if new_session is None:
            return self._result(action=ACTION_ENDED if switching else ACTION_SKIPPED)
        action = ACTION_SWITCHED if switching else ACTION_STARTED
        return self._result(self._db.session_to_dict(new_session), action)

    def _start(self, db, user, signal):
        """Open a session for the observed game.

        Returns the new (or concurrently created) session, or None when the
        game is not in the user's library.
        """
        entry = self._db.get_library_entry_by_external_id(db, user.id, signal.external_game_id)
        if entry is None:
            self._log.warning("Game not found in library: %s (%s)",
                              signal.game_name, signal.external_game_id)
            return None
        try:
            game_session = self._db.start_game_session(
                db, user.id, entry, signal.external_game_id, now=self._clock())
        except self._db.ActiveSessionConflict:
            self._log.info("Session for %s already started by another poller", user.username)
            return self._db.get_active_session(db, user.id)
        self._publish('session_started', username=user.username,
                      session_id=game_session.id, game_id=game_session.game_id)
        return game_session

    def _end(self, db, user, game_session) -> Optional[str]:
        """Close *game_session*.  Returns an error message on failure, else None."""
        try:
            duration = self._db.end_game_session(db, game_session, now=self._clock())
        except self._db.PersistenceError as e:
            self._log.error("Failed to end session %s: %s", game_session.id, e)
            return str(e)
        self._publish('session_ended', username=user.username,
                      session_id=game_session.id, game_id=game_session.game_id,
                      duration_minutes=duration)
        return None

    def _publish(self, event_type: str, **data) -> None:
        if self._events is not None:
            self._events.publish(event_type, **data)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_session(self, db, username: str) -> Optional[Dict]:
        user = self._db.get_user_by_username(db, username)
        if not user:
            return None
        active = self._db.get_active_session(db, user.id)
        return self._db.session_to_dict(active) if active else None

    def get_today_playtime(self, db, username: str) -> Dict:
        """Minutes played today (UTC): completed sessions plus the open one.

        Returns:
            Dict with ``completed_minutes``, ``active_minutes`` and
            ``total_minutes``.
        """
        user = self._db.get_user_by_username(db, username)
        if not user:
            return {'completed_minutes': 0, 'active_minutes': 0, 'total_minutes': 0}
        now = self._clock()
        completed = self._db.get_daily_playtime_minutes(db, user.id, now.date())
        active = self._db.get_active_session(db, user.id)
        active_minutes = elapsed_minutes(active.started_at, now) if active else 0
        return {
            'completed_minutes': completed,
            'active_minutes': active_minutes,
            'total_minutes': completed + active_minutes,
        }

    def get_session_history(self, db, username: str, limit: int = 20,
                            game_id: Optional[int] = None) -> List[Dict]:
        user = self._db.get_user_by_username(db, username)
        if not user:
            return []
        sessions = self._db.get_session_history(db, user.id, limit=limit, game_id=game_id)
        return [self._db.session_to_dict(s) for s in sessions]

    def get_playtime_by_day(self, db, username: str, days: int = 7) -> List[Dict]:
        user = self._db.get_user_by_username(db, username)
        if not user:
            return []
        return self._db.get_playtime_by_day(db, user.id, days=days, today=self._clock().date())

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_abandoned_sessions(self, db, username: Optional[str] = None) -> int:
        """Close open sessions older than :attr:`abandon_after_hours`.

        Args:
            db:       SQLAlchemy session.
            username: Restrict the sweep to one user; ``None`` sweeps everyone.

        Returns:
            Number of sessions closed.
        """
        user_id = None
        if username is not None:
            user = self._db.get_user_by_username(db, username)
            if not user:
                return 0
            user_id = user.id

        abandoned = self._db.get_abandoned_sessions(
            db, older_than_hours=self.abandon_after_hours, user_id=user_id, now=self._clock())
        closed = 0
        for game_session in abandoned:
            if self._end(db, game_session.user, game_session) is None:
                closed += 1
        if closed:
            self._log.info("Closed %d abandoned session(s)", closed)
        return closed
