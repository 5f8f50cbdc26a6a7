"""Business logic for a user's game library entries."""
from typing import Dict, List, Optional


class LibraryService:
    """Manages library entries, delegating persistence to the ``database``
    module's helper functions and announcing changes on the library event
    channel.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers, the CLI) control the session
    lifecycle.
    """

    def __init__(self, db_module, events=None) -> None:
        """
        Args:
            db_module: The imported ``database`` module.
            events:    Optional :class:`~app.events.LibraryEvents` channel.
        """
        self._db = db_module
        self._events = events

    def _publish(self, **data) -> None:
        if self._events is not None:
            self._events.publish('library_updated', **data)

    def get_entries(self, db, username: str) -> List[Dict]:
        """Return *username*'s library, sorted by title (empty for unknown users)."""
        user = self._db.get_user_by_username(db, username)
        if not user:
            return []
        return [self._db.library_entry_to_dict(e)
                for e in self._db.get_library_entries(db, user.id)]

    def add_game(self, db, username: str, title: str, external_game_id: str,
                 platform: str = 'steam', status: str = 'unplayed',
                 playtime_hours: float = 0.0) -> Optional[Dict]:
        """Add a game to *username*'s library.

        Returns:
            The entry dict, or ``None`` when the user does not exist or the
            insert failed.

        Raises:
            ValueError: *status* is not a known library status.
        """
        if status not in self._db.LIBRARY_STATUSES:
            raise ValueError(f"Unknown library status: {status}")
        user = self._db.get_user_by_username(db, username)
        if not user:
            return None
        entry = self._db.add_library_entry(
            db, user, title, external_game_id, platform=platform,
            status=status, playtime_hours=playtime_hours)
        if entry is None:
            return None
        self._publish(username=username, entry_id=entry.id)
        return self._db.library_entry_to_dict(entry)

    def set_status(self, db, username: str, entry_id: int, status: str) -> Optional[Dict]:
        """Set the status of one library entry.

        Returns:
            The updated entry dict, or ``None`` when the user or entry is
            missing or the update failed.

        Raises:
            ValueError: *status* is not a known library status.
        """
        if status not in self._db.LIBRARY_STATUSES:
            raise ValueError(f"Unknown library status: {status}")
        user = self._db.get_user_by_username(db, username)
        if not user:
            return None
        entry = self._db.get_library_entry(db, user.id, entry_id)
        if not entry:
            return None
        if not self._db.update_library_entry_status(db, entry, status):
            return None
        self._publish(username=username, entry_id=entry.id, status=status)
        return self._db.library_entry_to_dict(entry)
