#!/usr/bin/env python3
"""
Database models and helpers for PlayPulse.
Stores users, games, library entries and play sessions.

Helpers that the session reconciler depends on (``get_user_by_username``,
``get_active_session``, ``start_game_session``, ``end_game_session`` ...) raise
:class:`PersistenceError` on database failures so a failed query is never
mistaken for "no row".  The remaining convenience helpers log and return an
empty value, like the rest of the web layer expects.
"""

import os
import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy import (create_engine, Column, Integer, String, DateTime, Float,
                        ForeignKey, Index, UniqueConstraint, func, text)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from dotenv import find_dotenv, load_dotenv

from playpulse import elapsed_minutes, utcnow

logger = logging.getLogger('playpulse.database')

# .env must be loaded before the engine reads DATABASE_URL
load_dotenv(find_dotenv(usecwd=True))
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///playpulse.db')

SESSION_ACTIVE = 'active'
SESSION_COMPLETED = 'completed'

STATUS_UNPLAYED = 'unplayed'
STATUS_PLAYING = 'playing'
STATUS_BACKLOG = 'backlog'
STATUS_COMPLETED = 'completed'
STATUS_DROPPED = 'dropped'
LIBRARY_STATUSES = (STATUS_UNPLAYED, STATUS_PLAYING, STATUS_BACKLOG,
                    STATUS_COMPLETED, STATUS_DROPPED)

ABANDONED_SESSION_HOURS = 6

try:
    engine = create_engine(DATABASE_URL, echo=False)
    SessionLocal = sessionmaker(autoflush=False, bind=engine)
except Exception as e:
    logger.warning(f"Database engine not available: {e}")
    engine = None
    SessionLocal = None

Base = declarative_base()


class PersistenceError(Exception):
    """A session-store read or write failed and was rolled back."""


class ActiveSessionConflict(PersistenceError):
    """Inserting an active session collided with another open session for the user."""


class User(Base):
    """User account with linked platform IDs."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(255), unique=True, index=True, nullable=False)
    steam_id = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    library_entries = relationship("LibraryEntry", back_populates="user", cascade="all, delete-orphan")
    sessions = relationship("GameSession", back_populates="user", cascade="all, delete-orphan")


class Game(Base):
    """Catalogue entry shared by all users."""
    __tablename__ = "games"

    id = Column(Integer, primary_key=True)
    title = Column(String(500), nullable=False)
    cover_url = Column(String(1000), nullable=True)
    steam_appid = Column(String(50), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)


class LibraryEntry(Base):
    """A user's ownership/progress record for one game on one platform."""
    __tablename__ = "user_games"
    __table_args__ = (
        UniqueConstraint('user_id', 'platform', 'external_game_id',
                         name='uq_user_games_user_platform_external'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    platform = Column(String(20), default='steam')
    external_game_id = Column(String(50), index=True)  # e.g. Steam app ID
    playtime_hours = Column(Float, default=0.0)
    status = Column(String(20), default=STATUS_UNPLAYED)
    last_played_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="library_entries")
    game = relationship("Game")


class GameSession(Base):
    """One continuous play interval; open while ``status == 'active'``."""
    __tablename__ = "game_sessions"
    __table_args__ = (
        # One open session per user.  Partial index, so completed rows are free.
        Index('ix_game_sessions_one_active_per_user', 'user_id', unique=True,
              sqlite_where=text("status = 'active'"),
              postgresql_where=text("status = 'active'")),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    user_game_id = Column(Integer, ForeignKey("user_games.id"), nullable=False)
    external_game_id = Column(String(50), nullable=True)
    platform = Column(String(20), default='steam')
    started_at = Column(DateTime, default=utcnow, index=True)
    ended_at = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    status = Column(String(20), default=SESSION_ACTIVE, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="sessions")
    game = relationship("Game")
    library_entry = relationship("LibraryEntry")


def get_db():
    """Get database session."""
    if SessionLocal:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    else:
        yield None


def init_db():
    """Initialize database tables."""
    if engine:
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            return False
    return False


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def session_to_dict(game_session: 'GameSession') -> Dict:
    """JSON-serialisable view of a session, including the game title."""
    game = game_session.game
    return {
        'id': game_session.id,
        'user_id': game_session.user_id,
        'game_id': game_session.game_id,
        'user_game_id': game_session.user_game_id,
        'external_game_id': game_session.external_game_id,
        'platform': game_session.platform,
        'started_at': _iso(game_session.started_at),
        'ended_at': _iso(game_session.ended_at),
        'duration_minutes': game_session.duration_minutes,
        'status': game_session.status,
        'game': {
            'title': game.title if game else None,
            'cover_url': game.cover_url if game else None,
        },
    }


def library_entry_to_dict(entry: 'LibraryEntry') -> Dict:
    return {
        'id': entry.id,
        'game_id': entry.game_id,
        'title': entry.game.title if entry.game else None,
        'platform': entry.platform,
        'external_game_id': entry.external_game_id,
        'playtime_hours': round(entry.playtime_hours or 0.0, 2),
        'status': entry.status,
        'last_played_at': _iso(entry.last_played_at),
    }


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user_by_username(db, username: str):
    """Get user from database. Raises PersistenceError when the query fails."""
    if not db:
        return None
    try:
        return db.query(User).filter(User.username == username).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"User lookup failed: {e}") from e


def create_or_update_user(db, username: str, steam_id: str = ''):
    """Create *username* or update its Steam ID. Returns the user or None."""
    if not db:
        return None
    try:
        user = db.query(User).filter(User.username == username).first()
        if user:
            if steam_id:
                user.steam_id = steam_id
        else:
            user = User(username=username, steam_id=steam_id or None)
            db.add(user)
        db.commit()
        return user
    except Exception as e:
        logger.error(f"Error creating/updating user: {e}")
        db.rollback()
        return None


def get_users_with_steam(db) -> list:
    """Return every user with a linked Steam ID."""
    if not db:
        return []
    try:
        return db.query(User).filter(User.steam_id.isnot(None), User.steam_id != '') \
            .order_by(User.username).all()
    except Exception as e:
        logger.error(f"Error getting Steam users: {e}")
        return []


# ---------------------------------------------------------------------------
# Games and library entries
# ---------------------------------------------------------------------------

def get_or_create_game(db, title: str, steam_appid: Optional[str] = None,
                       cover_url: Optional[str] = None):
    """Find a catalogue game by Steam app id (or title) or create it. Does not commit."""
    query = db.query(Game)
    if steam_appid:
        game = query.filter(Game.steam_appid == str(steam_appid)).first()
    else:
        game = query.filter(Game.title == title).first()
    if game:
        return game
    game = Game(title=title, steam_appid=str(steam_appid) if steam_appid else None,
                cover_url=cover_url)
    db.add(game)
    db.flush()
    return game


def add_library_entry(db, user, title: str, external_game_id: str, platform: str = 'steam',
                      status: str = STATUS_UNPLAYED, playtime_hours: float = 0.0,
                      cover_url: Optional[str] = None):
    """Add a game to *user*'s library, or return the existing entry unchanged."""
    if not db or not user:
        return None
    try:
        entry = get_library_entry_by_external_id(db, user.id, external_game_id, platform)
        if entry:
            return entry
        game = get_or_create_game(
            db, title, steam_appid=external_game_id if platform == 'steam' else None,
            cover_url=cover_url)
        entry = LibraryEntry(
            user_id=user.id,
            game_id=game.id,
            platform=platform,
            external_game_id=str(external_game_id),
            status=status,
            playtime_hours=playtime_hours,
        )
        db.add(entry)
        db.commit()
        logger.info(f"Added {title} ({platform}:{external_game_id}) to {user.username}'s library")
        return entry
    except Exception as e:
        logger.error(f"Error adding library entry: {e}")
        db.rollback()
        return None


def get_library_entries(db, user_id: int) -> list:
    if not db:
        return []
    try:
        return db.query(LibraryEntry).join(Game).filter(LibraryEntry.user_id == user_id) \
            .order_by(Game.title).all()
    except Exception as e:
        logger.error(f"Error getting library: {e}")
        return []


def get_library_entry(db, user_id: int, entry_id: int):
    if not db:
        return None
    try:
        return db.query(LibraryEntry).filter(
            LibraryEntry.id == entry_id,
            LibraryEntry.user_id == user_id,
        ).first()
    except Exception as e:
        logger.error(f"Error getting library entry: {e}")
        return None


def get_library_entry_by_external_id(db, user_id: int, external_game_id,
                                     platform: str = 'steam'):
    """Return the user's entry for a platform game id, or None when not owned."""
    try:
        return db.query(LibraryEntry).filter(
            LibraryEntry.user_id == user_id,
            LibraryEntry.platform == platform,
            LibraryEntry.external_game_id == str(external_game_id),
        ).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Library lookup failed: {e}") from e


def update_library_entry_status(db, entry, status: str) -> bool:
    if status not in LIBRARY_STATUSES:
        raise ValueError(f"Unknown library status: {status}")
    try:
        entry.status = status
        db.commit()
        return True
    except Exception as e:
        logger.error(f"Error updating library status: {e}")
        db.rollback()
        return False


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def get_active_session(db, user_id: int):
    """Return the most recently started open session for *user_id*, or None."""
    try:
        return db.query(GameSession).filter(
            GameSession.user_id == user_id,
            GameSession.status == SESSION_ACTIVE,
        ).order_by(GameSession.started_at.desc()).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Active session lookup failed: {e}") from e


def get_all_active_sessions(db) -> list:
    """Return open sessions for every user, newest first."""
    try:
        return db.query(GameSession).filter(GameSession.status == SESSION_ACTIVE) \
            .order_by(GameSession.started_at.desc()).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Active session lookup failed: {e}") from e


def start_game_session(db, user_id: int, entry, external_game_id, platform: str = 'steam',
                       now: Optional[datetime] = None):
    """Open a session for *entry* and mark the entry as being played.

    The session insert and the library update are committed together.

    Raises:
        ActiveSessionConflict: the user already has an open session (another
            poller won the race).
        PersistenceError: any other database failure.
    """
    now = now or utcnow()
    game_session = GameSession(
        user_id=user_id,
        game_id=entry.game_id,
        user_game_id=entry.id,
        external_game_id=str(external_game_id),
        platform=platform,
        status=SESSION_ACTIVE,
        started_at=now,
    )
    try:
        db.add(game_session)
        entry.status = STATUS_PLAYING
        entry.last_played_at = now
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ActiveSessionConflict(
            f"User {user_id} already has an active session") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to create session: {e}") from e
    logger.info(f"Started session {game_session.id} for user {user_id} "
                f"({platform}:{external_game_id})")
    return game_session


def end_game_session(db, game_session, now: Optional[datetime] = None) -> int:
    """Close *game_session* and fold its duration into the library entry.

    Playtime grows by ``duration_minutes / 60`` hours.  A ``playing`` entry
    reverts to ``backlog``; any other status is left alone.  Closing an
    already completed session is a no-op.

    Returns:
        The session's duration in minutes.

    Raises:
        PersistenceError: the update failed; the session stays open.
    """
    if game_session.status != SESSION_ACTIVE:
        return game_session.duration_minutes or 0

    now = now or utcnow()
    duration = elapsed_minutes(game_session.started_at, now)
    try:
        game_session.ended_at = now
        game_session.duration_minutes = duration
        game_session.status = SESSION_COMPLETED

        entry = game_session.library_entry
        if entry is not None:
            entry.playtime_hours = (entry.playtime_hours or 0.0) + duration / 60
            if entry.status == STATUS_PLAYING:
                entry.status = STATUS_BACKLOG
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to end session {game_session.id}: {e}") from e
    logger.info(f"Ended session {game_session.id} after {duration} minutes")
    return duration


def get_session_history(db, user_id: int, limit: int = 20, game_id: Optional[int] = None) -> list:
    """Completed sessions for *user_id*, most recent first."""
    try:
        query = db.query(GameSession).filter(
            GameSession.user_id == user_id,
            GameSession.status == SESSION_COMPLETED,
        )
        if game_id is not None:
            query = query.filter(GameSession.game_id == game_id)
        return query.order_by(GameSession.started_at.desc()).limit(limit).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Session history lookup failed: {e}") from e


def get_recent_completed_sessions(db, limit: int = 1) -> list:
    """Most recently ended sessions across all users."""
    try:
        return db.query(GameSession).filter(GameSession.status == SESSION_COMPLETED) \
            .order_by(GameSession.ended_at.desc()).limit(limit).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Session history lookup failed: {e}") from e


def get_abandoned_sessions(db, older_than_hours: float = ABANDONED_SESSION_HOURS,
                           user_id: Optional[int] = None, now: Optional[datetime] = None) -> list:
    """Open sessions started more than *older_than_hours* ago."""
    cutoff = (now or utcnow()) - timedelta(hours=older_than_hours)
    try:
        query = db.query(GameSession).filter(
            GameSession.status == SESSION_ACTIVE,
            GameSession.started_at < cutoff,
        )
        if user_id is not None:
            query = query.filter(GameSession.user_id == user_id)
        return query.order_by(GameSession.started_at).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Abandoned session lookup failed: {e}") from e


# ---------------------------------------------------------------------------
# Daily playtime aggregate
# ---------------------------------------------------------------------------

def _day_bounds(play_date: date):
    start = datetime.combine(play_date, time.min)
    return start, start + timedelta(days=1)


def get_daily_playtime_minutes(db, user_id: int, play_date: date) -> int:
    """Sum of completed session minutes that started on *play_date* (UTC)."""
    start, end = _day_bounds(play_date)
    try:
        total = db.query(func.coalesce(func.sum(GameSession.duration_minutes), 0)).filter(
            GameSession.user_id == user_id,
            GameSession.status == SESSION_COMPLETED,
            GameSession.started_at >= start,
            GameSession.started_at < end,
        ).scalar()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Daily playtime lookup failed: {e}") from e
    return int(total or 0)


def get_playtime_by_day(db, user_id: int, days: int = 7,
                        today: Optional[date] = None) -> List[Dict]:
    """Completed minutes per day for the last *days* days, oldest first.

    Days without sessions are included with ``total_minutes == 0``.
    """
    today = today or utcnow().date()
    first_day = today - timedelta(days=days - 1)
    start, _ = _day_bounds(first_day)
    _, end = _day_bounds(today)
    try:
        rows = db.query(GameSession.started_at, GameSession.duration_minutes).filter(
            GameSession.user_id == user_id,
            GameSession.status == SESSION_COMPLETED,
            GameSession.started_at >= start,
            GameSession.started_at < end,
        ).all()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Playtime summary lookup failed: {e}") from e

    totals: Dict[date, int] = {}
    for started_at, minutes in rows:
        day = started_at.date()
        totals[day] = totals.get(day, 0) + (minutes or 0)

    summary = []
    for offset in range(days):
        day = first_day + timedelta(days=offset)
        summary.append({'date': day.isoformat(), 'total_minutes': totals.get(day, 0)})
    return summary
