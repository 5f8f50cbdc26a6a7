#!/usr/bin/env python3
"""
PlayPulse web API - JSON endpoints consumed by the dashboard UI and by
:class:`session_tracker.HttpSessionBackend`.
"""

import argparse
import logging
import os
from functools import wraps

from flask import Flask, jsonify, request

import database
import playpulse
from app.events import LibraryEvents
from app.services import LibraryService, SessionService

# Initialize logging early so database module logs are captured
config = playpulse.load_config()
log_level = os.getenv('PLAYPULSE_LOG_LEVEL', config.get('log_level', 'INFO'))
playpulse.setup_logging(log_level)
web_logger = logging.getLogger('playpulse.web')
try:
    os.makedirs('logs', exist_ok=True)
    fh = logging.FileHandler('logs/playpulse_web.log')
    fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
    fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    web_logger.addHandler(fh)
except OSError:
    web_logger.warning('Could not create log file handler')

# The shell owns the event channel and hands it to the services.
library_events = LibraryEvents()
library_events.subscribe(
    lambda event: web_logger.debug('Library event: %s', event))

_session_service = SessionService(
    database,
    playpulse.build_presence_client(config),
    events=library_events,
    abandon_after_hours=float(config.get('abandon_after_hours', 6)),
)
_library_service = LibraryService(database, events=library_events)

app = Flask(__name__)


def require_db(f):
    """Open a database session for the route and pass it as ``db``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        db = next(database.get_db())
        if db is None:
            return jsonify({'error': 'Database not available'}), 503
        try:
            return f(db, *args, **kwargs)
        except database.PersistenceError as e:
            web_logger.error('Database error in %s: %s', f.__name__, e)
            return jsonify({'error': 'Database error'}), 503
        finally:
            db.close()
    return decorated_function


def _int_arg(name: str, default: int, minimum: int = 1, maximum: int = 365) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(maximum, value))


@app.route('/api/health')
def api_health():
    return jsonify({'status': 'ok', 'database': database.SessionLocal is not None})


# ---------------------------------------------------------------------------
# Sessions API
# ---------------------------------------------------------------------------

@app.route('/api/users/<username>/sessions/sync', methods=['POST'])
@require_db
def api_sync_session(db, username):
    """Reconcile the user's stored session with their Steam presence.

    Returns 429 when the presence source is rate limited and 404 for an
    unknown user; every other outcome is 200 with ``action``/``error``.
    """
    result = _session_service.sync_with_presence(db, username)
    if result.get('rate_limited'):
        return jsonify(result), 429
    if result.get('error') == 'User not found':
        return jsonify(result), 404
    return jsonify(result)


@app.route('/api/users/<username>/sessions/active')
@require_db
def api_active_session(db, username):
    return jsonify({'active_session': _session_service.get_active_session(db, username)})


@app.route('/api/users/<username>/sessions/today')
@require_db
def api_today_playtime(db, username):
    return jsonify(_session_service.get_today_playtime(db, username))


@app.route('/api/users/<username>/sessions/history')
@require_db
def api_session_history(db, username):
    limit = _int_arg('limit', 20, maximum=200)
    game_id = request.args.get('game_id', type=int)
    sessions = _session_service.get_session_history(db, username, limit=limit, game_id=game_id)
    return jsonify({'sessions': sessions, 'count': len(sessions)})


@app.route('/api/users/<username>/sessions/cleanup', methods=['POST'])
@require_db
def api_cleanup_sessions(db, username):
    closed = _session_service.cleanup_abandoned_sessions(db, username)
    return jsonify({'closed': closed})


@app.route('/api/users/<username>/stats/playtime')
@require_db
def api_playtime_by_day(db, username):
    days = _int_arg('days', 7)
    return jsonify({'days': _session_service.get_playtime_by_day(db, username, days=days)})


# ---------------------------------------------------------------------------
# Library API
# ---------------------------------------------------------------------------

@app.route('/api/users/<username>/library')
@require_db
def api_library(db, username):
    entries = _library_service.get_entries(db, username)
    return jsonify({'games': entries, 'count': len(entries)})


@app.route('/api/users/<username>/library/<int:entry_id>/status', methods=['PUT'])
@require_db
def api_set_library_status(db, username, entry_id):
    data = request.get_json(silent=True) or {}
    status = data.get('status', '')
    try:
        entry = _library_service.set_status(db, username, entry_id, status)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    if entry is None:
        return jsonify({'error': 'Library entry not found'}), 404
    return jsonify(entry)


def main():
    parser = argparse.ArgumentParser(description='PlayPulse web API')
    parser.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=5000, help='Port (default: 5000)')
    parser.add_argument('--debug', action='store_true', help='Enable Flask debug mode')
    args = parser.parse_args()

    if not database.init_db():
        web_logger.warning('Database initialization failed; API calls will return 503')
    web_logger.info('Starting PlayPulse web API on %s:%s', args.host, args.port)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == '__main__':
    main()
