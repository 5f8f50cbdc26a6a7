#!/usr/bin/env python3
"""
PlayPulse command-line tools.

Examples:
  playpulse init-db                         # create tables
  playpulse add-user alice --steam-id 76561198000000001
  playpulse add-game alice "Portal 2" 620   # add a game to alice's library
  playpulse sync alice                      # reconcile once and show the decision
  playpulse status                          # active + recent sessions per user
  playpulse monitor                         # live console monitor
  playpulse cleanup                         # close sessions open > 6 hours
  playpulse track alice                     # run the polling tracker in the terminal
"""

import argparse
import sys
import time
from datetime import datetime
from typing import Optional

from colorama import init, Fore, Style

import database
import playpulse
from app.events import LibraryEvents
from app.services import LibraryService, SessionService
from session_tracker import HttpSessionBackend, LocalSessionBackend, SessionTracker

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

_ACTION_STYLES = {
    'none': (Fore.WHITE, 'Not playing, no session - nothing to do'),
    'unchanged': (Fore.GREEN, 'Same game still playing'),
    'started': (Fore.GREEN, 'Session started'),
    'ended': (Fore.YELLOW, 'Session ended (stopped playing)'),
    'switched': (Fore.CYAN, 'Different game - switched sessions'),
    'skipped': (Fore.YELLOW, 'Game not found in library - no session started'),
    'failed': (Fore.RED, 'Sync failed'),
}


def _build_services(config):
    events = LibraryEvents()
    session_service = SessionService(
        database,
        playpulse.build_presence_client(config),
        events=events,
        abandon_after_hours=float(config.get('abandon_after_hours', 6)),
    )
    return session_service, LibraryService(database, events=events)


def _open_db():
    db = next(database.get_db())
    if db is None:
        print(f"{Fore.RED}Database not available (check DATABASE_URL)")
        sys.exit(1)
    return db


def _game_title(game_session) -> str:
    return game_session.game.title if game_session.game else 'Unknown'


def cmd_init_db(args, config) -> int:
    if database.init_db():
        print(f"{Fore.GREEN}Database tables created")
        return 0
    print(f"{Fore.RED}Database initialization failed")
    return 1


def cmd_add_user(args, config) -> int:
    steam_id = ''
    if args.steam_id:
        try:
            steam_id = playpulse.validate_steam_id(args.steam_id)
        except playpulse.InvalidSteamIdError as e:
            print(f"{Fore.RED}{e}")
            return 1
    db = _open_db()
    try:
        user = database.create_or_update_user(db, args.username, steam_id)
    finally:
        db.close()
    if not user:
        print(f"{Fore.RED}Could not save user {args.username}")
        return 1
    print(f"{Fore.GREEN}Saved user {args.username}" + (f" (Steam ID {steam_id})" if steam_id else ''))
    return 0


def cmd_add_game(args, config) -> int:
    _, library_service = _build_services(config)
    db = _open_db()
    try:
        entry = library_service.add_game(
            db, args.username, args.title, args.app_id,
            status=args.status, playtime_hours=args.playtime_hours)
    except (ValueError, database.PersistenceError) as e:
        print(f"{Fore.RED}{e}")
        return 1
    finally:
        db.close()
    if not entry:
        print(f"{Fore.RED}Could not add {args.title} (unknown user {args.username}?)")
        return 1
    print(f"{Fore.GREEN}Added {entry['title']} ({entry['platform']}:{entry['external_game_id']})")
    return 0


def cmd_sync(args, config) -> int:
    """Force one reconcile for a user and print what happened."""
    session_service, _ = _build_services(config)
    print(f"{Fore.CYAN}Syncing session for {args.username}...\n")
    db = _open_db()
    try:
        result = session_service.sync_with_presence(db, args.username)
    finally:
        db.close()

    color, message = _ACTION_STYLES.get(result['action'], (Fore.WHITE, result['action']))
    print(f"{color}{message}")
    if result.get('error'):
        print(f"{Fore.RED}   Error: {result['error']}")
    if result.get('rate_limited'):
        print(f"{Fore.YELLOW}   Steam rate limit hit - try again in a few minutes")
    active = result.get('active_session')
    if active:
        print(f"   Game:    {active['game']['title']}")
        print(f"   App ID:  {active['external_game_id']}")
        print(f"   Started: {active['started_at']}")
    return 1 if result['action'] == 'failed' else 0


def cmd_status(args, config) -> int:
    """Report active and recent sessions for every user with Steam linked."""
    db = _open_db()
    try:
        users = database.get_users_with_steam(db)
        print(f"{Fore.CYAN}Found {len(users)} user(s) with Steam connected:\n")
        now = playpulse.utcnow()
        for user in users:
            print(f"{Style.BRIGHT}{user.username}{Style.RESET_ALL}  (Steam ID {user.steam_id})")
            active = database.get_active_session(db, user.id)
            if active:
                minutes = playpulse.elapsed_minutes(active.started_at, now)
                print(f"{Fore.GREEN}   ACTIVE: {_game_title(active)} - {minutes} minutes "
                      f"(since {active.started_at:%Y-%m-%d %H:%M} UTC)")
            else:
                print(f"{Fore.WHITE}   No active session")
            recent = database.get_session_history(db, user.id, limit=3)
            if recent:
                print(f"   Recent sessions: {len(recent)}")
                for game_session in recent:
                    print(f"      - {_game_title(game_session)}: "
                          f"{game_session.duration_minutes or 0} min")
            print('')
    finally:
        db.close()
    return 0


def _monitor_check(last_session_id: Optional[int], check_count: int) -> Optional[int]:
    """One monitor pass.  Returns the id of the session now being shown."""
    timestamp = datetime.now().strftime('%H:%M:%S')
    db = _open_db()
    try:
        sessions = database.get_all_active_sessions(db)
        if check_count == 1:
            recent = database.get_recent_completed_sessions(db, limit=1)
            if recent:
                last = recent[0]
                print(f"{Fore.CYAN}Last completed session: {_game_title(last)} - "
                      f"{last.duration_minutes or 0} minutes\n")

        if sessions:
            game_session = sessions[0]
            if game_session.id != last_session_id:
                print('\n' + '=' * 60)
                print(f"{Fore.GREEN}SESSION STARTED")
                print('=' * 60)
                print(f"Game:     {_game_title(game_session)}")
                print(f"Started:  {game_session.started_at:%Y-%m-%d %H:%M:%S} UTC")
                print(f"Session:  {game_session.id}")
                print(f"Platform: {game_session.platform}")
                if game_session.external_game_id:
                    print(f"App ID:   {game_session.external_game_id}")
                print('=' * 60 + '\n')
            else:
                minutes = playpulse.elapsed_minutes(game_session.started_at, playpulse.utcnow())
                sys.stdout.write(f"\r[{timestamp}] {Fore.GREEN}LIVE{Style.RESET_ALL}: "
                                 f"{_game_title(game_session)} | Duration: {minutes}m | "
                                 f"Check #{check_count}")
                sys.stdout.flush()
            return game_session.id

        if last_session_id is not None:
            print('\n' + '=' * 60)
            print(f"{Fore.YELLOW}SESSION ENDED")
            print('=' * 60 + '\n')
        else:
            sys.stdout.write(f"\r[{timestamp}] Waiting for session... | Check #{check_count}")
            sys.stdout.flush()
        return None
    except database.PersistenceError as e:
        print(f"\n[{timestamp}] {Fore.RED}Error: {e}")
        return last_session_id
    finally:
        db.close()


def cmd_monitor(args, config) -> int:
    print(f"{Fore.CYAN}Real-time session monitor (checking every {args.interval}s, Ctrl-C to stop)\n")
    last_session_id = None
    check_count = 0
    try:
        while True:
            check_count += 1
            last_session_id = _monitor_check(last_session_id, check_count)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print(f"\n\n{Fore.YELLOW}Monitor stopped.")
    return 0


def cmd_cleanup(args, config) -> int:
    session_service, _ = _build_services(config)
    if args.hours is not None:
        session_service.abandon_after_hours = args.hours
    db = _open_db()
    try:
        closed = session_service.cleanup_abandoned_sessions(db, args.username)
    except database.PersistenceError as e:
        print(f"{Fore.RED}Cleanup failed: {e}")
        return 1
    finally:
        db.close()
    print(f"{Fore.GREEN}Closed {closed} abandoned session(s)")
    return 0


def _print_tracker_state(state) -> None:
    active = state['active_session']
    if state['is_rate_limited']:
        line = f"{Fore.YELLOW}Rate limited by Steam - backing off"
    elif active:
        line = (f"{Fore.GREEN}Playing {active['game']['title']}{Style.RESET_ALL} | "
                f"{state['session_duration_minutes']}m this session")
    else:
        line = f"{Fore.WHITE}Not playing"
    sys.stdout.write(f"\r{line} | Today: {state['today_playtime_minutes']}m          ")
    sys.stdout.flush()


def cmd_track(args, config) -> int:
    """Run the polling tracker in the terminal until Ctrl-C."""
    if args.remote or args.api_url:
        backend = HttpSessionBackend(args.api_url or config['api_url'], args.username)
    else:
        session_service, _ = _build_services(config)
        backend = LocalSessionBackend(session_service, args.username)

    tracker = SessionTracker(
        backend,
        active_interval=float(config['active_interval']),
        idle_interval=float(config['idle_interval']),
        backoff_seconds=float(config['backoff_seconds']),
    )
    tracker.add_listener(_print_tracker_state)
    tracker.start()
    print(f"{Fore.CYAN}Tracking {args.username} (Ctrl-C to stop)\n")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print(f"\n\n{Fore.YELLOW}Tracking stopped.")
    finally:
        tracker.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='PlayPulse - live play-session tracking',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split('Examples:', 1)[1] if __doc__ else None,
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create database tables').set_defaults(func=cmd_init_db)

    p = sub.add_parser('add-user', help='Create a user or link a Steam ID')
    p.add_argument('username')
    p.add_argument('--steam-id', help='SteamID64 or steamcommunity.com/profiles/<id> URL')
    p.set_defaults(func=cmd_add_user)

    p = sub.add_parser('add-game', help="Add a Steam game to a user's library")
    p.add_argument('username')
    p.add_argument('title')
    p.add_argument('app_id', help='Steam app ID')
    p.add_argument('--status', default='unplayed', choices=database.LIBRARY_STATUSES)
    p.add_argument('--playtime-hours', type=float, default=0.0)
    p.set_defaults(func=cmd_add_game)

    p = sub.add_parser('sync', help='Force one session sync for a user')
    p.add_argument('username')
    p.set_defaults(func=cmd_sync)

    sub.add_parser('status', help='Show active and recent sessions').set_defaults(func=cmd_status)

    p = sub.add_parser('monitor', help='Watch active sessions live')
    p.add_argument('--interval', type=float, default=5.0, help='Seconds between checks (default: 5)')
    p.set_defaults(func=cmd_monitor)

    p = sub.add_parser('cleanup', help='Close abandoned sessions')
    p.add_argument('username', nargs='?', help='Only sweep this user (default: everyone)')
    p.add_argument('--hours', type=float, help='Age threshold in hours (default: 6)')
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser('track', help='Run the polling tracker in the terminal')
    p.add_argument('username')
    p.add_argument('--remote', action='store_true',
                   help='Poll the web API at PLAYPULSE_API_URL instead of the local database')
    p.add_argument('--api-url', help='Web API base URL (implies --remote)')
    p.set_defaults(func=cmd_track)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = playpulse.load_config(args.config)
    playpulse.setup_logging(config.get('log_level', 'WARNING'))
    try:
        return args.func(args, config)
    except KeyboardInterrupt:
        print(f"\n\n{Fore.YELLOW}Interrupted by user. Goodbye!")
        return 130


if __name__ == "__main__":
    sys.exit(main())
