#!/usr/bin/env python3
"""
Audit time tracking data in Firestore.

Reports learners whose cursor points at a missing or closed session, sessions
left open that the cursor does not own, and activity logs whose break/lunch
markers do not replay cleanly. With --repair, orphaned open sessions are closed
at their last recorded event and broken cursors are reset to clocked out.
"""

import argparse
import base64
import json
import logging
import os
import sys

import firebase_admin
from firebase_admin import credentials, firestore

from repositories import CorruptStateError, FirestoreTimeTrackingRepository, PersistenceError
from time_tracking import TimeTracker, duration_minutes, validate_activities

logger = logging.getLogger('synergylearn.check_time_tracking')


def initialize_firebase():
    """Initialize Firebase using the same credentials as the main app"""
    if firebase_admin._apps:
        return firebase_admin.get_app()

    firebase_key_b64 = os.getenv("FIREBASE_KEY_B64")
    if firebase_key_b64:
        firebase_key_json = base64.b64decode(firebase_key_b64).decode('utf-8')
        cred = credentials.Certificate(json.loads(firebase_key_json))
    else:
        key_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "firebase_key.json")
        if not os.path.exists(key_path):
            logger.error("No Firebase credentials found. Set FIREBASE_KEY_B64 or create firebase_key.json")
            return None
        cred = credentials.Certificate(key_path)
    return firebase_admin.initialize_app(cred)


def close_orphan(repository, user_id, session, state):
    """Close an open session the cursor does not own, at its last recorded event."""
    end_time = session.start_time
    for activity in session.activities:
        if activity.get('timestamp') and activity['timestamp'] > end_time:
            end_time = activity['timestamp']
    closed = session.closed(end_time=end_time, duration_minutes=duration_minutes(session.start_time, end_time))
    return repository.save(user_id, state, expected_version=state.version, session=closed)


def audit_user(tracker, user_id, repair=False, session_limit=500):
    """Return a list of problems found for one learner; fixes them when ``repair`` is set."""
    problems = []
    repository = tracker.repository

    try:
        state = repository.load_state(user_id)
    except CorruptStateError as e:
        problems.append(f"cursor is unreadable: {e}")
        if not repair:
            return problems
        state = tracker.get_state(user_id)
    if state is None:
        return problems

    current = repository.load_session(user_id, state.current_session_id) if state.current_session_id else None
    cursor_ok = state.is_consistent() and (
        state.current_session_id is None or (current is not None and current.is_open)
    )
    if not cursor_ok:
        problems.append(f"cursor {state.status} -> {state.current_session_id!r} does not match an open session")
        if repair:
            state = tracker.get_state(user_id)

    for session in tracker.list_sessions(user_id, limit=session_limit):
        for problem in validate_activities(session.activities):
            problems.append(f"session {session.id}: {problem}")
        if session.is_open and session.id != state.current_session_id:
            problems.append(f"session {session.id} is open but not owned by the cursor")
            if repair:
                state = close_orphan(repository, user_id, session, state)
    return problems


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument('--repair', action='store_true', help='close orphaned sessions and reset broken cursors')
    parser.add_argument('--user', help='only check this user id')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not initialize_firebase():
        return 1
    db = firestore.client()
    tracker = TimeTracker(FirestoreTimeTrackingRepository(db))

    user_ids = [args.user] if args.user else [doc.id for doc in db.collection('users').stream()]
    affected = 0
    for user_id in user_ids:
        try:
            problems = audit_user(tracker, user_id, repair=args.repair)
        except PersistenceError as e:
            logger.error(f"Could not audit {user_id}: {e}")
            affected += 1
            continue
        if problems:
            affected += 1
            logger.warning(f"{user_id}: {len(problems)} problem(s)")
            for problem in problems:
                logger.warning(f"  - {problem}")

    logger.info(f"Checked {len(user_ids)} user(s); {affected} with problems{' (repaired)' if args.repair else ''}")
    return 0 if affected == 0 or args.repair else 2


if __name__ == "__main__":
    sys.exit(main())
