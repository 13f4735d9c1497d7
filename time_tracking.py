"""
Clock-in / break / lunch / clock-out tracking for learners.

The state machine is persistence-agnostic: it reads and writes through a
TimeTrackingRepository and only ever commits a transition through
``repository.save`` with the version it read, so a concurrent writer makes the
save fail instead of silently opening a second session.
"""

import logging
import math
from datetime import datetime, timezone

from models import (
    BREAK_END, BREAK_START, CLOCKED_IN, CLOCKED_OUT, LUNCH_END, LUNCH_START,
    ON_BREAK, ON_LUNCH, TimeTrackingSession, TimeTrackingState,
)
from repositories import CorruptStateError

logger = logging.getLogger('synergylearn.time_tracking')

# action -> (required status, resulting status)
TRANSITIONS = {
    'clock_in': (CLOCKED_OUT, CLOCKED_IN),
    'clock_out': (CLOCKED_IN, CLOCKED_OUT),
    'start_break': (CLOCKED_IN, ON_BREAK),
    'end_break': (ON_BREAK, CLOCKED_IN),
    'start_lunch': (CLOCKED_IN, ON_LUNCH),
    'end_lunch': (ON_LUNCH, CLOCKED_IN),
}

# Paired audit markers: start type -> end type
MARKER_PAIRS = {BREAK_START: BREAK_END, LUNCH_START: LUNCH_END}


def utc_now():
    return datetime.now(timezone.utc)


def duration_minutes(start_time, end_time):
    """Whole minutes between two instants, rounded half-up, never negative."""
    seconds = (end_time - start_time).total_seconds()
    return max(0, int(math.floor(seconds / 60 + 0.5)))


class TransitionResult:
    def __init__(self, action, applied, state, session=None):
        self.action = action
        self.applied = applied
        self.state = state
        self.session = session

    def to_dict(self):
        return {
            'action': self.action,
            'applied': self.applied,
            'state': self.state.to_dict() if self.state else None,
            'session': self.session.to_dict() if self.session else None,
        }

    def __repr__(self):
        return f"TransitionResult(action={self.action!r}, applied={self.applied}, status={self.state.status!r})"


class TimeTracker:
    """Guarded transitions over a learner's tracking cursor and session log."""

    def __init__(self, repository, clock=None):
        self.repository = repository
        self.clock = clock or utc_now

    # --------------------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------------------

    def get_state(self, user_id):
        """Return the learner's cursor, creating or repairing it when needed."""
        try:
            state = self.repository.load_state(user_id)
        except CorruptStateError as e:
            logger.warning(f"Unreadable tracking state for {user_id} ({e}); resetting to clocked out")
            return self.repository.save(user_id, TimeTrackingState(), expected_version=e.version)
        if state is None:
            logger.info(f"No tracking state for {user_id}; initialising as clocked out")
            return self.repository.save(user_id, TimeTrackingState(), expected_version=0)

        if state.status == CLOCKED_OUT and state.current_session_id is None:
            return state

        if state.current_session_id is not None:
            session = self.repository.load_session(user_id, state.current_session_id)
            if session is not None and session.is_open and state.status != CLOCKED_OUT:
                return state

        logger.warning(f"Tracking state for {user_id} points at missing or closed session "
                       f"{state.current_session_id!r} (status {state.status}); resetting to clocked out")
        return self.repository.save(user_id, self._cleared(state), expected_version=state.version)

    def get_session(self, user_id, session_id):
        return self.repository.load_session(user_id, session_id)

    def list_sessions(self, user_id, limit=20):
        return self.repository.list_sessions(user_id, limit=limit)

    def subscribe(self, user_id, callback):
        return self.repository.subscribe(user_id, callback)

    # --------------------------------------------------------------------------
    # Transitions
    # --------------------------------------------------------------------------

    def clock_in(self, user_id):
        state = self.get_state(user_id)
        if not self._allowed('clock_in', state, user_id):
            return TransitionResult('clock_in', False, state)

        now = self.clock()
        session = TimeTrackingSession(id=self.repository.new_session_id(), start_time=now)
        new_state = state.copy(
            status=CLOCKED_IN,
            last_clock_in_time=now,
            last_break_start_time=None,
            last_lunch_start_time=None,
            current_session_id=session.id,
        )
        saved = self.repository.save(user_id, new_state, expected_version=state.version, session=session)
        logger.info(f"{user_id} clocked in (session {session.id})")
        return TransitionResult('clock_in', True, saved, session)

    def clock_out(self, user_id):
        state = self.get_state(user_id)
        if not self._allowed('clock_out', state, user_id):
            return TransitionResult('clock_out', False, state)

        session = self.repository.load_session(user_id, state.current_session_id)
        now = self.clock()
        minutes = duration_minutes(session.start_time, now)
        closed = session.closed(end_time=now, duration_minutes=minutes)
        saved = self.repository.save(user_id, self._cleared(state), expected_version=state.version, session=closed)
        logger.info(f"{user_id} clocked out of session {closed.id} after {minutes} min")
        return TransitionResult('clock_out', True, saved, closed)

    def start_break(self, user_id):
        return self._mark(user_id, 'start_break', BREAK_START, stamp='last_break_start_time')

    def end_break(self, user_id):
        return self._mark(user_id, 'end_break', BREAK_END, clear='last_break_start_time')

    def start_lunch(self, user_id):
        return self._mark(user_id, 'start_lunch', LUNCH_START, stamp='last_lunch_start_time')

    def end_lunch(self, user_id):
        return self._mark(user_id, 'end_lunch', LUNCH_END, clear='last_lunch_start_time')

    def apply(self, user_id, action):
        """Dispatch a transition by name; unknown names raise ValueError."""
        if action not in TRANSITIONS:
            raise ValueError(f"Unknown time tracking action: {action}")
        return getattr(self, action)(user_id)

    def _mark(self, user_id, action, activity_type, stamp=None, clear=None):
        state = self.get_state(user_id)
        if not self._allowed(action, state, user_id):
            return TransitionResult(action, False, state)

        session = self.repository.load_session(user_id, state.current_session_id)
        now = self.clock()
        updated = session.with_activity(activity_type, now)
        changes = {'status': TRANSITIONS[action][1]}
        if stamp:
            changes[stamp] = now
        if clear:
            changes[clear] = None
        saved = self.repository.save(user_id, state.copy(**changes), expected_version=state.version, session=updated)
        logger.info(f"{user_id}: {activity_type} in session {session.id}")
        return TransitionResult(action, True, saved, updated)

    def _allowed(self, action, state, user_id):
        required, _ = TRANSITIONS[action]
        if state.status != required:
            logger.debug(f"Ignoring {action} for {user_id}: status is {state.status}, needs {required}")
            return False
        return True

    @staticmethod
    def _cleared(state):
        return state.copy(
            status=CLOCKED_OUT,
            last_clock_in_time=None,
            last_break_start_time=None,
            last_lunch_start_time=None,
            current_session_id=None,
        )


# ==============================================================================
# SESSION LOG HELPERS
# ==============================================================================

def validate_activities(activities):
    """
    Check a session's activity markers replay cleanly.

    Returns a list of problem strings; an empty list means the log is
    chronological and every *_start is closed by its own *_end before another
    marker opens.
    """
    problems = []
    open_marker = None
    previous_time = None
    for index, activity in enumerate(activities):
        kind = activity.get('type')
        timestamp = activity.get('timestamp')
        if previous_time is not None and timestamp is not None and timestamp < previous_time:
            problems.append(f"activity {index} ({kind}) is earlier than the one before it")
        if timestamp is not None:
            previous_time = timestamp

        if kind in MARKER_PAIRS:
            if open_marker is not None:
                problems.append(f"activity {index} ({kind}) starts while {open_marker} is still open")
            open_marker = kind
        elif kind in MARKER_PAIRS.values():
            if open_marker is None or MARKER_PAIRS[open_marker] != kind:
                problems.append(f"activity {index} ({kind}) has no matching start")
            open_marker = None
        else:
            problems.append(f"activity {index} has unknown type {kind!r}")
    return problems


def summarize_session(session, now=None):
    """Gross duration plus break/lunch time for display. Break and lunch are
    not subtracted from durationMinutes."""
    now = now or utc_now()
    totals = {BREAK_START: 0.0, LUNCH_START: 0.0}
    open_marker = None
    opened_at = None
    for activity in session.activities:
        kind = activity.get('type')
        if kind in MARKER_PAIRS:
            open_marker, opened_at = kind, activity.get('timestamp')
        elif open_marker is not None and MARKER_PAIRS[open_marker] == kind:
            totals[open_marker] += (activity.get('timestamp') - opened_at).total_seconds()
            open_marker, opened_at = None, None
    if open_marker is not None and opened_at is not None:
        end = session.end_time or now
        totals[open_marker] += (end - opened_at).total_seconds()

    if session.is_open:
        elapsed = duration_minutes(session.start_time, now)
    else:
        elapsed = session.duration_minutes

    return {
        'sessionId': session.id,
        'startTime': session.start_time,
        'endTime': session.end_time,
        'open': session.is_open,
        'durationMinutes': elapsed,
        'breakMinutes': int(math.floor(totals[BREAK_START] / 60 + 0.5)),
        'lunchMinutes': int(math.floor(totals[LUNCH_START] / 60 + 0.5)),
        'activityCount': len(session.activities),
    }
