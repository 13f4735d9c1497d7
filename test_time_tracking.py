#!/usr/bin/env python3
"""
Tests for the clock-in / break / lunch / clock-out state machine.
Runs entirely against the in-memory repository with an injected clock.
"""

import os
import random
import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from models import (
    BREAK_END, BREAK_START, CLOCKED_IN, CLOCKED_OUT, LUNCH_END, LUNCH_START,
    ON_BREAK, ON_LUNCH, TimeTrackingSession, TimeTrackingState,
)
from repositories import InMemoryTimeTrackingRepository, PersistenceError, StaleStateError
from time_tracking import (
    TRANSITIONS, TimeTracker, duration_minutes, summarize_session, validate_activities,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
USER = "learner-1"


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryTimeTrackingRepository()


@pytest.fixture
def tracker(repository, clock):
    return TimeTracker(repository, clock=clock)


def open_sessions(repository, user_id=USER):
    return [s for s in repository.list_sessions(user_id, limit=1000) if s.is_open]


def test_first_read_creates_clocked_out_state(tracker, repository):
    """A learner with no stored cursor starts clocked out, and the default is persisted."""
    assert repository.load_state(USER) is None
    state = tracker.get_state(USER)
    assert state.status == CLOCKED_OUT
    assert state.current_session_id is None
    assert repository.load_state(USER) == state


def test_clock_in_then_out_records_gross_duration(tracker, clock, repository):
    """Clock in at T0, clock out 125 minutes later."""
    started = tracker.clock_in(USER)
    assert started.applied
    assert started.state.status == CLOCKED_IN
    assert started.state.current_session_id == started.session.id
    assert started.state.last_clock_in_time == T0

    clock.advance(minutes=125)
    finished = tracker.clock_out(USER)
    assert finished.applied
    assert finished.state.status == CLOCKED_OUT
    assert finished.state.current_session_id is None

    session = repository.load_session(USER, started.session.id)
    assert session.start_time == T0
    assert session.end_time == T0 + timedelta(minutes=125)
    assert session.duration_minutes == 125
    assert not session.is_open


def test_break_is_logged_but_not_subtracted(tracker, clock, repository):
    tracker.clock_in(USER)
    clock.advance(minutes=30)
    assert tracker.start_break(USER).state.status == ON_BREAK
    clock.advance(minutes=15)
    assert tracker.end_break(USER).state.status == CLOCKED_IN
    clock.advance(minutes=45)
    result = tracker.clock_out(USER)

    assert [a['type'] for a in result.session.activities] == [BREAK_START, BREAK_END]
    assert result.session.activities[0]['timestamp'] == T0 + timedelta(minutes=30)
    assert result.session.activities[1]['timestamp'] == T0 + timedelta(minutes=45)
    assert result.session.duration_minutes == 90


def test_lunch_round_trip_sets_and_clears_timestamp(tracker, clock):
    tracker.clock_in(USER)
    clock.advance(minutes=5)
    lunch = tracker.start_lunch(USER)
    assert lunch.state.status == ON_LUNCH
    assert lunch.state.last_lunch_start_time == T0 + timedelta(minutes=5)
    back = tracker.end_lunch(USER)
    assert back.state.status == CLOCKED_IN
    assert back.state.last_lunch_start_time is None
    assert [a['type'] for a in back.session.activities] == [LUNCH_START, LUNCH_END]


def test_clock_in_while_clocked_in_is_ignored(tracker, repository):
    first = tracker.clock_in(USER)
    version = repository.load_state(USER).version

    second = tracker.clock_in(USER)
    assert not second.applied
    assert second.session is None
    assert second.state.current_session_id == first.session.id
    assert repository.load_state(USER).version == version
    assert len(repository.list_sessions(USER)) == 1


@pytest.mark.parametrize("setup, action", [
    ([], 'clock_out'),
    ([], 'start_break'),
    ([], 'end_break'),
    ([], 'start_lunch'),
    ([], 'end_lunch'),
    (['clock_in'], 'end_break'),
    (['clock_in'], 'end_lunch'),
    (['clock_in', 'start_break'], 'start_lunch'),
    (['clock_in', 'start_break'], 'end_lunch'),
    (['clock_in', 'start_lunch'], 'start_break'),
    (['clock_in', 'start_lunch'], 'end_break'),
    (['clock_in', 'start_break'], 'clock_out'),
    (['clock_in', 'start_lunch'], 'clock_out'),
])
def test_transitions_from_wrong_state_change_nothing(tracker, repository, setup, action):
    for step in setup:
        assert tracker.apply(USER, step).applied
    before = tracker.get_state(USER)
    sessions_before = [s.to_dict() for s in repository.list_sessions(USER)]

    result = tracker.apply(USER, action)

    assert not result.applied
    assert repository.load_state(USER) == before
    assert [s.to_dict() for s in repository.list_sessions(USER)] == sessions_before


def test_unknown_action_is_rejected(tracker):
    with pytest.raises(ValueError):
        tracker.apply(USER, 'teleport')


def test_random_sequences_keep_invariants(repository, clock):
    """Whatever the learner clicks, the cursor stays consistent and at most one session is open."""
    tracker = TimeTracker(repository, clock=clock)
    rng = random.Random(1234)
    actions = list(TRANSITIONS)
    for _ in range(400):
        before = tracker.get_state(USER)
        action = rng.choice(actions)
        clock.advance(seconds=rng.randint(1, 900))
        result = tracker.apply(USER, action)

        required, target = TRANSITIONS[action]
        assert result.applied == (before.status == required)
        assert result.state.status == (target if result.applied else before.status)
        assert result.state.is_consistent()
        if result.state.status in (ON_BREAK, ON_LUNCH):
            assert before.status == CLOCKED_IN or before.status == result.state.status
        assert len(open_sessions(repository)) == (0 if result.state.status == CLOCKED_OUT else 1)

    for session in repository.list_sessions(USER, limit=1000):
        assert validate_activities(session.activities) == []
        if not session.is_open:
            assert session.duration_minutes == duration_minutes(session.start_time, session.end_time)


def test_cursor_pointing_at_missing_session_is_reset(tracker, repository):
    tracker.clock_in(USER)
    state = repository.load_state(USER)
    repository.delete_session(USER, state.current_session_id)

    repaired = tracker.get_state(USER)
    assert repaired.status == CLOCKED_OUT
    assert repaired.current_session_id is None
    assert tracker.clock_in(USER).applied


def test_cursor_without_session_id_is_reset(tracker, repository):
    repository.save(USER, TimeTrackingState(status=ON_BREAK), expected_version=0)
    assert tracker.get_state(USER).status == CLOCKED_OUT


def test_unreadable_cursor_is_reset(tracker, repository):
    repository._states[USER] = {'status': 'napping', 'currentSessionId': None, 'version': 3}

    repaired = tracker.get_state(USER)
    assert repaired.status == CLOCKED_OUT
    assert repaired.version == 4
    assert tracker.clock_in(USER).applied


def test_stale_cursor_write_is_refused(tracker, repository):
    stale = tracker.get_state(USER)
    assert tracker.clock_in(USER).applied

    session = TimeTrackingSession(id="intruder", start_time=T0)
    with pytest.raises(StaleStateError):
        repository.save(USER, stale.copy(status=CLOCKED_IN, current_session_id="intruder"),
                        expected_version=stale.version, session=session)
    assert repository.load_session(USER, "intruder") is None
    assert len(open_sessions(repository)) == 1


def test_concurrent_clock_ins_open_one_session(repository, clock):
    """Two devices racing to clock in: exactly one wins, the rest fail or no-op."""
    TimeTracker(repository, clock=clock).get_state(USER)
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        tracker = TimeTracker(repository, clock=clock)
        barrier.wait()
        try:
            applied = tracker.clock_in(USER).applied
        except StaleStateError:
            applied = False
        with lock:
            outcomes.append(applied)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count(True) == 1
    assert len(open_sessions(repository)) == 1


class FailingRepository(InMemoryTimeTrackingRepository):
    def __init__(self):
        super().__init__()
        self.fail = False

    def save(self, user_id, state, expected_version, session=None):
        if self.fail:
            raise PersistenceError("service unavailable")
        return super().save(user_id, state, expected_version, session=session)


def test_failed_write_leaves_last_confirmed_state(clock):
    repository = FailingRepository()
    tracker = TimeTracker(repository, clock=clock)
    tracker.get_state(USER)
    repository.fail = True

    with pytest.raises(PersistenceError):
        tracker.clock_in(USER)

    repository.fail = False
    assert tracker.get_state(USER).status == CLOCKED_OUT
    assert repository.list_sessions(USER) == []


def test_subscribers_see_every_transition(tracker):
    seen = []
    unsubscribe = tracker.subscribe(USER, lambda state: seen.append(state.status))
    tracker.clock_in(USER)
    tracker.start_break(USER)
    unsubscribe()
    tracker.end_break(USER)
    assert seen == [CLOCKED_OUT, CLOCKED_IN, ON_BREAK]


@pytest.mark.parametrize("seconds, minutes", [
    (0, 0), (29, 0), (30, 1), (89, 1), (90, 2), (125 * 60, 125), (-120, 0),
])
def test_duration_rounds_half_up(seconds, minutes):
    assert duration_minutes(T0, T0 + timedelta(seconds=seconds)) == minutes


def test_summary_reports_break_and_lunch_separately():
    session = TimeTrackingSession(
        id="s1",
        start_time=T0,
        end_time=T0 + timedelta(hours=4),
        duration_minutes=240,
        activities=[
            {'type': BREAK_START, 'timestamp': T0 + timedelta(minutes=60)},
            {'type': BREAK_END, 'timestamp': T0 + timedelta(minutes=70)},
            {'type': LUNCH_START, 'timestamp': T0 + timedelta(minutes=120)},
            {'type': LUNCH_END, 'timestamp': T0 + timedelta(minutes=150)},
        ],
    )
    summary = summarize_session(session)
    assert summary['durationMinutes'] == 240
    assert summary['breakMinutes'] == 10
    assert summary['lunchMinutes'] == 30
    assert summary['open'] is False


def test_summary_of_open_session_counts_up_to_now():
    session = TimeTrackingSession(
        id="s2",
        start_time=T0,
        activities=[{'type': BREAK_START, 'timestamp': T0 + timedelta(minutes=20)}],
    )
    summary = summarize_session(session, now=T0 + timedelta(minutes=50))
    assert summary['open'] is True
    assert summary['durationMinutes'] == 50
    assert summary['breakMinutes'] == 30


def test_validate_activities_flags_bad_logs():
    ok = [
        {'type': BREAK_START, 'timestamp': T0},
        {'type': BREAK_END, 'timestamp': T0 + timedelta(minutes=5)},
        {'type': LUNCH_START, 'timestamp': T0 + timedelta(minutes=10)},
        {'type': LUNCH_END, 'timestamp': T0 + timedelta(minutes=40)},
    ]
    assert validate_activities(ok) == []

    assert validate_activities([
        {'type': BREAK_START, 'timestamp': T0},
        {'type': BREAK_START, 'timestamp': T0 + timedelta(minutes=1)},
    ])
    assert validate_activities([{'type': LUNCH_END, 'timestamp': T0}])
    assert validate_activities([
        {'type': BREAK_START, 'timestamp': T0},
        {'type': LUNCH_END, 'timestamp': T0 + timedelta(minutes=1)},
    ])
    assert validate_activities([
        {'type': BREAK_START, 'timestamp': T0 + timedelta(minutes=5)},
        {'type': BREAK_END, 'timestamp': T0},
    ])
