import math
from datetime import datetime, timezone

from flask_login import UserMixin
from PIL import ImageColor

# Cursor statuses
CLOCKED_OUT = 'clocked_out'
CLOCKED_IN = 'clocked_in'
ON_BREAK = 'on_break'
ON_LUNCH = 'on_lunch'
TRACKING_STATUSES = (CLOCKED_OUT, CLOCKED_IN, ON_BREAK, ON_LUNCH)

# Session log activity markers
BREAK_START = 'break_start'
BREAK_END = 'break_end'
LUNCH_START = 'lunch_start'
LUNCH_END = 'lunch_end'
ACTIVITY_TYPES = (BREAK_START, BREAK_END, LUNCH_START, LUNCH_END)

PEN = 'pen'
ERASER = 'eraser'
STROKE_TOOLS = (PEN, ERASER)
MAX_STROKE_WIDTH = 100

# The study room assistant answers messages that mention @help_me
AI_USER_ID = 'AI_ASSISTANT'
AI_USER_NAME = 'AI Helper'
AI_MENTION_NAME = 'help_me'
MAX_MESSAGE_LENGTH = 2000


# --- User Model (backs Flask-Login only) ---
class User(UserMixin):
    def __init__(self, id, email, password_hash, display_name=None, created_at=None, **kwargs):
        self.id = id
        self.email = email
        self.password_hash = password_hash
        self.display_name = display_name if display_name else email.split('@')[0]
        self.created_at = created_at or datetime.now(timezone.utc)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'password_hash': self.password_hash,
            'display_name': self.display_name,
            'created_at': self.created_at,
        }

    @staticmethod
    def from_dict(source):
        return User(
            id=source.get('id'),
            email=source.get('email'),
            password_hash=source.get('password_hash'),
            display_name=source.get('display_name'),
            created_at=source.get('created_at'),
        )


# ==============================================================================
# TIME TRACKING MODELS
# ==============================================================================

class TimeTrackingState:
    """The per-learner cursor: current status plus the timestamps the UI needs."""
    def __init__(self, status=CLOCKED_OUT, last_clock_in_time=None, last_break_start_time=None,
                 last_lunch_start_time=None, current_session_id=None, version=0, **kwargs):
        if status not in TRACKING_STATUSES:
            raise ValueError(f"Unknown tracking status: {status}")
        self.status = status
        self.last_clock_in_time = last_clock_in_time
        self.last_break_start_time = last_break_start_time
        self.last_lunch_start_time = last_lunch_start_time
        self.current_session_id = current_session_id
        self.version = version

    def is_consistent(self):
        return (self.status == CLOCKED_OUT) == (self.current_session_id is None)

    def copy(self, **changes):
        values = {
            'status': self.status,
            'last_clock_in_time': self.last_clock_in_time,
            'last_break_start_time': self.last_break_start_time,
            'last_lunch_start_time': self.last_lunch_start_time,
            'current_session_id': self.current_session_id,
            'version': self.version,
        }
        values.update(changes)
        return TimeTrackingState(**values)

    def to_dict(self):
        return {
            'status': self.status,
            'lastClockInTime': self.last_clock_in_time,
            'lastBreakStartTime': self.last_break_start_time,
            'lastLunchStartTime': self.last_lunch_start_time,
            'currentSessionId': self.current_session_id,
            'version': self.version,
        }

    @staticmethod
    def from_dict(source):
        return TimeTrackingState(
            status=source.get('status', CLOCKED_OUT),
            last_clock_in_time=source.get('lastClockInTime'),
            last_break_start_time=source.get('lastBreakStartTime'),
            last_lunch_start_time=source.get('lastLunchStartTime'),
            current_session_id=source.get('currentSessionId'),
            version=source.get('version', 0),
        )

    def __eq__(self, other):
        if not isinstance(other, TimeTrackingState):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"TimeTrackingState(status={self.status!r}, session={self.current_session_id!r}, version={self.version})"


class TimeTrackingSession:
    """One clock-in to clock-out period. Break and lunch markers are an audit trail only."""
    def __init__(self, id, start_time, end_time=None, duration_minutes=0, activities=None,
                 type='study_session_start', **kwargs):
        self.id = id
        self.type = type
        self.start_time = start_time
        self.end_time = end_time
        self.duration_minutes = duration_minutes
        # activities is a list of dicts: [{'type': 'break_start', 'timestamp': datetime}]
        self.activities = list(activities) if activities is not None else []

    @property
    def is_open(self):
        return self.end_time is None

    def with_activity(self, activity_type, timestamp):
        if activity_type not in ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {activity_type}")
        return TimeTrackingSession(
            id=self.id,
            start_time=self.start_time,
            end_time=self.end_time,
            duration_minutes=self.duration_minutes,
            activities=self.activities + [{'type': activity_type, 'timestamp': timestamp}],
            type=self.type,
        )

    def closed(self, end_time, duration_minutes):
        return TimeTrackingSession(
            id=self.id,
            start_time=self.start_time,
            end_time=end_time,
            duration_minutes=duration_minutes,
            activities=self.activities,
            type=self.type,
        )

    def to_dict(self):
        return {
            'sessionId': self.id,
            'type': self.type,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'durationMinutes': self.duration_minutes,
            'activities': [dict(a) for a in self.activities],
        }

    @staticmethod
    def from_dict(source, session_id=None):
        # Documents written by the web client carry no sessionId; the doc id is the session id.
        return TimeTrackingSession(
            id=source.get('sessionId') or session_id,
            start_time=source.get('startTime'),
            end_time=source.get('endTime'),
            duration_minutes=source.get('durationMinutes', 0),
            activities=source.get('activities', []),
            type=source.get('type', 'study_session_start'),
        )

    def __repr__(self):
        return f"TimeTrackingSession(id={self.id!r}, open={self.is_open}, activities={len(self.activities)})"


# ==============================================================================
# WHITEBOARD MODELS
# ==============================================================================

def _finite_number(value, field):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{field} must be a finite number, got {value!r}")
    return float(value)


class WhiteboardStroke:
    """A committed freehand gesture. Immutable once created."""
    __slots__ = ('id', 'points', 'color', 'stroke_width', 'tool')

    def __init__(self, id, points, color, stroke_width, tool=PEN, **kwargs):
        if tool not in STROKE_TOOLS:
            raise ValueError(f"Unknown whiteboard tool: {tool}")
        if not isinstance(id, str) or not id:
            raise ValueError("A stroke needs a non-empty string id")
        if not 0 < _finite_number(stroke_width, 'strokeWidth') <= MAX_STROKE_WIDTH:
            raise ValueError(f"strokeWidth must be greater than 0 and at most {MAX_STROKE_WIDTH}")
        if not isinstance(color, str):
            raise ValueError("color must be a string")
        # Erasers paint with the surface background, so their stored color is never drawn
        if tool == PEN:
            ImageColor.getrgb(color)

        clean_points = []
        for point in points:
            try:
                x, y = point
            except (TypeError, ValueError):
                raise ValueError(f"Stroke point {point!r} is not an (x, y) pair")
            clean_points.append((_finite_number(x, 'x'), _finite_number(y, 'y')))

        object.__setattr__(self, 'id', id)
        object.__setattr__(self, 'points', tuple(clean_points))
        object.__setattr__(self, 'color', color)
        object.__setattr__(self, 'stroke_width', stroke_width)
        object.__setattr__(self, 'tool', tool)

    def __setattr__(self, name, value):
        raise AttributeError("WhiteboardStroke is immutable")

    def __delattr__(self, name):
        raise AttributeError("WhiteboardStroke is immutable")

    def to_dict(self):
        return {
            'id': self.id,
            'points': [{'x': x, 'y': y} for x, y in self.points],
            'color': self.color,
            'strokeWidth': self.stroke_width,
            'tool': self.tool,
        }

    @staticmethod
    def from_dict(source):
        points = []
        for point in source.get('points', []):
            if isinstance(point, dict):
                points.append((point['x'], point['y']))
            else:
                points.append((point[0], point[1]))
        return WhiteboardStroke(
            id=source['id'],
            points=points,
            color=source.get('color', '#000000'),
            stroke_width=source.get('strokeWidth', 2),
            tool=source.get('tool', PEN),
        )

    def __eq__(self, other):
        if not isinstance(other, WhiteboardStroke):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash((self.id, self.points, self.color, self.stroke_width, self.tool))

    def __repr__(self):
        return f"WhiteboardStroke(id={self.id!r}, tool={self.tool!r}, points={len(self.points)})"


# ==============================================================================
# STUDY ROOM CHAT MODELS
# ==============================================================================

class ChatMessage:
    """One message in a study room's chat log."""
    def __init__(self, id, user_id, user_name, text, timestamp=None, **kwargs):
        self.id = id
        self.user_id = user_id
        self.user_name = user_name
        self.text = text
        self.timestamp = timestamp or datetime.now(timezone.utc)

    @property
    def from_assistant(self):
        return self.user_id == AI_USER_ID

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'userName': self.user_name,
            'text': self.text,
            'timestamp': self.timestamp,
        }

    @staticmethod
    def from_dict(source, message_id=None):
        return ChatMessage(
            id=source.get('id') or message_id,
            user_id=source.get('userId'),
            user_name=source.get('userName') or '',
            text=source.get('text') or '',
            timestamp=source.get('timestamp'),
        )

    def __repr__(self):
        return f"ChatMessage(id={self.id!r}, user={self.user_name!r})"
