# ==============================================================================
# SynergyLearn study service
# Time tracking, shared whiteboards and AI study planning over Firestore.
# ==============================================================================
import os
import sys
import json
import base64
import logging
import threading
import uuid
from datetime import date, datetime

import click
import firebase_admin
from firebase_admin import credentials, firestore
from flask import Flask, request, jsonify, Response
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from flask_socketio import SocketIO, emit, join_room, leave_room
from werkzeug.security import check_password_hash, generate_password_hash

from models import User, WhiteboardStroke
from repositories import (
    PersistenceError, StaleStateError,
    InMemoryChatRepository, InMemoryTimeTrackingRepository, InMemoryUserRepository, InMemoryWhiteboardRepository,
    FirestoreChatRepository, FirestoreTimeTrackingRepository, FirestoreUserRepository, FirestoreWhiteboardRepository,
)
from chat import StudyRoomChat
from time_tracking import TimeTracker, summarize_session
from whiteboard import DrawingSurface, resolve_background_color
import ai_flows


# ==============================================================================
# 1. LOGGING, FIREBASE AND APP INITIALIZATION
# ==============================================================================

def setup_logging():
    """Log to stdout and logs/synergylearn.log."""
    os.makedirs('logs', exist_ok=True)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('logs/synergylearn.log'),
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger('synergylearn.app')

logger = setup_logging()

try:
    # Production passes the service account as base64; local development uses firebase_key.json
    firebase_key_b64 = os.getenv("FIREBASE_KEY_B64")
    if firebase_key_b64:
        firebase_key_json = base64.b64decode(firebase_key_b64).decode('utf-8')
        cred = credentials.Certificate(json.loads(firebase_key_json))
    else:
        key_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "firebase_key.json")
        cred = credentials.Certificate(key_path)

    if not firebase_admin._apps:
        firebase_admin.initialize_app(cred)
    db = firestore.client()
    logger.info("Firebase initialized successfully")
except Exception as e:
    logger.warning(f"Firebase initialization failed ({e}); running in development mode with in-memory storage")
    db = None

if db is not None:
    user_repository = FirestoreUserRepository(db)
    time_repository = FirestoreTimeTrackingRepository(db)
    whiteboard_repository = FirestoreWhiteboardRepository(db)
    chat_repository = FirestoreChatRepository(db)
else:
    user_repository = InMemoryUserRepository()
    time_repository = InMemoryTimeTrackingRepository()
    whiteboard_repository = InMemoryWhiteboardRepository()
    chat_repository = InMemoryChatRepository()

tracker = TimeTracker(time_repository)
room_chat = StudyRoomChat(chat_repository)

WHITEBOARD_BACKGROUND = resolve_background_color(os.getenv("WHITEBOARD_BACKGROUND", "white"))
MAX_SESSIONS_PAGE = 100
MAX_MESSAGES_PAGE = 200

app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv("FLASK_SECRET_KEY", "a-default-secret-key-for-development")

socketio = SocketIO(app, async_mode='threading', cors_allowed_origins="*")

login_manager = LoginManager()
login_manager.init_app(app)

@login_manager.user_loader
def load_user(user_id):
    try:
        return user_repository.get(user_id)
    except PersistenceError as e:
        logger.error(f"Could not load user {user_id}: {e}")
        return None

@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "message": "Authentication required"}), 401


def to_jsonable(value):
    """Datetimes as ISO-8601 strings, recursively; Firestore timestamps are datetimes too."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def persistence_failure(e, action):
    logger.error(f"{action} failed for {getattr(current_user, 'id', 'anonymous')}: {e}")
    status = 409 if isinstance(e, StaleStateError) else 503
    return jsonify({"success": False, "message": f"{action} failed: {e}"}), status


# ==============================================================================
# 2. ACCOUNT ROUTES
# ==============================================================================

@app.route('/api/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    try:
        user = user_repository.get_by_email(email) if email else None
    except PersistenceError as e:
        return persistence_failure(e, "Login")
    if user is None or not check_password_hash(user.password_hash, data.get('password') or ''):
        return jsonify({"success": False, "message": "Invalid email or password"}), 401
    login_user(user, remember=bool(data.get('remember')))
    return jsonify({"success": True, "user": {"id": user.id, "display_name": user.display_name}})

@app.route('/api/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True})

@app.cli.command('create-user')
@click.argument('email')
@click.password_option()
def create_user(email, password):
    """Create a learner account."""
    email = email.strip().lower()
    if user_repository.get_by_email(email):
        raise click.ClickException(f"{email} already exists")
    user = User(id=str(uuid.uuid4()), email=email, password_hash=generate_password_hash(password))
    user_repository.add(user)
    click.echo(f"Created {email} ({user.id})")


# ==============================================================================
# 3. TIME TRACKING ROUTES
# ==============================================================================

TIME_TRACKING_ACTIONS = {
    'clock-in': 'clock_in',
    'clock-out': 'clock_out',
    'start-break': 'start_break',
    'end-break': 'end_break',
    'start-lunch': 'start_lunch',
    'end-lunch': 'end_lunch',
}

@app.route('/api/time-tracking/state')
@login_required
def time_tracking_state():
    try:
        state = tracker.get_state(current_user.id)
    except PersistenceError as e:
        return persistence_failure(e, "Loading time state")
    return jsonify({"success": True, "state": to_jsonable(state.to_dict())})

@app.route('/api/time-tracking/<action>', methods=['POST'])
@login_required
def time_tracking_action(action):
    method = TIME_TRACKING_ACTIONS.get(action)
    if method is None:
        return jsonify({"success": False, "message": f"Unknown action: {action}"}), 404
    try:
        result = tracker.apply(current_user.id, method)
    except PersistenceError as e:
        return persistence_failure(e, action.replace('-', ' ').capitalize())
    payload = to_jsonable(result.to_dict())
    payload["success"] = True
    return jsonify(payload)

@app.route('/api/time-tracking/sessions')
@login_required
def time_tracking_sessions():
    limit = request.args.get('limit', 20, type=int)
    limit = max(1, min(limit, MAX_SESSIONS_PAGE))
    try:
        sessions = tracker.list_sessions(current_user.id, limit=limit)
    except PersistenceError as e:
        return persistence_failure(e, "Loading sessions")
    return jsonify({
        "success": True,
        "sessions": [to_jsonable(dict(s.to_dict(), summary=summarize_session(s))) for s in sessions],
    })


# ==============================================================================
# 4. WHITEBOARD ROUTES
# ==============================================================================

def parse_stroke(data):
    """Build a stroke from client JSON; returns None if the payload is unusable."""
    if not isinstance(data, dict):
        return None
    try:
        stroke = WhiteboardStroke.from_dict(data)
    except (KeyError, TypeError, ValueError, IndexError):
        return None
    if not stroke.points:
        return None
    return stroke

@app.route('/api/study-rooms/<room_id>/whiteboard')
@login_required
def whiteboard_strokes(room_id):
    try:
        strokes = whiteboard_repository.list_strokes(room_id)
    except PersistenceError as e:
        return persistence_failure(e, "Loading whiteboard")
    return jsonify({"success": True, "strokes": [s.to_dict() for s in strokes]})

@app.route('/api/study-rooms/<room_id>/whiteboard/strokes', methods=['POST'])
@login_required
def add_whiteboard_stroke(room_id):
    stroke = parse_stroke(request.get_json(silent=True))
    if stroke is None:
        return jsonify({"success": False, "message": "Invalid stroke"}), 400
    try:
        whiteboard_repository.add_stroke(room_id, stroke)
    except PersistenceError as e:
        return persistence_failure(e, "Saving drawing")
    return jsonify({"success": True, "stroke": stroke.to_dict()}), 201

@app.route('/api/study-rooms/<room_id>/whiteboard', methods=['DELETE'])
@login_required
def clear_whiteboard(room_id):
    try:
        whiteboard_repository.clear(room_id)
    except PersistenceError as e:
        return persistence_failure(e, "Clearing whiteboard")
    return jsonify({"success": True})

@app.route('/api/study-rooms/<room_id>/whiteboard.png')
@login_required
def whiteboard_snapshot(room_id):
    width = max(1, min(request.args.get('width', 1280, type=int), 4096))
    height = max(1, min(request.args.get('height', 720, type=int), 4096))
    try:
        strokes = whiteboard_repository.list_strokes(room_id)
    except PersistenceError as e:
        return persistence_failure(e, "Loading whiteboard")
    surface = DrawingSurface(width, height, background=WHITEBOARD_BACKGROUND)
    surface.render_all(strokes)
    return Response(surface.to_png(), mimetype='image/png')


# ==============================================================================
# 5. STUDY ROOM CHAT ROUTES
# ==============================================================================

def chat_room(room_id):
    return f"chat:{room_id}"

def broadcast_messages(room_id, messages):
    for message in messages:
        socketio.emit('chat_message', dict(to_jsonable(message.to_dict()), room=room_id), to=chat_room(room_id))

@app.route('/api/study-rooms/<room_id>/messages')
@login_required
def chat_messages(room_id):
    limit = max(1, min(request.args.get('limit', 100, type=int), MAX_MESSAGES_PAGE))
    try:
        messages = room_chat.list_messages(room_id, limit=limit)
    except PersistenceError as e:
        return persistence_failure(e, "Loading messages")
    return jsonify({"success": True, "messages": [to_jsonable(m.to_dict()) for m in messages]})

@app.route('/api/study-rooms/<room_id>/messages', methods=['POST'])
@login_required
def post_chat_message(room_id):
    data = request.get_json(silent=True) or {}
    try:
        written = room_chat.post_message(room_id, current_user, data.get('text'))
    except ValueError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    except PersistenceError as e:
        return persistence_failure(e, "Sending message")
    broadcast_messages(room_id, written)
    return jsonify({"success": True, "messages": [to_jsonable(m.to_dict()) for m in written]}), 201

@app.route('/api/study-rooms/<room_id>/messages/summary', methods=['POST'])
@login_required
def summarize_chat_messages(room_id):
    return run_ai_flow(room_chat_summary, room_id=room_id)

def room_chat_summary(room_id):
    return {"summary": room_chat.summarize(room_id)}


# ==============================================================================
# 6. AI STUDY PLANNING ROUTES
# ==============================================================================

def run_ai_flow(flow, **kwargs):
    try:
        return jsonify({"success": True, **flow(**kwargs)})
    except ValueError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    except ai_flows.AIFlowError as e:
        logger.error(f"{flow.__name__} produced unusable output: {e}")
        return jsonify({"success": False, "message": str(e)}), 502
    except PersistenceError as e:
        return persistence_failure(e, flow.__name__)
    except Exception as e:
        logger.exception(f"{flow.__name__} failed")
        return jsonify({"success": False, "message": f"AI request failed: {e}"}), 502

@app.route('/api/schedule/outline', methods=['POST'])
@login_required
def schedule_outline():
    data = request.get_json(silent=True) or {}
    return run_ai_flow(
        ai_flows.generate_weekly_outline,
        goal=data.get('overallLearningGoal'),
        schedule_duration=data.get('scheduleDuration'),
        working_day_start=data.get('workingDayStartTime'),
        working_day_end=data.get('workingDayEndTime'),
        weekly_holidays=data.get('weeklyHolidays'),
        holiday_start=data.get('holidayStartTime'),
        holiday_end=data.get('holidayEndTime'),
        utilize_holidays=bool(data.get('utilizeHolidays')),
        start_date=data.get('startDateForOutline'),
    )

@app.route('/api/schedule/daily-tasks', methods=['POST'])
@login_required
def schedule_daily_tasks():
    data = request.get_json(silent=True) or {}
    return run_ai_flow(
        ai_flows.generate_daily_tasks,
        period_goal=data.get('periodGoal'),
        period_start_date=data.get('periodStartDate'),
        period_duration_days=data.get('periodDurationDays', 7),
        working_day_start=data.get('workingDayStartTime'),
        working_day_end=data.get('workingDayEndTime'),
        weekly_holidays=data.get('weeklyHolidays'),
        holiday_start=data.get('holidayStartTime'),
        holiday_end=data.get('holidayEndTime'),
        utilize_holidays=bool(data.get('utilizeHolidays')),
    )

@app.route('/api/flashcards/generate', methods=['POST'])
@login_required
def flashcards_generate():
    data = request.get_json(silent=True) or {}
    return run_ai_flow(ai_flows.generate_flashcards, notes=data.get('notes'))


# ==============================================================================
# 7. SOCKET.IO: LIVE WHITEBOARD, CHAT AND TIME STATE
# ==============================================================================

# sid -> unsubscribe callable for the learner's cursor
time_state_watchers = {}
# room_id -> {'unsubscribe': callable, 'sids': set()}
whiteboard_watchers = {}
# sid -> set of whiteboard room ids joined
socket_rooms = {}
watchers_lock = threading.Lock()


def whiteboard_room(room_id):
    return f"whiteboard:{room_id}"

def broadcast_strokes(room_id, strokes):
    socketio.emit('whiteboard_updated', {
        'room': room_id,
        'strokes': [s.to_dict() for s in strokes],
    }, to=whiteboard_room(room_id))

def watch_whiteboard(sid, room_id):
    """Register `sid` as a viewer of the room, opening the one repository subscription on first use."""
    # One repository subscription per room; subscribe while holding the lock
    with watchers_lock:
        socket_rooms.setdefault(sid, set()).add(room_id)
        watcher = whiteboard_watchers.get(room_id)
        if watcher is not None:
            watcher['sids'].add(sid)
            return False
        unsubscribe = whiteboard_repository.subscribe(room_id, lambda strokes: broadcast_strokes(room_id, strokes))
        whiteboard_watchers[room_id] = {'unsubscribe': unsubscribe, 'sids': {sid}}
    logger.debug(f"Watching whiteboard {room_id}")
    return True

def release_whiteboard(sid, room_id):
    with watchers_lock:
        watcher = whiteboard_watchers.get(room_id)
        if watcher is None:
            return
        watcher['sids'].discard(sid)
        if watcher['sids']:
            return
        whiteboard_watchers.pop(room_id)
    watcher['unsubscribe']()
    logger.debug(f"Stopped watching whiteboard {room_id}")

@socketio.on('join_whiteboard')
def handle_join_whiteboard(data):
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    room_id = (data or {}).get('room')
    if not room_id:
        emit('error', {'message': 'A room is required'})
        return

    join_room(whiteboard_room(room_id))
    watch_whiteboard(request.sid, room_id)

    try:
        strokes = whiteboard_repository.list_strokes(room_id)
    except PersistenceError as e:
        emit('error', {'message': f'Could not load whiteboard: {e}'})
        return
    emit('whiteboard_updated', {'room': room_id, 'strokes': [s.to_dict() for s in strokes]})

@socketio.on('leave_whiteboard')
def handle_leave_whiteboard(data):
    room_id = (data or {}).get('room')
    if not room_id:
        return
    leave_room(whiteboard_room(room_id))
    with watchers_lock:
        socket_rooms.get(request.sid, set()).discard(room_id)
    release_whiteboard(request.sid, room_id)

@socketio.on('draw_stroke')
def handle_draw_stroke(data):
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    data = data or {}
    room_id = data.get('room')
    stroke = parse_stroke(data.get('stroke'))
    if not room_id or stroke is None:
        emit('error', {'message': 'Invalid stroke'})
        return
    try:
        whiteboard_repository.add_stroke(room_id, stroke)
    except PersistenceError as e:
        logger.error(f"Saving stroke for room {room_id} failed: {e}")
        emit('error', {'message': 'Could not save drawing.'})

@socketio.on('clear_whiteboard')
def handle_clear_whiteboard(data):
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    room_id = (data or {}).get('room')
    if not room_id:
        emit('error', {'message': 'A room is required'})
        return
    try:
        whiteboard_repository.clear(room_id)
    except PersistenceError as e:
        logger.error(f"Clearing whiteboard {room_id} failed: {e}")
        emit('error', {'message': 'Could not clear whiteboard.'})
        return
    socketio.emit('whiteboard_cleared', {'room': room_id}, to=whiteboard_room(room_id))

@socketio.on('join_chat')
def handle_join_chat(data):
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    room_id = (data or {}).get('room')
    if not room_id:
        emit('error', {'message': 'A room is required'})
        return
    join_room(chat_room(room_id))
    try:
        messages = room_chat.list_messages(room_id)
    except PersistenceError as e:
        emit('error', {'message': f'Could not load messages: {e}'})
        return
    emit('chat_history', {'room': room_id, 'messages': [to_jsonable(m.to_dict()) for m in messages]})

@socketio.on('leave_chat')
def handle_leave_chat(data):
    room_id = (data or {}).get('room')
    if room_id:
        leave_room(chat_room(room_id))

@socketio.on('send_message')
def handle_send_message(data):
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    data = data or {}
    room_id = data.get('room')
    if not room_id:
        emit('error', {'message': 'A room is required'})
        return
    try:
        written = room_chat.post_message(room_id, current_user, data.get('text'))
    except ValueError as e:
        emit('error', {'message': str(e)})
        return
    except PersistenceError as e:
        logger.error(f"Saving message for room {room_id} failed: {e}")
        emit('error', {'message': 'Could not send message.'})
        return
    broadcast_messages(room_id, written)

@socketio.on('watch_time_state')
def handle_watch_time_state():
    if not current_user.is_authenticated:
        emit('error', {'message': 'Authentication required'})
        return
    sid = request.sid

    def forward(state):
        socketio.emit('time_state_updated', to_jsonable(state.to_dict()), to=sid)

    with watchers_lock:
        previous = time_state_watchers.pop(sid, None)
    if previous is not None:
        previous()
    unsubscribe = tracker.subscribe(current_user.id, forward)
    with watchers_lock:
        time_state_watchers[sid] = unsubscribe

    try:
        state = tracker.get_state(current_user.id)
    except PersistenceError as e:
        emit('error', {'message': f'Could not load time state: {e}'})
        return
    emit('time_state_updated', to_jsonable(state.to_dict()))

@socketio.on('disconnect')
def handle_disconnect(*args):
    """Release every subscription the socket held."""
    sid = request.sid
    with watchers_lock:
        unsubscribe = time_state_watchers.pop(sid, None)
        rooms = socket_rooms.pop(sid, set())
    if unsubscribe is not None:
        unsubscribe()
    for room_id in rooms:
        release_whiteboard(sid, room_id)


if __name__ == '__main__':
    logger.info(f"Starting SynergyLearn ({'Firestore' if db is not None else 'in-memory'} storage)")
    socketio.run(app, debug=os.getenv("FLASK_DEBUG") == "1", allow_unsafe_werkzeug=True)
