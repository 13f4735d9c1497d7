"""
Persistence for time tracking, whiteboards and users.

Each concern sits behind a narrow interface with two back ends: Firestore
(production) and an in-memory store used in development mode and in tests.
The time tracking cursor carries a ``version`` token; ``save`` is atomic and
refuses to write when the stored version has moved on, which is what keeps a
learner to a single open session when two devices race.
"""

import logging
import threading
import uuid

from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from models import ChatMessage, TimeTrackingSession, TimeTrackingState, User, WhiteboardStroke

logger = logging.getLogger('synergylearn.repositories')


class PersistenceError(Exception):
    """Raised when the backing store fails or refuses a write."""


class StaleStateError(PersistenceError):
    """Raised when the cursor was changed by another writer since it was read."""

    def __init__(self, expected_version, actual_version):
        super().__init__(f"Tracking state changed concurrently (expected version {expected_version}, found {actual_version})")
        self.expected_version = expected_version
        self.actual_version = actual_version


class CorruptStateError(Exception):
    """Raised when a stored cursor cannot be read back, e.g. an unknown status."""

    def __init__(self, message, version=0):
        super().__init__(message)
        self.version = version


def state_from_dict(data):
    """Parse a stored cursor; an unreadable one raises CorruptStateError carrying its version."""
    try:
        return TimeTrackingState.from_dict(data)
    except ValueError as e:
        version = data.get('version', 0)
        raise CorruptStateError(str(e), version=version if isinstance(version, int) else 0) from e


def strokes_from_list(raw_strokes, room_id):
    """Parse a stored stroke array, skipping entries that no longer validate."""
    strokes = []
    for raw in raw_strokes or []:
        try:
            strokes.append(WhiteboardStroke.from_dict(raw))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping unreadable stroke in room {room_id}: {e}")
    return strokes


# ==============================================================================
# INTERFACES
# ==============================================================================

class TimeTrackingRepository:
    def new_session_id(self):
        raise NotImplementedError

    def load_state(self, user_id):
        raise NotImplementedError

    def load_session(self, user_id, session_id):
        raise NotImplementedError

    def list_sessions(self, user_id, limit=20):
        raise NotImplementedError

    def save(self, user_id, state, expected_version, session=None):
        """Atomically write ``state`` (and ``session`` when given) if the stored
        cursor is still at ``expected_version``. Returns the saved state with
        its version bumped."""
        raise NotImplementedError

    def subscribe(self, user_id, callback):
        """Call ``callback(state)`` on every cursor change. Returns an unsubscribe callable."""
        raise NotImplementedError


class WhiteboardRepository:
    def list_strokes(self, room_id):
        raise NotImplementedError

    def add_stroke(self, room_id, stroke):
        raise NotImplementedError

    def clear(self, room_id):
        raise NotImplementedError

    def subscribe(self, room_id, callback):
        """Call ``callback(strokes)`` whenever the room's stroke list changes."""
        raise NotImplementedError


class UserRepository:
    def get(self, user_id):
        raise NotImplementedError

    def get_by_email(self, email):
        raise NotImplementedError

    def add(self, user):
        raise NotImplementedError


class ChatRepository:
    def add_message(self, room_id, message):
        """Store ``message`` in the room's log and return it with its id set."""
        raise NotImplementedError

    def list_messages(self, room_id, limit=100):
        """The newest ``limit`` messages, oldest first."""
        raise NotImplementedError


# ==============================================================================
# IN-MEMORY BACK END
# ==============================================================================

class _Listeners:
    """Keyed callback registry shared by the in-memory repositories."""

    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks = {}

    def add(self, key, callback):
        with self._lock:
            self._callbacks.setdefault(key, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._callbacks.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
        return unsubscribe

    def notify(self, key, payload):
        with self._lock:
            callbacks = list(self._callbacks.get(key, []))
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Listener for {key} failed")


class InMemoryTimeTrackingRepository(TimeTrackingRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._states = {}
        self._sessions = {}  # user_id -> {session_id: session dict}
        self._listeners = _Listeners()

    def new_session_id(self):
        return uuid.uuid4().hex

    def load_state(self, user_id):
        with self._lock:
            data = self._states.get(user_id)
        return state_from_dict(data) if data is not None else None

    def load_session(self, user_id, session_id):
        with self._lock:
            data = self._sessions.get(user_id, {}).get(session_id)
        return TimeTrackingSession.from_dict(data, session_id) if data is not None else None

    def list_sessions(self, user_id, limit=20):
        with self._lock:
            docs = list(self._sessions.get(user_id, {}).items())
        sessions = [TimeTrackingSession.from_dict(data, session_id) for session_id, data in docs]
        sessions.sort(key=lambda s: s.start_time, reverse=True)
        return sessions[:limit]

    def save(self, user_id, state, expected_version, session=None):
        with self._lock:
            current = self._states.get(user_id)
            current_version = current.get('version', 0) if current is not None else 0
            if current_version != expected_version:
                raise StaleStateError(expected_version, current_version)
            saved = state.copy(version=current_version + 1)
            self._states[user_id] = saved.to_dict()
            if session is not None:
                self._sessions.setdefault(user_id, {})[session.id] = session.to_dict()
        self._listeners.notify(user_id, saved)
        return saved

    def delete_session(self, user_id, session_id):
        with self._lock:
            self._sessions.get(user_id, {}).pop(session_id, None)

    def subscribe(self, user_id, callback):
        return self._listeners.add(user_id, callback)


class InMemoryWhiteboardRepository(WhiteboardRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._rooms = {}
        self._listeners = _Listeners()

    def list_strokes(self, room_id):
        with self._lock:
            return list(self._rooms.get(room_id, []))

    def add_stroke(self, room_id, stroke):
        with self._lock:
            strokes = self._rooms.setdefault(room_id, [])
            # ArrayUnion semantics: an identical element is not added twice
            if stroke not in strokes:
                strokes.append(stroke)
            snapshot = list(strokes)
        self._listeners.notify(room_id, snapshot)
        return stroke

    def clear(self, room_id):
        with self._lock:
            self._rooms[room_id] = []
        self._listeners.notify(room_id, [])

    def subscribe(self, room_id, callback):
        return self._listeners.add(room_id, callback)


class InMemoryUserRepository(UserRepository):
    def __init__(self):
        self._users = {}

    def get(self, user_id):
        return self._users.get(user_id)

    def get_by_email(self, email):
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    def add(self, user):
        self._users[user.id] = user
        return user


class InMemoryChatRepository(ChatRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._rooms = {}

    def add_message(self, room_id, message):
        if not message.id:
            message.id = uuid.uuid4().hex
        with self._lock:
            self._rooms.setdefault(room_id, []).append(message.to_dict())
        return message

    def list_messages(self, room_id, limit=100):
        with self._lock:
            docs = list(self._rooms.get(room_id, []))
        messages = [ChatMessage.from_dict(doc) for doc in docs]
        messages.sort(key=lambda m: m.timestamp)
        return messages[-limit:] if limit else []


# ==============================================================================
# FIRESTORE BACK END
# ==============================================================================

class FirestoreTimeTrackingRepository(TimeTrackingRepository):
    """users/{uid}/timeTrackingState/currentState plus users/{uid}/timeTrackingLogs/{sessionId}."""

    def __init__(self, db):
        self.db = db

    def _state_ref(self, user_id):
        return self.db.collection('users').document(user_id).collection('timeTrackingState').document('currentState')

    def _logs_ref(self, user_id):
        return self.db.collection('users').document(user_id).collection('timeTrackingLogs')

    def new_session_id(self):
        # Generated client-side, the same way the web app allocated log ids
        return self.db.collection('users').document().id

    def load_state(self, user_id):
        try:
            snapshot = self._state_ref(user_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not load tracking state: {e}") from e
        if not snapshot.exists:
            return None
        return state_from_dict(snapshot.to_dict())

    def load_session(self, user_id, session_id):
        try:
            snapshot = self._logs_ref(user_id).document(session_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not load session {session_id}: {e}") from e
        if not snapshot.exists:
            return None
        return TimeTrackingSession.from_dict(snapshot.to_dict(), snapshot.id)

    def list_sessions(self, user_id, limit=20):
        query = self._logs_ref(user_id).order_by('startTime', direction=firestore.Query.DESCENDING).limit(limit)
        try:
            return [TimeTrackingSession.from_dict(doc.to_dict(), doc.id) for doc in query.stream()]
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not list sessions: {e}") from e

    def save(self, user_id, state, expected_version, session=None):
        state_ref = self._state_ref(user_id)
        session_ref = self._logs_ref(user_id).document(session.id) if session is not None else None

        @firestore.transactional
        def write(transaction):
            snapshot = state_ref.get(transaction=transaction)
            current_version = (snapshot.to_dict() or {}).get('version', 0) if snapshot.exists else 0
            if current_version != expected_version:
                raise StaleStateError(expected_version, current_version)
            saved = state.copy(version=current_version + 1)
            transaction.set(state_ref, saved.to_dict())
            if session_ref is not None:
                transaction.set(session_ref, session.to_dict())
            return saved

        try:
            return write(self.db.transaction())
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not save tracking state: {e}") from e

    def subscribe(self, user_id, callback):
        def on_snapshot(doc_snapshots, changes, read_time):
            for doc in doc_snapshots:
                if doc.exists:
                    try:
                        state = state_from_dict(doc.to_dict())
                    except CorruptStateError as e:
                        logger.warning(f"Ignoring unreadable tracking state for {user_id}: {e}")
                        continue
                    callback(state)

        watch = self._state_ref(user_id).on_snapshot(on_snapshot)
        return watch.unsubscribe


class FirestoreWhiteboardRepository(WhiteboardRepository):
    """Strokes live in the study room document's ``whiteboardDrawing`` array."""

    def __init__(self, db):
        self.db = db

    def _room_ref(self, room_id):
        return self.db.collection('studyRooms').document(room_id)

    def list_strokes(self, room_id):
        try:
            snapshot = self._room_ref(room_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not load whiteboard for room {room_id}: {e}") from e
        if not snapshot.exists:
            return []
        return strokes_from_list((snapshot.to_dict() or {}).get('whiteboardDrawing'), room_id)

    def add_stroke(self, room_id, stroke):
        try:
            self._room_ref(room_id).set({'whiteboardDrawing': firestore.ArrayUnion([stroke.to_dict()])}, merge=True)
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not save whiteboard stroke: {e}") from e
        return stroke

    def clear(self, room_id):
        try:
            self._room_ref(room_id).set({'whiteboardDrawing': []}, merge=True)
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not clear whiteboard: {e}") from e

    def subscribe(self, room_id, callback):
        def on_snapshot(doc_snapshots, changes, read_time):
            for doc in doc_snapshots:
                data = doc.to_dict() if doc.exists else {}
                callback(strokes_from_list((data or {}).get('whiteboardDrawing'), room_id))

        watch = self._room_ref(room_id).on_snapshot(on_snapshot)
        return watch.unsubscribe


class FirestoreUserRepository(UserRepository):
    def __init__(self, db):
        self.db = db

    def get(self, user_id):
        try:
            user_doc = self.db.collection('users').document(user_id).get()
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not load user {user_id}: {e}") from e
        if user_doc.exists:
            return User.from_dict(user_doc.to_dict())
        return None

    def get_by_email(self, email):
        query = self.db.collection('users').where(filter=firestore.FieldFilter('email', '==', email)).limit(1)
        try:
            user_docs = list(query.stream())
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not look up user by email: {e}") from e
        for user_doc in user_docs:
            return User.from_dict(user_doc.to_dict())
        return None

    def add(self, user):
        try:
            self.db.collection('users').document(user.id).set(user.to_dict())
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not save user {user.id}: {e}") from e
        return user


class FirestoreChatRepository(ChatRepository):
    """studyRooms/{roomId}/messages, ordered by timestamp."""

    def __init__(self, db):
        self.db = db

    def _messages_ref(self, room_id):
        return self.db.collection('studyRooms').document(room_id).collection('messages')

    def add_message(self, room_id, message):
        data = message.to_dict()
        data.pop('id')
        try:
            _, doc_ref = self._messages_ref(room_id).add(data)
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not save message in room {room_id}: {e}") from e
        message.id = doc_ref.id
        return message

    def list_messages(self, room_id, limit=100):
        query = self._messages_ref(room_id).order_by('timestamp', direction=firestore.Query.DESCENDING).limit(limit)
        try:
            docs = list(query.stream())
        except google_exceptions.GoogleAPICallError as e:
            raise PersistenceError(f"Could not load messages for room {room_id}: {e}") from e
        return [ChatMessage.from_dict(doc.to_dict(), doc.id) for doc in reversed(docs)]
