"""In-memory session registry: session id -> role sockets, capture state, history."""

import logging
import threading
import time
from collections import deque

import config
from capture import CaptureState

logger = logging.getLogger(__name__)

MAGICIAN = "magician"
SPECTATOR = "spectator"
ROLES = (MAGICIAN, SPECTATOR)


class Session:
    def __init__(self, session_id, now=None):
        self.id = session_id
        self.sockets = {}          # role -> socket id
        self.capture = CaptureState()
        self.transcripts = deque(maxlen=config.TRANSCRIPT_LOG_LIMIT)  # latest chunk transcripts
        self.chunks_received = 0
        self.history = []          # pipeline results
        self.last_activity = now if now is not None else time.time()

    def touch(self, now=None):
        self.last_activity = now if now is not None else time.time()

    def peer_of(self, role):
        return MAGICIAN if role == SPECTATOR else SPECTATOR

    def is_ready(self):
        return all(r in self.sockets for r in ROLES)

    def to_dict(self):
        return {
            "sessionId": self.id,
            "roles": sorted(self.sockets),
            "isRecording": self.capture.is_recording,
            "chunksReceived": self.chunks_received,
            "lastActivity": self.last_activity,
        }


class SessionRegistry:
    """
    All sessions of the process. One lock guards the maps; the session
    objects themselves are mutated by whichever handler owns the request.
    """

    def __init__(self, ttl=None):
        self.ttl = config.SESSION_TTL_SECONDS if ttl is None else ttl
        self._sessions = {}
        self._by_sid = {}          # socket id -> (session id, role)
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, session_id):
        return session_id in self._sessions

    def ids(self):
        with self._lock:
            return list(self._sessions)

    def get(self, session_id):
        return self._sessions.get(session_id)

    def lookup_sid(self, sid):
        """(session, role) for a connected socket, or (None, None)."""
        with self._lock:
            session_id, role = self._by_sid.get(sid, (None, None))
            return self._sessions.get(session_id), role

    def join(self, session_id, role, sid):
        """
        Register ``sid`` as ``role`` in the session, creating it on first join.
        A second socket for the same role replaces the first.
        Returns ``(session, replaced_sid)``.
        """
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        with self._lock:
            # A socket belongs to at most one session/role at a time
            previous = self._detach(sid)
            if previous is not None and previous.id != session_id and not previous.sockets:
                self._discard(previous)
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id)
                self._sessions[session_id] = session
                logger.info("Session created: %s", session_id)
            replaced = session.sockets.get(role)
            if replaced:
                self._by_sid.pop(replaced, None)
            session.sockets[role] = sid
            self._by_sid[sid] = (session_id, role)
            session.touch()
            return session, replaced

    def leave(self, sid):
        """
        Drop a disconnected socket. The session (with its capture buffer and
        history) is removed once no role is connected.
        Returns ``(session, role, removed)``.
        """
        with self._lock:
            _, role = self._by_sid.get(sid, (None, None))
            session = self._detach(sid)
            if session is None:
                return None, None, False
            removed = not session.sockets
            if removed:
                self._discard(session)
            return session, role, removed

    def sweep(self, now=None):
        """Remove sessions idle for longer than the TTL. Returns the removed ids."""
        now = now if now is not None else time.time()
        with self._lock:
            stale = [s for s in self._sessions.values() if now - s.last_activity > self.ttl]
            for session in stale:
                logger.info("Cleaning idle session %s", session.id)
                self._discard(session)
            return [s.id for s in stale]

    def _detach(self, sid):
        session_id, role = self._by_sid.pop(sid, (None, None))
        session = self._sessions.get(session_id)
        if session is not None and session.sockets.get(role) == sid:
            del session.sockets[role]
        return session

    def _discard(self, session):
        for sid in session.sockets.values():
            self._by_sid.pop(sid, None)
        session.sockets.clear()
        session.history.clear()
        session.transcripts.clear()
        session.capture.take_audio()
        self._sessions.pop(session.id, None)
        logger.info("Session removed: %s", session.id)
