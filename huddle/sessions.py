"""Call sessions between two connections.

    idle --offer--> offering --answer--> answering --both report connected--> connected
    offering | answering | connected --hang-up / disconnect / ice failure--> closed

Closed sessions are dropped right away. A connection holds at most one open
session; an offer to or from a busy connection is refused with
AlreadyInSession unless it re-offers the same pair (renegotiation).
"""
import logging, time, uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Set

from huddle import events
from huddle.errors import AlreadyInSession, InvalidSignal, TargetUnavailable
from huddle.registry import ConnectionRegistry

logger = logging.getLogger(__name__)

HANG_UP = 'hang-up'
DISCONNECT = 'disconnect'
ICE_FAILURE = 'ice-failure'


class CallState(str, Enum):
    OFFERING = 'offering'
    ANSWERING = 'answering'
    CONNECTED = 'connected'
    CLOSED = 'closed'


@dataclass
class CallSession:
    session_id: str
    initiator: str
    responder: str
    state: CallState = CallState.OFFERING
    created_at: float = field(default_factory=time.time)
    connected_reports: Set[str] = field(default_factory=set)

    def involves(self, connection_id: str) -> bool:
        return connection_id in (self.initiator, self.responder)

    def peer_of(self, connection_id: str) -> str:
        return self.responder if connection_id == self.initiator else self.initiator


class CallSessionTracker:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._sessions: Dict[str, CallSession] = {}
        self._by_connection: Dict[str, str] = {}  # connection_id -> session_id
        registry.on_release(self._released)

    def __len__(self):
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    def session_for(self, connection_id: str) -> Optional[CallSession]:
        session_id = self._by_connection.get(connection_id)
        return self._sessions.get(session_id) if session_id else None

    # ============ SIGNALS ============

    def relay_offer(self, from_id: str, to_id: str, payload: dict) -> CallSession:
        if from_id == to_id:
            raise InvalidSignal('invalid call')
        if not self.registry.is_live(to_id):
            raise TargetUnavailable(to_id)

        mine, theirs = self.session_for(from_id), self.session_for(to_id)
        if mine is not None and not mine.involves(to_id):
            raise AlreadyInSession(from_id)
        if theirs is not None and not theirs.involves(from_id):
            raise AlreadyInSession(to_id)

        if mine is not None:
            session = mine
            session.initiator, session.responder = from_id, to_id
            session.state = CallState.OFFERING
            session.connected_reports.clear()
            logger.info('session %s renegotiated by %s', session.session_id, from_id)
        else:
            session = CallSession(uuid.uuid4().hex, from_id, to_id)
            self._sessions[session.session_id] = session
            self._by_connection[from_id] = session.session_id
            self._by_connection[to_id] = session.session_id
            logger.info('session %s: %s calling %s', session.session_id, from_id, to_id)

        self._forward(session, events.VIDEO_OFFER, from_id, to_id, payload)
        return session

    def relay_answer(self, from_id: str, to_id: str, payload: dict) -> CallSession:
        if not self.registry.is_live(to_id):
            raise TargetUnavailable(to_id)
        session = self.session_for(from_id)
        if (session is None or session.state is not CallState.OFFERING
                or session.responder != from_id or session.initiator != to_id):
            raise InvalidSignal('no pending offer')
        session.state = CallState.ANSWERING
        logger.info('session %s answered', session.session_id)
        self._forward(session, events.VIDEO_ANSWER, from_id, to_id, payload)
        return session

    def relay_ice_candidate(self, from_id: str, to_id: str, payload: dict) -> CallSession:
        # Trickle ICE: candidates may come before the answer or after connecting.
        if not self.registry.is_live(to_id):
            raise TargetUnavailable(to_id)
        session = self.session_for(from_id)
        if session is None or session.peer_of(from_id) != to_id:
            raise InvalidSignal('no active call')
        self._forward(session, events.ICE_CANDIDATE, from_id, to_id, payload)
        return session

    def notify_connected(self, session_id: str, connection_id: str) -> CallSession:
        """Record that one party finished negotiating; connected once both have."""
        session = self._sessions.get(session_id)
        if session is None or session.state is CallState.OFFERING:
            raise InvalidSignal('no active call')
        if not session.involves(connection_id):
            raise InvalidSignal('not in this call')
        session.connected_reports.add(connection_id)
        if session.state is CallState.ANSWERING and len(session.connected_reports) == 2:
            session.state = CallState.CONNECTED
            logger.info('session %s connected', session_id)
        return session

    def close(self, session_id: str, reason: str) -> Optional[CallSession]:
        """Close and forget a session, telling whichever parties are still live."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.state = CallState.CLOSED
        for party in (session.initiator, session.responder):
            if self._by_connection.get(party) == session_id:
                del self._by_connection[party]
        logger.info('session %s closed (%s)', session_id, reason)
        for party in (session.initiator, session.responder):
            self.registry.deliver(party, events.encode_frame(events.CALL_CLOSED, {
                'sessionId': session_id,
                'peerId': session.peer_of(party),
                'reason': reason,
            }))
        return session

    # ============ INTERNALS ============

    def _forward(self, session, kind, from_id, to_id, payload):
        data = dict(payload)
        data['fromId'] = from_id
        data['sessionId'] = session.session_id
        if not self.registry.deliver(to_id, events.encode_frame(kind, data)):
            logger.warning('%s for session %s not delivered to %s', kind, session.session_id, to_id)

    def _released(self, connection_id: str):
        session = self.session_for(connection_id)
        if session is not None:
            self.close(session.session_id, DISCONNECT)
