"""Wire frames: {"type": <event>, "data": {...}} as JSON text.

The relay only looks at the fields it routes on; payloads are passed on
untouched.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from huddle.errors import MalformedEvent

# ============ EVENT NAMES ============

DRAW_LINE = 'draw_line'
CLEAR_BOARD = 'clear_board'
VIDEO_OFFER = 'video-offer'
VIDEO_ANSWER = 'video-answer'
ICE_CANDIDATE = 'ice-candidate'
CALL_CONNECTED = 'call-connected'
HANG_UP = 'hang-up'
ICE_FAILED = 'ice-failed'
CHAT_SEND = 'chat_send'
CHAT_CLEAR = 'chat_clear'

# server -> client only
WELCOME = 'welcome'
PEER_JOINED = 'peer-joined'
PEER_LEFT = 'peer-left'
CALL_ERROR = 'call-error'
CALL_CLOSED = 'call-closed'
CHAT_UPDATED = 'chat-updated'
CHAT_ERROR = 'chat-error'

SIGNALS = (VIDEO_OFFER, VIDEO_ANSWER, ICE_CANDIDATE)
CONTROLS = (CALL_CONNECTED, HANG_UP, ICE_FAILED)

# routing field carrying the opaque payload, per signal kind
_SIGNAL_BODY = {VIDEO_OFFER: 'sdp', VIDEO_ANSWER: 'sdp', ICE_CANDIDATE: 'candidate'}

# ============ TYPES ============

@dataclass(frozen=True)
class DrawEvent:
    x: float
    y: float
    color: str

    def as_payload(self) -> dict:
        return {'x': self.x, 'y': self.y, 'color': self.color}


@dataclass(frozen=True)
class ClearBoard:
    pass


@dataclass(frozen=True)
class SignalingMessage:
    kind: str  # one of SIGNALS
    target_id: str
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class CallControl:
    kind: str  # one of CONTROLS
    target_id: Optional[str] = None


@dataclass(frozen=True)
class ChatCommand:
    kind: str  # CHAT_SEND or CHAT_CLEAR
    user: str = ''
    text: str = ''


Event = Union[DrawEvent, ClearBoard, SignalingMessage, CallControl, ChatCommand]

# ============ CODEC ============

def encode_frame(event_type: str, data: Optional[dict] = None) -> str:
    frame = {'type': event_type}
    if data is not None:
        frame['data'] = data
    return json.dumps(frame, separators=(',', ':'))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _target(data: dict, required: bool = True) -> Optional[str]:
    target = data.get('targetId')
    if target is None and not required:
        return None
    if not isinstance(target, str) or not target:
        raise MalformedEvent('missing targetId')
    return target


def parse_frame(raw: Union[str, bytes]) -> Event:
    """Decode one client frame, raising MalformedEvent if it cannot be routed."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f'not JSON: {e}') from None
    if not isinstance(frame, dict):
        raise MalformedEvent('frame must be an object')

    kind = frame.get('type')
    data = frame.get('data')
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEvent('data must be an object')

    if kind == DRAW_LINE:
        x, y, color = data.get('x'), data.get('y'), data.get('color')
        if not (_is_number(x) and _is_number(y)):
            raise MalformedEvent('draw_line needs numeric x and y')
        if not isinstance(color, str):
            raise MalformedEvent('draw_line needs a color string')
        return DrawEvent(x, y, color)
    if kind == CLEAR_BOARD:
        return ClearBoard()
    if kind in SIGNALS:
        target = _target(data)
        if data.get(_SIGNAL_BODY[kind]) is None and kind != ICE_CANDIDATE:
            raise MalformedEvent(f'{kind} needs {_SIGNAL_BODY[kind]}')
        # null candidate is the end-of-candidates marker, the key must still be there
        if kind == ICE_CANDIDATE and 'candidate' not in data:
            raise MalformedEvent('ice-candidate needs candidate')
        return SignalingMessage(kind, target, data)
    if kind in CONTROLS:
        return CallControl(kind, _target(data, required=False))
    if kind == CHAT_SEND:
        user, text = data.get('user'), data.get('text')
        if not isinstance(user, str) or not isinstance(text, str) or not text.strip():
            raise MalformedEvent('chat_send needs user and non-empty text')
        return ChatCommand(CHAT_SEND, user, text)
    if kind == CHAT_CLEAR:
        return ChatCommand(CHAT_CLEAR)
    raise MalformedEvent(f'unknown event type {kind!r}')
