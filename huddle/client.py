"""Headless relay client, no browser needed.

Speaks the same frames as the web board and call UI.

Usage:
    client = HuddleClient('ws://localhost:3002')
    my_id = await client.connect()
    await client.draw(10, 20, 'blue')
    frame = await client.receive()            # blocks until a frame arrives
    frame = await client.expect('draw_line')  # skips everything else
    await client.close()
"""
import asyncio, json, logging
from dataclasses import dataclass, field
from typing import List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from huddle import events

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    type: str
    data: dict = field(default_factory=dict)


class HuddleClient:
    def __init__(self, url: str, origin: Optional[str] = None):
        self.url = url
        self.origin = origin
        self.connection_id: Optional[str] = None
        self.peers: List[str] = []
        self.ws: Optional[ClientConnection] = None
        self._frames: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None

    async def connect(self, timeout: float = 10.0) -> str:
        """Open the socket and wait for the server to assign our id."""
        self.ws = await connect(self.url, origin=self.origin, proxy=None, open_timeout=timeout)
        self._reader = asyncio.create_task(self._read())
        welcome = await self.expect(events.WELCOME, timeout)
        self.connection_id = welcome.data['connectionId']
        self.peers = list(welcome.data.get('peers', []))
        return self.connection_id

    async def _read(self):
        try:
            async for raw in self.ws:
                try:
                    msg = json.loads(raw)
                    await self._frames.put(Frame(msg['type'], msg.get('data') or {}))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning('unreadable frame %r: %s', raw, e)
        except ConnectionClosed as e:
            logger.info('connection closed: %s', e)

    async def _send(self, event_type: str, data: Optional[dict] = None):
        await self.ws.send(events.encode_frame(event_type, data))

    # ============ PUBLIC API ============

    async def draw(self, x: float, y: float, color: str):
        await self._send(events.DRAW_LINE, {'x': x, 'y': y, 'color': color})

    async def clear_board(self):
        await self._send(events.CLEAR_BOARD)

    async def offer(self, target_id: str, sdp):
        await self._send(events.VIDEO_OFFER, {'sdp': sdp, 'targetId': target_id})

    async def answer(self, target_id: str, sdp):
        await self._send(events.VIDEO_ANSWER, {'sdp': sdp, 'targetId': target_id})

    async def candidate(self, target_id: str, candidate):
        await self._send(events.ICE_CANDIDATE, {'candidate': candidate, 'targetId': target_id})

    async def report_connected(self, target_id: Optional[str] = None):
        await self._send(events.CALL_CONNECTED, {'targetId': target_id} if target_id else None)

    async def report_ice_failure(self, target_id: Optional[str] = None):
        await self._send(events.ICE_FAILED, {'targetId': target_id} if target_id else None)

    async def hang_up(self, target_id: Optional[str] = None):
        await self._send(events.HANG_UP, {'targetId': target_id} if target_id else None)

    async def post_chat(self, user: str, text: str):
        await self._send(events.CHAT_SEND, {'user': user, 'text': text})

    async def clear_chat(self):
        await self._send(events.CHAT_CLEAR)

    async def send_raw(self, raw: str):
        await self.ws.send(raw)

    async def receive(self, timeout: float = None) -> Frame:
        """Receive next frame. Blocks until one arrives."""
        if timeout:
            return await asyncio.wait_for(self._frames.get(), timeout)
        return await self._frames.get()

    async def expect(self, event_type: str, timeout: float = 5.0) -> Frame:
        """Receive until a frame of event_type shows up, dropping the rest."""
        async def wait():
            while True:
                frame = await self._frames.get()
                if frame.type == event_type:
                    return frame
        return await asyncio.wait_for(wait(), timeout)

    def has_frames(self) -> bool:
        return not self._frames.empty()

    async def close(self):
        if self.ws:
            await self.ws.close()
        if self._reader:
            await self._reader

    async def wait_closed(self, timeout: float = 5.0) -> Optional[int]:
        """Wait for the server to close the socket; returns the close code."""
        await asyncio.wait_for(asyncio.shield(self._reader), timeout)
        return self.ws.close_code

    @property
    def connected(self) -> bool:
        return self.ws is not None and self.connection_id is not None
