"""One side of a video call, negotiated through the relay with aiortc.

No camera here: the peer opens a data channel so the ICE/DTLS path is real.

Usage:
    peer = CallPeer(client)
    await peer.call(friend_id)
    while True:
        await peer.handle(await client.receive())
"""
import asyncio, logging
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from huddle import events
from huddle.client import Frame, HuddleClient

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = ['stun:stun.l.google.com:19302', 'stun:global.stun.twilio.com:3478']

READY = 'Online - Ready to call'


def parse_remote_candidate(payload) -> Optional[RTCIceCandidate]:
    """Browser-style candidate ({candidate, sdpMid, sdpMLineIndex} or bare line).

    Returns None for the end-of-candidates marker.
    """
    if not payload:
        return None
    if isinstance(payload, str):
        line, mid, index = payload, None, 0
    else:
        line = payload.get('candidate') or ''
        mid, index = payload.get('sdpMid'), payload.get('sdpMLineIndex')
    if not line:
        return None
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    if len(line.split()) < 8:
        raise ValueError(f'not an ICE candidate: {line!r}')
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = mid
    # aiortc needs one of the two to pick the transceiver
    candidate.sdpMLineIndex = 0 if mid is None and index is None else index
    return candidate


class CallPeer:
    def __init__(self, client: HuddleClient, ice_servers: Optional[List[str]] = None):
        self.client = client
        self.ice_servers = DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers
        self.pc: Optional[RTCPeerConnection] = None
        self.channel = None
        self.peer_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.status = READY
        self._connected = asyncio.Event()

    def _create_pc(self):
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=[u]) for u in self.ice_servers])
        self.pc = pc = RTCPeerConnection(config)

        @pc.on('connectionstatechange')
        async def on_state():
            logger.info('call with %s: %s', self.peer_id, pc.connectionState)
            if pc.connectionState == 'connected':
                self.status = 'Connected'
                self._connected.set()
                await self.client.report_connected(self.peer_id)
            elif pc.connectionState == 'failed':
                self.status = 'network error'
                await self.client.report_ice_failure(self.peer_id)
                await self._teardown()

        @pc.on('datachannel')
        def on_dc(channel):
            self.channel = channel

    # ============ PUBLIC API ============

    async def call(self, target_id: str):
        """Send an offer to target_id. The answer arrives through handle()."""
        self.status = 'Calling...'
        self.peer_id = target_id
        self._create_pc()
        self.channel = self.pc.createDataChannel('huddle', ordered=True)
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._wait_ice()
        await self.client.offer(target_id, self._local_description())

    async def handle(self, frame: Frame) -> bool:
        """Feed one frame from the relay. Returns False if it is not call traffic."""
        data = frame.data
        if frame.type == events.VIDEO_OFFER:
            await self._answer(data)
        elif frame.type == events.VIDEO_ANSWER:
            if self.pc is None:
                return True
            await self.pc.setRemoteDescription(self._description(data['sdp'], 'answer'))
            self.session_id = data.get('sessionId')
        elif frame.type == events.ICE_CANDIDATE:
            if self.pc is None or self.pc.remoteDescription is None:
                return True
            try:
                candidate = parse_remote_candidate(data.get('candidate'))
            except ValueError as e:
                logger.warning('ignoring candidate: %s', e)
                return True
            await self.pc.addIceCandidate(candidate)
        elif frame.type == events.CALL_CLOSED:
            await self._teardown()
            self.status = READY
        elif frame.type == events.CALL_ERROR:
            await self._teardown()
            self.status = data.get('reason', 'Call Failed')
        else:
            return False
        return True

    async def hang_up(self):
        if self.peer_id:
            await self.client.hang_up(self.peer_id)
        await self._teardown()
        self.status = READY

    async def wait_connected(self, timeout: float = 15.0):
        await asyncio.wait_for(self._connected.wait(), timeout)

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    # ============ INTERNALS ============

    async def _answer(self, data: dict):
        self.status = 'Incoming call...'
        await self._teardown()
        self.peer_id = data['fromId']
        self.session_id = data.get('sessionId')
        self._create_pc()
        await self.pc.setRemoteDescription(self._description(data['sdp'], 'offer'))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self._wait_ice()
        await self.client.answer(self.peer_id, self._local_description())

    @staticmethod
    def _description(sdp, kind: str) -> RTCSessionDescription:
        if isinstance(sdp, dict):
            return RTCSessionDescription(sdp=sdp['sdp'], type=sdp.get('type', kind))
        return RTCSessionDescription(sdp=sdp, type=kind)

    def _local_description(self) -> dict:
        desc = self.pc.localDescription
        return {'type': desc.type, 'sdp': desc.sdp}

    async def _teardown(self):
        self._connected.clear()
        pc, self.pc, self.channel = self.pc, None, None
        self.peer_id = self.session_id = None
        if pc is not None:
            await pc.close()

    async def _wait_ice(self, timeout=5.0):
        """Wait for ICE gathering to complete."""
        if self.pc.iceGatheringState == 'complete':
            return
        done = asyncio.Event()
        pc = self.pc

        @pc.on('icegatheringstatechange')
        def check():
            if pc.iceGatheringState == 'complete':
                done.set()
        try:
            await asyncio.wait_for(done.wait(), timeout)
        except asyncio.TimeoutError:
            logger.info('ICE gathering timed out, sending the candidates we have')
