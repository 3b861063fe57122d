#!/usr/bin/env python3
"""Realtime relay for the shared board and call signaling, plus the small
HTTP surface (health, chat, transport config).

HTTP runs on FastAPI under uvicorn. In isolated mode the realtime websocket
gets its own `websockets` listener; in colocated mode it rides on the HTTP app.

Usage:
    huddle-relay                       # mode from HUDDLE_MODE / RENDER_EXTERNAL_URL
    huddle-relay --mode isolated --port 3001 --socket-port 3002
    CLIENT_ORIGIN=https://app.example huddle-relay --mode colocated
"""
import argparse, asyncio, logging, sys
from typing import AsyncIterator, Optional

import uvicorn
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError

from huddle import events
from huddle.broadcast import BroadcastRelay
from huddle.chat import ChatFeed, store_for
from huddle.config import MODES, Settings, configure_logging
from huddle.errors import (AlreadyInSession, ChatStoreError, ConfigError, InvalidSignal,
                           MalformedEvent, TargetUnavailable)
from huddle.http_api import create_app
from huddle.registry import Closer, ConnectionRegistry, Sender
from huddle.sessions import HANG_UP, ICE_FAILURE, CallSessionTracker
from huddle.transport import select_transport

logger = logging.getLogger(__name__)

SIGNAL_ERRORS = (TargetUnavailable, AlreadyInSession, InvalidSignal)


class RelayServer:
    def __init__(self, settings: Settings, chat_store=None):
        self.settings = settings
        self.plan = select_transport(settings)
        self.registry = ConnectionRegistry(settings.outbox_size)
        self.relay = BroadcastRelay(self.registry)
        self.calls = CallSessionTracker(self.registry)
        self.chat = ChatFeed(chat_store or store_for(settings.chat_store_url), self.relay)
        self.registry.on_release(self._announce_departure)
        self._http: Optional[uvicorn.Server] = None
        self._http_task: Optional[asyncio.Task] = None
        self._http_socket = None
        self._realtime: Optional[Server] = None

    # ============ CONNECTIONS ============

    async def serve_connection(self, send: Sender, close: Closer, incoming: AsyncIterator, remote=None):
        """Run one accepted websocket for its whole life, whichever listener took it."""
        cid = self.registry.register(send, close)
        logger.info('%s connected from %s', cid, remote)
        self.registry.deliver(cid, events.encode_frame(events.WELCOME, {
            'connectionId': cid,
            'peers': [p for p in self.registry.live_ids() if p != cid],
            'mode': self.plan.mode,
        }))
        self.relay.publish(cid, events.PEER_JOINED, {'connectionId': cid})
        try:
            async for raw in incoming:
                # released after a failed write: nothing more from this id is trusted
                if not self.registry.is_live(cid):
                    break
                await self.dispatch(cid, raw)
        finally:
            self.registry.release(cid)

    async def handle(self, ws: ServerConnection):
        """Handler for the dedicated websockets listener."""
        try:
            await self.serve_connection(ws.send, ws.close, ws, ws.remote_address)
        except ConnectionClosedError as e:
            logger.info('connection from %s dropped: %s', ws.remote_address, e)

    def _announce_departure(self, cid: str):
        self.relay.publish(cid, events.PEER_LEFT, {'connectionId': cid})

    # ============ DISPATCH ============

    async def dispatch(self, cid: str, raw):
        try:
            event = events.parse_frame(raw)
        except MalformedEvent as e:
            logger.warning('dropped frame from %s: %s', cid, e)
            return

        if isinstance(event, events.DrawEvent):
            self.relay.publish(cid, events.DRAW_LINE, event.as_payload())
        elif isinstance(event, events.ClearBoard):
            self.relay.publish(cid, events.CLEAR_BOARD)
        elif isinstance(event, events.SignalingMessage):
            self._signal(cid, event)
        elif isinstance(event, events.CallControl):
            self._control(cid, event)
        elif isinstance(event, events.ChatCommand):
            await self._chat(cid, event)

    def _signal(self, cid: str, msg: events.SignalingMessage):
        relay = {
            events.VIDEO_OFFER: self.calls.relay_offer,
            events.VIDEO_ANSWER: self.calls.relay_answer,
            events.ICE_CANDIDATE: self.calls.relay_ice_candidate,
        }[msg.kind]
        try:
            relay(cid, msg.target_id, msg.payload)
        except SIGNAL_ERRORS as e:
            self._call_error(cid, msg.kind, e.reason, msg.target_id)

    def _control(self, cid: str, ctl: events.CallControl):
        session = self.calls.session_for(cid)
        if session is None or (ctl.target_id and session.peer_of(cid) != ctl.target_id):
            self._call_error(cid, ctl.kind, 'no active call', ctl.target_id)
            return
        if ctl.kind == events.CALL_CONNECTED:
            try:
                self.calls.notify_connected(session.session_id, cid)
            except InvalidSignal as e:
                self._call_error(cid, ctl.kind, e.reason, ctl.target_id)
        elif ctl.kind == events.HANG_UP:
            self.calls.close(session.session_id, HANG_UP)
        elif ctl.kind == events.ICE_FAILED:
            self.calls.close(session.session_id, ICE_FAILURE)

    def _call_error(self, cid, kind, reason, target_id):
        logger.warning('%s from %s rejected: %s', kind, cid, reason)
        self.registry.deliver(cid, events.encode_frame(events.CALL_ERROR, {
            'reason': reason, 'targetId': target_id
        }))

    async def _chat(self, cid: str, cmd: events.ChatCommand):
        try:
            if cmd.kind == events.CHAT_SEND:
                await self.chat.post(cmd.user, cmd.text)
            else:
                await self.chat.clear()
        except ChatStoreError as e:
            logger.warning('chat store error for %s: %s', cid, e)
            self.registry.deliver(cid, events.encode_frame(events.CHAT_ERROR, {'reason': str(e)}))

    # ============ LIFECYCLE ============

    @property
    def http_port(self) -> int:
        if self._http_socket is None:
            return self.plan.http_address.port
        return self._http_socket.getsockname()[1]

    @property
    def realtime_port(self) -> int:
        if self.plan.shares_http:
            return self.http_port
        if self._realtime is None:
            return self.plan.listener_address.port
        return next(iter(self._realtime.sockets)).getsockname()[1]

    async def start(self):
        plan = self.plan
        config = uvicorn.Config(
            create_app(self), host=plan.http_address.host, port=plan.http_address.port,
            ws='websockets-sansio', lifespan='off', log_config=None,
            log_level=self.settings.log_level.lower(), timeout_graceful_shutdown=5,
        )
        self._http_socket = config.bind_socket()
        self._http = uvicorn.Server(config)
        self._http_task = asyncio.create_task(self._http.serve(sockets=[self._http_socket]))
        while not self._http.started:
            if self._http_task.done():
                await self._http_task
                raise RuntimeError('HTTP listener exited during startup')
            await asyncio.sleep(0.01)

        if not plan.shares_http:
            origins = list(plan.allowed_origins) if plan.allowed_origins is not None else None
            self._realtime = await serve(
                self.handle, plan.listener_address.host, plan.listener_address.port,
                origins=origins,
            )
        logger.info('HTTP on %s:%d, realtime on %s:%d (%s)',
                    plan.http_address.host, self.http_port,
                    plan.listener_address.host, self.realtime_port, plan.mode)

    async def serve_forever(self):
        """Return once the HTTP listener stops (e.g. on SIGINT/SIGTERM)."""
        await self._http_task

    async def stop(self):
        self.registry.close_all()
        await self.registry.wait_closed()
        if self._realtime is not None:
            self._realtime.close()
            await self._realtime.wait_closed()
            self._realtime = None
        if self._http is not None:
            self._http.should_exit = True
            await self._http_task
            self._http = self._http_task = self._http_socket = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()


async def run(settings: Settings):
    async with RelayServer(settings) as server:
        await server.serve_forever()


def main(argv=None):
    p = argparse.ArgumentParser(description='Realtime relay for the shared board and video calls')
    p.add_argument('--mode', choices=MODES, help='colocated: share the HTTP port; isolated: dedicated socket port')
    p.add_argument('--host')
    p.add_argument('--port', type=int)
    p.add_argument('--socket-port', type=int)
    args = p.parse_args(argv)

    try:
        settings = Settings.from_env().override(
            mode=args.mode, host=args.host, port=args.port, socket_port=args.socket_port
        )
        configure_logging(settings.log_level)
        asyncio.run(run(settings))
    except ConfigError as e:
        sys.exit(f'config error: {e}')
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
