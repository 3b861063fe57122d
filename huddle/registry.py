"""Connection registry: ephemeral ids, per-connection outboxes, release hooks.

Every mutation runs synchronously on the event loop, so the registry needs no
lock. Frames are only queued here; each connection's writer task does the I/O,
which keeps one slow socket from holding up the others.
"""
import asyncio, logging, time, uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from huddle.errors import TransportWriteFailure

logger = logging.getLogger(__name__)

Sender = Callable[[str], Awaitable[None]]
Closer = Callable[[int, str], Awaitable[None]]
ReleaseListener = Callable[[str], None]

# websocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_WRITE_FAILED = 1011


@dataclass
class Connection:
    connection_id: str
    send: Sender
    outbox: asyncio.Queue
    close: Optional[Closer] = None
    joined_at: float = field(default_factory=time.time)
    writer: Optional[asyncio.Task] = None


class ConnectionRegistry:
    def __init__(self, outbox_size: int = 256):
        self.outbox_size = outbox_size
        self._connections: Dict[str, Connection] = {}
        self._listeners: List[ReleaseListener] = []
        self._closing: Set[asyncio.Task] = set()

    def __len__(self):
        return len(self._connections)

    def __contains__(self, connection_id):
        return connection_id in self._connections

    def on_release(self, listener: ReleaseListener):
        """Call listener(connection_id) right after a connection is released."""
        self._listeners.append(listener)

    def register(self, send: Sender, close: Optional[Closer] = None) -> str:
        """Track a connection whose handshake already completed. Needs a running loop.

        close(code, reason) shuts the underlying socket; it runs once, on release.
        """
        connection_id = uuid.uuid4().hex
        while connection_id in self._connections:
            connection_id = uuid.uuid4().hex
        conn = Connection(connection_id, send, asyncio.Queue(self.outbox_size), close)
        conn.writer = asyncio.get_running_loop().create_task(self._pump(conn))
        self._connections[connection_id] = conn
        logger.info('registered %s (%d live)', connection_id, len(self._connections))
        return connection_id

    def release(self, connection_id: str, code: int = CLOSE_NORMAL, reason: str = '') -> bool:
        """Forget a connection and close its socket. Releasing twice is a no-op; returns False then."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return False
        if conn.writer is not None and conn.writer is not asyncio.current_task():
            conn.writer.cancel()
        while not conn.outbox.empty():
            conn.outbox.get_nowait()
            conn.outbox.task_done()
        if conn.close is not None:
            task = asyncio.get_running_loop().create_task(self._close(conn, code, reason))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        logger.info('released %s (%d live)', connection_id, len(self._connections))
        for listener in list(self._listeners):
            listener(connection_id)
        return True

    def is_live(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def live_ids(self) -> List[str]:
        return list(self._connections)

    def deliver(self, connection_id: str, frame: str) -> bool:
        """Queue a frame for one connection without blocking."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        try:
            conn.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            self._write_failed(TransportWriteFailure(connection_id, 'outbox full'))
            return False
        return True

    async def drain(self):
        """Wait until every live outbox has been written out."""
        await asyncio.gather(*(c.outbox.join() for c in list(self._connections.values())))

    async def wait_closed(self):
        """Wait for the socket closes scheduled by release()."""
        await asyncio.gather(*list(self._closing))

    def close_all(self):
        for connection_id in self.live_ids():
            self.release(connection_id, CLOSE_GOING_AWAY, 'server shutting down')

    async def _pump(self, conn: Connection):
        while True:
            frame = await conn.outbox.get()
            try:
                await conn.send(frame)
            except Exception as e:
                self._write_failed(TransportWriteFailure(conn.connection_id, e))
                return
            finally:
                conn.outbox.task_done()

    async def _close(self, conn: Connection, code: int, reason: str):
        try:
            await conn.close(code, reason)
        except Exception as e:
            # already gone from the other side
            logger.debug('closing %s: %r', conn.connection_id, e)

    def _write_failed(self, failure: TransportWriteFailure):
        logger.warning('%s, dropping connection', failure)
        self.release(failure.connection_id, CLOSE_WRITE_FAILED, 'write failed')
