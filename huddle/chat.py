"""Chat history lives in an external document store; this module only adapts
to it and tells connected clients when it changed."""
import asyncio, logging, uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import requests

from huddle.errors import ChatStoreError
from huddle.events import CHAT_UPDATED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    id: str
    user: str
    text: str
    timestamp: datetime

    def as_dict(self) -> dict:
        return {'id': self.id, 'user': self.user, 'text': self.text,
                'timestamp': self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, doc: dict) -> 'ChatMessage':
        try:
            ts = doc['timestamp']
            if not isinstance(ts, datetime):
                ts = datetime.fromisoformat(str(ts).replace('Z', '+00:00'))
            return cls(str(doc['id']), str(doc.get('user', '')), str(doc.get('text', '')), ts)
        except (KeyError, ValueError) as e:
            raise ChatStoreError(f'bad chat document {doc!r}: {e}') from None


class MemoryChatStore:
    """Process-local store, used when no external store is configured."""

    def __init__(self):
        self._messages: List[ChatMessage] = []

    async def list(self) -> List[ChatMessage]:
        return sorted(self._messages, key=lambda m: m.timestamp)

    async def append(self, user: str, text: str) -> ChatMessage:
        msg = ChatMessage(uuid.uuid4().hex, user, text, datetime.now(timezone.utc))
        self._messages.append(msg)
        return msg

    async def clear_all(self) -> int:
        count = len(self._messages)
        self._messages.clear()
        return count


class RestChatStore:
    """Document store reached over plain HTTP: GET/POST/DELETE {base}/messages."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.url = base_url.rstrip('/') + '/messages'
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method: str, **kwargs):
        try:
            r = self.session.request(method, self.url, timeout=self.timeout, **kwargs)
            r.raise_for_status()
            return r.json() if r.content else None
        except requests.RequestException as e:
            raise ChatStoreError(f'{method} {self.url} failed: {e}') from e
        except ValueError as e:
            raise ChatStoreError(f'{method} {self.url} returned invalid JSON') from e

    def _shaped(self, method: str, body, kind: type):
        """Empty bodies become an empty kind; anything else must already be one."""
        if body is None:
            return kind()
        if not isinstance(body, kind):
            raise ChatStoreError(f'{method} {self.url} returned {type(body).__name__}, expected {kind.__name__}')
        return body

    async def list(self) -> List[ChatMessage]:
        docs = await asyncio.to_thread(self._call, 'GET', params={'orderBy': 'timestamp'})
        docs = self._shaped('GET', docs, list)
        if not all(isinstance(d, dict) for d in docs):
            raise ChatStoreError(f'GET {self.url} returned a non-object message')
        messages = [ChatMessage.from_dict(d) for d in docs]
        return sorted(messages, key=lambda m: m.timestamp)

    async def append(self, user: str, text: str) -> ChatMessage:
        now = datetime.now(timezone.utc)
        doc = await asyncio.to_thread(self._call, 'POST', json={
            'user': user, 'text': text, 'timestamp': now.isoformat()
        })
        doc = self._shaped('POST', doc, dict)
        return ChatMessage(str(doc.get('id', '')), user, text, now)

    async def clear_all(self) -> int:
        result = self._shaped('DELETE', await asyncio.to_thread(self._call, 'DELETE'), dict)
        try:
            return int(result.get('deleted', 0))
        except (TypeError, ValueError) as e:
            raise ChatStoreError(f'DELETE {self.url} returned a bad count: {result!r}') from e


def store_for(url: Optional[str]):
    return RestChatStore(url) if url else MemoryChatStore()


class ChatFeed:
    """Store writes followed by a chat-updated notice to every client."""

    def __init__(self, store, relay):
        self.store = store
        self.relay = relay

    async def history(self) -> List[dict]:
        return [m.as_dict() for m in await self.store.list()]

    async def post(self, user: str, text: str) -> ChatMessage:
        msg = await self.store.append(user, text)
        self.relay.publish_all(CHAT_UPDATED)
        return msg

    async def clear(self) -> int:
        count = await self.store.clear_all()
        logger.info('chat cleared (%d messages)', count)
        self.relay.publish_all(CHAT_UPDATED)
        return count
