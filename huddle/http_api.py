"""
HTTP surface of the relay: health page, chat history and writes, transport config.
In colocated mode the same app also accepts the realtime websocket on '/'.
"""
import logging

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from huddle.errors import ChatStoreError

logger = logging.getLogger(__name__)

# websocket policy violation; closing before accept answers the handshake with 403
CLOSE_POLICY = 1008


class ChatPost(BaseModel):
    user: str = ''
    text: str


def create_app(server) -> FastAPI:
    """Build the app for a RelayServer. CORS follows the server's transport plan."""
    plan = server.plan
    app = FastAPI(title='Huddle relay', docs_url=None, redoc_url=None, openapi_url=None)

    if plan.allowed_origins is None:
        # isolated mode: any origin, echoed back so credentials still work
        cors = {'allow_origin_regex': '.*'}
    else:
        cors = {'allow_origins': list(plan.allowed_origins)}
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
        **cors,
    )

    @app.get('/', response_class=HTMLResponse)
    async def root():
        return '<h1>Server Online</h1>'

    @app.get('/api/chat')
    async def chat_history():
        try:
            return await server.chat.history()
        except ChatStoreError as e:
            logger.warning('chat history unavailable: %s', e)
            raise HTTPException(status_code=502, detail=str(e))

    @app.post('/api/chat')
    async def chat_post(body: ChatPost):
        if not body.text.strip():
            raise HTTPException(status_code=422, detail='text is required')
        try:
            await server.chat.post(body.user, body.text)
        except ChatStoreError as e:
            logger.warning('chat append failed: %s', e)
            raise HTTPException(status_code=502, detail=str(e))
        return {'success': True}

    @app.delete('/api/chat')
    async def chat_clear():
        try:
            await server.chat.clear()
        except ChatStoreError as e:
            logger.warning('chat clear failed: %s', e)
            raise HTTPException(status_code=502, detail=str(e))
        return {'success': True}

    @app.get('/api/transport')
    async def transport():
        return plan.client_config(server.realtime_port)

    if plan.shares_http:
        @app.websocket('/')
        async def realtime(websocket: WebSocket):
            if not plan.accepts_origin(websocket.headers.get('origin')):
                logger.warning('refused websocket from origin %s', websocket.headers.get('origin'))
                await websocket.close(code=CLOSE_POLICY)
                return
            await websocket.accept()
            await server.serve_connection(
                websocket.send_text, websocket.close, _incoming(websocket), websocket.client)

    return app


async def _incoming(websocket: WebSocket):
    """Yield text or binary frames until the client disconnects."""
    while True:
        message = await websocket.receive()
        if message['type'] == 'websocket.disconnect':
            return
        yield message.get('text') if message.get('text') is not None else message.get('bytes')
