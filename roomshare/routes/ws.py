import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..errors import RoomShareError, SlowConsumerError
from ..schemas.events import ChangeKind, EntityKind

logger = logging.getLogger(__name__)

router = APIRouter()

CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


async def _forward_events(websocket: WebSocket, session) -> str:
    """Push every change event to the client until the room is deleted or the feed closes"""
    while True:
        event = await session.next_change()
        if event is None:
            return 'closed'
        await websocket.send_json({'type': 'event', **event.model_dump(mode='json')})
        if event.entity == EntityKind.ROOM and event.change == ChangeKind.DELETE:
            return 'deleted'


async def _receive_edits(websocket: WebSocket, session) -> str:
    while True:
        try:
            data = await websocket.receive_text()
        except WebSocketDisconnect:
            return 'disconnected'
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            await websocket.send_json({'type': 'error', 'error': 'ValidationError', 'message': 'Invalid JSON'})
            continue
        if not isinstance(message, dict) or message.get('type') != 'update':
            await websocket.send_json({'type': 'error', 'error': 'ValidationError', 'message': 'Unsupported message'})
            continue
        try:
            await session.edit(message.get('content'))
        except RoomShareError as e:
            await websocket.send_json({'type': 'error', 'error': e.__class__.__name__, 'message': e.message})


@router.websocket('/rooms/{code}')
async def room_ws(websocket: WebSocket, code: str):
    """Live view of one room.

    The first frame is a snapshot of the room and its attachments; every later frame is
    a change event. Clients send ``{"type": "update", "content": ...}`` to write content.
    Missed events are never replayed: a client that reconnects starts from a new snapshot.
    """
    ctx = websocket.app.state.context
    try:
        session = await ctx.synchronizer.open_session(code)
    except RoomShareError as e:
        logger.info(f"WebSocket connection rejected for room {code}: {e.message}")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    logger.info(f"WebSocket connection accepted for room: {session.code}")
    close_code, reason = 1000, ''
    forward = receive = None
    try:
        attachments = await ctx.attachments.list_attachments(session.code)
        await websocket.send_json({
            'type': 'snapshot',
            'room': session.snapshot(),
            'attachments': [a.snapshot() for a in attachments],
        })
        forward = asyncio.create_task(_forward_events(websocket, session))
        receive = asyncio.create_task(_receive_edits(websocket, session))
        done, _ = await asyncio.wait({forward, receive}, return_when=asyncio.FIRST_COMPLETED)
        if receive in done:
            # client went away
            close_code = None
        else:
            error = forward.exception()
            if isinstance(error, SlowConsumerError):
                close_code, reason = CLOSE_TRY_AGAIN_LATER, error.message
                logger.warning(f"Closing slow WebSocket client on room {session.code}")
            elif error is not None:
                close_code = None
                logger.info(f"WebSocket send failed for room {session.code}: {error!r}")
            elif forward.result() == 'deleted':
                reason = 'Room deleted'
    except WebSocketDisconnect:
        close_code = None
    finally:
        # release the subscription before any await, the handler may be cancelled below
        session.close()
        logger.info(f"WebSocket connection for room {session.code} finished")
        pending = [t for t in (forward, receive) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            # asyncio.wait keeps an outer cancellation intact, gather would replace it
            await asyncio.wait(pending)

    if close_code is not None:
        try:
            await websocket.close(code=close_code, reason=reason)
        except RuntimeError:
            # client already gone
            pass
