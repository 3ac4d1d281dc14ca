"""
shared/realtime/websocket.py
Bridge from a change-event stream to a WebSocket client.
The stream is torn down as soon as the client goes away.
"""

import asyncio
import logging
from typing import AsyncIterator

from fastapi import HTTPException, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from shared.middleware.auth import get_websocket_user
from shared.models.models import Profile
from shared.realtime.feed import ChangeEvent

logger = logging.getLogger(__name__)


async def authenticate_websocket(websocket: WebSocket, db: AsyncSession):
    """Resolve the caller from ?token=, or close the socket with 1008 and return None."""
    try:
        return await get_websocket_user(websocket, db)
    except HTTPException as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
        return None


async def _forward(websocket: WebSocket, events: AsyncIterator[ChangeEvent]) -> None:
    async for event in events:
        await websocket.send_json(
            {"table": event.table, "action": event.action.value, "row": event.row}
        )


async def stream_to_websocket(
    websocket: WebSocket,
    user: Profile,
    events: AsyncIterator[ChangeEvent],
) -> None:
    """
    Forward events until the client disconnects. Inbound frames are read
    and ignored (clients may ping); a disconnect cancels the forwarder,
    which closes the underlying subscription.
    """
    forwarder = asyncio.create_task(_forward(websocket, events))
    try:
        while True:
            receive = asyncio.create_task(websocket.receive_text())
            done, _ = await asyncio.wait(
                {receive, forwarder}, return_when=asyncio.FIRST_COMPLETED
            )
            if forwarder in done:
                receive.cancel()
                forwarder.result()
                break
            receive.result()
    except WebSocketDisconnect:
        logger.debug("WebSocket closed by client %s", user.id)
    finally:
        forwarder.cancel()
        try:
            await forwarder
        except (asyncio.CancelledError, WebSocketDisconnect):
            pass
        await events.aclose()
