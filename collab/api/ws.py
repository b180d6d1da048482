"""Realtime socket: presence, room membership, typing, seen and chat sends.

Clients connect with ``?token=<jwt>``; every inbound frame is
``{"event": ..., "data": {...}}`` and failures come back as an
``error`` event on the same socket.
"""

import json
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from collab.core.errors import ErrorKind, FlowError
from collab.core.security import user_id_from_token
from collab.db.session import async_session_factory
from collab.models.user import User
from collab.realtime.hub import conversation_room, global_room, hub
from collab.services import messaging
from collab.services.conversation import get_for_party

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


def _conversation_id(data: dict) -> int:
    try:
        return int(data["conversation_id"])
    except (KeyError, TypeError, ValueError):
        raise FlowError(ErrorKind.INVALID_INPUT, "conversation_id is required")


async def _handle(ws: WebSocket, user_id: int, event: str, data: dict) -> None:
    async with async_session_factory() as db:
        user = await db.get(User, user_id)
        if user is None:
            raise FlowError(ErrorKind.NOT_AUTHORIZED, "User not found")

        if event == "join":
            await hub.join(ws, global_room(user_id))
            await hub.send_to(ws, "joined", {"room": global_room(user_id)})
        elif event == "join_conversation":
            conversation = await get_for_party(db, _conversation_id(data), user)
            await hub.join(ws, conversation_room(conversation.id))
            await hub.send_to(ws, "joined", {"room": conversation_room(conversation.id)})
        elif event == "leave_conversation":
            await hub.leave(ws, conversation_room(_conversation_id(data)))
        elif event in ("typing_start", "typing_stop"):
            await messaging.set_typing(
                db, _conversation_id(data), user, event == "typing_start",
            )
        elif event == "mark_seen":
            await messaging.mark_seen(db, _conversation_id(data), user)
        elif event == "send_message":
            message = await messaging.send_chat_message(
                db,
                _conversation_id(data),
                user,
                data.get("text") or "",
                media_url=data.get("media_url"),
                client_nonce=data.get("client_nonce"),
            )
            await hub.send_to(ws, "message_sent", messaging.serialize(message))
        else:
            raise FlowError(ErrorKind.INVALID_INPUT, f"Unknown event: {event}")


@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket) -> None:
    token = ws.query_params.get("token") or ""
    try:
        user_id = user_id_from_token(token)
    except HTTPException:
        await ws.close(code=4401)
        return

    await ws.accept()
    await hub.connect(user_id, ws)
    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
                event = frame["event"]
                data = frame.get("data") or {}
                if not isinstance(data, dict):
                    raise TypeError
            except (ValueError, KeyError, TypeError, AttributeError):
                await hub.send_to(ws, "error", {"error": "invalid_input", "detail": "Malformed frame"})
                continue
            try:
                await _handle(ws, user_id, event, data)
            except FlowError as exc:
                await hub.send_to(ws, "error", {"event": event, **exc.to_dict()})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Socket for user %s failed", user_id)
    finally:
        await hub.disconnect(ws)
