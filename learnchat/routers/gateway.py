import asyncio
import logging
from typing import Optional
from uuid import UUID

import pydantic
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from jose import JWTError
from sqlalchemy.exc import InterfaceError, OperationalError

from learnchat.config import Settings
from learnchat.dependencies import decode_user_id, with_store_timeout
from learnchat.errors import MessagingError
from learnchat.schemas.conversation import ReadStateDto
from learnchat.schemas.message import ReactionRequest, SendMessageRequest, make_message_dto
from learnchat.services.messaging import MessagingService
from learnchat.services.rate_limiter import RateLimiter
from learnchat.ws import ConnectionManager, LiveSession, SessionState

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_EVENTS = ("join_conversation", "leave_conversation", "typing_start", "typing_stop")
WRITE_EVENTS = ("send_message", "mark_read", "mark_message_read", "add_reaction", "remove_reaction")


def _error(code: str, message: str) -> dict:
    return {"event": "error", "code": code, "message": message}


def _ack(action: str, data: dict) -> dict:
    return {"event": "ack", "action": action, "data": data}


def _dump(dto) -> dict:
    return dto.model_dump(mode="json", by_alias=True)


def _uuid(frame: dict, field: str) -> Optional[UUID]:
    try:
        return UUID(str(frame.get(field)))
    except ValueError:
        return None


async def _register(manager: ConnectionManager, session: LiveSession, frame: dict, settings: Settings) -> None:
    if session.state != SessionState.CONNECTED:
        session.push(_error("already_registered", "This connection is already registered"))
        return

    token = frame.get("token")
    if not isinstance(token, str) or not token:
        session.push(_error("unauthorized", "A token is required to register"))
        return
    try:
        user_id = decode_user_id(token, settings)
    except (JWTError, ValueError):
        session.push(_error("unauthorized", "Could not validate credentials"))
        return

    conversation_ids = await manager.register(session, user_id)
    session.push({
        "event": "registered",
        "userId": str(user_id),
        "conversationIds": [str(c) for c in conversation_ids],
    })


async def _session_frame(manager: ConnectionManager, session: LiveSession, event: str, frame: dict) -> None:
    conversation_id = _uuid(frame, "conversationId")
    if conversation_id is None:
        session.push(_error("bad_frame", "conversationId must be a UUID"))
        return

    if event == "join_conversation":
        if await manager.join(session, conversation_id):
            session.push({"event": "joined", "conversationId": str(conversation_id)})
        else:
            session.push(_error("forbidden", "You are not a participant in this conversation"))
    elif event == "leave_conversation":
        await manager.leave(session, conversation_id)
        session.push({"event": "left", "conversationId": str(conversation_id)})
    else:
        if not await manager.typing(session, conversation_id, event == "typing_start"):
            session.push(_error("not_subscribed", "Join the conversation before sending typing events"))


async def _write_frame(
    manager: ConnectionManager,
    session: LiveSession,
    event: str,
    frame: dict,
    settings: Settings,
    limiter: Optional[RateLimiter],
) -> None:
    """Same writes and fan-out as the HTTP routes, acknowledged on this connection."""
    user_id = session.user_id
    broadcaster = manager.broadcaster

    if event == "send_message":
        if limiter is not None:
            quota = await limiter.hit(str(user_id))
            if not quota.allowed:
                session.push({
                    **_error("rate_limited", "Too many messages sent, please slow down"),
                    "retryAfter": quota.retry_after,
                })
                return
        request = SendMessageRequest.model_validate(frame)
        async with manager.sessionmaker() as db:
            sent = await with_store_timeout(
                MessagingService(db).send_message(
                    user_id,
                    request.content,
                    conversation_id=request.conversation_id,
                    receiver_id=request.receiver_id,
                    type=request.type,
                    attachments=[a.model_dump(mode="json", by_alias=True) for a in request.attachments],
                    reply_to_id=request.reply_to_id,
                    metadata=request.metadata,
                ),
                settings,
            )
        dto = await broadcaster.message_sent(sent)
        session.push(_ack(event, _dump(dto)))
        return

    if event == "mark_read":
        conversation_id = _uuid(frame, "conversationId")
        if conversation_id is None:
            session.push(_error("bad_frame", "conversationId must be a UUID"))
            return
        async with manager.sessionmaker() as db:
            participant, unread = await with_store_timeout(
                MessagingService(db).mark_as_read(conversation_id, user_id), settings
            )
        await broadcaster.conversation_read(conversation_id, user_id, participant.last_read_at)
        session.push(_ack(event, _dump(ReadStateDto(
            conversation_id=conversation_id,
            user_id=user_id,
            last_read_at=participant.last_read_at,
            unread_count=unread,
        ))))
        return

    message_id = _uuid(frame, "messageId")
    if message_id is None:
        session.push(_error("bad_frame", "messageId must be a UUID"))
        return

    async with manager.sessionmaker() as db:
        service = MessagingService(db)
        if event == "mark_message_read":
            message = await with_store_timeout(service.mark_message_as_read(message_id, user_id), settings)
        else:
            emoji = ReactionRequest.model_validate(frame).emoji.strip()
            if event == "add_reaction":
                message = await with_store_timeout(service.add_reaction(message_id, user_id, emoji), settings)
            else:
                message = await with_store_timeout(service.remove_reaction(message_id, user_id, emoji), settings)

    if event == "mark_message_read":
        await broadcaster.message_read(message, user_id)
    else:
        await broadcaster.reaction_changed(message, user_id, emoji, "added" if event == "add_reaction" else "removed")
    session.push(_ack(event, _dump(make_message_dto(message))))


async def handle_frame(
    manager: ConnectionManager,
    session: LiveSession,
    frame,
    settings: Settings,
    limiter: Optional[RateLimiter] = None,
) -> None:
    """Dispatch one client frame."""
    if not isinstance(frame, dict):
        session.push(_error("bad_frame", "Frames must be JSON objects"))
        return

    event = frame.get("event")
    if event == "ping":
        session.push({"event": "pong"})
        return
    if event == "register":
        await _register(manager, session, frame, settings)
        return
    if event not in SESSION_EVENTS and event not in WRITE_EVENTS:
        session.push(_error("unknown_event", f"Unknown event: {event}"))
        return
    if session.state != SessionState.REGISTERED:
        session.push(_error("not_registered", "Register before sending other frames"))
        return

    if event in SESSION_EVENTS:
        await _session_frame(manager, session, event, frame)
        return

    try:
        await _write_frame(manager, session, event, frame, settings, limiter)
    except pydantic.ValidationError as exc:
        session.push(_error("validation_error", exc.errors()[0]["msg"]))
    except MessagingError as exc:
        logger.info(f"Live session {session.id} {event} rejected ({exc.code}): {exc.message}")
        session.push(_error(exc.code, exc.message))
    except (OperationalError, InterfaceError, asyncio.TimeoutError):
        logger.exception(f"Live session {session.id} {event} failed on the store")
        session.push(_error("unavailable", "Messaging store is unavailable, please retry"))


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Live session: register with a token, then receive conversation events and send writes."""
    manager: ConnectionManager = websocket.app.state.gateway
    settings: Settings = websocket.app.state.settings
    limiter: RateLimiter = websocket.app.state.rate_limiter

    await websocket.accept()
    session = await manager.connect(websocket)
    try:
        while session.state != SessionState.DISCONNECTED:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                session.push(_error("bad_frame", "Frames must be valid JSON"))
                continue
            await handle_frame(manager, session, frame, settings, limiter)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception(f"Live session {session.id} failed")
    finally:
        await manager.disconnect(session)
