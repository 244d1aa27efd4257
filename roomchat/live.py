"""
Live room sessions over WebSocket.

Each connection runs its own session: it subscribes to the room topic,
loads the room and then handles two streams at once, client events coming
in and fan-out events going out. Sessions never share state; everything a
session learns about other users' actions arrives through the broker,
including the echo of its own submissions.

Database work runs in the threadpool so a slow query in one session does
not hold up the others. Events published from worker threads are handed
to the session's queue on its event loop.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from roomchat import messages, rooms
from roomchat.errors import NotFound, PermissionDenied, ValidationFailed
from roomchat.logging_utils import live_session_ctx
from roomchat.metrics import live_sessions_active
from roomchat.models import Room, User
from roomchat.pubsub import PubSub, Subscription, broker, topic
from roomchat.schemas import MessageOut, RoomEvent, RoomOut
from roomchat.storage import SessionLocal
from roomchat.users import get_user

logger = logging.getLogger(__name__)

# Close codes sent to the client when a session cannot continue
CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404


def load_zone(name: Optional[str]) -> Optional[ZoneInfo]:
    """Resolve an IANA timezone name, None when absent or unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, timestamps disabled")
        return None


def format_timestamp(value: datetime, zone: ZoneInfo) -> str:
    """Clock time in the viewer's zone, e.g. '3:07 PM'."""
    local = value.astimezone(zone)
    return f"{local.hour % 12 or 12}:{local:%M} {'AM' if local.hour < 12 else 'PM'}"


class RoomView:
    """In-memory state of one user's view of a room."""

    def __init__(self, room: RoomOut, message_list: List[MessageOut], zone: Optional[ZoneInfo] = None) -> None:
        self.room = room
        self.messages = list(message_list)
        self.zone = zone
        self.form_errors: Dict[str, List[str]] = {}
        self.hide_topic = False

    def index_of(self, message_id: int) -> Optional[int]:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    def apply(self, event: RoomEvent) -> None:
        """Patch the message list with a fan-out event."""
        message = event.message
        if message.room_id != self.room.id:
            return
        i = self.index_of(message.id)

        if event.event == "new_message":
            if i is None:
                self.messages.append(message)
            else:
                self.messages[i] = message
        elif event.event == "message_deleted":
            if i is not None:
                del self.messages[i]
        elif i is not None:
            # new_reply / deleted_reply carry the whole refreshed thread
            self.messages[i] = message

    def toggle_topic(self) -> bool:
        self.hide_topic = not self.hide_topic
        return self.hide_topic

    def _timestamp(self, value: datetime) -> Optional[str]:
        if self.zone is None:
            return None
        return format_timestamp(value, self.zone)

    def render(self, message: MessageOut) -> dict:
        """JSON form of a message with timestamps in the viewer's zone."""
        data = message.model_dump(mode="json")
        data["timestamp"] = self._timestamp(message.inserted_at)
        for reply, reply_data in zip(message.replies, data["replies"]):
            reply_data["timestamp"] = self._timestamp(reply.inserted_at)
        return data

    def snapshot(self) -> dict:
        return {
            "type": "init",
            "room": self.room.model_dump(mode="json"),
            "messages": [self.render(m) for m in self.messages],
            "hide_topic": self.hide_topic,
        }


class RoomSession:
    """One connected client on one room."""

    def __init__(self, websocket: WebSocket, user_id: int, room_id: Optional[int] = None,
                 pubsub: PubSub = broker, zone: Optional[ZoneInfo] = None) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.room_id = room_id
        self.pubsub = pubsub
        self.zone = zone
        self.view: Optional[RoomView] = None
        self.events: asyncio.Queue = asyncio.Queue()
        self.subscription: Optional[Subscription] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _resolve_room(self) -> int:
        with SessionLocal() as db:
            get_user(db, self.user_id)
            if self.room_id is None:
                return rooms.get_first_room(db).id
            return rooms.get_room(db, self.room_id).id

    def _load(self) -> RoomView:
        with SessionLocal() as db:
            user, room = self._actors(db)
            message_list = messages.list_messages_in_room(db, room)
            rooms.update_last_read_id(db, room, user)
            return RoomView(
                RoomOut.model_validate(room),
                [MessageOut.model_validate(m) for m in message_list],
                self.zone,
            )

    def _deliver(self, event: RoomEvent) -> None:
        # Called from whichever thread published; the queue lives on our loop
        self.loop.call_soon_threadsafe(self.events.put_nowait, event)

    async def _refuse(self, exc: NotFound) -> None:
        code = CLOSE_UNAUTHENTICATED if exc.entity == "user" else CLOSE_NOT_FOUND
        logger.warning(f"Live session refused: {exc}")
        await self.websocket.close(code=code)

    async def run(self) -> None:
        self.loop = asyncio.get_running_loop()
        try:
            self.room_id = await run_in_threadpool(self._resolve_room)
        except NotFound as e:
            await self._refuse(e)
            return

        live_session_ctx.set({"live_user_id": self.user_id, "live_room_id": self.room_id})

        # Subscribe before loading so nothing published meanwhile is missed;
        # RoomView.apply tolerates events already reflected in the load
        self.subscription = self.pubsub.subscribe(topic(self.room_id), self._deliver)
        try:
            self.view = await run_in_threadpool(self._load)
        except NotFound as e:
            self.pubsub.unsubscribe(self.subscription)
            await self._refuse(e)
            return

        await self.websocket.accept()
        live_sessions_active.inc()
        logger.info(f"Live session opened: user={self.user_id}, room={self.room_id}")

        pusher = None
        try:
            await self.websocket.send_json(self.view.snapshot())
            pusher = asyncio.create_task(self._push_events())
            while True:
                try:
                    payload = await self.websocket.receive_json()
                except (ValueError, KeyError):
                    await self._send_error("frames must be JSON text")
                    continue
                await self.handle_client_event(payload)
        except WebSocketDisconnect:
            logger.info(f"Live session disconnected: user={self.user_id}, room={self.room_id}")
        except PermissionDenied as e:
            logger.error(f"Live session closed: {e}")
            await self.websocket.close(code=CLOSE_FORBIDDEN)
        except NotFound as e:
            logger.error(f"Live session closed: {e}")
            await self.websocket.close(code=CLOSE_NOT_FOUND)
        finally:
            if pusher is not None:
                pusher.cancel()
            self.pubsub.unsubscribe(self.subscription)
            live_sessions_active.dec()

    async def _push_events(self) -> None:
        while True:
            event = await self.events.get()
            self.view.apply(event)
            await self.websocket.send_json({
                "type": "event",
                "event": event.event,
                "message": self.view.render(event.message),
            })

    # -------------------------------------------------------------------------
    # Client events
    # -------------------------------------------------------------------------

    async def handle_client_event(self, payload) -> None:
        """
        Dispatch one client event: {"event": name, "params": {...}}.

        Malformed frames get an error frame back. Validation failures are
        sent back as form state. NotFound and PermissionDenied propagate
        and end the session.
        """
        if not isinstance(payload, dict):
            await self._send_error("frames must be JSON objects")
            return
        name = payload.get("event")
        params = payload.get("params") or {}
        if not isinstance(params, dict):
            await self._send_error("params must be a JSON object")
            return
        logger.debug(f"Client event {name} from user {self.user_id}")

        try:
            await self._dispatch(name, params)
        except ValidationFailed as e:
            self.view.form_errors = e.errors
            await self._send_form()

    async def _dispatch(self, name: str, params: dict) -> None:
        if name == "validate-message":
            self.view.form_errors = messages.change_message(params)
            await self._send_form()
        elif name == "submit-message":
            await run_in_threadpool(self._submit_message, params)
            self.view.form_errors = {}
            await self._send_form()
        elif name == "submit-reply":
            await run_in_threadpool(self._submit_reply, params)
            self.view.form_errors = {}
            await self._send_form()
        elif name == "delete-message":
            await run_in_threadpool(self._delete, messages.delete_message_by_id, _param_id(params, "id"))
        elif name == "delete-reply":
            await run_in_threadpool(self._delete, messages.delete_reply_by_id, _param_id(params, "id"))
        elif name == "toggle-room-membership":
            target_id = _param_id(params, "room_id") if "room_id" in params else self.room_id
            is_joined = await run_in_threadpool(self._toggle_membership, target_id)
            await self.websocket.send_json({"type": "membership", "room_id": target_id, "joined": is_joined})
        elif name == "mark-read":
            await run_in_threadpool(self._mark_read)
        elif name == "toggle-topic":
            await self.websocket.send_json({"type": "topic", "hide_topic": self.view.toggle_topic()})
        else:
            await self._send_error(f"unknown event {name!r}")

    # Blocking database work, run in the threadpool

    def _actors(self, db) -> Tuple[User, Room]:
        return get_user(db, self.user_id), rooms.get_room(db, self.room_id)

    def _submit_message(self, params: dict) -> None:
        with SessionLocal() as db:
            user, room = self._actors(db)
            messages.create_message(db, room, params, user)

    def _submit_reply(self, params: dict) -> None:
        with SessionLocal() as db:
            user, _ = self._actors(db)
            parent = messages.get_message(db, _param_id(params, "message_id"))
            if parent.room_id != self.room_id:
                raise ValidationFailed({"message_id": ["belongs to another room"]})
            messages.create_reply(db, parent, params, user)

    def _delete(self, delete_by_id, entity_id: int) -> None:
        with SessionLocal() as db:
            user, _ = self._actors(db)
            delete_by_id(db, entity_id, user)

    def _toggle_membership(self, room_id: int) -> bool:
        with SessionLocal() as db:
            user = get_user(db, self.user_id)
            return rooms.toggle_membership(db, rooms.get_room(db, room_id), user)

    def _mark_read(self) -> None:
        with SessionLocal() as db:
            user, room = self._actors(db)
            rooms.update_last_read_id(db, room, user)

    async def _send_form(self) -> None:
        await self.websocket.send_json({"type": "form", "errors": self.view.form_errors})

    async def _send_error(self, message: str) -> None:
        await self.websocket.send_json({"type": "error", "message": message})


def _param_id(params: dict, key: str) -> int:
    try:
        return int(params[key])
    except (KeyError, TypeError, ValueError):
        raise ValidationFailed({key: ["must be an integer id"]})


async def room_session(websocket: WebSocket, room_id: Optional[int] = None) -> None:
    """WebSocket endpoint: /ws/rooms[/{room_id}]?user_id=...&timezone=..."""
    try:
        user_id = int(websocket.query_params.get("user_id", ""))
    except ValueError:
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
        return
    zone = load_zone(websocket.query_params.get("timezone"))
    await RoomSession(websocket, user_id, room_id, zone=zone).run()
