import logging
from contextlib import asynccontextmanager
from typing import Annotated, List

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from roomchat import live, messages, rooms
from roomchat.config import settings
from roomchat.errors import NotFound, PermissionDenied, ValidationFailed
from roomchat.logging_utils import setup_logging, RequestLoggingMiddleware, log_chat_data
from roomchat.metrics import get_metrics, get_metrics_content_type
from roomchat.models import User
from roomchat.schemas import (
    ErrorResponse,
    FormResponse,
    HealthResponse,
    MembershipResponse,
    MessageOut,
    ReplyOut,
    RoomDetail,
    RoomOut,
    RoomPage,
    RoomUnread,
    RoomWithJoined,
    UserOut,
    ValidationErrorResponse,
)
from roomchat.storage import init_db, check_db_health, get_db
from roomchat.users import create_user, get_user


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Room Chat API",
    description="Multi-room chat with threaded replies and live room updates",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ValidationFailed)
async def validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
    logger.info(f"Validation failed: {exc.errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ValidationErrorResponse(errors=exc.errors).model_dump(),
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    logger.warning(str(exc))
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    logger.error(f"Permission denied: {exc}")
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Not the owner"},
    404: {"model": ErrorResponse, "description": "Not found"},
    422: {"model": ValidationErrorResponse, "description": "Validation error"},
}


# =============================================================================
# Dependencies
# =============================================================================

def get_current_user(
    x_user_id: Annotated[int | None, Header(alias="X-User-Id")] = None,
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the acting user. Authentication happens upstream; by the time a
    request reaches us it carries the user's id in X-User-Id.
    """
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing X-User-Id")
    try:
        return get_user(db, x_user_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown user")


CurrentUser = Annotated[User, Depends(get_current_user)]
DB = Annotated[Session, Depends(get_db)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check: always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check: returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# User Routes
# =============================================================================

@app.post("/users", response_model=UserOut, status_code=201, responses=ERROR_RESPONSES)
async def register_user(attrs: Annotated[dict, Body()], db: DB) -> UserOut:
    user = create_user(db, attrs.get("email"))
    return UserOut.model_validate(user)


# =============================================================================
# Room Routes
# =============================================================================

@app.get("/rooms", response_model=List[RoomOut])
async def list_rooms(db: DB) -> List[RoomOut]:
    """All rooms ordered by name."""
    return [RoomOut.model_validate(r) for r in rooms.list_rooms(db)]


@app.post("/rooms", response_model=RoomOut, status_code=201, responses=ERROR_RESPONSES)
async def create_room(request: Request, attrs: Annotated[dict, Body()], db: DB) -> RoomOut:
    room = rooms.create_room(db, attrs)
    log_chat_data(request, room_id=room.id, result="created")
    return RoomOut.model_validate(room)


@app.post("/rooms/validate", response_model=FormResponse)
async def validate_room(attrs: Annotated[dict, Body()], db: DB) -> FormResponse:
    """Check room attributes for the new-room form without saving."""
    errors = rooms.change_room(attrs, db=db)
    return FormResponse(valid=not errors, errors=errors)


@app.get("/rooms/default", response_model=RoomDetail, responses=ERROR_RESPONSES)
async def show_default_room(db: DB) -> RoomDetail:
    """The room shown when no room is selected: the first one by name."""
    return _room_detail(db, rooms.get_first_room(db))


@app.get("/rooms/browse", response_model=RoomPage)
async def browse_rooms(
    user: CurrentUser,
    db: DB,
    page: Annotated[int, Query(ge=1, description="1-based page number")] = 1,
) -> RoomPage:
    """Rooms by name, one page at a time, flagged with the caller's membership."""
    rows = rooms.list_rooms_with_joined_flag(db, user, page)
    return RoomPage(
        data=[RoomWithJoined(room=RoomOut.model_validate(r), joined=j) for r, j in rows],
        page=page,
        page_size=settings.ROOMS_PAGE_SIZE,
    )


@app.get("/rooms/joined", response_model=List[RoomUnread])
async def joined_rooms(user: CurrentUser, db: DB) -> List[RoomUnread]:
    """Rooms the caller has joined with their unread message counts."""
    rows = rooms.list_joined_rooms_with_unread_counts(db, user)
    return [RoomUnread(room=RoomOut.model_validate(r), unread_count=n) for r, n in rows]


@app.get("/rooms/{room_id}", response_model=RoomDetail, responses=ERROR_RESPONSES)
async def show_room(room_id: int, db: DB) -> RoomDetail:
    return _room_detail(db, rooms.get_room(db, room_id))


@app.put("/rooms/{room_id}", response_model=RoomOut, responses=ERROR_RESPONSES)
async def edit_room(request: Request, room_id: int, attrs: Annotated[dict, Body()], db: DB) -> RoomOut:
    room = rooms.update_room(db, rooms.get_room(db, room_id), attrs)
    log_chat_data(request, room_id=room.id, result="updated")
    return RoomOut.model_validate(room)


@app.post("/rooms/{room_id}/membership", response_model=MembershipResponse, responses=ERROR_RESPONSES)
async def toggle_room_membership(request: Request, room_id: int, user: CurrentUser, db: DB) -> MembershipResponse:
    room = rooms.get_room(db, room_id)
    is_joined = rooms.toggle_membership(db, room, user)
    log_chat_data(request, room_id=room_id, result="joined" if is_joined else "left")
    return MembershipResponse(room_id=room_id, joined=is_joined)


@app.post("/rooms/{room_id}/read", status_code=204, responses=ERROR_RESPONSES)
async def mark_room_read(room_id: int, user: CurrentUser, db: DB) -> Response:
    rooms.update_last_read_id(db, rooms.get_room(db, room_id), user)
    return Response(status_code=204)


def _room_detail(db: Session, room) -> RoomDetail:
    return RoomDetail(
        room=RoomOut.model_validate(room),
        messages=[MessageOut.model_validate(m) for m in messages.list_messages_in_room(db, room)],
    )


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/rooms/{room_id}/messages", response_model=List[MessageOut], responses=ERROR_RESPONSES)
async def list_room_messages(room_id: int, db: DB) -> List[MessageOut]:
    """Messages of a room ordered by insertion time, each with its replies."""
    room = rooms.get_room(db, room_id)
    return [MessageOut.model_validate(m) for m in messages.list_messages_in_room(db, room)]


@app.post("/rooms/{room_id}/messages", response_model=MessageOut, status_code=201, responses=ERROR_RESPONSES)
async def post_message(
    request: Request, room_id: int, attrs: Annotated[dict, Body()], user: CurrentUser, db: DB
) -> MessageOut:
    room = rooms.get_room(db, room_id)
    message = messages.create_message(db, room, attrs, user)
    log_chat_data(request, room_id=room_id, message_id=message.id, result="created")
    return MessageOut.model_validate(message)


@app.post("/messages/validate", response_model=FormResponse)
async def validate_message(attrs: Annotated[dict, Body()]) -> FormResponse:
    """Live form feedback: validate a message body without saving it."""
    errors = messages.change_message(attrs)
    return FormResponse(valid=not errors, errors=errors)


@app.get("/messages/{message_id}", response_model=MessageOut, responses=ERROR_RESPONSES)
async def show_message(message_id: int, db: DB) -> MessageOut:
    return MessageOut.model_validate(messages.get_message(db, message_id))


@app.delete("/messages/{message_id}", status_code=204, responses=ERROR_RESPONSES)
async def delete_message(request: Request, message_id: int, user: CurrentUser, db: DB) -> Response:
    message = messages.delete_message_by_id(db, message_id, user)
    log_chat_data(request, room_id=message.room_id, message_id=message_id, result="deleted")
    return Response(status_code=204)


@app.post("/messages/{message_id}/replies", response_model=ReplyOut, status_code=201, responses=ERROR_RESPONSES)
async def post_reply(
    request: Request, message_id: int, attrs: Annotated[dict, Body()], user: CurrentUser, db: DB
) -> ReplyOut:
    parent = messages.get_message(db, message_id)
    reply = messages.create_reply(db, parent, attrs, user)
    log_chat_data(request, room_id=parent.room_id, message_id=message_id, result="replied")
    return ReplyOut.model_validate(reply)


@app.delete("/replies/{reply_id}", status_code=204, responses=ERROR_RESPONSES)
async def delete_reply(request: Request, reply_id: int, user: CurrentUser, db: DB) -> Response:
    reply = messages.delete_reply_by_id(db, reply_id, user)
    log_chat_data(request, message_id=reply.message_id, result="reply_deleted")
    return Response(status_code=204)


# =============================================================================
# Live Room Sessions
# =============================================================================

app.add_api_websocket_route("/ws/rooms", live.room_session)
app.add_api_websocket_route("/ws/rooms/{room_id}", live.room_session)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics: http_requests_total,
    request_latency_seconds, chat_events_published_total, live_sessions_active.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
