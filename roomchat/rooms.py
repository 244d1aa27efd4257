"""
Room and membership service.

Rooms are always listed by name. Memberships carry a last_read_id marker
that drives the per-room unread counts.
"""

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy import and_, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from roomchat.config import settings
from roomchat.errors import NotFound, ValidationFailed, field_errors
from roomchat.models import Message, Room, RoomMembership, User
from roomchat.schemas import RoomCreate

logger = logging.getLogger(__name__)

NAME_TAKEN = "has already been taken"


# =============================================================================
# Rooms
# =============================================================================

def _name_taken(db: Session, name: str, room: Optional[Room] = None) -> bool:
    query = db.query(Room.id).filter(Room.name == name)
    if room is not None and room.id is not None:
        query = query.filter(Room.id != room.id)
    return query.first() is not None


def _validate_room(db: Optional[Session], attrs: dict, room: Optional[Room] = None) -> RoomCreate:
    """
    Validate room attributes, merging them over an existing room's values.

    Raises ValidationFailed with field errors; the uniqueness pre-check only
    runs when a session is given and the format checks passed.
    """
    merged = {}
    if room is not None:
        merged = {"name": room.name, "topic": room.topic}
    merged.update({k: v for k, v in attrs.items() if k in ("name", "topic")})

    try:
        data = RoomCreate.model_validate(merged)
    except ValidationError as e:
        raise ValidationFailed(field_errors(e))

    if db is not None and _name_taken(db, data.name, room):
        raise ValidationFailed({"name": [NAME_TAKEN]})
    return data


def change_room(attrs: dict, room: Optional[Room] = None, db: Optional[Session] = None) -> Dict[str, List[str]]:
    """
    Validate room attributes without persisting anything.

    Returns:
        Field errors, empty when the attributes are valid
    """
    try:
        _validate_room(db, attrs, room)
    except ValidationFailed as e:
        return e.errors
    return {}


def _save_room(db: Session, room: Room) -> Room:
    db.add(room)
    try:
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent insert with the same name
        db.rollback()
        logger.info(f"Room name taken on commit: {room.name}")
        raise ValidationFailed({"name": [NAME_TAKEN]})
    db.refresh(room)
    return room


def create_room(db: Session, attrs: dict) -> Room:
    """
    Create a room.

    Args:
        db: Database session
        attrs: {"name": ..., "topic": ...}

    Returns:
        The created Room

    Raises:
        ValidationFailed: bad name format or length, name taken, topic too long
    """
    data = _validate_room(db, attrs)
    room = _save_room(db, Room(name=data.name, topic=data.topic))
    logger.info(f"Room created: id={room.id}, name={room.name}")
    return room


def update_room(db: Session, room: Room, attrs: dict) -> Room:
    data = _validate_room(db, attrs, room)
    room.name = data.name
    room.topic = data.topic
    room = _save_room(db, room)
    logger.info(f"Room updated: id={room.id}, name={room.name}")
    return room


def list_rooms(db: Session) -> List[Room]:
    return db.query(Room).order_by(Room.name.asc()).all()


def get_room(db: Session, room_id: int) -> Room:
    room = db.get(Room, room_id)
    if room is None:
        raise NotFound("room", room_id)
    return room


def get_first_room(db: Session) -> Room:
    """Room with the smallest name; there must be at least one."""
    room = db.query(Room).order_by(Room.name.asc()).first()
    if room is None:
        raise NotFound("room")
    return room


def list_rooms_with_joined_flag(db: Session, user: User, page: int = 1) -> List[Tuple[Room, bool]]:
    """
    One page of rooms with a flag telling whether the user has joined each.

    Args:
        db: Database session
        user: The user the flag is computed for
        page: 1-based page number, page size is ROOMS_PAGE_SIZE

    Returns:
        List of (room, joined) ordered by room name
    """
    page_size = settings.ROOMS_PAGE_SIZE
    offset = (max(page, 1) - 1) * page_size
    logger.debug(f"Listing rooms for user {user.id}: page={page}, offset={offset}")

    rows = (
        db.query(Room, RoomMembership.id)
        .outerjoin(
            RoomMembership,
            and_(RoomMembership.room_id == Room.id, RoomMembership.user_id == user.id),
        )
        .order_by(Room.name.asc())
        .offset(offset)
        .limit(page_size)
        .all()
    )
    return [(room, membership_id is not None) for room, membership_id in rows]


def list_joined_rooms_with_unread_counts(db: Session, user: User) -> List[Tuple[Room, int]]:
    """
    Rooms the user has joined with the number of messages newer than the
    membership's last_read_id (a NULL marker counts every message).
    """
    unread = func.count(Message.id)
    rows = (
        db.query(Room, unread)
        .join(RoomMembership, RoomMembership.room_id == Room.id)
        .outerjoin(
            Message,
            and_(
                Message.room_id == Room.id,
                Message.id > func.coalesce(RoomMembership.last_read_id, 0),
            ),
        )
        .filter(RoomMembership.user_id == user.id)
        .group_by(Room.id)
        .order_by(Room.name.asc())
        .all()
    )
    logger.debug(f"User {user.id} has joined {len(rows)} rooms")
    return [(room, count) for room, count in rows]


# =============================================================================
# Memberships
# =============================================================================

def get_membership(db: Session, room: Room, user: User) -> Optional[RoomMembership]:
    return (
        db.query(RoomMembership)
        .filter(RoomMembership.room_id == room.id, RoomMembership.user_id == user.id)
        .first()
    )


def joined(db: Session, room: Room, user: User) -> bool:
    return get_membership(db, room, user) is not None


def toggle_membership(db: Session, room: Room, user: User) -> bool:
    """
    Join the room if the user is not a member, leave it otherwise.

    The delete and the insert run in one transaction; a concurrent join that
    wins the race trips the unique constraint and is reported as joined.

    Returns:
        True when the user is now a member, False when they left
    """
    result = db.execute(
        delete(RoomMembership).where(
            RoomMembership.room_id == room.id,
            RoomMembership.user_id == user.id,
        )
    )
    if result.rowcount:
        db.commit()
        logger.info(f"User {user.id} left room {room.id}")
        return False

    db.add(RoomMembership(room_id=room.id, user_id=user.id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"User {user.id} already joined room {room.id}")
        return True

    logger.info(f"User {user.id} joined room {room.id}")
    return True


def update_last_read_id(db: Session, room: Room, user: User) -> Optional[RoomMembership]:
    """
    Move the user's read marker to the newest message in the room.

    No-op without a membership. The marker never moves backwards.
    """
    membership = get_membership(db, room, user)
    if membership is None:
        return None

    last_id = db.query(func.max(Message.id)).filter(Message.room_id == room.id).scalar()
    if last_id is not None and (membership.last_read_id is None or last_id > membership.last_read_id):
        membership.last_read_id = last_id
        db.commit()
        logger.debug(f"User {user.id} read room {room.id} up to message {last_id}")
    return membership
