"""
Message and reply service.

Every successful mutation is broadcast on the room's topic so that all
live sessions on the room, the acting one included, patch their state.
"""

import logging
from typing import Dict, List

from pydantic import ValidationError
from sqlalchemy.orm import Session, selectinload

from roomchat.errors import NotFound, PermissionDenied, ValidationFailed, field_errors
from roomchat.models import Message, Reply, Room, User
from roomchat.pubsub import broker, topic
from roomchat.schemas import MessageCreate, MessageOut, RoomEvent

logger = logging.getLogger(__name__)


def _with_thread(query):
    """Eager-load the author and the replies (with their authors)."""
    return query.options(
        selectinload(Message.user),
        selectinload(Message.replies).selectinload(Reply.user),
    )


def _validate_body(attrs: dict) -> MessageCreate:
    try:
        return MessageCreate.model_validate({"body": attrs.get("body")})
    except ValidationError as e:
        raise ValidationFailed(field_errors(e))


def _broadcast(event: str, message: Message) -> None:
    payload = RoomEvent(event=event, message=MessageOut.model_validate(message))
    broker.publish(topic(message.room_id), payload)


def change_message(attrs: dict) -> Dict[str, List[str]]:
    """
    Validate message attributes without persisting, for live form feedback.

    Returns:
        Field errors, empty when the attributes are valid
    """
    try:
        _validate_body(attrs)
    except ValidationFailed as e:
        return e.errors
    return {}


def list_messages_in_room(db: Session, room: Room) -> List[Message]:
    """All messages of a room, oldest first, with authors and replies loaded."""
    messages = (
        _with_thread(db.query(Message))
        .filter(Message.room_id == room.id)
        .order_by(Message.inserted_at.asc(), Message.id.asc())
        .all()
    )
    logger.debug(f"Loaded {len(messages)} messages for room {room.id}")
    return messages


def get_message(db: Session, message_id: int) -> Message:
    message = _with_thread(db.query(Message)).filter(Message.id == message_id).first()
    if message is None:
        raise NotFound("message", message_id)
    return message


def _reload(db: Session, message_id: int) -> Message:
    # Drop cached instances so the thread reflects the committed replies
    db.expire_all()
    return get_message(db, message_id)


def create_message(db: Session, room: Room, attrs: dict, user: User) -> Message:
    """
    Post a message to a room and broadcast it as new_message.

    Raises:
        ValidationFailed: body missing or blank
    """
    data = _validate_body(attrs)
    message = Message(room_id=room.id, user_id=user.id, body=data.body)
    db.add(message)
    db.commit()
    logger.info(f"Message created: id={message.id}, room={room.id}, user={user.id}")

    message = _reload(db, message.id)
    _broadcast("new_message", message)
    return message


def delete_message_by_id(db: Session, message_id: int, user: User) -> Message:
    """
    Delete a message owned by the user and broadcast message_deleted.

    Raises:
        NotFound: no such message
        PermissionDenied: the user does not own the message
    """
    message = get_message(db, message_id)
    if message.user_id != user.id:
        logger.warning(f"User {user.id} tried to delete message {message_id} owned by {message.user_id}")
        raise PermissionDenied(f"user {user.id} does not own message {message_id}")

    payload = RoomEvent(event="message_deleted", message=MessageOut.model_validate(message))
    db.delete(message)
    db.commit()
    logger.info(f"Message deleted: id={message_id}, room={message.room_id}")

    broker.publish(topic(message.room_id), payload)
    return message


def get_reply(db: Session, reply_id: int) -> Reply:
    reply = db.get(Reply, reply_id)
    if reply is None:
        raise NotFound("reply", reply_id)
    return reply


def create_reply(db: Session, message: Message, attrs: dict, user: User) -> Reply:
    """
    Reply to a message and broadcast new_reply with the whole thread.

    Raises:
        ValidationFailed: body missing or blank
    """
    data = _validate_body(attrs)
    reply = Reply(message_id=message.id, user_id=user.id, body=data.body)
    db.add(reply)
    db.commit()
    logger.info(f"Reply created: id={reply.id}, message={message.id}, user={user.id}")

    _broadcast("new_reply", _reload(db, message.id))
    return reply


def delete_reply_by_id(db: Session, reply_id: int, user: User) -> Reply:
    """
    Delete a reply owned by the user and broadcast deleted_reply with the
    remaining thread.
    """
    reply = get_reply(db, reply_id)
    if reply.user_id != user.id:
        logger.warning(f"User {user.id} tried to delete reply {reply_id} owned by {reply.user_id}")
        raise PermissionDenied(f"user {user.id} does not own reply {reply_id}")

    message_id = reply.message_id
    db.delete(reply)
    db.commit()
    logger.info(f"Reply deleted: id={reply_id}, message={message_id}")

    _broadcast("deleted_reply", _reload(db, message_id))
    return reply
