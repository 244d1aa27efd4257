"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from roomchat.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    A chat participant.

    Table: users
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(160), unique=True, nullable=False, index=True)
    inserted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    memberships = relationship("RoomMembership", back_populates="user", cascade="all, delete-orphan")

    @property
    def username(self) -> str:
        """Display name derived from the local part of the email."""
        return self.email.split("@")[0].capitalize()


class Room(Base):
    """
    A named chat room.

    Table: rooms
    Unique: name
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(80), unique=True, nullable=False)
    topic = Column(String(200), nullable=True)
    inserted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship("Message", back_populates="room", cascade="all, delete-orphan")
    memberships = relationship("RoomMembership", back_populates="room", cascade="all, delete-orphan")


class RoomMembership(Base):
    """
    Join row between a user and a room.

    last_read_id marks the newest message id the user has seen in the room;
    NULL means nothing has been read yet.
    """
    __tablename__ = "room_memberships"
    __table_args__ = (UniqueConstraint("room_id", "user_id", name="uq_room_membership"),)

    id = Column(Integer, primary_key=True)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    last_read_id = Column(Integer, nullable=True)
    inserted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    room = relationship("Room", back_populates="memberships")
    user = relationship("User", back_populates="memberships")


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    body = Column(Text, nullable=False)
    inserted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    room = relationship("Room", back_populates="messages")
    user = relationship("User")
    replies = relationship(
        "Reply",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by=lambda: [Reply.inserted_at, Reply.id],
    )


class Reply(Base):
    __tablename__ = "replies"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    body = Column(Text, nullable=False)
    inserted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    message = relationship("Message", back_populates="replies")
    user = relationship("User")
