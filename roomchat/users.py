import logging

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from roomchat.errors import NotFound, ValidationFailed, field_errors
from roomchat.models import User
from roomchat.schemas import UserCreate

logger = logging.getLogger(__name__)


def create_user(db: Session, email: str) -> User:
    """Register a user; the email must be well formed and unused."""
    try:
        data = UserCreate(email=email)
    except ValidationError as e:
        raise ValidationFailed(field_errors(e))

    if db.query(User.id).filter(User.email == data.email).first() is not None:
        raise ValidationFailed({"email": ["has already been taken"]})

    user = User(email=data.email)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate user email on insert: {data.email}")
        raise ValidationFailed({"email": ["has already been taken"]})

    db.refresh(user)
    logger.info(f"User created: id={user.id}")
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("user", user_id)
    return user
