"""
Domain exceptions raised by the chat services.

The HTTP layer maps these onto status codes in main.py; live sessions
turn ValidationFailed into form state and close on the others.
"""

from typing import Dict, List

from pydantic import ValidationError


class ChatError(Exception):
    """Base class for chat service failures."""


class ValidationFailed(ChatError):
    """Field-level validation failure, e.g. {"name": ["has already been taken"]}."""

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__(f"validation failed: {errors}")
        self.errors = errors


class NotFound(ChatError):
    """Lookup of a row that does not exist."""

    def __init__(self, entity: str, entity_id=None):
        if entity_id is None:
            super().__init__(f"{entity} not found")
        else:
            super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PermissionDenied(ChatError):
    """The acting user does not own the row it tried to change."""


def field_errors(exc: ValidationError) -> Dict[str, List[str]]:
    """
    Flatten a pydantic ValidationError into {field: [messages]}.

    Messages raised from our own validators are unwrapped so the caller
    sees "can't be blank" rather than "Value error, can't be blank".
    Missing and null values both read as "can't be blank".
    """
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        field = str(err["loc"][0]) if err["loc"] else "__all__"
        if err["type"] == "value_error" and "error" in err.get("ctx", {}):
            message = str(err["ctx"]["error"])
        elif err["type"] == "missing" or err.get("input", "") is None:
            message = "can't be blank"
        else:
            message = err["msg"]
        errors.setdefault(field, []).append(message)
    return errors
