from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EntityKind(str, Enum):
    ROOM = 'room'
    ATTACHMENT = 'attachment'


class ChangeKind(str, Enum):
    INSERT = 'insert'
    UPDATE = 'update'
    DELETE = 'delete'


class ChangeEvent(BaseModel):
    entity: EntityKind
    room_code: str
    change: ChangeKind
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def room(cls, change: ChangeKind, room) -> 'ChangeEvent':
        return cls(entity=EntityKind.ROOM, room_code=room.code, change=change, payload=room.snapshot())

    @classmethod
    def attachment(cls, change: ChangeKind, attachment) -> 'ChangeEvent':
        return cls(
            entity=EntityKind.ATTACHMENT,
            room_code=attachment.room_code,
            change=change,
            payload=attachment.snapshot(),
        )
