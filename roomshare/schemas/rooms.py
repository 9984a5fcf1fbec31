from datetime import datetime

from pydantic import BaseModel, ConfigDict


class RoomCreateIn(BaseModel):
    ttl_hours: int


class ContentIn(BaseModel):
    content: str


class RoomOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    content: str
    version: int
    created_at: datetime
    updated_at: datetime
    expires_at: datetime


class DeletedOut(BaseModel):
    deleted: bool
