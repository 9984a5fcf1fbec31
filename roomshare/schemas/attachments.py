from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    room_code: str
    file_name: str
    size_bytes: int
    mime_type: str
    uploaded_at: datetime


class ActionOkOut(BaseModel):
    ok: bool = True
