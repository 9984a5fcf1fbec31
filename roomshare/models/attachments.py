import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String
from . import Base


def new_attachment_id() -> str:
    return str(uuid.uuid4())


class Attachment(Base):
    __tablename__ = 'attachments'
    id = Column(String(36), primary_key=True, default=new_attachment_id)
    room_code = Column(String(32), ForeignKey('rooms.code', ondelete='CASCADE'), index=True, nullable=False)
    file_name = Column(String(255), nullable=False)
    storage_key = Column(String(1024), unique=True, nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    mime_type = Column(String(255), nullable=False)
    uploaded_at = Column(DateTime, nullable=False, index=True)

    def snapshot(self) -> dict:
        return {
            'id': self.id,
            'room_code': self.room_code,
            'file_name': self.file_name,
            'storage_key': self.storage_key,
            'size_bytes': self.size_bytes,
            'mime_type': self.mime_type,
            'uploaded_at': self.uploaded_at.isoformat(),
        }
