from sqlalchemy import Column, DateTime, Integer, String, Text
from . import Base


class Room(Base):
    __tablename__ = 'rooms'
    id = Column(Integer, primary_key=True)
    code = Column(String(32), unique=True, index=True, nullable=False)
    content = Column(Text, nullable=False, default='')
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def is_expired(self, now) -> bool:
        return self.expires_at <= now

    def snapshot(self) -> dict:
        return {
            'id': self.id,
            'code': self.code,
            'content': self.content,
            'version': self.version,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }
