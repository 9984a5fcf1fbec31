import logging
import secrets
import string
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .errors import ConflictError, NotFound, RoomExpired, RoomShareError, ValidationError, store_errors
from .metrics import ROOMS_CREATED, ROOMS_REAPED
from .models.attachments import Attachment
from .models.rooms import Room
from .schemas.events import ChangeEvent, ChangeKind
from .storage import room_prefix

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_lowercase + string.digits


class RoomRegistry:
    """Creates, reads, overwrites and deletes rooms; enforces TTL lazily on every read"""

    def __init__(self, context):
        self.ctx = context
        self.settings = context.settings

    # codes

    def generate_code(self) -> str:
        return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(self.settings.room_code_length))

    def normalize_code(self, code: str) -> str:
        normalized = (code or '').strip().lower()
        if len(normalized) != self.settings.room_code_length or any(c not in CODE_ALPHABET for c in normalized):
            raise ValidationError(f'Invalid room code: {code!r}')
        return normalized

    def validate_ttl(self, ttl_hours) -> int:
        if isinstance(ttl_hours, bool) or not isinstance(ttl_hours, int):
            raise ValidationError('ttl_hours must be a whole number of hours')
        if not self.settings.min_ttl_hours <= ttl_hours <= self.settings.max_ttl_hours:
            raise ValidationError(
                f'ttl_hours must be between {self.settings.min_ttl_hours} and {self.settings.max_ttl_hours}'
            )
        return ttl_hours

    # reads

    async def _load(self, code: str) -> Optional[Room]:
        async with store_errors('load room'):
            async with self.ctx.session() as session:
                q = await session.execute(select(Room).where(Room.code == code))
                return q.scalars().first()

    async def get_room(self, code: str) -> Room:
        code = self.normalize_code(code)
        room = await self._load(code)
        if room is None:
            raise NotFound(f'Room {code} not found')
        if room.is_expired(self.ctx.clock()):
            await self._expire(room)
            raise RoomExpired(f'Room {code} has expired')
        return room

    async def list_expired_codes(self, limit: int = 100) -> List[str]:
        async with store_errors('scan expired rooms'):
            async with self.ctx.session() as session:
                q = await session.execute(
                    select(Room.code)
                    .where(Room.expires_at <= self.ctx.clock())
                    .order_by(Room.expires_at.asc())
                    .limit(limit)
                )
                return list(q.scalars().all())

    # writes

    async def create_room(self, ttl_hours: int) -> Room:
        ttl_hours = self.validate_ttl(ttl_hours)
        attempts = self.settings.room_code_max_attempts
        for attempt in range(1, attempts + 1):
            code = self.generate_code()
            now = self.ctx.clock()
            room = Room(
                code=code,
                content='',
                version=0,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(hours=ttl_hours),
            )
            collided = False
            async with store_errors('create room'):
                async with self.ctx.session() as session:
                    session.add(room)
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        collided = True
            if not collided:
                ROOMS_CREATED.inc()
                logger.info(f"Created room {code} with TTL {ttl_hours}h (expires {room.expires_at.isoformat()})")
                return room
            logger.warning(f"Room code collision on {code} (attempt {attempt}/{attempts})")
            # an expired holder that was never purged frees its code for later attempts
            await self._purge_if_expired(code)
        raise ConflictError(f'Could not allocate a unique room code after {attempts} attempts')

    async def update_content(self, code: str, content: str) -> Room:
        code = self.normalize_code(code)
        if not isinstance(content, str):
            raise ValidationError('content must be text')
        if len(content.encode('utf-8')) > self.settings.max_content_bytes:
            raise ValidationError(f'Content exceeds {self.settings.max_content_bytes} bytes')

        room = None
        async with self.ctx.sequencer.hold(code):
            now = self.ctx.clock()
            async with store_errors('update room content'):
                async with self.ctx.session() as session:
                    result = await session.execute(
                        update(Room)
                        .where(Room.code == code, Room.expires_at > now)
                        .values(content=content, updated_at=now, version=Room.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount:
                        q = await session.execute(select(Room).where(Room.code == code))
                        room = q.scalars().first()
                    await session.commit()
            if room is not None:
                await self.ctx.feed.publish(ChangeEvent.room(ChangeKind.UPDATE, room))

        if room is None:
            # raises NotFound, or RoomExpired after purging
            await self.get_room(code)
            raise NotFound(f'Room {code} not found')
        logger.debug(f"Room {code} content updated to v{room.version} ({len(content)} chars)")
        return room

    async def delete_room(self, code: str) -> bool:
        """Cascade-delete a room. Returns False when there was nothing to delete."""
        code = self.normalize_code(code)
        room = await self._load(code)
        if room is None:
            logger.debug(f"Delete of room {code} is a no-op, already gone")
            return False

        await self._delete_attachments(code)

        async with store_errors('delete room'):
            async with self.ctx.session() as session:
                result = await session.execute(delete(Room).where(Room.code == code))
                await session.commit()
        if not result.rowcount:
            return False
        logger.info(f"Deleted room {code}")
        await self.ctx.feed.publish(ChangeEvent.room(ChangeKind.DELETE, room))
        return True

    async def _delete_attachments(self, code: str):
        """Blobs first, then metadata. Failures here only risk storage bloat and are logged."""
        try:
            async with store_errors('list attachments'):
                async with self.ctx.session() as session:
                    q = await session.execute(select(Attachment.storage_key).where(Attachment.room_code == code))
                    keys = list(q.scalars().all())
        except RoomShareError as e:
            logger.error(f"Could not list attachments of room {code} for cleanup: {e}")
            keys = []

        blob_store = self.ctx.blob_store
        for key in keys:
            try:
                await blob_store.delete(key)
            except RoomShareError as e:
                logger.warning(f"Failed to delete blob {key} of room {code}: {e}")
        try:
            await blob_store.delete_prefix(room_prefix(code))
        except RoomShareError as e:
            logger.warning(f"Failed to delete blob prefix of room {code}: {e}")

        try:
            async with store_errors('delete attachment metadata'):
                async with self.ctx.session() as session:
                    await session.execute(delete(Attachment).where(Attachment.room_code == code))
                    await session.commit()
        except RoomShareError as e:
            logger.error(f"Failed to delete attachment metadata of room {code}: {e}")
        if keys:
            logger.info(f"Removed {len(keys)} attachments of room {code}")

    async def _expire(self, room: Room):
        logger.info(f"Room {room.code} expired at {room.expires_at.isoformat()}, purging")
        try:
            if await self.delete_room(room.code):
                ROOMS_REAPED.labels(path='lazy').inc()
        except RoomShareError as e:
            # the periodic sweep will retry
            logger.error(f"Lazy purge of room {room.code} failed: {e}")

    async def _purge_if_expired(self, code: str):
        room = await self._load(code)
        if room is not None and room.is_expired(self.ctx.clock()):
            await self._expire(room)
