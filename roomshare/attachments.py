"""
Attachment management for rooms.

Blob store and metadata store are updated without a shared transaction:
- upload writes the blob, then the row; a failed insert deletes the blob again
- delete removes the blob, then the row; a failed blob delete leaves an orphan
Orphans from either path are removed later by ``reconcile_orphans``.
"""
import logging
import mimetypes
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .config import MIB
from .errors import NotFound, PayloadTooLarge, RoomShareError, ValidationError, store_errors
from .metrics import ORPHAN_BLOBS_REMOVED
from .models.attachments import Attachment, new_attachment_id
from .schemas.events import ChangeEvent, ChangeKind
from .storage import make_storage_key, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AttachmentDownload:
    attachment: Attachment
    content: bytes

    @property
    def file_name(self) -> str:
        return self.attachment.file_name

    @property
    def mime_type(self) -> str:
        return self.attachment.mime_type


class AttachmentManager:
    def __init__(self, context):
        self.ctx = context
        self.settings = context.settings

    @property
    def registry(self):
        return self.ctx.registry

    @property
    def blob_store(self):
        return self.ctx.blob_store

    async def upload_attachment(self, room_code: str, file_name: str, data: bytes,
                                mime_type: Optional[str] = None, size_bytes: Optional[int] = None) -> Attachment:
        limit = self.settings.max_upload_bytes
        size = len(data) if size_bytes is None else max(size_bytes, len(data))
        if size > limit:
            raise PayloadTooLarge(f'File too large. Max size is {limit // MIB}MB' if limit >= MIB
                                  else f'File too large. Max size is {limit} bytes')
        if not file_name or not file_name.strip():
            raise ValidationError('file_name is required')

        try:
            room = await self.registry.get_room(room_code)
        except NotFound as e:
            raise ValidationError(f'Room {room_code} does not exist or has expired') from e

        now = self.ctx.clock()
        mime_type = mime_type or mimetypes.guess_type(file_name)[0] or 'application/octet-stream'
        storage_key = make_storage_key(room.code, file_name, now)
        locator = await self.blob_store.put(storage_key, data, mime_type)

        attachment = Attachment(
            id=new_attachment_id(),
            room_code=room.code,
            file_name=file_name.strip()[:255],
            storage_key=locator,
            size_bytes=len(data),
            mime_type=mime_type,
            uploaded_at=now,
        )
        try:
            await self._insert_metadata(attachment)
        except RoomShareError:
            await self._discard_blob(locator)
            raise

        logger.info(f"Uploaded {attachment.file_name} ({attachment.size_bytes} bytes) to room {room.code}")
        await self.ctx.feed.publish(ChangeEvent.attachment(ChangeKind.INSERT, attachment))
        return attachment

    async def _insert_metadata(self, attachment: Attachment):
        async with store_errors('save attachment metadata'):
            async with self.ctx.session() as session:
                session.add(attachment)
                try:
                    await session.commit()
                except IntegrityError as e:
                    # room row removed between the liveness check and the insert
                    await session.rollback()
                    raise ValidationError(f'Room {attachment.room_code} was deleted during upload') from e

    async def _discard_blob(self, key: str):
        try:
            await self.blob_store.delete(key)
            logger.info(f"Removed blob {key} after failed metadata insert")
        except RoomShareError as e:
            logger.error(f"Could not remove orphaned blob {key}, reconciliation will retry: {e}")

    async def list_attachments(self, room_code: str) -> List[Attachment]:
        """Newest upload first. Gone or expired rooms have no attachments."""
        try:
            room = await self.registry.get_room(room_code)
        except NotFound:
            return []
        async with store_errors('list attachments'):
            async with self.ctx.session() as session:
                q = await session.execute(
                    select(Attachment)
                    .where(Attachment.room_code == room.code)
                    .order_by(Attachment.uploaded_at.desc())
                )
                return list(q.scalars().all())

    async def get_attachment(self, attachment_id: str) -> Attachment:
        async with store_errors('load attachment'):
            async with self.ctx.session() as session:
                q = await session.execute(select(Attachment).where(Attachment.id == attachment_id))
                attachment = q.scalars().first()
        if attachment is None:
            raise NotFound(f'Attachment {attachment_id} not found')
        return attachment

    async def download_attachment(self, attachment_id: str) -> AttachmentDownload:
        attachment = await self.get_attachment(attachment_id)
        content = await self.blob_store.get(attachment.storage_key)
        return AttachmentDownload(attachment=attachment, content=content)

    async def delete_attachment(self, attachment_id: str) -> Attachment:
        attachment = await self.get_attachment(attachment_id)
        try:
            await self.blob_store.delete(attachment.storage_key)
        except RoomShareError as e:
            logger.warning(f"Blob delete failed for attachment {attachment_id} ({attachment.storage_key}), "
                           f"removing metadata anyway: {e}")

        async with store_errors('delete attachment'):
            async with self.ctx.session() as session:
                result = await session.execute(delete(Attachment).where(Attachment.id == attachment_id))
                await session.commit()
        if not result.rowcount:
            raise NotFound(f'Attachment {attachment_id} not found')

        logger.info(f"Deleted attachment {attachment_id} from room {attachment.room_code}")
        await self.ctx.feed.publish(ChangeEvent.attachment(ChangeKind.DELETE, attachment))
        return attachment

    async def reconcile_orphans(self, grace_seconds: Optional[int] = None) -> int:
        """Delete blobs with no metadata row that are older than the grace window.

        The window keeps uploads whose metadata insert is still in flight. Blob ages
        come from the store's own wall-clock timestamps, so the cutoff uses the wall
        clock too, not the injectable context clock.
        """
        if grace_seconds is None:
            grace_seconds = self.settings.orphan_grace_seconds
        cutoff = utcnow() - timedelta(seconds=grace_seconds)
        candidates = [b for b in await self.blob_store.list('') if b.modified_at <= cutoff]
        if not candidates:
            return 0

        known = set()
        keys = [b.key for b in candidates]
        async with store_errors('scan attachment keys'):
            async with self.ctx.session() as session:
                for start in range(0, len(keys), 500):
                    q = await session.execute(
                        select(Attachment.storage_key).where(Attachment.storage_key.in_(keys[start:start + 500]))
                    )
                    known.update(q.scalars().all())

        removed = 0
        for blob in candidates:
            if blob.key in known:
                continue
            try:
                await self.blob_store.delete(blob.key)
                removed += 1
            except RoomShareError as e:
                logger.warning(f"Failed to remove orphan blob {blob.key}: {e}")
        if removed:
            ORPHAN_BLOBS_REMOVED.inc(removed)
            logger.info(f"Removed {removed} orphan blobs")
        return removed
