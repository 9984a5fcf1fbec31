import os

import pytest
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from roomshare.attachments import AttachmentManager
from roomshare.config import MIB
from roomshare.errors import NotFound, PayloadTooLarge, StorageError, ValidationError
from roomshare.models.attachments import Attachment
from roomshare.models.rooms import Room
from roomshare.schemas.events import ChangeKind, EntityKind


def age_blob(blob_store, key, seconds):
    path = os.path.join(blob_store.root, *key.split('/'))
    stamp = os.stat(path).st_mtime - seconds
    os.utime(path, (stamp, stamp))


@pytest.mark.asyncio
async def test_upload_then_download(context, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'hello')
    assert att.size_bytes == 5
    assert att.mime_type == 'text/plain'
    assert att.room_code == room.code
    assert att.storage_key.startswith(f'{room.code}/')

    listed = await context.attachments.list_attachments(room.code)
    assert [a.id for a in listed] == [att.id]

    download = await context.attachments.download_attachment(att.id)
    assert download.content == b'hello'
    assert download.file_name == 'a.txt'
    assert download.mime_type == 'text/plain'


@pytest.mark.asyncio
async def test_explicit_mime_type_and_unknown_extension(context, room):
    att = await context.attachments.upload_attachment(room.code, 'photo', b'\x89PNG', mime_type='image/png')
    assert att.mime_type == 'image/png'
    other = await context.attachments.upload_attachment(room.code, 'blob.zzzunknown', b'x')
    assert other.mime_type == 'application/octet-stream'


@pytest.mark.asyncio
async def test_upload_size_limit_is_inclusive(context, room):
    data = bytes(50 * MIB)
    att = await context.attachments.upload_attachment(room.code, 'big.bin', data)
    assert att.size_bytes == 50 * MIB
    with pytest.raises(ValidationError) as exc:
        await context.attachments.upload_attachment(room.code, 'bigger.bin', data + b'x')
    assert isinstance(exc.value, PayloadTooLarge)


@pytest.mark.asyncio
async def test_declared_size_over_limit_is_rejected(context, room):
    with pytest.raises(PayloadTooLarge):
        await context.attachments.upload_attachment(room.code, 'a.txt', b'abc', size_bytes=50 * MIB + 1)


@pytest.mark.asyncio
async def test_upload_requires_file_name(context, room):
    with pytest.raises(ValidationError):
        await context.attachments.upload_attachment(room.code, '  ', b'abc')


@pytest.mark.asyncio
async def test_upload_to_missing_room_is_rejected(context):
    with pytest.raises(ValidationError):
        await context.attachments.upload_attachment('nope00', 'a.txt', b'abc')
    assert await context.blob_store.list('') == []


@pytest.mark.asyncio
async def test_upload_to_expired_room_is_rejected(context, clock, room):
    clock.advance(hours=2)
    with pytest.raises(ValidationError):
        await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')


@pytest.mark.asyncio
async def test_list_is_newest_first(context, clock, room):
    first = await context.attachments.upload_attachment(room.code, 'one.txt', b'1')
    clock.advance(seconds=1)
    second = await context.attachments.upload_attachment(room.code, 'two.txt', b'2')
    clock.advance(seconds=1)
    third = await context.attachments.upload_attachment(room.code, 'three.txt', b'3')

    listed = await context.attachments.list_attachments(room.code)
    assert [a.id for a in listed] == [third.id, second.id, first.id]


@pytest.mark.asyncio
async def test_list_for_gone_rooms_is_empty(context, clock, room):
    assert await context.attachments.list_attachments('nope00') == []
    await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    clock.advance(hours=2)
    assert await context.attachments.list_attachments(room.code) == []


@pytest.mark.asyncio
async def test_same_file_name_twice_gets_distinct_keys(context, room):
    a = await context.attachments.upload_attachment(room.code, 'dup.txt', b'first')
    b = await context.attachments.upload_attachment(room.code, 'dup.txt', b'second')
    assert a.storage_key != b.storage_key
    assert (await context.attachments.download_attachment(a.id)).content == b'first'
    assert (await context.attachments.download_attachment(b.id)).content == b'second'


@pytest.mark.asyncio
async def test_delete_then_download_is_not_found(context, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    await context.attachments.delete_attachment(att.id)
    with pytest.raises(NotFound):
        await context.attachments.download_attachment(att.id)
    with pytest.raises(NotFound):
        await context.attachments.delete_attachment(att.id)
    assert await context.blob_store.list(room.code + '/') == []


@pytest.mark.asyncio
async def test_failed_blob_delete_still_removes_metadata(context, blob_store, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    blob_store.fail_delete = True
    await context.attachments.delete_attachment(att.id)
    assert await context.attachments.list_attachments(room.code) == []
    with pytest.raises(NotFound):
        await context.attachments.get_attachment(att.id)
    # the blob is left behind as an orphan
    assert [b.key for b in await blob_store.list('')] == [att.storage_key]


@pytest.mark.asyncio
async def test_failed_metadata_insert_removes_blob(context, room):
    class BrokenMetadata(AttachmentManager):
        async def _insert_metadata(self, attachment):
            raise StorageError('metadata store unavailable')

    manager = BrokenMetadata(context)
    with pytest.raises(StorageError):
        await manager.upload_attachment(room.code, 'a.txt', b'abc')
    assert await context.blob_store.list('') == []
    assert await context.attachments.list_attachments(room.code) == []


@pytest.mark.asyncio
async def test_missing_blob_is_not_found(context, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    os.remove(os.path.join(context.blob_store.root, *att.storage_key.split('/')))
    with pytest.raises(NotFound):
        await context.attachments.download_attachment(att.id)


@pytest.mark.asyncio
async def test_room_delete_cascades_to_attachments(context, room):
    a = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    b = await context.attachments.upload_attachment(room.code, 'b.txt', b'def')
    assert await context.registry.delete_room(room.code)
    for att in (a, b):
        with pytest.raises(NotFound):
            await context.attachments.get_attachment(att.id)
    assert await context.blob_store.list('') == []


@pytest.mark.asyncio
async def test_room_delete_survives_blob_failures(context, blob_store, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    blob_store.fail_delete = True
    assert await context.registry.delete_room(room.code)
    with pytest.raises(NotFound):
        await context.registry.get_room(room.code)
    with pytest.raises(NotFound):
        await context.attachments.get_attachment(att.id)


@pytest.mark.asyncio
async def test_upload_and_delete_publish_events(context, room):
    sub = context.feed.subscribe(room.code)
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    await context.attachments.delete_attachment(att.id)

    inserted = await sub.next(timeout=1)
    deleted = await sub.next(timeout=1)
    assert (inserted.entity, inserted.change) == (EntityKind.ATTACHMENT, ChangeKind.INSERT)
    assert inserted.payload['id'] == att.id
    assert (deleted.entity, deleted.change) == (EntityKind.ATTACHMENT, ChangeKind.DELETE)
    sub.cancel()


@pytest.mark.asyncio
async def test_reconcile_removes_only_old_orphans(context, blob_store, room):
    kept = await context.attachments.upload_attachment(room.code, 'kept.txt', b'abc')
    gone = await context.attachments.upload_attachment(room.code, 'gone.txt', b'def')
    blob_store.fail_delete = True
    await context.attachments.delete_attachment(gone.id)
    blob_store.fail_delete = False

    # still inside the grace window
    assert await context.attachments.reconcile_orphans() == 0

    grace = context.settings.orphan_grace_seconds
    age_blob(blob_store, gone.storage_key, grace + 60)
    age_blob(blob_store, kept.storage_key, grace + 60)
    assert await context.attachments.reconcile_orphans() == 1
    assert [b.key for b in await blob_store.list('')] == [kept.storage_key]
    assert (await context.attachments.download_attachment(kept.id)).content == b'abc'


@pytest.mark.asyncio
async def test_metadata_for_unknown_room_is_rejected_by_store(context, clock):
    async with context.session() as session:
        session.add(Attachment(
            room_code='ghost0',
            file_name='a.txt',
            storage_key='ghost0/1-abcd-a.txt',
            size_bytes=3,
            mime_type='text/plain',
            uploaded_at=clock(),
        ))
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_room_deleted_during_upload(context, room):
    class RoomVanishes(AttachmentManager):
        async def _insert_metadata(self, attachment):
            # a concurrent delete lands after the liveness check and the blob write
            async with self.ctx.session() as session:
                await session.execute(delete(Room).where(Room.code == attachment.room_code))
                await session.commit()
            await super()._insert_metadata(attachment)

    manager = RoomVanishes(context)
    with pytest.raises(ValidationError):
        await manager.upload_attachment(room.code, 'a.txt', b'abc')
    assert await context.blob_store.list('') == []
    async with context.session() as session:
        q = await session.execute(select(Attachment).where(Attachment.room_code == room.code))
        assert q.scalars().all() == []


@pytest.mark.asyncio
async def test_room_row_delete_cascades_to_metadata(context, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    async with context.session() as session:
        await session.execute(delete(Room).where(Room.code == room.code))
        await session.commit()
    with pytest.raises(NotFound):
        await context.attachments.get_attachment(att.id)


@pytest.mark.asyncio
async def test_reconcile_ignores_skewed_context_clock(context, clock, blob_store, room):
    att = await context.attachments.upload_attachment(room.code, 'a.txt', b'abc')
    blob_store.fail_delete = True
    await context.attachments.delete_attachment(att.id)
    blob_store.fail_delete = False

    # a clock running days ahead must not age a blob written just now
    clock.advance(days=3)
    assert await context.attachments.reconcile_orphans() == 0
    assert [b.key for b in await blob_store.list('')] == [att.storage_key]
