"""
Room routes: lifecycle, content and the room's attachment collection
"""
from typing import List

from fastapi import APIRouter, Depends, File, UploadFile

from ..core import AppContext
from ..schemas.attachments import AttachmentOut
from ..schemas.rooms import ContentIn, DeletedOut, RoomCreateIn, RoomOut
from .deps import get_context

router = APIRouter()


@router.post('', response_model=RoomOut, status_code=201)
@router.post('/', response_model=RoomOut, status_code=201, include_in_schema=False)
async def create_room(payload: RoomCreateIn, ctx: AppContext = Depends(get_context)):
    return await ctx.registry.create_room(payload.ttl_hours)


@router.get('/{code}', response_model=RoomOut)
async def get_room(code: str, ctx: AppContext = Depends(get_context)):
    return await ctx.registry.get_room(code)


@router.put('/{code}/content', response_model=RoomOut)
async def update_content(code: str, payload: ContentIn, ctx: AppContext = Depends(get_context)):
    # last write wins: no version check on purpose
    return await ctx.registry.update_content(code, payload.content)


@router.delete('/{code}', response_model=DeletedOut)
async def delete_room(code: str, ctx: AppContext = Depends(get_context)):
    deleted = await ctx.registry.delete_room(code)
    return DeletedOut(deleted=deleted)


@router.get('/{code}/attachments', response_model=List[AttachmentOut])
async def list_attachments(code: str, ctx: AppContext = Depends(get_context)):
    return await ctx.attachments.list_attachments(code)


@router.post('/{code}/attachments', response_model=AttachmentOut, status_code=201)
async def upload_attachment(code: str, file: UploadFile = File(...), ctx: AppContext = Depends(get_context)):
    limit = ctx.settings.max_upload_bytes
    # never buffer more than one byte past the limit
    data = await file.read(limit + 1)
    declared = file.size if file.size is not None else len(data)
    return await ctx.attachments.upload_attachment(
        code,
        file.filename or 'file',
        data,
        mime_type=file.content_type,
        size_bytes=declared,
    )
