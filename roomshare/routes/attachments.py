from urllib.parse import quote

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from ..core import AppContext
from ..schemas.attachments import ActionOkOut
from .deps import get_context

router = APIRouter()


def content_disposition(file_name: str) -> str:
    fallback = file_name.encode('ascii', 'replace').decode('ascii').replace('"', "'")
    return f'attachment; filename="{fallback}"; filename*=UTF-8\'\'{quote(file_name)}'


@router.get('/{attachment_id}')
async def download_attachment(attachment_id: str, ctx: AppContext = Depends(get_context)):
    download = await ctx.attachments.download_attachment(attachment_id)
    return Response(
        content=download.content,
        media_type=download.mime_type,
        headers={'Content-Disposition': content_disposition(download.file_name)},
    )


@router.delete('/{attachment_id}', response_model=ActionOkOut)
async def delete_attachment(attachment_id: str, ctx: AppContext = Depends(get_context)):
    await ctx.attachments.delete_attachment(attachment_id)
    return ActionOkOut()
