from fastapi import APIRouter
from .rooms import router as rooms_router
from .attachments import router as attachments_router
from .ws import router as ws_router

router = APIRouter()
router.include_router(rooms_router, prefix='/rooms', tags=['rooms'])
router.include_router(attachments_router, prefix='/attachments', tags=['attachments'])
router.include_router(ws_router, prefix='/ws', tags=['ws'])
