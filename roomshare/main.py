import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .core import AppContext
from .errors import (
    ConflictError,
    NotFound,
    PayloadTooLarge,
    RoomExpired,
    RoomShareError,
    StorageError,
    TransientNetworkError,
    ValidationError,
)
from .logging_config import setup_logging
from .routes import router

logger = logging.getLogger('roomshare')

# most specific first
ERROR_STATUS = (
    (RoomExpired, 410),
    (NotFound, 404),
    (PayloadTooLarge, 413),
    (ValidationError, 400),
    (ConflictError, 409),
    (TransientNetworkError, 503),
    (StorageError, 502),
)


def status_for(exc: RoomShareError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    if context is None:
        context = AppContext(settings or Settings.from_env())
    settings = context.settings
    setup_logging(settings.log_level)

    app = FastAPI(title="roomshare API", version="0.1.0")
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    app.include_router(router, prefix="/api")

    @app.exception_handler(RoomShareError)
    async def roomshare_error(request: Request, exc: RoomShareError):
        status = status_for(exc)
        if status >= 500:
            logger.error({'msg': 'request_failed', 'path': request.url.path, 'error': exc.__class__.__name__,
                          'detail': exc.message})
        return JSONResponse(status_code=status, content={'detail': exc.message, 'error': exc.__class__.__name__})

    @app.get('/healthz')
    async def healthz():
        return {'status': 'ok', 'started': context.started}

    @app.middleware('http')
    async def log_requests(request: Request, call_next):
        logger.info({'msg': 'request_start', 'method': request.method, 'path': request.url.path})
        response = await call_next(request)
        logger.info({'msg': 'request_end', 'status': response.status_code})
        return response

    @app.on_event("startup")
    async def startup():
        await context.startup()

    @app.on_event("shutdown")
    async def shutdown():
        await context.shutdown()

    return app


app = create_app()
