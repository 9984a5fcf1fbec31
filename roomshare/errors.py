"""
Error taxonomy shared by every roomshare component.

Components raise these; the HTTP layer maps them to status codes in ``main.py``.
Store-level failures are translated through ``store_errors`` so callers never see
driver exceptions.
"""
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError


class RoomShareError(Exception):
    """Base class for all typed failures surfaced to callers"""

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message


class NotFound(RoomShareError):
    pass


class RoomExpired(NotFound):
    """Room exists in the store but its TTL has elapsed (it is being purged)"""


class ValidationError(RoomShareError):
    pass


class PayloadTooLarge(ValidationError):
    pass


class ConflictError(RoomShareError):
    pass


class StorageError(RoomShareError):
    pass


class TransientNetworkError(RoomShareError):
    pass


class SlowConsumerError(TransientNetworkError):
    """Subscriber fell behind and was disconnected; it must re-fetch state"""


def translate_store_error(exc: Exception, action: str) -> RoomShareError:
    if isinstance(exc, OperationalError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return TransientNetworkError(f'{action}: database unavailable ({exc.__class__.__name__})')
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return TransientNetworkError(f'{action}: {exc}')
    return StorageError(f'{action}: {exc.__class__.__name__}')


@asynccontextmanager
async def store_errors(action: str):
    try:
        yield
    except RoomShareError:
        raise
    except (SQLAlchemyError, ConnectionError, TimeoutError) as e:
        raise translate_store_error(e, action) from e
