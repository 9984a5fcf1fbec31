"""
Content synchronization on top of the registry and the change feed.

Writes to one room are committed and published while holding a per-room lock, so
events leave this process in commit order. ``RoomSession`` is the consumer side:
local edits are echoed immediately and every remote event then overwrites local
state, even if that reverts an edit still in flight. Concurrent edits are
last-write-wins, never merged.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from .errors import RoomShareError
from .schemas.events import ChangeEvent, ChangeKind, EntityKind

logger = logging.getLogger(__name__)


class CommitSequencer:
    """Per-key async locks that disappear once no writer holds or waits on them"""

    def __init__(self):
        self._locks: Dict[str, list] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


class RoomSession:
    def __init__(self, synchronizer: 'ContentSynchronizer', room, subscription):
        self._sync = synchronizer
        self.subscription = subscription
        self.code = room.code
        self.content = room.content
        self.version = room.version
        self.updated_at = room.updated_at
        self.expires_at = room.expires_at
        self.created_at = room.created_at
        self.attachment_changes = 0
        self.gone = False

    def snapshot(self) -> dict:
        return {
            'code': self.code,
            'content': self.content,
            'version': self.version,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }

    async def edit(self, content: str):
        """Echo ``content`` locally, then commit it. Returns the committed room.

        A rejected write restores the previous local content.
        """
        previous, self.content = self.content, content
        try:
            return await self._sync.registry.update_content(self.code, content)
        except RoomShareError:
            self.content = previous
            raise

    def apply(self, event: ChangeEvent) -> bool:
        """Apply a remote event; returns False when it was older than local state"""
        if event.entity == EntityKind.ATTACHMENT:
            self.attachment_changes += 1
            return True
        if event.change == ChangeKind.DELETE:
            self.gone = True
            return True
        version = event.payload.get('version', 0)
        if version <= self.version:
            logger.debug(f"Ignoring stale update v{version} for room {self.code} (at v{self.version})")
            return False
        self.content = event.payload.get('content', '')
        self.version = version
        return True

    async def next_change(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        event = await self.subscription.next(timeout)
        if event is not None:
            self.apply(event)
        return event

    def close(self):
        self.subscription.cancel()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()


class ContentSynchronizer:
    def __init__(self, context):
        self.ctx = context

    @property
    def registry(self):
        return self.ctx.registry

    async def open_session(self, code: str) -> RoomSession:
        code = self.registry.normalize_code(code)
        # subscribe before reading so no commit falls between snapshot and stream
        subscription = self.ctx.feed.subscribe(code)
        try:
            room = await self.registry.get_room(code)
        except BaseException:
            subscription.cancel()
            raise
        return RoomSession(self, room, subscription)
