"""
Expiration reaper.

Rooms are already purged lazily when read after their TTL; the sweep reclaims
storage for rooms nobody revisits and removes orphaned blobs. Run it inside the
service (``REAPER_INTERVAL_SECONDS``) or from an external scheduler with
``python -m roomshare.reaper``.
"""
import asyncio
import logging
from typing import Dict, Optional

from .errors import RoomShareError
from .metrics import ROOMS_REAPED

logger = logging.getLogger(__name__)


class ExpirationReaper:
    def __init__(self, context, interval: Optional[float] = None, batch_size: Optional[int] = None):
        self.ctx = context
        self.interval = interval if interval is not None else context.settings.reaper_interval_seconds
        self.batch_size = batch_size or context.settings.reaper_batch_size
        self.running = False
        self.swept_count = 0
        self.error_count = 0
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> int:
        """Delete every expired room (with attachments). Returns how many rooms were removed."""
        registry = self.ctx.registry
        removed = 0
        while True:
            codes = await registry.list_expired_codes(self.batch_size)
            if not codes:
                break
            progressed = 0
            for code in codes:
                try:
                    if await registry.delete_room(code):
                        removed += 1
                        progressed += 1
                        ROOMS_REAPED.labels(path='sweep').inc()
                except RoomShareError as e:
                    self.error_count += 1
                    logger.error(f"Failed to reap room {code}: {e}")
            if progressed == 0 or len(codes) < self.batch_size:
                break

        orphans = 0
        try:
            orphans = await self.ctx.attachments.reconcile_orphans()
        except RoomShareError as e:
            self.error_count += 1
            logger.error(f"Orphan blob reconciliation failed: {e}")

        self.swept_count += removed
        if removed or orphans:
            logger.info(f"Sweep removed {removed} expired rooms and {orphans} orphan blobs")
        return removed

    async def run(self):
        logger.info(f"Starting expiration reaper (every {self.interval}s)")
        while self.running:
            try:
                await self.sweep()
            except RoomShareError as e:
                self.error_count += 1
                logger.error(f"Reaper sweep error: {e}")
            except Exception as e:
                # keep sweeping; an untyped failure must not end the loop
                self.error_count += 1
                logger.exception(f"Unexpected reaper sweep error: {e}")
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self._task = asyncio.create_task(self.run())

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("Stopped expiration reaper")

    def get_stats(self) -> Dict[str, int]:
        return {
            'swept': self.swept_count,
            'errors': self.error_count,
            'running': self.running,
        }


async def run_once() -> int:
    from .config import Settings
    from .core import AppContext
    from .logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(settings.log_level)
    context = AppContext(settings)
    await context.startup(start_reaper=False)
    try:
        return await context.reaper.sweep()
    finally:
        await context.shutdown()


if __name__ == '__main__':
    asyncio.run(run_once())
