"""Periodic polling of every connected provider."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from ..errors import SyncCancelled
from ..lib.log import get_logger
from ..types import ProviderName
from .engine import SyncEngine

logger = get_logger(__name__)


class Scheduler:
    """Run ``engine.run_sync`` for each provider every ``interval`` seconds.

    A provider's loop ends when it loses authentication or is not connected;
    all loops end when the engine's cancellation token fires.
    """

    def __init__(self, engine: SyncEngine, interval: Optional[float] = None) -> None:
        self.engine = engine
        self.interval = interval if interval is not None else engine.settings.poll_interval_seconds

    async def run(self, names: Optional[Iterable[ProviderName]] = None) -> None:
        selected = list(names) if names is not None else self.engine.connected()
        if not selected:
            logger.info("scheduler_idle")
            return
        logger.info("scheduler_started", providers=[name.value for name in selected], interval=self.interval)
        await asyncio.gather(*(self._poll(name) for name in selected))
        logger.info("scheduler_stopped")

    async def _poll(self, name: ProviderName) -> None:
        token = self.engine.cancel_token
        while not token.cancelled:
            try:
                result = await self.engine.run_sync(name)
            except SyncCancelled:
                return
            if result.auth_failed:
                logger.warning("polling_stopped", provider=name.value, reason="auth_failed")
                return
            if not self.engine.providers[name].is_connected():
                logger.warning("polling_stopped", provider=name.value, reason="disconnected")
                return
            try:
                await token.sleep(self.interval)
            except SyncCancelled:
                return


__all__ = ["Scheduler"]
