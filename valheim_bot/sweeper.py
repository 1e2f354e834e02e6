from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from .compute import ComputeClient
from .config import Settings
from .exceptions import ConfigurationError, ControlPlaneError, NotFoundError
from .models import ContainerState
from .status_cache import StatusCache, utcnow

logger = logging.getLogger(__name__)


class SweepOutcome(str, Enum):
    NOT_RUNNING = "not_running"
    WITHIN_BUDGET = "within_budget"
    SHUT_DOWN = "shut_down"
    SKIPPED = "skipped"


class AutoShutdownSweeper:
    """Deletes the server once it has run longer than its time budget.

    The start time comes from the control plane's instance view, not from the
    status cache, so forgotten servers are reclaimed after a restart too.
    """

    def __init__(
        self,
        settings: Settings,
        compute: ComputeClient,
        cache: StatusCache,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.compute = compute
        self.cache = cache
        self._clock = clock

    @property
    def name(self) -> str:
        return self.settings.container_group_name

    async def sweep_once(self) -> SweepOutcome:
        now = self._clock()
        logger.info("Auto-shutdown sweep executed at: %s", now.strftime("%Y-%m-%dT%H:%M:%SZ"))
        try:
            async with self.cache.lock(self.name):
                descriptor = await self.compute.get(self.name)
                if descriptor.state is not ContainerState.RUNNING:
                    logger.info("Server is not running, no action needed")
                    return SweepOutcome.NOT_RUNNING
                if descriptor.started_at is None:
                    logger.warning("Server is running but reports no start time, skipping")
                    return SweepOutcome.SKIPPED

                deadline = descriptor.started_at + timedelta(minutes=self.settings.auto_shutdown_minutes)
                if now < deadline:
                    logger.info("Server still running. Auto-shutdown at %s UTC", deadline.strftime("%Y-%m-%d %H:%M:%S"))
                    return SweepOutcome.WITHIN_BUDGET

                logger.info("Auto-shutdown time reached. Stopping server...")
                await self.compute.delete(self.name, wait=False)
                self.cache.mark_stopped(self.name)
                logger.info("Server stopped successfully")
                return SweepOutcome.SHUT_DOWN
        except NotFoundError:
            logger.info("Container group %s not found, no action needed", self.name)
            return SweepOutcome.NOT_RUNNING
        except (ConfigurationError, ControlPlaneError) as exc:
            logger.warning("Auto-shutdown sweep skipped: %s", exc)
            return SweepOutcome.SKIPPED

    async def run(self, interval: float) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Unexpected error during auto-shutdown sweep")
            await asyncio.sleep(interval)
