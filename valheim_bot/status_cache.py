from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import ResourceStatus, ServerPhase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusCache:
    """Process-local view of each resource's last known phase.

    Best-effort only: the control plane stays the source of truth and the
    cache is empty again after a restart. ``lock(name)`` hands out one
    ``asyncio.Lock`` per resource name so create/delete never interleave.
    """

    def __init__(self, timeout_minutes: int) -> None:
        self.timeout_minutes = timeout_minutes
        self._entries: dict[str, ResourceStatus] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def get(self, name: str) -> Optional[ResourceStatus]:
        return self._entries.get(name)

    def mark_starting(self, name: str, now: datetime) -> ResourceStatus:
        return self._set(name, ServerPhase.STARTING, now)

    def mark_running(self, name: str, now: datetime) -> ResourceStatus:
        return self._set(name, ServerPhase.RUNNING, now)

    def mark_failed(self, name: str) -> ResourceStatus:
        status = ResourceStatus(phase=ServerPhase.FAILED)
        self._entries[name] = status
        return status

    def mark_stopped(self, name: str) -> ResourceStatus:
        status = ResourceStatus(phase=ServerPhase.STOPPED)
        self._entries[name] = status
        return status

    def _set(self, name: str, phase: ServerPhase, now: datetime) -> ResourceStatus:
        status = ResourceStatus(
            phase=phase,
            started_at=now,
            auto_shutdown_at=now + timedelta(minutes=self.timeout_minutes),
        )
        self._entries[name] = status
        return status
