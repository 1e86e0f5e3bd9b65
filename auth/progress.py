"""
auth/progress.py -- Ephemeral status records polled while a vault is provisioned.

One entry per progress id, overwritten on every update (no history). The
deadline is fixed when start() creates the entry and is never extended, so
memory stays bounded even when a flow is abandoned mid-way or nobody polls
the terminal status.

While an entry is Creating its percentage only moves forward; a late or
out-of-order milestone cannot make a poller's bar go backwards.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from cache.store import ExpiringStore
from core.models import Clock, ProvisioningProgress, ProvisioningStatus, utc_now

logger = logging.getLogger("credvault.auth.progress")

START_MESSAGE = "Setting up secure storage for your organization..."


class ProgressTracker:
    def __init__(self, ttl: timedelta = timedelta(minutes=10), clock: Clock = utc_now) -> None:
        self.ttl = ttl
        self._store: ExpiringStore[ProvisioningProgress] = ExpiringStore(ttl, clock)

    def start(self, progress_id: str, message: str = START_MESSAGE) -> ProvisioningProgress:
        progress = ProvisioningProgress(
            progress_id=progress_id,
            status=ProvisioningStatus.CREATING,
            message=message,
            percentage=0,
        )
        self._store.set(progress_id, progress)
        return progress

    def update(
        self,
        progress_id: str,
        status: ProvisioningStatus,
        message: str,
        percentage: int,
    ) -> Optional[ProvisioningProgress]:
        """Overwrite status/message/percentage.

        No-op (returns None) once the entry has expired. Completed and Failed
        are final: later updates return the entry unchanged.
        """
        current = self._store.get(progress_id)
        if current is None:
            logger.debug("Progress %s expired before update to %s", progress_id, status.value)
            return None
        if current.is_terminal:
            logger.debug("Progress %s already %s; ignoring %s", progress_id, current.status.value, status.value)
            return current
        if status == ProvisioningStatus.CREATING:
            percentage = max(current.percentage, percentage)
        updated = replace(current, status=status, message=message, percentage=max(0, min(100, percentage)))
        self._store.replace(progress_id, updated)
        return updated

    def complete(
        self,
        progress_id: str,
        authorization_url: str,
        state: str,
        expires_at: datetime,
        message: str = "Setup complete! You can now authorize access to your environment.",
    ) -> Optional[ProvisioningProgress]:
        current = self._store.get(progress_id)
        if current is None:
            logger.info("Progress %s expired before completion; authorization URL discarded", progress_id)
            return None
        completed = replace(
            current,
            status=ProvisioningStatus.COMPLETED,
            message=message,
            percentage=100,
            authorization_url=authorization_url,
            state=state,
            expires_at=expires_at,
        )
        self._store.replace(progress_id, completed)
        return completed

    def fail(self, progress_id: str, message: str) -> Optional[ProvisioningProgress]:
        return self.update(progress_id, ProvisioningStatus.FAILED, message, 0)

    def get(self, progress_id: str) -> Optional[ProvisioningProgress]:
        return self._store.get(progress_id)

    def expires_at(self, progress_id: str) -> Optional[datetime]:
        return self._store.expires_at(progress_id)

    def purge_expired(self) -> int:
        return self._store.purge_expired()
