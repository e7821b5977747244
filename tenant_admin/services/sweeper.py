"""
Expiry sweeper — forcibly ends impersonation sessions past their deadline.

`sweep_once` is one deterministic pass; `start` / `stop` own a
cancellable background task that repeats the pass on a fixed interval
and is tied to the application lifecycle.

Each session is ended through the manager's regular stop path with
`end_reason=expired`, so sweeping produces exactly the same row update
and audit record as any other stop.  A session that a concurrent
manual stop already ended surfaces as `NotFound` and is skipped.

Sessions that never got a credential issuance record (a start that
died mid-way in another process) are swept once they are older than
the configured grace period.
"""

import asyncio
import logging
from datetime import timedelta

from tenant_admin.core.config import Settings, settings as default_settings
from tenant_admin.core.exceptions import NotFound
from tenant_admin.models.base import Clock, utcnow
from tenant_admin.models.impersonation import EndReason
from tenant_admin.services.impersonation_service import ImpersonationManager

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        manager: ImpersonationManager,
        *,
        interval_seconds: float | None = None,
        clock: Clock = utcnow,
        settings: Settings = default_settings,
    ):
        self._manager = manager
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else settings.IMPERSONATION_SWEEP_INTERVAL_SECONDS
        )
        self._grace = timedelta(seconds=settings.CREDENTIAL_ISSUANCE_GRACE_SECONDS)
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        """End every sweepable session; returns how many this pass ended."""
        now = self._clock()
        candidates = await self._manager.store.find_sweepable(now, now - self._grace)

        swept = 0
        for session_id in candidates:
            try:
                await self._manager.stop(session_id, end_reason=EndReason.EXPIRED)
            except NotFound:
                logger.debug("Session %s already ended, skipping", session_id)
                continue
            swept += 1

        if swept:
            logger.info("Swept %d expired impersonation session(s)", swept)
        else:
            logger.debug("Impersonation sweep found nothing to expire")
        return swept

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="impersonation-sweeper")
        logger.info("Impersonation sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Impersonation sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                # A failed pass must not kill the loop; the next pass retries.
                logger.exception("Impersonation sweep failed")
