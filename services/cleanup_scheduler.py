"""
Cleanup Scheduler
Reclaims an escrow room after its transaction completes.

Per-room lifecycle:
    ACTIVE --(transaction confirmed)--> CLEANUP_SCHEDULED --(grace delay)--> RELEASED
    any state --(room emptied out-of-band)--> RELEASED   (pending timer cancelled)

The grace timer is a one-shot APScheduler ``date`` job keyed ``channel_cleanup_<id>``;
this class owns the only registry of those jobs. When the timer fires, evictions,
invite revocation and notifications are best-effort. The pool release in the
``finally`` block always runs, and is guarded by the reservation lease so a stale
timer can never free a room that has been handed to a new pair.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import Config
from services.capabilities import ChannelTransport, Notifier
from services.channel_pool import ChannelPool

logger = logging.getLogger(__name__)


class CleanupState(Enum):
    ACTIVE = "active"
    CLEANUP_SCHEDULED = "cleanup_scheduled"
    RELEASED = "released"


@dataclass(frozen=True)
class PendingCleanup:
    lease: int
    participants: Tuple[int, ...]
    run_at: datetime


class CleanupScheduler:
    """Deferred, cancellable, idempotent room reclamation"""

    JOB_PREFIX = "channel_cleanup_"

    WARNING_MESSAGE = "⚠️ The transaction is complete. Participants will be removed from this group in {seconds} seconds."
    CLOSING_MESSAGE = "🔒 This group will be closed. Thank you for using our escrow service."
    FINAL_MESSAGE = "🔒 This group has been cleaned up. Thank you for using our escrow service."

    def __init__(
        self,
        pool: ChannelPool,
        transport: ChannelTransport,
        notifier: Notifier,
        grace_seconds: Optional[float] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.pool = pool
        self.transport = transport
        self.notifier = notifier
        self.grace_seconds = Config.CLEANUP_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None,  # A late cleanup must still run
            },
            timezone='UTC',
        )
        self._pending: Dict[str, PendingCleanup] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler; must be called from a running event loop"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("🗓️ Cleanup scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Cleanup scheduler stopped")

    def job_id(self, channel_id) -> str:
        return f"{self.JOB_PREFIX}{channel_id}"

    def state_of(self, channel_id) -> CleanupState:
        channel_id = str(channel_id)
        if channel_id in self._pending:
            return CleanupState.CLEANUP_SCHEDULED
        if self.pool.is_managed(channel_id) and self.pool.get(channel_id).is_busy:
            return CleanupState.ACTIVE
        return CleanupState.RELEASED

    def has_pending_timer(self, channel_id) -> bool:
        return self.scheduler.get_job(self.job_id(channel_id)) is not None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_cleanup(self, channel_id, participants: Iterable[int] = ()) -> bool:
        """
        Arm the grace timer and warn the room.

        Re-scheduling a room replaces its timer, so there is at most one per room.
        Returns False when the room is not busy (nothing to reclaim).
        """
        channel_id = str(channel_id)
        channel = self.pool.get(channel_id)
        if not channel.is_busy:
            logger.info(f"Cleanup not scheduled for {channel_id}: room already free")
            return False

        members = tuple(dict.fromkeys(list(participants) or channel.participants))

        # Armed before the warnings go out so a release_now during them disarms it
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self.grace_seconds)
        self.scheduler.add_job(
            self.run_cleanup,
            'date',
            run_date=run_at,
            args=[channel_id],
            id=self.job_id(channel_id),
            name=f"Cleanup escrow room {channel_id}",
            replace_existing=True,
        )
        self._pending[channel_id] = PendingCleanup(lease=channel.lease, participants=members, run_at=run_at)
        logger.info(
            f"⏲️ CLEANUP_SCHEDULED: room={channel_id} lease={channel.lease} "
            f"participants={list(members)} in {self.grace_seconds}s"
        )

        await self._notify(channel_id, self.WARNING_MESSAGE.format(seconds=self._format_seconds()))
        await self._notify(channel_id, self.CLOSING_MESSAGE)
        return True

    def cancel_scheduled(self, channel_id) -> bool:
        """Disarm the room's timer if it has not fired yet"""
        channel_id = str(channel_id)
        self._pending.pop(channel_id, None)
        try:
            self.scheduler.remove_job(self.job_id(channel_id))
        except JobLookupError:
            return False
        logger.info(f"🧹 CLEANUP_CANCELLED: room={channel_id}")
        return True

    def release_now(self, channel_id) -> bool:
        """External signal (room emptied): cancel any timer and free the room immediately"""
        channel_id = str(channel_id)
        self.cancel_scheduled(channel_id)
        released = self.pool.release(channel_id)
        if released:
            logger.info(f"🚪 ROOM_RELEASED_EARLY: {channel_id}")
        return released

    # ------------------------------------------------------------------
    # Timer body
    # ------------------------------------------------------------------

    async def run_cleanup(self, channel_id) -> None:
        """Evict, revoke, notify (all best-effort), then always release"""
        channel_id = str(channel_id)
        pending = self._pending.get(channel_id)
        lease = pending.lease if pending else None
        logger.info(f"Executing cleanup for room {channel_id}")

        try:
            snapshot = self.pool.get(channel_id)
            if not snapshot.is_busy or (lease is not None and snapshot.lease != lease):
                logger.info(f"Room {channel_id} already released or reused - skipping cleanup actions")
                return
            lease = snapshot.lease

            members = pending.participants if pending else tuple(snapshot.participants)
            for identity in members:
                if not self._holds_lease(channel_id, lease):
                    logger.info(f"Room {channel_id} was reused during cleanup - stopping evictions")
                    break
                try:
                    await self.transport.evict(channel_id, identity)
                except Exception as e:
                    logger.warning(f"Could not remove user {identity} from room {channel_id}: {e}")

            # Token is this deal's, never the next pair's: revoked even after reuse
            token = snapshot.invite_token
            if token and token.strip():
                try:
                    await self.transport.revoke_invite(channel_id, token)
                except Exception as e:
                    logger.warning(f"Could not revoke invite link for room {channel_id}: {e}")
            else:
                logger.info(f"No invite link recorded for room {channel_id}, skipping revoke")

            if self._holds_lease(channel_id, lease):
                await self._notify(channel_id, self.FINAL_MESSAGE)
            else:
                logger.info(f"Room {channel_id} was reused during cleanup - skipping final message")
        finally:
            self.pool.release(channel_id, lease=lease)
            current = self._pending.get(channel_id)
            if current is pending:
                self._pending.pop(channel_id, None)
            logger.info(f"✅ CLEANUP_COMPLETED: room={channel_id}")

    def _holds_lease(self, channel_id: str, lease: int) -> bool:
        current = self.pool.get(channel_id)
        return current.is_busy and current.lease == lease

    async def _notify(self, channel_id: str, text: str) -> None:
        try:
            await self.notifier.send(channel_id, text)
        except Exception as e:
            logger.warning(f"Could not send message to room {channel_id}: {e}")

    def _format_seconds(self) -> str:
        seconds = self.grace_seconds
        return str(int(seconds)) if float(seconds).is_integer() else str(seconds)
