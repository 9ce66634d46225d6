"""
Channel Pool
Fixed set of reusable escrow rooms (Telegram groups). Tracks which rooms are
free or busy, which two identities may act in a busy room, its invite token,
its in-flight transaction and the initiator -> room pending-invite index.

The pool exclusively owns this state. Every operation runs under one re-entrant
lock, so reserve/release/attach are mutually exclusive per room and
``reserve_free`` (find + reserve) is a single critical section.
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from utils.exceptions import AlreadyBusy, NoFreeChannel, NotFound

logger = logging.getLogger(__name__)


class ChannelState(Enum):
    FREE = "free"
    BUSY = "busy"


@dataclass(frozen=True)
class ChannelSnapshot:
    """Immutable view of one room; handed out instead of the live record"""
    channel_id: str
    state: ChannelState
    initiator_id: Optional[int] = None
    partner_id: Optional[int] = None
    invite_token: Optional[str] = None
    transaction_id: Optional[int] = None
    lease: int = 0

    @property
    def is_busy(self) -> bool:
        return self.state is ChannelState.BUSY

    @property
    def participants(self) -> List[int]:
        return [i for i in (self.initiator_id, self.partner_id) if i is not None]


@dataclass(frozen=True)
class PendingInvite:
    channel_id: str
    invite_token: Optional[str]


class ChannelPool:
    """Free/busy bookkeeping for a fixed, ordered set of channel ids"""

    def __init__(self, channel_ids: Iterable):
        ordered: List[str] = []
        for cid in channel_ids:
            key = str(cid).strip()
            if key and key not in ordered:
                ordered.append(key)
        self._order: Tuple[str, ...] = tuple(ordered)
        self._channels: Dict[str, ChannelSnapshot] = {
            cid: ChannelSnapshot(channel_id=cid, state=ChannelState.FREE) for cid in self._order
        }
        self._pending_invites: Dict[int, PendingInvite] = {}
        self._lock = threading.RLock()
        logger.info(f"🏠 Channel pool initialised with {len(self._order)} rooms")

    @property
    def channel_ids(self) -> Tuple[str, ...]:
        return self._order

    def is_managed(self, channel_id) -> bool:
        return str(channel_id) in self._channels

    def _require(self, channel_id) -> ChannelSnapshot:
        channel = self._channels.get(str(channel_id))
        if channel is None:
            raise NotFound(f"Channel {channel_id} is not an escrow room")
        return channel

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def find_free(self) -> Optional[str]:
        """First free room in configuration order, or None"""
        with self._lock:
            for cid in self._order:
                if self._channels[cid].state is ChannelState.FREE:
                    return cid
            return None

    def reserve(self, channel_id, initiator_id: int, partner_id: int, invite_token: Optional[str] = None) -> int:
        """free -> busy for the given pair; returns the new lease number"""
        with self._lock:
            channel = self._require(channel_id)
            if channel.is_busy:
                raise AlreadyBusy(f"Channel {channel.channel_id} is already in use")

            updated = replace(
                channel,
                state=ChannelState.BUSY,
                initiator_id=initiator_id,
                partner_id=partner_id,
                invite_token=invite_token,
                transaction_id=None,
                lease=channel.lease + 1,
            )
            self._channels[channel.channel_id] = updated
            self._pending_invites[initiator_id] = PendingInvite(channel.channel_id, invite_token)

        logger.info(
            f"🔐 CHANNEL_RESERVED: {updated.channel_id} initiator={initiator_id} "
            f"partner={partner_id} lease={updated.lease}"
        )
        return updated.lease

    def reserve_free(self, initiator_id: int, partner_id: int) -> str:
        """Atomically pick the first free room and reserve it"""
        with self._lock:
            channel_id = self.find_free()
            if channel_id is None:
                logger.warning("⏳ NO_FREE_CHANNEL: all escrow rooms are busy")
                raise NoFreeChannel("All groups are busy, please try later.")
            self.reserve(channel_id, initiator_id, partner_id)
            return channel_id

    def attach_invite(self, channel_id, invite_token: str) -> None:
        with self._lock:
            channel = self._require(channel_id)
            if not channel.is_busy:
                raise NotFound(f"Channel {channel.channel_id} has no active deal")
            self._channels[channel.channel_id] = replace(channel, invite_token=invite_token)
            self._pending_invites[channel.initiator_id] = PendingInvite(channel.channel_id, invite_token)

    def attach_transaction(self, channel_id, tx_id: int) -> None:
        with self._lock:
            channel = self._require(channel_id)
            if not channel.is_busy:
                raise NotFound(f"Channel {channel.channel_id} has no active deal")
            self._channels[channel.channel_id] = replace(channel, transaction_id=tx_id)
        logger.info(f"🔗 CHANNEL_TRANSACTION: {channel_id} tx={tx_id}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_allowed(self, channel_id, identity: int) -> bool:
        with self._lock:
            channel = self._channels.get(str(channel_id))
            if channel is None or not channel.is_busy:
                return False
            return identity in (channel.initiator_id, channel.partner_id)

    def find_by_identity(self, initiator_id: int) -> Optional[Tuple[str, Optional[str]]]:
        with self._lock:
            pending = self._pending_invites.get(initiator_id)
            if pending is None:
                return None
            return pending.channel_id, pending.invite_token

    def get(self, channel_id) -> ChannelSnapshot:
        with self._lock:
            return self._require(channel_id)

    def snapshot(self) -> List[ChannelSnapshot]:
        with self._lock:
            return [self._channels[cid] for cid in self._order]

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release(self, channel_id, lease: Optional[int] = None) -> bool:
        """
        busy -> free, clearing pair, token, transaction and pending invite.

        Idempotent: a free or unknown room is a no-op. When ``lease`` is given
        and the room has since been re-reserved, the call is a no-op too.
        Returns True only when a busy room was actually freed.
        """
        with self._lock:
            channel = self._channels.get(str(channel_id))
            if channel is None or not channel.is_busy:
                return False
            if lease is not None and lease != channel.lease:
                logger.info(
                    f"⏭️ CHANNEL_RELEASE_SKIPPED: {channel.channel_id} lease {lease} "
                    f"superseded by {channel.lease}"
                )
                return False

            pending = self._pending_invites.get(channel.initiator_id)
            if pending is not None and pending.channel_id == channel.channel_id:
                del self._pending_invites[channel.initiator_id]

            self._channels[channel.channel_id] = ChannelSnapshot(
                channel_id=channel.channel_id, state=ChannelState.FREE, lease=channel.lease
            )

        logger.info(f"🔓 CHANNEL_RELEASED: {channel_id}")
        return True
