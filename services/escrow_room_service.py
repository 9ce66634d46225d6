"""
Escrow Room Service
Orchestrates the escrow room flow used by the Telegram handlers and the admin API:

1. open_room:  reserve a free room for (initiator, partner), create its invite link
2. pay:        gated payment request inside the room -> pending transaction
3. confirm:    gated buyer confirmation -> seller credited, room cleanup scheduled
4. handle_member_left: room emptied early -> cancel timer, release immediately

Business errors (utils.exceptions) propagate to the caller unchanged. Notifications
are best-effort.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from config import Config
from models import Transaction, User
from services.capabilities import ChannelTransport, Notifier
from services.channel_pool import ChannelPool
from services.cleanup_scheduler import CleanupScheduler
from services.gating_policy import GatingPolicy
from services.ledger import Ledger
from services.transaction_engine import TransactionEngine
from utils.exceptions import InviteCreationFailed, NotFound, Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomInvite:
    channel_id: str
    invite_link: str
    initiator: User
    partner: User


class EscrowRoomService:
    """Single entry point for room allocation, payments and confirmations"""

    def __init__(
        self,
        ledger: Ledger,
        pool: ChannelPool,
        engine: TransactionEngine,
        cleanup: CleanupScheduler,
        transport: ChannelTransport,
        notifier: Notifier,
        invite_member_limit: Optional[int] = None,
    ):
        self.ledger = ledger
        self.pool = pool
        self.engine = engine
        self.cleanup = cleanup
        self.transport = transport
        self.notifier = notifier
        self.invite_member_limit = invite_member_limit or Config.INVITE_MEMBER_LIMIT

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def register(self, telegram_id: int, username: str) -> User:
        return self.ledger.create_user(telegram_id, username)

    def balance(self, telegram_id: int) -> User:
        return self.ledger.get_user_by_telegram_id(telegram_id)

    def history(self, telegram_id: int) -> List[Transaction]:
        user = self.ledger.get_user_by_telegram_id(telegram_id)
        return self.ledger.list_transactions_for_user(user.id)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def open_room(self, initiator_telegram_id: int, partner_username: str) -> RoomInvite:
        """Reserve a room for the initiator and partner and send the partner the invite"""
        initiator = self.ledger.get_user_by_telegram_id(initiator_telegram_id)
        partner = self.ledger.get_user_by_username(partner_username)
        GatingPolicy.require_distinct_parties(
            initiator, partner, "You cannot create a transaction with yourself"
        )

        channel_id = self.pool.reserve_free(initiator.telegram_id, partner.telegram_id)
        try:
            invite_link = await self.transport.create_invite(channel_id, self.invite_member_limit)
        except Exception as e:
            # No half-reserved room: give it back before reporting
            logger.error(f"❌ Invite creation failed for room {channel_id}: {e}")
            self.pool.release(channel_id)
            raise InviteCreationFailed("Could not create an invite link, please try again later") from e

        self.pool.attach_invite(channel_id, invite_link)
        logger.info(
            f"🏠 ROOM_OPENED: room={channel_id} initiator={initiator.telegram_id} partner={partner.telegram_id}"
        )

        await self._notify(
            partner.telegram_id, f"📩 Chat invite from {initiator.username}: {invite_link}"
        )
        return RoomInvite(channel_id=channel_id, invite_link=invite_link, initiator=initiator, partner=partner)

    def _require_room(self, channel_id) -> str:
        channel_id = str(channel_id)
        if not self.pool.is_managed(channel_id):
            raise NotFound("This command can only be used in an official escrow group")
        return channel_id

    async def pay(self, channel_id, sender_telegram_id: int, seller_username: str, amount) -> Transaction:
        """Buyer (sender) opens a pending transaction to the seller inside the room"""
        channel_id = self._require_room(channel_id)
        GatingPolicy.require_channel_access(
            channel_id, sender_telegram_id, self.pool,
            "You are not allowed to make transactions in this group"
        )

        buyer = self.ledger.get_user_by_telegram_id(sender_telegram_id)
        seller = self.ledger.get_user_by_username(seller_username)
        GatingPolicy.require_channel_access(
            channel_id, seller.telegram_id, self.pool,
            "The user you are paying is not allowed to receive payments in this group"
        )
        GatingPolicy.require_distinct_parties(buyer, seller, "You cannot pay yourself")

        tx = self.engine.open(buyer.id, seller.id, amount, channel_id=channel_id)
        self.pool.attach_transaction(channel_id, tx.id)

        await self._notify(
            seller.telegram_id,
            f"💸 New payment request: ID={tx.id}, from {buyer.username}, amount={tx.amount}."
        )
        return tx

    async def confirm(self, channel_id, sender_telegram_id: int, tx_id: int) -> Transaction:
        """Buyer releases funds; the room is then scheduled for cleanup"""
        channel_id = self._require_room(channel_id)
        GatingPolicy.require_channel_access(
            channel_id, sender_telegram_id, self.pool,
            "You are not allowed to confirm transactions in this group"
        )

        confirmer = self.ledger.get_user_by_telegram_id(sender_telegram_id)
        existing = self.engine.get(tx_id)
        if existing.channel_id is not None and existing.channel_id != channel_id:
            raise Unauthorized("This transaction does not belong to this group")

        tx = self.engine.confirm(tx_id, confirmer.id)
        seller = self.ledger.get_user(tx.seller_id)

        await self._notify(
            seller.telegram_id, f"💰 You received {tx.amount} for Transaction ID={tx.id}."
        )

        logger.info(f"Starting cleanup for room {channel_id} after transaction {tx.id} completion")
        await self.cleanup.schedule_cleanup(channel_id, [confirmer.telegram_id, seller.telegram_id])
        return tx

    async def admin_confirm(self, tx_id: int, buyer_id: int) -> Transaction:
        """
        Confirm on behalf of the buyer (internal user id) from the admin API.

        If the room the deal was opened in still holds this transaction, that
        room is scheduled for cleanup exactly as after an in-group /confirm.
        """
        tx = self.engine.confirm(tx_id, buyer_id)
        seller = self.ledger.get_user(tx.seller_id)
        await self._notify(seller.telegram_id, f"💰 You received {tx.amount} for Transaction ID={tx.id}.")

        if tx.channel_id and self.pool.is_managed(tx.channel_id):
            room = self.pool.get(tx.channel_id)
            if room.is_busy and room.transaction_id == tx.id:
                buyer = self.ledger.get_user(tx.buyer_id)
                await self.cleanup.schedule_cleanup(tx.channel_id, [buyer.telegram_id, seller.telegram_id])
        return tx

    async def handle_member_left(self, channel_id) -> bool:
        """Release the room immediately once only the bot is left in it"""
        channel_id = str(channel_id)
        if not self.pool.is_managed(channel_id):
            return False
        try:
            count = await self.transport.member_count(channel_id)
        except Exception as e:
            logger.error(f"Error checking member count for room {channel_id}: {e}")
            return False

        if count <= 1:
            logger.info(f"Room {channel_id} is now empty, releasing")
            room = self.pool.get(channel_id)
            if room.is_busy and room.invite_token:
                try:
                    await self.transport.revoke_invite(channel_id, room.invite_token)
                except Exception as e:
                    logger.warning(f"Could not revoke invite link for room {channel_id}: {e}")
            self.cleanup.release_now(channel_id)
            return True
        return False

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def broadcast(self, message: str) -> int:
        """Send ``message`` to every registered user; returns the number of users targeted"""
        users = self.ledger.list_users()
        for user in users:
            await self._notify(user.telegram_id, message)
        logger.info(f"📣 Broadcast sent to {len(users)} users")
        return len(users)

    async def _notify(self, target, text: str) -> None:
        try:
            await self.notifier.send(target, text)
        except Exception as e:
            logger.warning(f"Could not notify {target}: {e}")
