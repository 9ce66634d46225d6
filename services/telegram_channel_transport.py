"""
Telegram Channel Transport
python-telegram-bot implementations of the Notifier and ChannelTransport capabilities.

Notifier failures are logged and swallowed (best-effort). Transport calls raise
TelegramError to the caller - the escrow service and cleanup scheduler decide
which of those are fatal.
"""

import logging
from telegram import Bot
from telegram.error import Forbidden, TelegramError

from services.capabilities import ChatTarget

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Sends plain or HTML messages; never raises"""

    def __init__(self, bot: Bot, parse_mode: str = None):
        self.bot = bot
        self.parse_mode = parse_mode

    async def send(self, target: ChatTarget, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=target, text=text, parse_mode=self.parse_mode)
        except Forbidden:
            logger.warning(f"Bot cannot message {target} (blocked or removed)")
        except TelegramError as e:
            logger.error(f"Failed to send message to {target}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error sending message to {target}: {e}")


class TelegramChannelTransport:
    """Group membership primitives over the Telegram Bot API"""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def create_invite(self, channel_id: str, max_uses: int) -> str:
        invite = await self.bot.create_chat_invite_link(chat_id=channel_id, member_limit=max_uses)
        logger.info(f"🔗 Invite link created for group {channel_id} (member_limit={max_uses})")
        return invite.invite_link

    async def revoke_invite(self, channel_id: str, token: str) -> None:
        await self.bot.revoke_chat_invite_link(chat_id=channel_id, invite_link=token)
        logger.info(f"Invite link revoked for group {channel_id}")

    async def evict(self, channel_id: str, identity: int) -> None:
        # Ban removes the member; the immediate unban lets them join future rooms
        await self.bot.ban_chat_member(chat_id=channel_id, user_id=identity)
        await self.bot.unban_chat_member(chat_id=channel_id, user_id=identity, only_if_banned=True)
        logger.info(f"Removed user {identity} from group {channel_id}")

    async def member_count(self, channel_id: str) -> int:
        return await self.bot.get_chat_member_count(chat_id=channel_id)
