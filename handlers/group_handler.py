"""
Group Management Handler - Handles bot being added/removed from Telegram groups.
Only groups listed in ESCROW_GROUP_IDS are escrow rooms; others are logged and ignored.
"""

import logging
from telegram import Update
from telegram.ext import Application, ContextTypes, ChatMemberHandler

from handlers.escrow_room import get_service

logger = logging.getLogger(__name__)

ROOM_READY_MESSAGE = (
    "<b>Escrow Room Connected</b>\n\n"
    "This group is now part of the escrow room pool.\n"
    "Participants are invited per deal and removed once the deal is completed."
)


async def handle_my_chat_member(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle bot being added to or removed from a group/supergroup"""
    if not update.my_chat_member:
        return

    chat = update.my_chat_member.chat
    new_status = update.my_chat_member.new_chat_member.status
    old_status = update.my_chat_member.old_chat_member.status

    # Only handle group/supergroup chats
    if chat.type not in ('group', 'supergroup'):
        return

    logger.info(f"Chat member update: {chat.title} ({chat.id}) - {old_status} -> {new_status}")

    service = get_service(context)
    channel_id = str(chat.id)
    if not service.pool.is_managed(channel_id):
        logger.warning(f"Bot status changed in non-escrow group {chat.title} ({chat.id}) - ignoring")
        return

    if new_status in ('member', 'administrator'):
        try:
            await context.bot.send_message(chat_id=chat.id, text=ROOM_READY_MESSAGE, parse_mode='HTML')
            logger.info(f"Sent room-ready message to group: {chat.title} ({chat.id})")
        except Exception as e:
            logger.error(f"Error sending room-ready message to group {chat.id}: {e}")
        if new_status == 'member':
            logger.warning(f"Bot is not an administrator in escrow room {chat.id}; invites and evictions will fail")

    elif new_status in ('left', 'kicked'):
        # Room can no longer be managed - drop any deal bookkeeping immediately
        service.cleanup.release_now(channel_id)
        logger.error(f"Bot removed from escrow room: {chat.title} ({chat.id})")


def register_group_handlers(application: Application) -> None:
    """Register group management handlers with the Telegram application"""
    application.add_handler(
        ChatMemberHandler(handle_my_chat_member, ChatMemberHandler.MY_CHAT_MEMBER)
    )
    logger.info("Registered group management handlers")
