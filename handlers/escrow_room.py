"""
Escrow Room Command Handlers
Private chat: /register, /balance, /createtransaction <username>, /history, /help
Escrow groups: /pay <username> <amount>, /confirm <transactionId>, /help

Also watches members leaving escrow groups so an emptied room is released early.
The EscrowRoomService instance is read from ``application.bot_data``.
"""

import logging
from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from services.escrow_room_service import EscrowRoomService
from utils.exceptions import AlreadyExists, EscrowError

logger = logging.getLogger(__name__)

SERVICE_KEY = "escrow_room_service"

PRIVATE_HELP = (
    "📋 *Private chat commands:*\n\n"
    "🔐 `/register` - Register with the bot\n"
    "💰 `/balance` - Check your balance\n"
    "🤝 `/createtransaction <username>` - Open an escrow room\n"
    "🧾 `/history` - Show your transactions\n"
    "❓ `/help` - Show this help"
)

GROUP_HELP = (
    "📋 *Escrow group commands:*\n\n"
    "💸 `/pay <username> <amount>` - Create a payment\n"
    "✅ `/confirm <transactionId>` - Confirm a transaction\n"
    "❓ `/help` - Show this help"
)


def is_private_chat(chat_type: str) -> bool:
    return chat_type == 'private'


def is_group_chat(chat_type: str) -> bool:
    return chat_type in ('group', 'supergroup')


def get_service(context: ContextTypes.DEFAULT_TYPE) -> EscrowRoomService:
    return context.bot_data[SERVICE_KEY]


async def _reply(update: Update, text: str, **kwargs) -> None:
    await update.effective_message.reply_text(text, **kwargs)


async def _reply_error(update: Update, error: Exception) -> None:
    if isinstance(error, EscrowError):
        await _reply(update, f"❌ Error: {error.message}")
    else:
        logger.exception(f"Unexpected error handling update {update.update_id}: {error}")
        await _reply(update, "❌ Error: something went wrong, please try again later.")


# ============================================================================
# PRIVATE CHAT COMMANDS
# ============================================================================

async def register_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /register"""
    if not is_private_chat(update.effective_chat.type):
        await _reply(update, "❌ /register can only be used in a private chat with the bot.")
        return

    sender = update.effective_user
    username = sender.username or f"user{sender.id}"
    try:
        get_service(context).register(sender.id, username)
    except AlreadyExists:
        await _reply(update, "⚠️ You are already registered.")
        return
    except Exception as e:
        await _reply_error(update, e)
        return
    await _reply(update, f"✅ Registered as {username}")


async def balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /balance"""
    if not is_private_chat(update.effective_chat.type):
        await _reply(update, "❌ /balance can only be used in a private chat with the bot.")
        return
    try:
        user = get_service(context).balance(update.effective_user.id)
    except Exception as e:
        await _reply_error(update, e)
        return
    await _reply(update, f"💰 Your balance: {user.balance}")


async def create_transaction_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /createtransaction <username>"""
    if not is_private_chat(update.effective_chat.type):
        await _reply(update, "❌ /createtransaction can only be used in a private chat with the bot.")
        return
    if not context.args:
        await _reply(update, "ℹ️ Usage: /createtransaction <username>")
        return

    try:
        room = await get_service(context).open_room(update.effective_user.id, context.args[0])
    except Exception as e:
        await _reply_error(update, e)
        return
    await _reply(update, f"🔗 Invite link: {room.invite_link}")


async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history"""
    if not is_private_chat(update.effective_chat.type):
        await _reply(update, "❌ /history can only be used in a private chat with the bot.")
        return
    try:
        service = get_service(context)
        user = service.balance(update.effective_user.id)
        transactions = service.history(update.effective_user.id)
    except Exception as e:
        await _reply_error(update, e)
        return

    if not transactions:
        await _reply(update, "🧾 You have no transactions yet.")
        return

    lines = ["🧾 Your transactions:"]
    for tx in transactions:
        role = "paid" if tx.buyer_id == user.id else "received"
        lines.append(f"#{tx.id} {role} {tx.amount} - {tx.status}")
    await _reply(update, "\n".join(lines))


# ============================================================================
# ESCROW GROUP COMMANDS
# ============================================================================

async def pay_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /pay <username> <amount>"""
    if not is_group_chat(update.effective_chat.type):
        await _reply(update, "❌ /pay can only be used inside a group.")
        return
    if len(context.args or []) < 2:
        await _reply(update, "ℹ️ Usage: /pay <username> <amount>")
        return

    seller_name, amount = context.args[0], context.args[1]
    try:
        tx = await get_service(context).pay(
            str(update.effective_chat.id), update.effective_user.id, seller_name, amount
        )
    except Exception as e:
        await _reply_error(update, e)
        return

    await _reply(update, f"✅ Payment request created: Transaction ID={tx.id}, amount={tx.amount}.")
    await _reply(update, "ℹ️ Use /confirm <transactionId> to end this transaction.")


async def confirm_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /confirm <transactionId>"""
    if not is_group_chat(update.effective_chat.type):
        await _reply(update, "❌ /confirm can only be used inside a group.")
        return
    try:
        tx_id = int(context.args[0])
    except (IndexError, TypeError, ValueError):
        await _reply(update, "ℹ️ Usage: /confirm <transactionId>")
        return

    try:
        tx = await get_service(context).confirm(
            str(update.effective_chat.id), update.effective_user.id, tx_id
        )
    except Exception as e:
        await _reply_error(update, e)
        return

    await _reply(update, f"✅ Transaction ID={tx.id} confirmed. Funds released ({tx.amount}).")


# ============================================================================
# HELP AND FALLBACK
# ============================================================================

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_type = update.effective_chat.type
    if is_private_chat(chat_type):
        await _reply(update, PRIVATE_HELP, parse_mode='Markdown')
    elif is_group_chat(chat_type):
        await _reply(update, GROUP_HELP, parse_mode='Markdown')


async def unknown_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_type = update.effective_chat.type
    if is_private_chat(chat_type):
        await _reply(update, "❌ Unknown command. Type /help to see the commands available in private chat.")
    elif is_group_chat(chat_type):
        await _reply(update, "❌ Unknown command. Type /help to see the commands available in groups.")


# ============================================================================
# MEMBERSHIP EVENTS
# ============================================================================

async def handle_new_members(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.info(f"New members joined group {update.effective_chat.id}")


async def handle_member_left(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Release an escrow room once everyone but the bot has left"""
    chat_id = update.effective_chat.id
    logger.info(f"Member left group {chat_id}")
    await get_service(context).handle_member_left(str(chat_id))


def register_escrow_room_handlers(application: Application, service: EscrowRoomService) -> None:
    """Register escrow room handlers with the Telegram application"""
    application.bot_data[SERVICE_KEY] = service

    application.add_handler(CommandHandler("register", register_command))
    application.add_handler(CommandHandler("balance", balance_command))
    application.add_handler(CommandHandler("createtransaction", create_transaction_command))
    application.add_handler(CommandHandler("history", history_command))
    application.add_handler(CommandHandler("pay", pay_command))
    application.add_handler(CommandHandler("confirm", confirm_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, handle_new_members))
    application.add_handler(MessageHandler(filters.StatusUpdate.LEFT_CHAT_MEMBER, handle_member_left))
    # Must stay last: catches every command not matched above
    application.add_handler(MessageHandler(filters.COMMAND, unknown_command))
    logger.info("Registered escrow room handlers")
