"""Configuration management for the Telegram Escrow Room Bot"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _parse_group_ids(raw: str) -> List[str]:
    """Split a comma-separated list of chat ids, dropping blanks and duplicates (order kept)"""
    seen = []
    for part in raw.split(","):
        gid = part.strip()
        if gid and gid not in seen:
            seen.append(gid)
    return seen


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Bot Token Configuration
    # Priority: TELEGRAM_BOT_TOKEN > TELEGRAM_TOKEN (legacy name) > BOT_TOKEN
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    LEGACY_TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN")
    BOT_TOKEN = TELEGRAM_BOT_TOKEN or LEGACY_TELEGRAM_TOKEN or GENERIC_BOT_TOKEN

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///escrow_bot.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Escrow room pool - fixed, preconfigured set of Telegram group ids.
    # Scan order for free rooms follows this list.
    ESCROW_GROUP_IDS: List[str] = _parse_group_ids(os.getenv("ESCROW_GROUP_IDS", ""))

    # Room lifecycle
    CLEANUP_GRACE_SECONDS = float(os.getenv("CLEANUP_GRACE_SECONDS", "10"))
    INVITE_MEMBER_LIMIT = int(os.getenv("INVITE_MEMBER_LIMIT", "2"))

    # Amount precision for balances and transactions
    AMOUNT_QUANTUM = Decimal("0.01")

    # Admin API
    ADMIN_API_ENABLED = os.getenv("ADMIN_API_ENABLED", "true").lower() == "true"
    ADMIN_HOST = os.getenv("ADMIN_HOST", "0.0.0.0")
    ADMIN_PORT = int(os.getenv("ADMIN_PORT", os.getenv("PORT", "3000")))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Bot Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Escrow groups: {len(Config.ESCROW_GROUP_IDS)} configured")
        logger.info(f"   Cleanup grace: {Config.CLEANUP_GRACE_SECONDS}s")
        logger.info(f"   Invite member limit: {Config.INVITE_MEMBER_LIMIT}")
        # Never log credentials; only the backend kind
        backend = Config.DATABASE_URL.split(":", 1)[0]
        logger.info(f"   Database backend: {backend}")

    @staticmethod
    def validate_bot_configuration():
        """Validate bot configuration and provide helpful error messages"""
        missing = []
        if not Config.BOT_TOKEN:
            missing.append("TELEGRAM_BOT_TOKEN (or TELEGRAM_TOKEN / BOT_TOKEN)")
        if not Config.ESCROW_GROUP_IDS:
            missing.append("ESCROW_GROUP_IDS (comma-separated Telegram group ids)")

        if missing:
            error_msg = "❌ Missing required configuration:\n" + "\n".join(
                f"  • {name}" for name in missing
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

        logger.info(f"✅ Bot configuration valid for {Config.ENVIRONMENT} environment")
        return True
