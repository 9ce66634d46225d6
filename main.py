#!/usr/bin/env python3
"""
Escrow Room Bot - Clean Startup

Deterministic startup sequence:
1. Configuration validation
2. Database tables
3. Telegram application + escrow room services
4. Handlers
5. Polling, cleanup scheduler and admin API in one event loop
"""

import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from telegram.ext import Application  # noqa: E402

from config import Config  # noqa: E402
from database import create_tables, test_connection  # noqa: E402

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('telegram.ext').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


class CleanStartupManager:
    """Builds and owns the application and the escrow room service"""

    def __init__(self):
        self.application: Optional[Application] = None
        self.service = None
        self.startup_errors: List[str] = []

    def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        if not create_tables():
            self.startup_errors.append("Database: table creation failed")
            return False
        logger.info("✅ Database initialization complete")
        return True

    def create_application(self) -> bool:
        logger.info("🤖 Creating Telegram application...")
        try:
            self.application = Application.builder().token(Config.BOT_TOKEN).build()
        except Exception as e:
            logger.error(f"❌ Application creation failed: {e}")
            self.startup_errors.append(f"Application: {e}")
            return False
        logger.info("✅ Telegram application created")
        return True

    def build_services(self) -> bool:
        from services.channel_pool import ChannelPool
        from services.cleanup_scheduler import CleanupScheduler
        from services.escrow_room_service import EscrowRoomService
        from services.ledger import Ledger
        from services.telegram_channel_transport import TelegramChannelTransport, TelegramNotifier
        from services.transaction_engine import TransactionEngine

        bot = self.application.bot
        ledger = Ledger()
        pool = ChannelPool(Config.ESCROW_GROUP_IDS)
        transport = TelegramChannelTransport(bot)
        notifier = TelegramNotifier(bot)
        self.service = EscrowRoomService(
            ledger=ledger,
            pool=pool,
            engine=TransactionEngine(ledger),
            cleanup=CleanupScheduler(pool, transport, notifier),
            transport=transport,
            notifier=notifier,
        )
        logger.info("✅ Escrow room services ready")
        return True

    def register_handlers(self) -> bool:
        from handlers.escrow_room import register_escrow_room_handlers
        from handlers.group_handler import register_group_handlers

        register_escrow_room_handlers(self.application, self.service)
        register_group_handlers(self.application)
        logger.info("✅ Handler registration complete")
        return True

    def startup_sequence(self) -> bool:
        logger.info("🚀 Starting escrow room bot...")
        try:
            Config.validate_bot_configuration()
        except ValueError:
            return False
        Config.log_environment_config()

        steps = [
            ("Database", self.initialize_database),
            ("Application", self.create_application),
            ("Services", self.build_services),
            ("Handlers", self.register_handlers),
        ]
        for step_name, step_func in steps:
            logger.info(f"▶️ Executing step: {step_name}")
            if not step_func():
                logger.error(f"🚨 Step '{step_name}' failed - cannot continue startup")
                for error in self.startup_errors:
                    logger.error(f"  - {error}")
                return False
        return True

    async def run(self) -> None:
        """Run polling, the cleanup scheduler and the admin API until interrupted"""
        from admin_server import create_admin_app

        async with self.application:
            await self.application.start()
            self.service.cleanup.start()
            await self.application.updater.start_polling(allowed_updates=["message", "my_chat_member"])
            logger.info("🎉 Escrow room bot is running (polling)")
            try:
                if Config.ADMIN_API_ENABLED:
                    server = uvicorn.Server(uvicorn.Config(
                        create_admin_app(self.service),
                        host=Config.ADMIN_HOST,
                        port=Config.ADMIN_PORT,
                        log_level="warning",
                    ))
                    logger.info(f"🌐 Admin API listening on http://{Config.ADMIN_HOST}:{Config.ADMIN_PORT}")
                    await server.serve()
                else:
                    await asyncio.Event().wait()
            finally:
                await self.application.updater.stop()
                self.service.cleanup.shutdown()
                await self.application.stop()


def main() -> None:
    manager = CleanStartupManager()
    if not manager.startup_sequence():
        logger.error("❌ Startup failed - exiting")
        sys.exit(1)
    try:
        asyncio.run(manager.run())
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")


if __name__ == "__main__":
    main()
