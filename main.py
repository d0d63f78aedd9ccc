"""
Truck booking Telegram bot - main entry point.

Features:
- Truck booking workflow: area suggestions, fare quote, booking, payment gateway handoff
- Login against the logistics backend (JWT kept in memory per user)
- Global error logging with admin notifications
- Redis FSM storage when REDIS_URL is set
- Graceful shutdown handling
"""
import asyncio
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.fsm.storage.memory import MemoryStorage

# Import config first so .env is loaded before anything reads the environment
from config import ADMINS, API_BASE_URL, REDIS_URL, get_bot_token, get_startup_info
from handlers import router, fallback_router
from booking_handlers import booking_router
from error_logging import setup_error_handler
from http_client import ApiClient
from logging_config import setup_logging, get_logger
from session import SessionStore

# Initialize logging
setup_logging()
logger = get_logger(__name__)


def get_storage():
    """
    FSM storage: RedisStorage when REDIS_URL is set, else MemoryStorage.

    Booking workflows themselves are kept in process memory either way.
    """
    if REDIS_URL:
        from aiogram.fsm.storage.redis import RedisStorage
        logger.info("Using Redis storage for FSM state")
        return RedisStorage.from_url(REDIS_URL)

    logger.warning("Using MemoryStorage - FSM state will be lost on restart!")
    return MemoryStorage()


def build_dispatcher(bot: Bot, api: ApiClient) -> Dispatcher:
    dp = Dispatcher(storage=get_storage())
    dp["sessions"] = SessionStore(api)
    dp["workflows"] = {}

    setup_error_handler(dp, bot)

    # order matters: commands first, booking conversation next, fallback last
    dp.include_router(router)
    dp.include_router(booking_router)
    dp.include_router(fallback_router)
    return dp


async def main():
    """Initialize and start the bot."""
    startup_info = get_startup_info()
    logger.info("Bot starting: %s", startup_info, extra={"admins": ADMINS})
    print("=" * 60)
    print(f"🚀 Truck booking bot starting | {startup_info}")
    print(f"🌐 Backend: {API_BASE_URL}")
    print("=" * 60)

    bot = Bot(
        token=get_bot_token(),
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = build_dispatcher(bot, ApiClient())

    # Delete any pending updates (clean start)
    await bot.delete_webhook(drop_pending_updates=True)

    logger.info("Bot initialized, starting polling...")
    print("✅ Bot is running! Press Ctrl+C to stop.")

    try:
        await dp.start_polling(bot)
    except asyncio.CancelledError:
        logger.info("Polling cancelled")
    except Exception as e:
        logger.error("Polling error: %s", e, exc_info=True)
        raise
    finally:
        logger.info("Shutting down...")
        await dp.storage.close()
        await bot.session.close()
        logger.info("Bot stopped gracefully")
        print("👋 Bot stopped. Goodbye!")


def run():
    """Console entry point."""
    # Handle Windows event loop policy
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Interrupted by user")
    except Exception as e:
        print(f"❌ Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
