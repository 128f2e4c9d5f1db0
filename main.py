#!/usr/bin/env python3
"""
Emerald's Killfeed - Discord Bot for Deadside PvP Engine
Log ingestion, killfeed delivery and stat aggregation across every configured server
"""

import asyncio
import logging
import sys

import discord
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from killfeed.config import BotConfig
from killfeed.models.database import DatabaseManager
from killfeed.parsers.classifier import EventClassifier
from killfeed.parsers.validator import ParserValidator
from killfeed.utils.channel_router import ChannelRouter, KillfeedNotifier
from killfeed.utils.connection_pool import ConnectionManager
from killfeed.utils.cursor_store import CursorStore
from killfeed.utils.exceptions import ConfigurationException, KillfeedException
from killfeed.utils.faction_sync import FactionStatSync
from killfeed.utils.poll_orchestrator import PollOrchestrator
from killfeed.utils.remote_log_source import RemoteLogSource
from killfeed.utils.scheduler import PollScheduler
from killfeed.utils.stat_aggregator import StatAggregator

logger = logging.getLogger(__name__)


def setup_logging(config: BotConfig):
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.log_file, encoding='utf-8')
        ]
    )
    # asyncssh logs every channel open at INFO
    logging.getLogger('asyncssh').setLevel(logging.WARNING)


class EmeraldKillfeedBot(discord.Bot):
    """Main bot class for Emerald's Killfeed"""

    def __init__(self, config: BotConfig):
        intents = discord.Intents.default()
        intents.guilds = True

        super().__init__(
            intents=intents,
            status=discord.Status.online,
            activity=discord.Game(name="Emerald's Killfeed"),
        )

        self.config = config
        self.dev_mode = config.dev_mode
        self.mongo_client = None
        self.db_manager = None
        self.connection_manager = None
        self.orchestrator = None
        self.faction_sync = None
        self.parser_validator = None
        self.poll_scheduler = None
        self._pipeline_started = False
        self._background_tasks = set()

        self.load_extension('killfeed.cogs.parsers')
        logger.info("Bot initialized")

    async def setup_database(self) -> bool:
        """Connect to MongoDB and build the repository"""
        try:
            self.mongo_client = AsyncIOMotorClient(
                self.config.mongo_uri,
                serverSelectionTimeoutMS=10000,
                connectTimeoutMS=10000,
                socketTimeoutMS=20000,
            )
            await asyncio.wait_for(self.mongo_client.admin.command('ping'), timeout=5.0)
            logger.info("✅ Successfully connected to MongoDB")

            self.db_manager = DatabaseManager(self.mongo_client, self.config.database_name)
            await self.db_manager.initialize_indexes()
            return True

        except asyncio.TimeoutError:
            logger.error("❌ MongoDB connection timeout - Check your MONGO_URI")
        except (PyMongoError, KillfeedException) as e:
            logger.error(f"❌ MongoDB init failed: {e}")
        return False

    def setup_pipeline(self):
        """Wire the ingestion components together"""
        config = self.config
        self.connection_manager = ConnectionManager()
        remote_source = RemoteLogSource(self.connection_manager)
        classifier = EventClassifier()

        self.orchestrator = PollOrchestrator(
            self.db_manager,
            remote_source,
            CursorStore(self.db_manager, fingerprint_window=config.fingerprint_window_bytes),
            StatAggregator(self.db_manager, kill_reward_coins=config.kill_reward_coins),
            classifier=classifier,
            notifier=KillfeedNotifier(ChannelRouter(self, self.db_manager)),
            read_chunk_bytes=config.read_chunk_bytes,
            offline_failure_threshold=config.offline_failure_threshold,
        )
        self.faction_sync = FactionStatSync(self.db_manager)
        self.parser_validator = ParserValidator(self.db_manager, remote_source, classifier)
        self.poll_scheduler = PollScheduler(config, self.db_manager, self.orchestrator, self.faction_sync)

    async def on_ready(self):
        if self._pipeline_started:
            logger.info("Reconnected to Discord")
            return

        logger.info("🚀 Starting database and parser setup...")
        if not await self.setup_database():
            logger.error("❌ Database setup failed - killfeed pipeline not started")
            return

        self.setup_pipeline()
        await self.sync_commands()
        self.poll_scheduler.start()
        self._pipeline_started = True

        # First pass right away instead of waiting a full interval
        for tick in (self.poll_scheduler.run_killfeed_tick, self.poll_scheduler.run_server_stats_tick):
            task = asyncio.create_task(tick())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        if self.user:
            logger.info(f"✅ Bot logged in as {self.user.name} (ID: {self.user.id})")
        logger.info(f"✅ Connected to {len(self.guilds)} guilds")

    async def close(self):
        """Clean shutdown"""
        logger.info("Shutting down bot...")

        if self.poll_scheduler:
            self.poll_scheduler.shutdown()
        for task in list(self._background_tasks):
            task.cancel()
        if self.connection_manager:
            await self.connection_manager.stop()
        if self.db_manager:
            self.db_manager.close()
            logger.info("MongoDB connection closed")

        await super().close()
        logger.info("Bot shutdown complete")


async def main():
    """Main entry point"""
    try:
        config = BotConfig.from_env()
    except ConfigurationException as e:
        print(f"❌ {e}")
        return

    setup_logging(config)
    if not config.bot_token:
        logger.error("❌ BOT_TOKEN not found in environment variables")
        return

    bot = EmeraldKillfeedBot(config)
    try:
        await bot.start(config.bot_token)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    finally:
        if not bot.is_closed():
            await bot.close()


if __name__ == "__main__":
    asyncio.run(main())
