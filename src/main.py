"""
Main entry point for the provider operator.

Wires the database, the reconciliation controller and the HTTP API.
"""

import asyncio
import logging
import signal
from typing import Optional

from api import APIServer
from config import get_config
from controller import Controller
from db import DatabaseManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.api.log_level.upper())
        logger.info("Initializing provider operator")

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        await self.db.ensure_inventory_schema()
        logger.info("Database initialized")

        self.controller = Controller(
            db_manager=self.db,
            config=self.config.controller,
            registry_config=self.config.registry,
        )

        api_config = self.config.api
        self.api = APIServer(
            self.db,
            host=api_config.host,
            port=api_config.port,
            log_level=api_config.log_level,
            cors_origins=api_config.cors_origins if api_config.cors_enabled else None,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting provider operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping provider operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        if self.api:
            await self.api.stop()

        if self.db:
            await self.db.close()

        logger.info("Provider operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
