"""
Main entry point for the pcluster operator.

Wires the database, the pcluster reconciler, the controller loop and the HTTP
input plugin together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import get_config
from controller import Controller
from db import DatabaseManager
from plugins.base import ClusterParameters
from plugins.inputs.base import InputPlugin
from plugins.inputs.http import HTTPInputPlugin
from plugins.reconcilers.pcluster import PClusterReconciler

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and input plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.controller: Optional[Controller] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing pcluster operator")

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
        logger.info("Database initialized")

        reconciler = PClusterReconciler.from_config(self.config.pcluster)
        if self.config.pcluster.venv_path:
            logger.info(f"Using pcluster from {self.config.pcluster.venv_path}")

        self.controller = Controller(
            db_manager=self.db,
            reconciler=reconciler,
            config=self.config.controller,
        )

        api_config = self.config.api
        http_plugin = HTTPInputPlugin()
        await http_plugin.initialize(
            {
                "host": api_config.host,
                "port": api_config.port,
                "log_level": api_config.log_level,
                "cors_enabled": api_config.cors_enabled,
                "cors_origins": api_config.cors_origins,
            }
        )
        http_plugin.set_db_manager(self.db)
        self.input_plugins.append(http_plugin)
        logger.info(f"Initialized input plugin: {http_plugin.name}")

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller or not self.input_plugins:
            await self.initialize()

        self.running = True
        logger.info("Starting pcluster operator")

        async def on_cluster_event(event_type: str, params: ClusterParameters):
            # The controller polls the database; this only surfaces the event
            logger.debug(f"Cluster event: {event_type} - {params.name}")

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(on_cluster_event)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping pcluster operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.db:
            await self.db.close()

        logger.info("pcluster operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    logging.basicConfig(
        level=getattr(logging, app.config.api.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

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
