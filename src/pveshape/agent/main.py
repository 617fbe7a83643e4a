"""Main agent implementation."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from watchfiles import awatch

from pveshape.agent.config import ConfigManager
from pveshape.agent.engine import StateEngine
from pveshape.agent.state import StateStore
from pveshape.providers import ProviderRegistry
from pveshape.utils.logging import setup_logging


logger = logging.getLogger(__name__)


async def build_engine(config_dir: Path, registry: Optional[ProviderRegistry] = None) -> StateEngine:
    """Load configuration and tracked state, and connect the providers."""
    config_manager = ConfigManager(config_dir)
    await config_manager.load()
    config = config_manager.config

    state_dir = Path(config.agent.state_dir)
    if not state_dir.is_absolute():
        state_dir = config_manager.config_dir / state_dir
    state_store = StateStore(state_dir)
    state_store.load()

    if registry is None:
        registry = ProviderRegistry()
        await registry.initialize(config)

    return StateEngine(
        config_manager=config_manager,
        provider_registry=registry,
        state_store=state_store,
    )


class PveshapeAgent:
    """Main agent keeping declared guests reconciled."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the agent."""
        self.config_dir = config_dir or Path("./configs")
        self.state_engine: Optional[StateEngine] = None
        self.shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def config_manager(self) -> Optional[ConfigManager]:
        return self.state_engine.config_manager if self.state_engine else None

    async def initialize(self):
        """Initialize agent components."""
        self.state_engine = await build_engine(self.config_dir)

        config = self.config_manager.config
        setup_logging(config.agent.log_level, debug_api=config.api.debug)

        logger.info("Agent initialized successfully")

    async def run(self):
        """Run the agent main loop."""
        await self.initialize()

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            # Start reconciliation loop
            reconcile_task = asyncio.create_task(self._reconciliation_loop())
            self._tasks.append(reconcile_task)

            # Start config watcher
            config_task = asyncio.create_task(self._config_watch_loop())
            self._tasks.append(config_task)

            logger.info("Agent started, waiting for shutdown signal")
            await self.shutdown_event.wait()

        finally:
            await self._cleanup()

    async def _reconciliation_loop(self):
        """Run periodic reconciliation."""
        interval = self.config_manager.config.agent.reconciliation_interval

        while not self.shutdown_event.is_set():
            try:
                logger.debug("Starting reconciliation cycle")
                await self.state_engine.reconcile()
                logger.debug("Reconciliation cycle completed")
            except Exception as e:
                logger.error(f"Reconciliation error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self.shutdown_event.wait(),
                    timeout=interval
                )
            except asyncio.TimeoutError:
                continue

    async def _config_watch_loop(self):
        """Watch for configuration changes."""
        config_dir = self.config_manager.config_dir
        logger.info(f"Starting config watcher on {config_dir}")
        try:
            async for changes in awatch(config_dir, stop_event=self.shutdown_event):
                if not await self.config_manager.watch_for_changes():
                    continue
                logger.info("Configuration changed, reloading")
                try:
                    await self.config_manager.load()
                    # Trigger immediate reconciliation
                    self._spawn(self.state_engine.reconcile())
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}")
        except Exception as e:
            # Handle cancellation gracefully
            if not self.shutdown_event.is_set():
                logger.error(f"Config watch error: {e}", exc_info=True)

    def _spawn(self, coro) -> asyncio.Task:
        """Run a one-off task, dropped from tracking once it finishes."""
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        task.add_done_callback(self._tasks.remove)
        return task

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def _cleanup(self):
        """Clean up resources."""
        logger.info("Cleaning up agent resources")

        # Cancel all tasks
        for task in self._tasks:
            if not task.done():
                task.cancel()

        # Wait for tasks to complete
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.state_engine:
            await self.state_engine.provider_registry.close()

        logger.info("Agent cleanup completed")


async def run_agent(config_dir: Optional[Path] = None):
    """Run the agent."""
    # Allow config dir override from environment
    if config_dir is None and os.environ.get("PVESHAPE_CONFIG_DIR"):
        config_dir = Path(os.environ["PVESHAPE_CONFIG_DIR"])

    agent = PveshapeAgent(config_dir=config_dir)
    await agent.run()
