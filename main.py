"""
Portfolio Bot - Main Entry Point

A multi-strategy trading controller: strategy units propose trades, the
risk engine admits or rejects them, the coordinator watches the whole
portfolio and an HTTP control surface drives it.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Run against the offline simulated market and start trading at once
    python main.py --mode simulated --autostart

    # Paper trade on live exchange data without the HTTP control surface
    python main.py --mode paper --no-api --autostart
"""

import argparse
import asyncio
import signal
from typing import Optional

import structlog
import uvicorn

from portfolio_bot import __version__
from portfolio_bot.api.app import create_app
from portfolio_bot.core.config import BotConfig, GatewayConfig
from portfolio_bot.core.context import BotContext, build_context
from portfolio_bot.storage.database import Database
from portfolio_bot.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class TradingBot:
    """
    Main application: owns the bot context, the control surface server and
    the shutdown signal.
    """

    def __init__(self, config: BotConfig, serve_api: bool = True, autostart: bool = False):
        self.config = config
        self.serve_api = serve_api and config.api.enabled
        self.autostart = autostart

        # Components
        self.context: Optional[BotContext] = None
        self.server: Optional[uvicorn.Server] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Build and initialize all components."""
        logger.info(
            "bot.initializing",
            environment=self.config.system.environment,
            gateway_mode=self.config.gateway.gateway_mode,
            exchange=self.config.gateway.exchange_id,
        )

        self.context = build_context(self.config)
        await self.context.initialize()

        await self.context.gateway.initialize()

        if self.serve_api:
            app = create_app(self.context)
            self.server = uvicorn.Server(uvicorn.Config(
                app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_config=None,
            ))

        self._initialized = True
        logger.info("bot.initialized", strategies=list(self.context.strategies))

    async def run(self):
        """Serve the control surface (and trade, if autostarted) until shutdown."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        server_task: Optional[asyncio.Task] = None
        try:
            if self.autostart:
                await self.context.coordinator.start()

            waiters = [asyncio.create_task(self._shutdown_event.wait())]
            if self.server is not None:
                server_task = asyncio.create_task(self.server.serve())
                waiters.append(server_task)
                logger.info("bot.api_listening", host=self.config.api.host, port=self.config.api.port)

            # The server exits on its own when it receives the signal first
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            waiters[0].cancel()

        except Exception as e:
            logger.error("bot.error", error=str(e), exc_info=True)
            raise
        finally:
            if server_task is not None and not server_task.done():
                self.server.should_exit = True
                await server_task
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("bot.shutting_down")
        if self.context:
            await self.context.close()
        logger.info("bot.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("bot.shutdown_signal_received")
        self._shutdown_event.set()


def print_banner(config: BotConfig):
    """Print the startup banner."""
    print("=" * 60)
    print(f"  {config.system.app_name} v{__version__}")
    print(f"  Gateway: {config.gateway.gateway_mode} ({config.gateway.exchange_id})")
    enabled = [name for name, unit in config.strategies.items() if unit.enabled]
    print(f"  Strategies: {', '.join(enabled) or 'none'}")
    print("=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Portfolio Bot - multi-strategy trading controller"
    )
    parser.add_argument(
        "--mode",
        choices=["simulated", "paper", "live"],
        help="Gateway mode: simulated=offline market, paper=live data with simulated fills, live=real orders",
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument(
        "--no-api", action="store_true", help="Do not serve the HTTP control surface"
    )
    parser.add_argument(
        "--autostart", action="store_true", help="Start trading immediately"
    )

    args = parser.parse_args()

    config = BotConfig()
    if args.mode:
        config.gateway = GatewayConfig(gateway_mode=args.mode)

    # Setup logging
    setup_logging(config.logging)

    if args.check:
        result = config.validate_configuration()
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if result["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in result["issues"]:
                print(f"   - {issue}")
        print(f"\nGateway Mode: {config.gateway.gateway_mode}")
        print(f"Environment: {config.system.environment}")
        print("\n" + "=" * 60)
        return

    if args.init_db:
        print("\n📦 Initializing database...")
        db = Database(config.database.database_url)
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    result = config.validate_configuration()
    if not result["valid"]:
        print("\n✗ Configuration errors:")
        for issue in result["issues"]:
            print(f"   - {issue}")
        return

    print_banner(config)

    bot = TradingBot(config, serve_api=not args.no_api, autostart=args.autostart)
    try:
        await bot.initialize()
        await bot.run()
    except KeyboardInterrupt:
        logger.info("bot.keyboard_interrupt")
    except Exception as e:
        logger.error("bot.fatal_error", error=str(e), exc_info=True)
        raise


if __name__ == "__main__":
    asyncio.run(main())
