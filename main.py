#!/usr/bin/env python3
"""
Main entry point for the scraping worker service.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from aiohttp import web

from cinepool import __version__
from cinepool.utils.config import load_config, Config
from cinepool.utils.logger import setup_logging, log_system_info
from cinepool.utils.monitoring import initialize_monitoring
from cinepool.web import create_app, build_pools, ResponseCache


class ServerApp:
    """Main application class for the scraping worker service."""

    def __init__(self):
        self.runner: Optional[web.AppRunner] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event = asyncio.Event()

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def run(self, config_path: str, host: Optional[str] = None,
                  port: Optional[int] = None, dry_run: bool = False):
        """Run the HTTP service until a shutdown signal arrives."""
        try:
            config = load_config(config_path)
            setup_logging(config.logging)
            log_system_info()
            self.setup_signal_handlers()

            host = host or config.server.host
            port = port or config.server.port

            self.logger.info("=== CINEPOOL STARTING ===")
            self.logger.info(f"Configuration loaded from: {config_path}")
            self.logger.info(f"Movie pool size: {config.execution.movie_pool.size}")
            self.logger.info(f"TV pool size: {config.execution.tv_pool.size}")
            self.logger.info(f"Worker start method: {config.execution.start_method}")
            self.logger.info(f"Fetch timeout: {config.fetch.timeout}s, retries: {config.fetch.max_retries}")

            if dry_run:
                self.logger.info("DRY RUN MODE: the HTTP server will not be started")
                await self._dry_run(config)
                return 0

            monitor = initialize_monitoring(
                enable_prometheus=config.monitoring.metrics_enabled,
                prometheus_port=config.monitoring.prometheus_port
            )
            await monitor.metrics.start_prometheus_server()

            app = create_app(config, monitor=monitor)
            self.runner = web.AppRunner(app)
            await self.runner.setup()
            site = web.TCPSite(self.runner, host, port)
            await site.start()
            self.logger.info(f"Listening on http://{host}:{port}")

            await self._shutdown_event.wait()
            self.logger.info("Shutdown requested, stopping service...")

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if self.runner:
                await self.runner.cleanup()
            self.logger.info("=== CINEPOOL FINISHED ===")

        return 0

    async def _dry_run(self, config: Config):
        """Check configuration, Redis and worker start-up without serving."""
        if config.redis.enabled:
            self.logger.info("Testing Redis connection...")
            cache = ResponseCache.from_config(config.redis)
            try:
                await cache.ping()
                self.logger.info("✓ Redis connection successful")
            except Exception as e:
                self.logger.error(f"✗ Redis connection failed: {e}")
            finally:
                await cache.close()

        self.logger.info("Testing worker pools...")
        for pool in build_pools(config):
            try:
                await pool.start()
                self.logger.info(f"✓ Pool {pool.name} started {pool.roster_size} units")
            except Exception as e:
                self.logger.error(f"✗ Pool {pool.name} failed to start: {e}")
            finally:
                await pool.close()

        self.logger.info("Dry run completed")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Scraping worker service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                           # Run with default config.yaml
  python main.py --config my_config.yaml  # Run with custom config
  python main.py --port 8080              # Override the listen port
  python main.py --dry-run                # Test configuration only
        """
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--host',
        help='Interface to listen on (overrides server.host)'
    )

    parser.add_argument(
        '--port',
        type=int,
        help='Port to listen on (overrides server.port)'
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Test configuration without serving requests'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'cinepool {__version__}'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = ServerApp()
    try:
        return asyncio.run(app.run(
            config_path=args.config,
            host=args.host,
            port=args.port,
            dry_run=args.dry_run
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
