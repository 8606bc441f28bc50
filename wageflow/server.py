"""
server.py - Payroll channel server entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager
 - Channel services (channels, tracker, closure negotiator, reconciler)
 - Ledger access (embedded ledger simulator, or an HTTP ledger with --ledger-url)
 - REST API (FastAPI on uvicorn, port 8080)
 - Background loops: session timeout sweep and ledger reconciliation

Usage:
    python -m wageflow.server [--api-port 8080] [--db-path data/wageflow.db] [--ledger-url URL]
"""

import argparse
import asyncio
import logging
import os
import time
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from wageflow import __version__
from wageflow.auth import DEFAULT_ADMIN_KEY, AuthService
from wageflow.channels import ChannelService
from wageflow.closure import ClosureNegotiator
from wageflow.config import EngineConfig
from wageflow.errors import WageflowError
from wageflow.ledger_gateway import HttpLedgerGateway, LedgerGateway, RetryingLedgerGateway
from wageflow.ledger_simulator import LedgerSimulator
from wageflow.reconciler import ReconciliationScheduler
from wageflow.routers import register_all_routers
from wageflow.storage import StorageManager
from wageflow.tracker import WorkSessionTracker

logger = logging.getLogger("server")


class PayrollServer:
    """Wires storage, ledger access, services and the REST API together."""

    def __init__(
        self,
        api_port: int = 8080,
        db_path: str = "data/wageflow.db",
        ledger_url: str = "",
        admin_key: str = DEFAULT_ADMIN_KEY,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_port = api_port
        self.db_path = db_path
        self.ledger_url = ledger_url
        self.config = config or EngineConfig()
        self._admin_key = admin_key
        self._clock = clock

        # Storage + services are initialized async in start()
        self.storage: Optional[StorageManager] = None
        self.auth: Optional[AuthService] = None
        self.gateway: Optional[LedgerGateway] = None
        self.channels: Optional[ChannelService] = None
        self.tracker: Optional[WorkSessionTracker] = None
        self.negotiator: Optional[ClosureNegotiator] = None
        self.reconciler: Optional[ReconciliationScheduler] = None
        self._tasks = []
        self._uvicorn_server: Optional[uvicorn.Server] = None

        self.app = FastAPI(title="Wageflow Payroll Channels", version=__version__)
        self.app.state.server = self
        self.app.add_exception_handler(WageflowError, _wageflow_error_handler)
        register_all_routers(self.app)

        # Without an external ledger, embed the simulator on the same app
        self.ledger_simulator: Optional[LedgerSimulator] = None
        if not ledger_url:
            self.ledger_simulator = LedgerSimulator()
            self.ledger_simulator.register_routes(self.app)
            logger.info("Ledger simulator embedded on payroll server")

    async def init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()
        # Nothing submits before startup completes: slots still held belong to a previous process
        async with self.storage.transaction():
            released = await self.storage.channels.release_all_submissions(self._clock())
        if released:
            logger.warning("Released %d submission slot(s) left by a previous run", released)

        inner = self.ledger_simulator if self.ledger_simulator is not None else HttpLedgerGateway(self.ledger_url)
        self.gateway = RetryingLedgerGateway(
            inner,
            attempts=self.config.read_retry_attempts,
            base_delay=self.config.read_retry_base_delay,
        )

        self.auth = AuthService(self.storage, admin_key=self._admin_key)
        self.channels = ChannelService(self.storage, self.gateway, self.config, clock=self._clock)
        self.tracker = WorkSessionTracker(self.storage, self.config, clock=self._clock)
        self.negotiator = ClosureNegotiator(
            self.storage, self.gateway, self.tracker, self.config, clock=self._clock,
        )
        self.reconciler = ReconciliationScheduler(
            self.storage, self.gateway, self.negotiator, self.config, clock=self._clock,
        )
        logger.info("Services initialized (db=%s)", self.db_path)

    # -------------------------------------------------------------------
    # Background loops
    # -------------------------------------------------------------------

    async def _session_sweeper(self):
        """Periodically time out sessions left open past the maximum duration."""
        while True:
            try:
                await self.tracker.sweep_timed_out_sessions()
            except Exception:
                logger.exception("Error in session sweeper")
            await asyncio.sleep(self.config.sweep_interval_sec)

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Start storage, background loops, and the API server."""
        await self.init_services()

        self._tasks = [
            asyncio.create_task(self._session_sweeper()),
            asyncio.create_task(self.reconciler.run_forever()),
        ]

        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.api_port)
        await self._uvicorn_server.serve()

    async def stop(self):
        """Stop background loops, ledger client, storage and the API server."""
        for task in self._tasks:
            task.cancel()
        if self.gateway:
            await self.gateway.close()
        if self.storage:
            await self.storage.close()
        if self._uvicorn_server:
            self._uvicorn_server.should_exit = True


async def _wageflow_error_handler(request: Request, exc: WageflowError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def main():
    """CLI entry point for the payroll channel server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    parser = argparse.ArgumentParser(description="Wageflow Payroll Channel Server")
    parser.add_argument("--api-port", type=int, default=8080, help="REST API port (default: 8080)")
    parser.add_argument("--db-path", default="data/wageflow.db", help="SQLite database path (default: data/wageflow.db)")
    parser.add_argument("--ledger-url", default="", help="External ledger base URL (default: embedded simulator)")
    parser.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY, help="API key granting the admin role")
    EngineConfig.add_arguments(parser)
    args = parser.parse_args()

    server = PayrollServer(
        api_port=args.api_port,
        db_path=args.db_path,
        ledger_url=args.ledger_url,
        admin_key=args.admin_key,
        config=EngineConfig.from_args(args),
    )

    logger.info("=" * 60)
    logger.info("  Wageflow Payroll Channel Server")
    logger.info("  REST API:    http://localhost:%d", args.api_port)
    logger.info("  Database:    %s", args.db_path)
    logger.info("  Ledger:      %s", args.ledger_url or "embedded simulator")
    if args.admin_key == DEFAULT_ADMIN_KEY:
        logger.warning("  Using the default admin key; pass --admin-key in production")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
