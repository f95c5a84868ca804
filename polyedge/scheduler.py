"""APScheduler-based runner for the two engine timelines.

    scan_cycle     every SCAN_INTERVAL seconds (first run at startup)
    command_poll   every COMMAND_POLL_INTERVAL seconds

Both jobs share one EngineContext. A local aiohttp control server exposes
GET /health and POST /shutdown. SIGINT/SIGTERM and /shutdown both trigger
a graceful stop: the context's ``stopping`` event is set, each job
finishes the market or command in hand, and only then are clients closed.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from polyedge.config import (
    COMMAND_POLL_INTERVAL,
    CONTROL_HOST,
    CONTROL_PORT,
    LOOP_ERROR_BACKOFF,
    SCAN_INTERVAL,
)
from polyedge.context import EngineContext
from polyedge.jobs.scan_cycle import ScanSummary, run_scan_cycle

logger = logging.getLogger(__name__)


class EdgeScheduler:
    """Orchestrates the scan loop and the command poller with APScheduler."""

    def __init__(self, ctx: EngineContext, control_port: int = CONTROL_PORT) -> None:
        self.ctx = ctx
        self.control_port = control_port
        self._scheduler = AsyncIOScheduler()
        self._shutdown_event = asyncio.Event()
        self._scan_busy = asyncio.Lock()
        self._poll_busy = asyncio.Lock()
        self._control_runner: Optional[web.AppRunner] = None
        self._last_scan: Optional[ScanSummary] = None
        self._last_scan_at: Optional[datetime] = None

    async def start(self) -> None:
        """Register jobs, start the scheduler, and block until shutdown."""
        orphans = await self.ctx.risk.reject_orphaned_pending()
        if orphans:
            logger.info("startup_orphans_rejected", extra={"count": orphans})

        try:
            await self.ctx.engine.initialize()
        except Exception:
            logger.error("engine_init_failed", exc_info=True)
            raise

        self._scheduler.add_job(
            self._job_scan_cycle,
            "interval",
            seconds=SCAN_INTERVAL,
            id="scan_cycle",
            name="Scan Cycle",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._job_command_poll,
            "interval",
            seconds=COMMAND_POLL_INTERVAL,
            id="command_poll",
            name="Command Poll",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            extra={"scan_interval": SCAN_INTERVAL, "poll_interval": COMMAND_POLL_INTERVAL},
        )

        await self._start_control_server()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        await self.ctx.telegram.send_message(
            "🎯 Edge engine started. Reply <code>pending</code> to see queued trades."
        )

        await self._shutdown_event.wait()
        await self.stop()

    async def stop(self) -> None:
        logger.info("scheduler_stopping")
        self.ctx.stopping.set()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        # Wait for the market / command in hand to finish.
        async with self._scan_busy:
            pass
        async with self._poll_busy:
            pass

        if self._control_runner:
            await self._control_runner.cleanup()
            self._control_runner = None

        await self.ctx.close()
        logger.info("scheduler_stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self.request_shutdown()

    # ------------------------------------------------------------------
    # Job wrappers (catch exceptions so scheduler keeps running)
    # ------------------------------------------------------------------

    async def _backoff(self) -> None:
        """Sleep after a failure, waking early on shutdown."""
        try:
            await asyncio.wait_for(self.ctx.stopping.wait(), timeout=LOOP_ERROR_BACKOFF)
        except asyncio.TimeoutError:
            pass

    async def _job_scan_cycle(self) -> None:
        if self.ctx.stopping.is_set():
            return
        async with self._scan_busy:
            try:
                self._last_scan = await run_scan_cycle(self.ctx)
                self._last_scan_at = datetime.now(timezone.utc)
            except Exception:
                logger.error("scan_cycle_error", exc_info=True)
                await self._backoff()

    async def _job_command_poll(self) -> None:
        if self.ctx.stopping.is_set():
            return
        async with self._poll_busy:
            try:
                await self.ctx.poller.poll_once()
            except Exception:
                logger.error("command_poll_error", exc_info=True)
                await self._backoff()

    # ------------------------------------------------------------------
    # Control server
    # ------------------------------------------------------------------

    async def _start_control_server(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_post("/shutdown", self._shutdown_handler)

        self._control_runner = web.AppRunner(app)
        await self._control_runner.setup()
        site = web.TCPSite(self._control_runner, CONTROL_HOST, self.control_port)
        await site.start()
        logger.info("control_server_started", extra={"host": CONTROL_HOST, "port": self.control_port})

    async def _health_handler(self, request: web.Request) -> web.Response:
        try:
            risk_status = await self.ctx.risk.status()
        except Exception:
            logger.warning("health_risk_status_failed", exc_info=True)
            risk_status = {"error": "ledger_unavailable"}
        return web.json_response({
            "status": "stopping" if self.ctx.stopping.is_set() else "ok",
            "scheduler_running": self._scheduler.running,
            "dry_run": self.ctx.engine.dry_run,
            "pending_approvals": len(self.ctx.queue),
            "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
            "last_scan": self._last_scan.model_dump() if self._last_scan else None,
            "risk": risk_status,
        })

    async def _shutdown_handler(self, request: web.Request) -> web.Response:
        logger.info("shutdown_requested", extra={"remote": request.remote})
        self.request_shutdown()
        return web.json_response({"ok": True, "message": "shutting down"})
