"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Runs the managed wealth background processes.

- HTTP API (uvicorn)
- Liquidation worker loop
- Lifecycle scheduler: NAV sampling, maturity / liquidation /
  settlement sweep, periodic parity audit
- Handles signals (SIGINT, SIGTERM) for graceful shutdown

============================================================
ARCHITECTURAL POSITION
============================================================
- This runtime has NO business logic
- It ONLY schedules the control plane's entry points

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

import uvicorn
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import ManagedWealthException
from database.engine import get_engine, initialize_database
from managed_wealth.alerting import create_parity_alert, create_worker_error_alert
from managed_wealth.container import ManagedWealthContainer, create_container

from .models import RuntimeConfig


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "json") -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


# ============================================================
# RUNTIME
# ============================================================

class ManagedWealthRuntime:
    """Starts and stops the loops selected by RuntimeConfig.mode."""

    def __init__(self, config: RuntimeConfig, container: Optional[ManagedWealthContainer] = None):
        self._config = config
        self._container = container
        self._stop_event = asyncio.Event()
        self._server: Optional[uvicorn.Server] = None
        self._logger = logging.getLogger("orchestrator")
        self._scheduler_cycles = 0

    @property
    def container(self) -> ManagedWealthContainer:
        if self._container is None:
            self._container = create_container()
        return self._container

    # --------------------------------------------------------
    # Scheduler
    # --------------------------------------------------------

    async def run_scheduler_cycle(self) -> None:
        """NAV pass, settlement sweep and (every N cycles) parity audit."""
        container = self.container
        self._scheduler_cycles += 1

        await container.nav_sampler.run_once()
        container.lifecycle.run_settlement_cycle()

        if self._scheduler_cycles % max(1, self._config.parity_every_cycles) == 1 or self._config.single_cycle:
            report = container.auditor.audit()
            if not report.is_clean:
                await container.alerter.send_alert(create_parity_alert(report))

    async def run_scheduler(self) -> None:
        interval = self.container.config.nav.interval_seconds
        self._logger.info(f"Lifecycle scheduler started (interval={interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.run_scheduler_cycle()
            except (ManagedWealthException, SQLAlchemyError) as e:
                self._logger.error(f"Scheduler cycle failed: {e}")
                await self.container.alerter.send_alert(create_worker_error_alert("scheduler", str(e)))
            if self._config.single_cycle:
                break
            await self._sleep(interval)
        self._logger.info("Lifecycle scheduler stopped")

    # --------------------------------------------------------
    # Worker
    # --------------------------------------------------------

    async def run_worker(self) -> None:
        if self._config.single_cycle:
            await self.container.worker.run_cycle()
            return
        await self.container.worker.run_forever(self._stop_event)

    # --------------------------------------------------------
    # API
    # --------------------------------------------------------

    async def run_api(self) -> None:
        from dashboard.main import create_app

        app = create_app(self.container)
        server_config = uvicorn.Config(
            app,
            host=self._config.host,
            port=self._config.port,
            log_config=None,
        )
        self._server = uvicorn.Server(server_config)
        await self._server.serve()

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def run(self) -> int:
        mode = self._config.mode
        if self._config.init_db:
            initialize_database(get_engine())

        self._install_signal_handlers()
        tasks: List[asyncio.Task] = []
        if mode.runs_api and not self._config.single_cycle:
            tasks.append(asyncio.create_task(self.run_api(), name="api"))
        if mode.runs_worker:
            tasks.append(asyncio.create_task(self.run_worker(), name="worker"))
        if mode.runs_scheduler:
            tasks.append(asyncio.create_task(self.run_scheduler(), name="scheduler"))

        self._logger.info(f"=== RUNTIME STARTED (mode={mode.value}, single_cycle={self._config.single_cycle}) ===")
        try:
            await asyncio.gather(*tasks)
        finally:
            await self.shutdown()
        return 0

    async def stop(self) -> None:
        self._logger.info("Stop requested")
        self._stop_event.set()
        if self._server is not None:
            self._server.should_exit = True

    async def shutdown(self) -> None:
        if self._container is not None:
            await self._container.alerter.close()
            await self._container.prices.close()
        self._logger.info("=== RUNTIME SHUTDOWN COMPLETE ===")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _install_signal_handlers(self) -> None:
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, lambda signum, frame: self._stop_event.set())
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._on_signal(s)))

    async def _on_signal(self, sig: signal.Signals) -> None:
        self._logger.info(f"Received signal {sig.name}")
        await self.stop()
