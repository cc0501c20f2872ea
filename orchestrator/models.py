"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Runtime modes and runtime configuration for the managed wealth
background processes.

============================================================
"""

import os
from dataclasses import dataclass
from enum import Enum


# ============================================================
# RUNTIME MODES
# ============================================================

class RuntimeMode(Enum):
    """
    Runtime execution modes.

    Each mode defines which loops are active.
    """

    API = "api"
    """HTTP API only."""

    WORKER = "worker"
    """Liquidation worker loop only."""

    SCHEDULER = "scheduler"
    """NAV sampling, maturity, settlement and parity loop only."""

    ALL = "all"
    """API, worker and scheduler in one process."""

    @property
    def runs_api(self) -> bool:
        return self in (RuntimeMode.API, RuntimeMode.ALL)

    @property
    def runs_worker(self) -> bool:
        return self in (RuntimeMode.WORKER, RuntimeMode.ALL)

    @property
    def runs_scheduler(self) -> bool:
        return self in (RuntimeMode.SCHEDULER, RuntimeMode.ALL)


# ============================================================
# RUNTIME CONFIGURATION
# ============================================================

@dataclass
class RuntimeConfig:
    """Process-level settings; control plane settings live in ManagedWealthConfig."""

    mode: RuntimeMode = RuntimeMode.ALL
    """Which loops to run."""

    single_cycle: bool = False
    """Run each selected loop once and exit (the API is skipped)."""

    host: str = "0.0.0.0"
    port: int = 8000

    log_level: str = "INFO"
    log_format: str = "json"

    init_db: bool = False
    """Create missing tables on startup."""

    parity_every_cycles: int = 10
    """Scheduler cycles between parity audits."""

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            mode=RuntimeMode(os.getenv("RUNTIME_MODE", RuntimeMode.ALL.value)),
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )
