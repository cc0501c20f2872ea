"""
Orchestrator Package.

Runs the managed wealth loops in one process. Every decision lives in
managed_wealth; this package only calls its entry points on a timer,
and a failing cycle is logged and alerted before the loop goes on.

============================================================
RUNTIME MODES
============================================================
- api       : HTTP API
- worker    : Liquidation worker loop
- scheduler : NAV sampling, settlement sweep, parity audit
- all       : Everything in one process

============================================================
"""

from .core import ManagedWealthRuntime, setup_logging
from .models import RuntimeConfig, RuntimeMode

__all__ = [
    "ManagedWealthRuntime",
    "RuntimeConfig",
    "RuntimeMode",
    "setup_logging",
]
