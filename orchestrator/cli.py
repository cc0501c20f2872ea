"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the managed wealth runtime.

Parses flags (falling back to RUNTIME_MODE, API_HOST, API_PORT,
LOG_LEVEL and LOG_FORMAT), validates them and hands a
RuntimeConfig to ManagedWealthRuntime.

============================================================
USAGE
============================================================
python -m orchestrator.cli --mode all
python -m orchestrator.cli --mode worker --single-cycle
python -m orchestrator.cli --mode api --port 8080

============================================================
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from .core import ManagedWealthRuntime, setup_logging
from .models import RuntimeConfig, RuntimeMode


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="managed-wealth",
        description="Managed wealth reserve-guarantee and liquidation control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Runtime Modes:
  api        - HTTP API only
  worker     - Liquidation worker loop only
  scheduler  - NAV sampling, maturity, settlement and parity loop only
  all        - Everything in one process

Examples:
  %(prog)s --mode all
  %(prog)s --mode worker --single-cycle
  %(prog)s --mode scheduler --log-format text
        """
    )

    parser.add_argument(
        "--mode", "-m",
        type=str,
        choices=[m.value for m in RuntimeMode],
        default=os.getenv("RUNTIME_MODE", RuntimeMode.ALL.value),
        help="Runtime mode (default: all)",
    )
    parser.add_argument(
        "--single-cycle",
        action="store_true",
        help="Run the worker and/or scheduler once and exit",
    )

    api = parser.add_argument_group("http api")
    api.add_argument("--host", type=str, default=os.getenv("API_HOST", "0.0.0.0"))
    api.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))

    logs = parser.add_argument_group("logging")
    logs.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Root log level",
    )
    logs.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=os.getenv("LOG_FORMAT", "json"),
        help="json for log shipping, text for terminals",
    )

    maintenance = parser.add_argument_group("maintenance")
    maintenance.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before starting",
    )
    maintenance.add_argument(
        "--parity-every",
        type=int,
        default=10,
        help="Scheduler cycles between parity audits (default: 10)",
    )

    return parser


def validate_args(args: argparse.Namespace) -> List[str]:
    """Human-readable problems with the parsed flags; empty when valid."""
    errors: List[str] = []
    if args.single_cycle and args.mode == RuntimeMode.API.value:
        errors.append("--single-cycle has no effect in api mode")
    if not 0 < args.port < 65536:
        errors.append(f"Invalid port: {args.port}")
    if args.parity_every < 1:
        errors.append("--parity-every must be at least 1")
    return errors


def build_config(args: argparse.Namespace) -> RuntimeConfig:
    return RuntimeConfig(
        mode=RuntimeMode(args.mode),
        single_cycle=args.single_cycle,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        log_format=args.log_format,
        init_db=args.init_db,
        parity_every_cycles=args.parity_every,
    )


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(config: RuntimeConfig) -> int:
    runtime = ManagedWealthRuntime(config)
    try:
        return await runtime.run()
    except KeyboardInterrupt:
        logging.info("Runtime interrupted")
        return 130


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point; returns the process exit code (1 on invalid flags)."""
    args = create_parser().parse_args(argv)
    problems = validate_args(args)
    for problem in problems:
        print(f"Error: {problem}", file=sys.stderr)
    if problems:
        return 1

    config = build_config(args)
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting managed wealth runtime: mode={config.mode.value} single_cycle={config.single_cycle}")
    return asyncio.run(async_main(config))


if __name__ == "__main__":
    sys.exit(main())
