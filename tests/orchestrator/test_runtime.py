"""
Tests for the runtime CLI and orchestrator.

============================================================
PURPOSE
============================================================
1. CLI parsing and validation
2. Runtime mode selection
3. Single scheduler / worker cycles against a test container

============================================================
"""

from decimal import Decimal
from unittest.mock import patch

import pytest


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def runtime_factory(container):
    from orchestrator.core import ManagedWealthRuntime
    from orchestrator.models import RuntimeConfig, RuntimeMode

    def _make(mode=RuntimeMode.ALL, single_cycle=True, parity_every_cycles=10):
        config = RuntimeConfig(mode=mode, single_cycle=single_cycle, parity_every_cycles=parity_every_cycles)
        return ManagedWealthRuntime(config, container=container)

    return _make


# ============================================================
# CLI TESTS
# ============================================================

class TestCli:
    """Tests for argument parsing."""

    def test_defaults(self, monkeypatch):
        from orchestrator.cli import build_config, create_parser
        from orchestrator.models import RuntimeMode

        for name in ("RUNTIME_MODE", "API_HOST", "API_PORT", "LOG_LEVEL", "LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)

        config = build_config(create_parser().parse_args([]))

        assert config.mode == RuntimeMode.ALL
        assert config.port == 8000
        assert config.single_cycle is False
        assert config.parity_every_cycles == 10

    def test_worker_single_cycle(self):
        from orchestrator.cli import build_config, create_parser
        from orchestrator.models import RuntimeMode

        args = create_parser().parse_args(["--mode", "worker", "--single-cycle", "--log-format", "text"])
        config = build_config(args)

        assert config.mode == RuntimeMode.WORKER
        assert config.single_cycle is True
        assert config.log_format == "text"

    @pytest.mark.parametrize(
        "argv,expected",
        [
            (["--mode", "api", "--single-cycle"], "--single-cycle has no effect in api mode"),
            (["--port", "70000"], "Invalid port: 70000"),
            (["--parity-every", "0"], "--parity-every must be at least 1"),
        ],
    )
    def test_validation_errors(self, argv, expected):
        from orchestrator.cli import create_parser, validate_args

        assert validate_args(create_parser().parse_args(argv)) == [expected]

    def test_main_rejects_invalid_args(self, capsys):
        from orchestrator.cli import main

        assert main(["--port", "0"]) == 1
        assert "Invalid port" in capsys.readouterr().err


# ============================================================
# RUNTIME MODE TESTS
# ============================================================

class TestRuntimeMode:

    @pytest.mark.parametrize(
        "mode,api,worker,scheduler",
        [
            ("api", True, False, False),
            ("worker", False, True, False),
            ("scheduler", False, False, True),
            ("all", True, True, True),
        ],
    )
    def test_loops_per_mode(self, mode, api, worker, scheduler):
        from orchestrator.models import RuntimeMode

        runtime_mode = RuntimeMode(mode)
        assert (runtime_mode.runs_api, runtime_mode.runs_worker, runtime_mode.runs_scheduler) == (api, worker, scheduler)


# ============================================================
# RUNTIME TESTS
# ============================================================

class TestManagedWealthRuntime:
    """Single cycles against a test container."""

    @pytest.mark.asyncio
    async def test_scheduler_cycle_settles_and_audits(
        self, runtime_factory, container, guaranteed_product, make_subscription, clock
    ):
        """A matured profitable subscription is settled; the missing fee posting raises a parity alert."""
        from managed_wealth.alerting import AlertType
        from managed_wealth.types import SubscriptionStatus

        product, term = guaranteed_product
        subscription = make_subscription(product, term)
        clock.advance(minutes=5)
        container.lifecycle.record_snapshot(subscription.id, Decimal("1200"))
        clock.advance(days=31)

        await runtime_factory().run_scheduler_cycle()

        assert container.lifecycle.get_subscription(subscription.id).status == SubscriptionStatus.SETTLED
        assert [a.alert_type for a in container.alerter.get_history()] == [AlertType.PARITY_DRIFT]

    @pytest.mark.asyncio
    async def test_single_cycle_worker_run(
        self, runtime_factory, container, guaranteed_product, make_subscription, add_position, executor, price_source
    ):
        """Worker mode with --single-cycle drains due tasks once and shuts down."""
        from orchestrator.core import ManagedWealthRuntime
        from orchestrator.models import RuntimeMode

        product, term = guaranteed_product
        subscription = make_subscription(product, term)
        add_position(subscription.id)
        container.lifecycle.transition_to_liquidating(subscription.id)
        runtime = runtime_factory(mode=RuntimeMode.WORKER)

        with patch.object(ManagedWealthRuntime, "_install_signal_handlers"):
            exit_code = await runtime.run()

        assert exit_code == 0
        assert len(executor.orders) == 1
        price_source.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scheduler_error_is_alerted_and_loop_exits(self, runtime_factory, container):
        from core.exceptions import PersistenceError
        from managed_wealth.alerting import AlertType
        from orchestrator.models import RuntimeMode

        runtime = runtime_factory(mode=RuntimeMode.SCHEDULER)

        with patch.object(container.lifecycle, "run_settlement_cycle", side_effect=PersistenceError("db down")):
            await runtime.run_scheduler()

        assert [a.alert_type for a in container.alerter.get_history()] == [AlertType.WORKER_ERROR]

    @pytest.mark.asyncio
    async def test_stop_sets_event(self, runtime_factory):
        runtime = runtime_factory(single_cycle=False)

        await runtime.stop()

        assert runtime._stop_event.is_set()
