"""
Tests for the read-only operational scans.

============================================================
PURPOSE
============================================================
1. Staleness helper
2. Settlement / commission parity audit
3. Allocation mapping monitor
4. Aggregated health snapshot

============================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def settle_with_equity(container, guaranteed_product, make_subscription):
    """Factory: settle a 1000-principal subscription at maturity with the given equity."""

    def _settle(equity: str):
        product, term = guaranteed_product
        subscription = make_subscription(product, term, principal="1000")
        container.clock.advance(minutes=5)
        container.lifecycle.record_snapshot(subscription.id, Decimal(equity))
        container.clock.advance(days=31)
        container.lifecycle.mark_matured()
        return container.lifecycle.settle(subscription.id)

    return _settle


@pytest.fixture
def post_fee(session_factory, clock):
    """Factory: write a commission system fee posting."""
    from database.engine import transaction_scope
    from managed_wealth.models import ProfitFeeLog

    def _post(settlement, fee: str, subscription_id="same"):
        with transaction_scope(session_factory) as session:
            session.add(
                ProfitFeeLog(
                    wallet_address=settlement.wallet_address,
                    subscription_id=settlement.subscription_id if subscription_id == "same" else subscription_id,
                    trade_id=settlement.trade_id,
                    profit_amount=settlement.gross_pnl,
                    fee_amount=Decimal(fee),
                    created_at=clock.now(),
                )
            )

    return _post


# ============================================================
# STALENESS TESTS
# ============================================================

class TestFlagStale:
    """Tests for flag_stale."""

    def test_flags_old_matching_records_oldest_first(self):
        from managed_wealth.staleness import flag_stale

        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        records = [
            SimpleNamespace(id="a", since=now - timedelta(minutes=45), open=True),
            SimpleNamespace(id="b", since=now - timedelta(minutes=90), open=True),
            SimpleNamespace(id="c", since=now - timedelta(minutes=10), open=True),
            SimpleNamespace(id="d", since=now - timedelta(minutes=500), open=False),
            SimpleNamespace(id="e", since=None, open=True),
        ]

        flagged = flag_stale(
            records,
            predicate=lambda r: r.open,
            threshold_minutes=30,
            now=now,
            age_from=lambda r: r.since,
        )

        assert [r.record_id for r in flagged] == ["b", "a"]
        assert flagged[0].age_minutes == 90.0

    def test_naive_timestamps_are_treated_as_utc(self):
        from managed_wealth.staleness import age_minutes

        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert age_minutes(datetime(2026, 1, 1, 11, 30), now) == 30.0
        assert age_minutes(now + timedelta(minutes=5), now) == 0.0


# ============================================================
# PARITY AUDIT TESTS
# ============================================================

class TestSettlementParityAuditor:
    """Reconciliation between settlements and fee postings."""

    def test_matching_posting_is_clean(self, container, settle_with_equity, post_fee):
        settlement = settle_with_equity("1200")
        post_fee(settlement, "40")

        report = container.auditor.audit()

        assert report.checked_settlements == 1
        assert report.profitable_settlements == 1
        assert report.is_clean

    def test_missing_posting(self, container, settle_with_equity):
        settlement = settle_with_equity("1200")

        report = container.auditor.audit()

        assert [f.settlement_id for f in report.missing] == [settlement.id]
        assert report.missing[0].expected_fee == Decimal("40")
        assert not report.is_clean

    def test_fee_mismatch_reports_drift(self, container, settle_with_equity, post_fee):
        """Drift is actual - expected; under-charging is negative."""
        settlement = settle_with_equity("1200")
        post_fee(settlement, "30")

        report = container.auditor.audit()

        assert report.missing == []
        finding = report.fee_mismatches[0]
        assert finding.actual_fee == Decimal("30")
        assert finding.drift == Decimal("-10")

    def test_split_postings_are_summed(self, container, settle_with_equity, post_fee):
        settlement = settle_with_equity("1200")
        post_fee(settlement, "25")
        post_fee(settlement, "15", subscription_id=None)

        assert container.auditor.audit().is_clean

    def test_posting_for_another_subscription_does_not_match(self, container, settle_with_equity, post_fee):
        settlement = settle_with_equity("1200")
        post_fee(settlement, "40", subscription_id="someone-else")

        report = container.auditor.audit()

        assert len(report.missing) == 1

    def test_drift_within_epsilon_is_tolerated(self, container, settle_with_equity, post_fee):
        settlement = settle_with_equity("1200")
        post_fee(settlement, "40.00005")

        assert container.auditor.audit().is_clean

    def test_losses_are_not_audited(self, container, settle_with_equity):
        settle_with_equity("900")

        report = container.auditor.audit()

        assert report.checked_settlements == 1
        assert report.profitable_settlements == 0
        assert report.is_clean

    def test_window_excludes_old_settlements(self, container, settle_with_equity, clock):
        settle_with_equity("1200")
        clock.advance(days=8)

        assert container.auditor.audit(window_days=7).checked_settlements == 0
        assert container.auditor.audit(window_days=30).checked_settlements == 1

    def test_window_is_clamped(self, container):
        assert container.auditor.audit(window_days=1000).window_days == 90


# ============================================================
# ALLOCATION MONITOR TESTS
# ============================================================

class TestAllocationMappingMonitor:
    """Execution account binding coverage."""

    def test_reports_stale_unmapped_subscriptions(self, container, guaranteed_product, make_subscription, clock):
        from managed_wealth.types import SubscriptionStatus

        product, term = guaranteed_product
        make_subscription(product, term, copy_config_id="copy-1")
        unmapped = make_subscription(product, term, copy_config_id=None)
        make_subscription(product, term, copy_config_id=None, status=SubscriptionStatus.PENDING)
        make_subscription(product, term, copy_config_id=None, status=SubscriptionStatus.SETTLED)
        clock.advance(minutes=31)

        report = container.allocation.scan()

        assert report.mapped_count == 1
        assert report.unmapped_count == 1
        assert report.by_status == {"RUNNING": 2, "MATURED": 0}
        assert [r.record_id for r in report.stale_unmapped] == [unmapped.id]
        assert report.stale_unmapped[0].details["walletAddress"] == unmapped.wallet_address

    def test_counts_are_exact_when_stale_rows_exceed_limit(
        self, container, guaranteed_product, make_subscription, clock
    ):
        """Only the oldest ``limit`` stale rows are listed; the counts still cover every row."""
        from managed_wealth.types import SubscriptionStatus

        product, term = guaranteed_product
        make_subscription(product, term, copy_config_id="copy-1")
        unmapped = []
        for _ in range(4):
            unmapped.append(make_subscription(product, term, copy_config_id=None))
            clock.advance(minutes=1)
        make_subscription(product, term, copy_config_id=None, status=SubscriptionStatus.MATURED)
        clock.advance(minutes=31)

        report = container.allocation.scan(limit=2)

        assert report.mapped_count == 1
        assert report.unmapped_count == 5
        assert report.by_status == {"RUNNING": 5, "MATURED": 1}
        assert report.stale_unmapped_count == 5
        assert [r.record_id for r in report.stale_unmapped] == [unmapped[0].id, unmapped[1].id]

    def test_threshold_override(self, container, guaranteed_product, make_subscription, clock):
        product, term = guaranteed_product
        make_subscription(product, term, copy_config_id=None)
        clock.advance(minutes=31)

        report = container.allocation.scan(stale_mapping_minutes=60)

        assert report.unmapped_count == 1
        assert report.stale_unmapped == []
        assert report.stale_mapping_minutes == 60


# ============================================================
# HEALTH SNAPSHOT TESTS
# ============================================================

class TestOpsHealthReporter:
    """Aggregated snapshot."""

    def test_empty_system_is_healthy(self, container, guaranteed_product):
        snapshot = container.health.snapshot()

        assert snapshot.is_healthy
        assert [c.slug for c in snapshot.coverage] == ["guaranteed-30d"]
        assert snapshot.coverage[0].coverage.is_unbounded

    def test_underfunded_reserve_is_unhealthy(self, container, guaranteed_product, make_subscription):
        from managed_wealth.types import ReserveEntryType

        product, term = guaranteed_product
        make_subscription(product, term, principal="10000")
        container.ledger.record(ReserveEntryType.DEPOSIT, Decimal("500"))

        snapshot = container.health.snapshot()

        assert snapshot.coverage[0].coverage.coverage_ratio == Decimal("1")
        assert snapshot.coverage[0].is_healthy is False
        assert snapshot.is_healthy is False

    def test_liquidation_backlog_and_blocked_tasks(
        self, container, guaranteed_product, make_subscription, add_position, clock
    ):
        """Open tasks show up as backlog; BLOCKED tasks make the system unhealthy."""
        from database.engine import transaction_scope

        product, term = guaranteed_product
        subscription = make_subscription(product, term)
        add_position(subscription.id)
        container.lifecycle.transition_to_liquidating(subscription.id)
        claimed = container.queue.claim_due()[0]
        with transaction_scope(container.session_factory) as session:
            container.queue.record_failure(session, claimed.id, claimed.claim_token, "INSUFFICIENT_FUNDS", "no funds")
        clock.advance(minutes=10)

        snapshot = container.health.snapshot()

        assert snapshot.liquidation.inspected == 1
        assert [r.record_id for r in snapshot.liquidation.backlog] == [subscription.id]
        assert snapshot.liquidation.backlog[0].details["openTasks"] == 1
        assert snapshot.liquidation.backlog[0].age_minutes == 10.0
        assert snapshot.tasks.by_status["BLOCKED"] == 1
        assert snapshot.is_healthy is False

    def test_parity_findings_propagate(self, container, settle_with_equity):
        settle_with_equity("1200")

        snapshot = container.health.snapshot(window_days=3)

        assert snapshot.window_days == 3
        assert len(snapshot.parity.missing) == 1
        assert snapshot.is_healthy is False
