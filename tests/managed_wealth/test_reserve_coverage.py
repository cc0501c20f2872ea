"""
Tests for the reserve fund ledger and the guarantee coverage guard.

============================================================
PURPOSE
============================================================
1. Ledger balance folding and entry validation
2. Coverage ratio math (including the unbounded case)
3. Acceptance at / below the product's required ratio
4. Liability scope (per product vs global)
5. Concurrent acceptance against the same reserve

============================================================
"""

import threading
from decimal import Decimal

import pytest


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def ledger(session_factory, clock):
    from managed_wealth.reserve_ledger import ReserveLedger
    return ReserveLedger(session_factory, clock)


@pytest.fixture
def guard(ledger):
    from managed_wealth.coverage_guard import GuaranteeCoverageGuard
    return GuaranteeCoverageGuard(ledger)


# ============================================================
# LEDGER TESTS
# ============================================================

class TestReserveLedger:
    """Tests for the append-only reserve ledger."""

    def test_empty_ledger_has_zero_balance(self, ledger):
        """A fresh ledger has a zero balance."""
        assert ledger.get_balance() == Decimal("0")

    def test_balance_folds_signed_entries(self, ledger):
        """Deposits and top-ups add; withdrawals and payouts subtract."""
        from managed_wealth.types import ReserveEntryType

        ledger.record(ReserveEntryType.DEPOSIT, Decimal("1000"))
        ledger.record(ReserveEntryType.TOPUP, Decimal("250"))
        ledger.record(ReserveEntryType.WITHDRAW, Decimal("100"))
        balance = ledger.record(ReserveEntryType.GUARANTEE_PAYOUT, Decimal("50"))

        assert balance == Decimal("1100")
        assert ledger.get_balance() == Decimal("1100")

    @pytest.mark.parametrize("amount", ["0", "-5", "NaN", "Infinity"])
    def test_rejects_non_positive_or_non_finite_amounts(self, ledger, amount):
        """Entry amounts must be positive and finite."""
        from core.exceptions import ValidationError
        from managed_wealth.types import ReserveEntryType

        with pytest.raises(ValidationError):
            ledger.record(ReserveEntryType.DEPOSIT, Decimal(amount))

        assert ledger.get_balance() == Decimal("0")

    def test_entries_are_newest_first(self, ledger, session_factory, clock):
        """entries() lists the most recent movement first."""
        from database.engine import transaction_scope
        from managed_wealth.types import ReserveEntryType

        ledger.record(ReserveEntryType.DEPOSIT, Decimal("10"), reference="first")
        clock.advance(minutes=1)
        ledger.record(ReserveEntryType.DEPOSIT, Decimal("20"), reference="second")

        with transaction_scope(session_factory) as session:
            entries = ledger.entries(session)
            references = [e.reference for e in entries]

        assert references == ["second", "first"]


# ============================================================
# COVERAGE MATH TESTS
# ============================================================

class TestCoverageMath:
    """Tests for the pure coverage helpers."""

    def test_liability_is_principal_times_min_yield(self):
        """Guarantee liability is principal * minYieldRate."""
        from managed_wealth.settlement_math import guarantee_liability

        assert guarantee_liability(Decimal("5000"), Decimal("0.05")) == Decimal("250")
        assert guarantee_liability(Decimal("5000"), None) == Decimal("0")

    def test_zero_liability_is_unbounded(self):
        """No liability at all gives an infinite ratio that passes any threshold."""
        from managed_wealth.settlement_math import coverage_ratio

        ratio = coverage_ratio(Decimal("0"), Decimal("0"), Decimal("0"))
        assert ratio.is_infinite()
        assert ratio > Decimal("1000000")

    def test_ratio_includes_additional_liability(self):
        """Ratio divides the balance by existing plus new liability."""
        from managed_wealth.settlement_math import coverage_ratio

        ratio = coverage_ratio(Decimal("100000"), Decimal("80000"), Decimal("250"))
        assert ratio.quantize(Decimal("0.001")) == Decimal("1.246")

    def test_unbounded_coverage_serializes_without_a_number(self):
        """An infinite ratio is reported as null plus coverageUnbounded."""
        from managed_wealth.types import ReserveCoverage

        coverage = ReserveCoverage(
            balance=Decimal("0"),
            existing_liability=Decimal("0"),
            additional_liability=Decimal("0"),
            projected_liability=Decimal("0"),
            coverage_ratio=Decimal("Infinity"),
        )
        payload = coverage.to_dict()

        assert payload["coverageRatio"] is None
        assert payload["coverageUnbounded"] is True


# ============================================================
# GUARD TESTS
# ============================================================

class TestCoverageGuard:
    """Tests for GuaranteeCoverageGuard."""

    def _seed_liability(self, make_subscription, product, term):
        # 1,600,000 * 5% = 80,000 of existing liability
        make_subscription(product, term, principal="1600000")

    def test_accepts_at_required_ratio(self, guard, ledger, make_product, make_subscription, session_factory):
        """100k reserve, 80k liability, 250 new liability -> 1.246 >= 1.2."""
        from database.engine import transaction_scope
        from managed_wealth.types import ReserveEntryType

        product, term = make_product(reserve_coverage_min="1.2")
        ledger.record(ReserveEntryType.DEPOSIT, Decimal("100000"))
        self._seed_liability(make_subscription, product, term)

        with transaction_scope(session_factory) as session:
            coverage = guard.check_or_raise(session, product, Decimal("5000"), Decimal("0.05"))

        assert coverage.existing_liability == Decimal("80000")
        assert coverage.additional_liability == Decimal("250")
        assert coverage.projected_liability == Decimal("80250")
        assert coverage.coverage_ratio.quantize(Decimal("0.001")) == Decimal("1.246")

    def test_rejects_below_required_ratio(self, guard, ledger, make_product, make_subscription, session_factory):
        """The same numbers against a 1.3 requirement are rejected with the coverage attached."""
        from core.exceptions import ReserveCoverageError
        from database.engine import transaction_scope
        from managed_wealth.types import ReserveEntryType

        product, term = make_product(reserve_coverage_min="1.3")
        ledger.record(ReserveEntryType.DEPOSIT, Decimal("100000"))
        self._seed_liability(make_subscription, product, term)

        with pytest.raises(ReserveCoverageError) as exc_info:
            with transaction_scope(session_factory) as session:
                guard.check_or_raise(session, product, Decimal("5000"), Decimal("0.05"))

        error = exc_info.value
        assert error.http_status == 409
        assert error.required_ratio == Decimal("1.3")
        assert error.product_id == product.id
        assert error.coverage.projected_liability == Decimal("80250")

    def test_settled_subscriptions_carry_no_liability(self, guard, make_product, make_subscription, session_factory):
        """Only PENDING / RUNNING / MATURED subscriptions count."""
        from database.engine import transaction_scope
        from managed_wealth.types import SubscriptionStatus

        product, term = make_product()
        make_subscription(product, term, principal="1000", status=SubscriptionStatus.SETTLED)
        make_subscription(product, term, principal="1000", status=SubscriptionStatus.CANCELLED)
        make_subscription(product, term, principal="2000", status=SubscriptionStatus.MATURED)

        with transaction_scope(session_factory) as session:
            liability = guard.existing_liability(session, product.id)

        assert liability == Decimal("100")

    def test_product_scope_ignores_other_products(self, guard, make_product, make_subscription, session_factory):
        """Per-product scope only sums the product being subscribed."""
        from database.engine import transaction_scope

        product_a, term_a = make_product()
        product_b, term_b = make_product()
        make_subscription(product_b, term_b, principal="10000")

        with transaction_scope(session_factory) as session:
            assert guard.existing_liability(session, product_a.id) == Decimal("0")
            assert guard.existing_liability(session, product_b.id) == Decimal("500")

    def test_global_scope_sums_all_guaranteed_products(self, ledger, make_product, make_subscription, session_factory):
        """Global scope sums every guaranteed product and shares one lock key."""
        from database.engine import transaction_scope
        from database.locks import GLOBAL_GUARANTEE_KEY
        from managed_wealth.config import ReserveConfig
        from managed_wealth.coverage_guard import GuaranteeCoverageGuard
        from managed_wealth.types import LiabilityScope

        guard = GuaranteeCoverageGuard(ledger, ReserveConfig(liability_scope=LiabilityScope.GLOBAL))
        product_a, term_a = make_product()
        product_b, term_b = make_product()
        unguaranteed, plain_term = make_product(is_guaranteed=False)
        make_subscription(product_a, term_a, principal="10000")
        make_subscription(product_b, term_b, principal="20000")
        make_subscription(unguaranteed, plain_term, principal="50000")

        with transaction_scope(session_factory) as session:
            liability = guard.existing_liability(session, product_a.id)

        assert liability == Decimal("1500")
        assert guard.lock_keys(product_a.id) == guard.lock_keys(product_b.id) == [GLOBAL_GUARANTEE_KEY]

    def test_current_coverage_reports_unbounded_without_liability(self, guard, ledger, make_product, session_factory):
        """A funded reserve with nothing outstanding is unbounded."""
        from database.engine import transaction_scope
        from managed_wealth.types import ReserveEntryType

        product, _ = make_product()
        ledger.record(ReserveEntryType.DEPOSIT, Decimal("500"))

        with transaction_scope(session_factory) as session:
            coverage = guard.current_coverage(session, product.id)

        assert coverage.is_unbounded
        assert coverage.balance == Decimal("500")


# ============================================================
# CONCURRENCY TESTS
# ============================================================

class TestConcurrentAcceptance:
    """Acceptance against a shared reserve is serialized per product."""

    def test_only_one_of_two_racing_subscriptions_is_accepted(
        self, container, make_product, subscription_request
    ):
        """Reserve covers one 5% guarantee on 10,000 at 1.2x, not two."""
        from core.exceptions import ReserveCoverageError
        from managed_wealth.types import ReserveEntryType

        product, term = make_product(reserve_coverage_min="1.2")
        # 700 / 500 = 1.4 for one; 700 / 1000 = 0.7 for two
        container.ledger.record(ReserveEntryType.DEPOSIT, Decimal("700"))

        barrier = threading.Barrier(2)
        outcomes = []

        def subscribe(wallet):
            barrier.wait()
            try:
                container.lifecycle.create(subscription_request(product, term, principal="10000", wallet=wallet))
                outcomes.append("accepted")
            except ReserveCoverageError:
                outcomes.append("rejected")

        threads = [
            threading.Thread(target=subscribe, args=(f"0x{i:040d}",))
            for i in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["accepted", "rejected"]
