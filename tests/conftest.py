"""
Shared fixtures for the managed wealth test suite.

Every test gets its own file-backed SQLite database, a MockClock
pinned to 2026-01-01 UTC and a container wired with the paper
executor and a mocked price source.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest


# ============================================================
# INFRASTRUCTURE
# ============================================================

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    from database.engine import create_database_engine, initialize_database

    engine = create_database_engine(f"sqlite:///{tmp_path / 'managed_wealth.db'}")
    initialize_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    from database.engine import create_session_factory
    return create_session_factory(engine)


@pytest.fixture
def clock():
    from core.clock import MockClock
    return MockClock(datetime(2026, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def config():
    from managed_wealth.config import ManagedWealthConfig
    return ManagedWealthConfig.for_testing()


@pytest.fixture
def price_source():
    """Price source with a live bid and mark of 0.60."""
    source = MagicMock()
    source.best_bid = AsyncMock(return_value=Decimal("0.60"))
    source.mark_price = AsyncMock(return_value=Decimal("0.60"))
    source.close = AsyncMock()
    return source


@pytest.fixture
def executor():
    from managed_wealth.executor import PaperLiquidationExecutor
    return PaperLiquidationExecutor()


@pytest.fixture
def container(config, session_factory, clock, price_source, executor):
    from managed_wealth.container import create_container
    return create_container(
        config=config,
        session_factory=session_factory,
        clock=clock,
        price_source=price_source,
        executor=executor,
    )


# ============================================================
# SEED DATA
# ============================================================

@pytest.fixture
def make_product(session_factory, clock):
    """Factory: insert a product with one term, return (product, term)."""
    from database.engine import transaction_scope
    from managed_wealth.models import ManagedProduct, ManagedTerm

    def _make(
        slug: Optional[str] = None,
        is_guaranteed: bool = True,
        reserve_coverage_min: str = "1.2",
        min_yield_rate: str = "0.05",
        duration_days: int = 30,
        performance_fee_rate: str = "0.2",
        max_subscription_amount: Optional[str] = None,
        min_principal: Optional[str] = None,
        is_active: bool = True,
        term_active: bool = True,
    ):
        with transaction_scope(session_factory) as session:
            product = ManagedProduct(
                id=str(uuid.uuid4()),
                slug=slug or f"product-{uuid.uuid4().hex[:8]}",
                name="Guaranteed Growth" if is_guaranteed else "Flexible Growth",
                strategy_profile="balanced",
                is_guaranteed=is_guaranteed,
                is_active=is_active,
                reserve_coverage_min=Decimal(reserve_coverage_min),
                performance_fee_rate=Decimal(performance_fee_rate),
                min_principal=Decimal(min_principal) if min_principal else None,
                created_at=clock.now(),
            )
            session.add(product)
            session.flush()
            term = ManagedTerm(
                id=str(uuid.uuid4()),
                product_id=product.id,
                label=f"{duration_days}D",
                duration_days=duration_days,
                min_yield_rate=Decimal(min_yield_rate),
                max_subscription_amount=Decimal(max_subscription_amount) if max_subscription_amount else None,
                is_active=term_active,
            )
            session.add(term)
        return product, term

    return _make


@pytest.fixture
def guaranteed_product(make_product):
    """Guaranteed product: 1.2x coverage, 5% minimum yield, 30 days."""
    return make_product(slug="guaranteed-30d")


@pytest.fixture
def make_subscription(session_factory, clock):
    """Factory: insert a subscription row directly, bypassing the coverage check."""
    from database.engine import transaction_scope
    from managed_wealth.models import ManagedSubscription
    from managed_wealth.types import SubscriptionStatus

    def _make(
        product,
        term,
        principal: str = "1000",
        wallet_address: Optional[str] = None,
        status=SubscriptionStatus.RUNNING,
        copy_config_id: Optional[str] = "copy-1",
        duration_days: Optional[int] = None,
        high_water_mark: Optional[str] = None,
        current_equity: Optional[str] = None,
    ):
        now = clock.now()
        with transaction_scope(session_factory) as session:
            subscription = ManagedSubscription(
                id=str(uuid.uuid4()),
                wallet_address=(wallet_address or f"0x{uuid.uuid4().hex[:40]}").lower(),
                product_id=product.id,
                term_id=term.id,
                principal=Decimal(principal),
                status=status,
                high_water_mark=Decimal(high_water_mark or principal),
                current_equity=Decimal(current_equity or principal),
                start_at=now,
                end_at=now + timedelta(days=duration_days if duration_days is not None else term.duration_days),
                is_trial=False,
                copy_config_id=copy_config_id,
                created_at=now,
                updated_at=now,
            )
            session.add(subscription)
        return subscription

    return _make


@pytest.fixture
def add_position(session_factory, clock):
    """Factory: book a buy into the position feed."""
    from database.engine import transaction_scope
    from managed_wealth.positions import SqlPositionBook

    book = SqlPositionBook()

    def _add(subscription_id: str, token_id: str = "token-yes", shares: str = "100", price: str = "0.50"):
        with transaction_scope(session_factory) as session:
            book.apply_buy(
                session, subscription_id, token_id, Decimal(shares), Decimal(price), clock.now(),
                market_slug="will-it-rain",
            )

    return _add


@pytest.fixture
def subscription_request():
    """Factory: build a SubscriptionRequest for a (product, term) pair."""
    from managed_wealth.lifecycle import SubscriptionRequest

    def _build(product, term, principal="1000", wallet="0xAbC0000000000000000000000000000000000001", **kwargs):
        kwargs.setdefault("accepted_terms", True)
        return SubscriptionRequest(
            wallet_address=wallet,
            term_id=term.id,
            principal=Decimal(principal),
            product_id=product.id,
            **kwargs,
        )

    return _build
