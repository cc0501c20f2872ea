"""
Managed Wealth - Subscription Lifecycle.

============================================================
PURPOSE
============================================================
Drives each subscription from acceptance to exit.

    create ──► RUNNING ──(end_at)──► MATURED ──liquidate──► settle ──► SETTLED
                  │
                  └──cancel──► (liquidate) ──► settle ──► CANCELLED

============================================================
CRITICAL SECTIONS
============================================================
- create: wallet lock (trial + referral exactly-once) and, for
  guaranteed products, the coverage lock. Coverage check and
  insert share one transaction.
- record_snapshot / transition_to_liquidating / settle / cancel:
  per-subscription lock (single writer for high_water_mark and
  for the exit path).

============================================================
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from core.clock import ClockFactory, ClockProtocol, truncate_to_minute
from core.exceptions import (
    ConflictError,
    ManagedWealthException,
    NotFoundError,
    ValidationError,
)
from database.engine import transaction_scope
from database.locks import locked_transaction, subscription_lock_key, wallet_lock_key

from .commission import CommissionHandoff
from .config import ManagedWealthConfig
from .coverage_guard import GuaranteeCoverageGuard
from .liquidation_queue import LiquidationTaskQueue
from .models import (
    ManagedNavSnapshot,
    ManagedProduct,
    ManagedSettlement,
    ManagedSubscription,
    ManagedTerm,
)
from .positions import SqlPositionBook
from .referral import ReferralBonusResult, apply_referral_bonus
from .reserve_ledger import ReserveLedger
from .settlement_math import (
    calculate_settlement,
    effective_performance_fee_rate,
    is_guarantee_eligible,
    settlement_trade_id,
)
from .state_machine import transition_subscription
from .types import (
    CommissionStatus,
    ExitReason,
    PriceSource,
    ReserveCoverage,
    ReserveEntryType,
    SettlementSweepResult,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
NAV_HISTORY_LIMIT = 30


# ============================================================
# REQUEST / RESULT TYPES
# ============================================================

@dataclass
class SubscriptionRequest:
    """Validated input for create()."""

    wallet_address: str
    term_id: str
    principal: Decimal
    accepted_terms: bool
    product_id: Optional[str] = None
    product_slug: Optional[str] = None
    copy_config_id: Optional[str] = None


@dataclass
class CreateResult:
    subscription: ManagedSubscription
    coverage: Optional[ReserveCoverage] = None
    referral: Optional[ReferralBonusResult] = None


@dataclass
class CancelResult:
    subscription: ManagedSubscription
    settlement: Optional[ManagedSettlement] = None
    liquidation_tasks_created: int = 0

    @property
    def liquidating(self) -> bool:
        return self.settlement is None and self.subscription.status == SubscriptionStatus.RUNNING


@dataclass
class SubscriptionView:
    """Subscription with nested product, term, recent NAV and settlement."""

    subscription: ManagedSubscription
    product: ManagedProduct
    term: ManagedTerm
    nav_snapshots: List[ManagedNavSnapshot] = field(default_factory=list)
    settlement: Optional[ManagedSettlement] = None


# ============================================================
# LIFECYCLE SERVICE
# ============================================================

class SubscriptionLifecycle:
    """Subscription state machine and its periodic jobs."""

    def __init__(
        self,
        session_factory: sessionmaker,
        config: ManagedWealthConfig,
        guard: GuaranteeCoverageGuard,
        ledger: ReserveLedger,
        queue: LiquidationTaskQueue,
        positions: Optional[SqlPositionBook] = None,
        commission: Optional[CommissionHandoff] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._guard = guard
        self._ledger = ledger
        self._queue = queue
        self._positions = positions or SqlPositionBook()
        self._commission = commission
        self._clock = clock or ClockFactory.get_clock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _resolve_product(self, session: Session, product_id: Optional[str], product_slug: Optional[str]) -> ManagedProduct:
        if product_id:
            product = session.get(ManagedProduct, product_id)
            if product is None:
                raise NotFoundError("product", product_id)
            return product
        if product_slug:
            product = session.scalars(select(ManagedProduct).where(ManagedProduct.slug == product_slug)).first()
            if product is None:
                raise NotFoundError("product", product_slug)
            return product
        raise ValidationError("productId or productSlug is required", field="productId")

    def _get_subscription(self, session: Session, subscription_id: str) -> ManagedSubscription:
        subscription = session.scalars(
            select(ManagedSubscription)
            .where(ManagedSubscription.id == subscription_id)
            .with_for_update()
        ).first()
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, request: SubscriptionRequest) -> CreateResult:
        """
        Accept a subscription.

        Raises:
            ValidationError: terms not accepted, principal malformed or below minimum
            NotFoundError: unknown product or term
            ConflictError: product/term inactive, principal above term maximum
            ReserveCoverageError: guaranteed product cannot be covered
        """
        if not request.accepted_terms:
            raise ValidationError("Terms must be accepted", field="acceptedTerms")

        wallet = request.wallet_address.strip().lower()
        if not wallet:
            raise ValidationError("walletAddress is required", field="walletAddress")

        principal = Decimal(request.principal)
        if not principal.is_finite() or principal <= ZERO:
            raise ValidationError("principal must be a positive number", field="principal")

        # Validate outside the lock; re-read inside it.
        with transaction_scope(self._session_factory) as session:
            product = self._resolve_product(session, request.product_id, request.product_slug)
            product_id = product.id
            coverage_keys = self._guard.lock_keys(product.id) if product.is_guaranteed else []

        keys = [wallet_lock_key(wallet)] + coverage_keys
        with locked_transaction(self._session_factory, keys) as session:
            product = session.get(ManagedProduct, product_id)
            term = session.get(ManagedTerm, request.term_id)
            if term is None or term.product_id != product.id:
                raise NotFoundError("term", request.term_id)

            if not product.is_active:
                raise ConflictError(f"Product {product.slug} is not accepting subscriptions")
            if not term.is_active:
                raise ConflictError(f"Term {term.label} is not accepting subscriptions")

            minimum = product.min_principal if product.min_principal is not None else self._config.subscription.min_principal
            if principal < Decimal(minimum):
                raise ValidationError(f"principal must be at least {minimum}", field="principal")
            if term.max_subscription_amount is not None and principal > Decimal(term.max_subscription_amount):
                raise ConflictError(
                    f"principal exceeds term limit of {term.max_subscription_amount}",
                    context={"maxSubscriptionAmount": str(term.max_subscription_amount)},
                )

            coverage = None
            if product.is_guaranteed:
                coverage = self._guard.check_or_raise(session, product, principal, Decimal(term.min_yield_rate))

            now = self._clock.now()
            end_at = now + timedelta(days=term.duration_days)
            is_trial = self._is_trial_eligible(session, wallet)
            trial_ends_at = None
            if is_trial:
                trial_ends_at = now + timedelta(days=min(self._config.subscription.trial_days, term.duration_days))

            subscription = ManagedSubscription(
                id=str(uuid.uuid4()),
                wallet_address=wallet,
                product_id=product.id,
                term_id=term.id,
                principal=principal,
                status=SubscriptionStatus.RUNNING,
                high_water_mark=principal,
                current_equity=principal,
                start_at=now,
                end_at=end_at,
                is_trial=is_trial,
                trial_ends_at=trial_ends_at,
                copy_config_id=request.copy_config_id,
                created_at=now,
                updated_at=now,
            )
            session.add(subscription)
            session.flush()

            session.add(
                ManagedNavSnapshot(
                    subscription_id=subscription.id,
                    snapshot_at=truncate_to_minute(now),
                    nav=ONE,
                    equity=principal,
                    period_return=ZERO,
                    cumulative_return=ZERO,
                    drawdown=ZERO,
                    price_source=PriceSource.INITIAL,
                    is_fallback_price=False,
                )
            )

            referral = apply_referral_bonus(
                session, wallet, now, bonus_days=self._config.subscription.referral_bonus_days
            )
            session.flush()

            logger.info(
                f"Subscription {subscription.id} created: wallet={wallet} product={product.slug} "
                f"term={term.label} principal={principal} trial={is_trial} referral={referral.outcome.value}"
            )
            return CreateResult(subscription=subscription, coverage=coverage, referral=referral)

    def _is_trial_eligible(self, session: Session, wallet: str) -> bool:
        """First subscription of a wallet is a trial."""
        prior = session.scalar(
            select(func.count())
            .select_from(ManagedSubscription)
            .where(ManagedSubscription.wallet_address == wallet)
        )
        return self._config.subscription.trial_days > 0 and not prior

    # ------------------------------------------------------------------
    # NAV
    # ------------------------------------------------------------------

    def record_snapshot(
        self,
        subscription_id: str,
        mark_equity: Decimal,
        price_source: PriceSource = PriceSource.MARK_TO_MARKET,
        is_fallback: bool = False,
        at: Optional[datetime] = None,
    ) -> Optional[ManagedNavSnapshot]:
        """
        Write one NAV sample and roll high_water_mark / drawdown forward.

        A second sample for the same tick is skipped (returns None);
        existing snapshots are never modified.
        """
        mark_equity = Decimal(mark_equity)
        if not mark_equity.is_finite():
            raise ValidationError("markEquity must be finite", field="markEquity")

        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            if subscription.status not in (SubscriptionStatus.RUNNING, SubscriptionStatus.MATURED):
                raise ConflictError(
                    f"Cannot record NAV for subscription in status {subscription.status.value}"
                )

            tick = truncate_to_minute(at or self._clock.now())
            exists = session.scalar(
                select(func.count())
                .select_from(ManagedNavSnapshot)
                .where(ManagedNavSnapshot.subscription_id == subscription_id)
                .where(ManagedNavSnapshot.snapshot_at == tick)
            )
            if exists:
                logger.debug(f"NAV tick {tick.isoformat()} already recorded for {subscription_id}")
                return None

            principal = Decimal(subscription.principal)
            last_equity = Decimal(subscription.current_equity)
            high_water_mark = max(Decimal(subscription.high_water_mark), mark_equity)

            period_return = mark_equity / last_equity - ONE if last_equity > ZERO else ZERO
            cumulative_return = mark_equity / principal - ONE if principal > ZERO else ZERO
            drawdown = ZERO
            if high_water_mark > ZERO:
                drawdown = min(ONE, max(ZERO, (high_water_mark - mark_equity) / high_water_mark))

            snapshot = ManagedNavSnapshot(
                subscription_id=subscription_id,
                snapshot_at=tick,
                nav=mark_equity / principal if principal > ZERO else ONE,
                equity=mark_equity,
                period_return=period_return,
                cumulative_return=cumulative_return,
                drawdown=drawdown,
                price_source=price_source,
                is_fallback_price=is_fallback,
            )
            session.add(snapshot)

            subscription.current_equity = mark_equity
            subscription.high_water_mark = high_water_mark
            subscription.updated_at = self._clock.now()
            session.flush()
            return snapshot

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    def transition_to_liquidating(self, subscription_id: str) -> int:
        """
        Enqueue one liquidation task per open position.

        Idempotent: positions already covered by a non-terminal task
        are skipped. Returns the number of tasks created.
        """
        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            return self._start_liquidation(session, subscription)

    def _start_liquidation(self, session: Session, subscription: ManagedSubscription) -> int:
        if subscription.status not in (SubscriptionStatus.RUNNING, SubscriptionStatus.MATURED):
            raise ConflictError(
                f"Cannot liquidate subscription in status {subscription.status.value}"
            )

        positions = self._positions.open_positions(session, subscription.id)
        created = self._queue.enqueue_for_positions(session, subscription, positions)
        if positions and subscription.liquidation_started_at is None:
            subscription.liquidation_started_at = self._clock.now()
            subscription.updated_at = subscription.liquidation_started_at
            logger.info(
                f"Subscription {subscription.id} liquidation started "
                f"({len(positions)} open position(s), {len(created)} new task(s))"
            )
        return len(created)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(self, subscription_id: str) -> ManagedSettlement:
        """
        Write the exit settlement.

        Raises:
            ConflictError: liquidation tasks still non-terminal, or open
                exposure that was never sent to liquidation
            InvalidTransitionError: subscription not MATURED and not cancel-requested
        """
        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            existing = session.scalars(
                select(ManagedSettlement).where(ManagedSettlement.subscription_id == subscription_id)
            ).first()
            if existing is not None:
                return existing
            settlement = self._settle_locked(session, subscription)

        self._hand_off_commission(settlement)
        return settlement

    def _settle_locked(self, session: Session, subscription: ManagedSubscription) -> ManagedSettlement:
        open_tasks = self._queue.non_terminal_count(session, subscription.id)
        if open_tasks:
            raise ConflictError(
                f"Subscription {subscription.id} has {open_tasks} liquidation task(s) not COMPLETED/FAILED",
                context={"openTasks": open_tasks},
            )
        if subscription.liquidation_started_at is None and self._positions.open_positions(session, subscription.id):
            raise ConflictError(f"Subscription {subscription.id} has open exposure that was never liquidated")

        now = self._clock.now()
        if subscription.cancel_requested_at is not None:
            target, exit_reason = SubscriptionStatus.CANCELLED, ExitReason.EARLY_WITHDRAWAL
        else:
            target, exit_reason = SubscriptionStatus.SETTLED, ExitReason.MATURITY

        transition_subscription(subscription, target, exit_reason.value)

        product = subscription.product
        term = subscription.term
        final_equity = self._final_equity(session, subscription)
        base_rate = Decimal(term.performance_fee_rate if term.performance_fee_rate is not None else product.performance_fee_rate)
        fee_rate = effective_performance_fee_rate(
            base_rate, subscription.is_trial, subscription.trial_ends_at, subscription.end_at
        )
        eligible = exit_reason == ExitReason.MATURITY and is_guarantee_eligible(
            product.is_guaranteed, subscription.end_at, now
        )
        calc = calculate_settlement(
            principal=Decimal(subscription.principal),
            final_equity=final_equity,
            high_water_mark=Decimal(subscription.high_water_mark),
            performance_fee_rate=fee_rate,
            guarantee_eligible=eligible,
            min_yield_rate=Decimal(term.min_yield_rate),
            profit_fee_rate=self._config.audit.profit_fee_rate,
        )

        settlement_id = str(uuid.uuid4())
        settlement = ManagedSettlement(
            id=settlement_id,
            subscription_id=subscription.id,
            wallet_address=subscription.wallet_address,
            trade_id=settlement_trade_id(subscription.id, settlement_id),
            exit_reason=exit_reason,
            principal=calc.principal,
            final_equity=calc.final_equity,
            gross_pnl=calc.gross_pnl,
            high_water_mark=calc.high_water_mark,
            hwm_eligible_profit=calc.hwm_eligible_profit,
            performance_fee_rate=calc.performance_fee_rate,
            performance_fee=calc.performance_fee,
            guaranteed_payout=calc.guaranteed_payout,
            reserve_topup=calc.reserve_topup,
            final_payout=calc.final_payout,
            expected_fee=calc.expected_fee,
            commission_status=CommissionStatus.PENDING if calc.gross_pnl > ZERO else CommissionStatus.SKIPPED,
            settled_at=now,
        )
        session.add(settlement)

        if calc.reserve_topup > ZERO:
            self._ledger.append(
                session,
                ReserveEntryType.GUARANTEE_PAYOUT,
                calc.reserve_topup,
                reference=settlement.trade_id,
                subscription_id=subscription.id,
                recorded_at=now,
            )

        subscription.current_equity = final_equity
        subscription.high_water_mark = max(Decimal(subscription.high_water_mark), final_equity)
        subscription.settled_at = now
        subscription.updated_at = now
        session.flush()

        logger.info(
            f"Subscription {subscription.id} settled as {target.value}: equity={final_equity} "
            f"grossPnl={calc.gross_pnl} fee={calc.performance_fee} topup={calc.reserve_topup} "
            f"payout={calc.final_payout}"
        )
        return settlement

    def _final_equity(self, session: Session, subscription: ManagedSubscription) -> Decimal:
        """Equity from the position book when it has rows, else the last recorded equity."""
        if self._positions.has_position_rows(session, subscription.id):
            return self._positions.mark_equity(session, subscription.id, Decimal(subscription.principal), {})
        return Decimal(subscription.current_equity)

    def _hand_off_commission(self, settlement: ManagedSettlement) -> None:
        if self._commission is None or settlement.commission_status != CommissionStatus.PENDING:
            return
        self._commission.hand_off(settlement.id)

    # ------------------------------------------------------------------
    # Cancel / bind / mature
    # ------------------------------------------------------------------

    def cancel(self, subscription_id: str) -> CancelResult:
        """
        Early withdrawal.

        PENDING: cancelled immediately.
        RUNNING without exposure: cancelled and settled now.
        RUNNING with exposure: cancel requested, liquidation enqueued;
        a later settle() finalizes it as CANCELLED.
        """
        settlement = None
        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            now = self._clock.now()

            if subscription.status == SubscriptionStatus.PENDING:
                transition_subscription(subscription, SubscriptionStatus.CANCELLED, "cancelled before activation")
                subscription.cancel_requested_at = now
                subscription.updated_at = now
                return CancelResult(subscription=subscription)

            if subscription.status != SubscriptionStatus.RUNNING:
                raise ConflictError(f"Cannot cancel subscription in status {subscription.status.value}")

            if subscription.cancel_requested_at is None:
                subscription.cancel_requested_at = now
                subscription.updated_at = now
                logger.info(f"Subscription {subscription.id} cancel requested by {subscription.wallet_address}")

            created = self._start_liquidation(session, subscription)
            if self._queue.non_terminal_count(session, subscription.id) > 0:
                return CancelResult(subscription=subscription, liquidation_tasks_created=created)

            settlement = self._settle_locked(session, subscription)
            result = CancelResult(subscription=subscription, settlement=settlement)

        self._hand_off_commission(settlement)
        return result

    def bind_execution_account(self, subscription_id: str, copy_config_id: str) -> ManagedSubscription:
        if not copy_config_id or not copy_config_id.strip():
            raise ValidationError("copyConfigId is required", field="copyConfigId")

        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            if subscription.status not in (SubscriptionStatus.PENDING, SubscriptionStatus.RUNNING):
                raise ConflictError(f"Cannot bind execution account in status {subscription.status.value}")

            subscription.copy_config_id = copy_config_id.strip()
            subscription.updated_at = self._clock.now()
            if subscription.status == SubscriptionStatus.PENDING:
                transition_subscription(subscription, SubscriptionStatus.RUNNING, "execution account bound")
            logger.info(f"Subscription {subscription.id} bound to execution account {copy_config_id}")
            return subscription

    def mark_matured(self, limit: int = 500) -> int:
        """Move RUNNING subscriptions past end_at (and not cancel-requested) to MATURED."""
        now = self._clock.now()
        with transaction_scope(self._session_factory) as session:
            due_ids = list(
                session.scalars(
                    select(ManagedSubscription.id)
                    .where(ManagedSubscription.status == SubscriptionStatus.RUNNING)
                    .where(ManagedSubscription.end_at <= now)
                    .where(ManagedSubscription.cancel_requested_at.is_(None))
                    .order_by(ManagedSubscription.end_at)
                    .limit(limit)
                )
            )

        matured = 0
        for subscription_id in due_ids:
            with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
                subscription = self._get_subscription(session, subscription_id)
                if subscription.status != SubscriptionStatus.RUNNING or subscription.cancel_requested_at is not None:
                    continue
                transition_subscription(subscription, SubscriptionStatus.MATURED, "term elapsed")
                subscription.matured_at = now
                subscription.updated_at = now
                matured += 1
        return matured

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_settlement_cycle(self, limit: int = 200) -> SettlementSweepResult:
        """
        Maturity sweep, liquidation enqueue and settlement for every
        exiting subscription. Per-subscription failures are collected.
        """
        result = SettlementSweepResult(matured=self.mark_matured(limit))

        with transaction_scope(self._session_factory) as session:
            exiting = list(
                session.scalars(
                    select(ManagedSubscription.id)
                    .where(ManagedSubscription.settled_at.is_(None))
                    .where(
                        (ManagedSubscription.status == SubscriptionStatus.MATURED)
                        | (
                            (ManagedSubscription.status == SubscriptionStatus.RUNNING)
                            & ManagedSubscription.cancel_requested_at.is_not(None)
                        )
                    )
                    .order_by(ManagedSubscription.end_at)
                    .limit(limit)
                )
            )

        for subscription_id in exiting:
            try:
                self._advance_exit(subscription_id, result)
            except ManagedWealthException as e:
                logger.warning(f"Settlement sweep skipped {subscription_id}: {e.to_log_format()}")
                result.errors.append({"subscriptionId": subscription_id, "code": e.error_code, "error": e.message})

        logger.info(f"Settlement cycle complete: {result.to_dict()}")
        return result

    def _advance_exit(self, subscription_id: str, result: SettlementSweepResult) -> None:
        settlement = None
        with locked_transaction(self._session_factory, [subscription_lock_key(subscription_id)]) as session:
            subscription = self._get_subscription(session, subscription_id)
            if subscription.settled_at is not None:
                return

            had_started = subscription.liquidation_started_at is not None
            created = self._start_liquidation(session, subscription)
            result.tasks_created += created
            if not had_started and subscription.liquidation_started_at is not None:
                result.liquidations_started += 1

            if self._queue.non_terminal_count(session, subscription_id) > 0:
                result.waiting_on_tasks += 1
                return

            settlement = self._settle_locked(session, subscription)
            if subscription.status == SubscriptionStatus.CANCELLED:
                result.cancelled += 1
            else:
                result.settled += 1

        self._hand_off_commission(settlement)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def list_subscriptions(
        self,
        wallet_address: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        limit: int = 100,
    ) -> List[SubscriptionView]:
        with transaction_scope(self._session_factory) as session:
            stmt = (
                select(ManagedSubscription)
                .options(
                    selectinload(ManagedSubscription.product),
                    selectinload(ManagedSubscription.term),
                    selectinload(ManagedSubscription.settlement),
                )
                .order_by(ManagedSubscription.created_at.desc())
                .limit(limit)
            )
            if wallet_address:
                stmt = stmt.where(ManagedSubscription.wallet_address == wallet_address.strip().lower())
            if status:
                stmt = stmt.where(ManagedSubscription.status == status)

            views = []
            for subscription in session.scalars(stmt):
                snapshots = list(
                    session.scalars(
                        select(ManagedNavSnapshot)
                        .where(ManagedNavSnapshot.subscription_id == subscription.id)
                        .order_by(ManagedNavSnapshot.snapshot_at.desc())
                        .limit(NAV_HISTORY_LIMIT)
                    )
                )
                views.append(
                    SubscriptionView(
                        subscription=subscription,
                        product=subscription.product,
                        term=subscription.term,
                        nav_snapshots=snapshots,
                        settlement=subscription.settlement,
                    )
                )
            return views

    def get_subscription(self, subscription_id: str) -> ManagedSubscription:
        with transaction_scope(self._session_factory) as session:
            subscription = session.get(ManagedSubscription, subscription_id)
            if subscription is None:
                raise NotFoundError("subscription", subscription_id)
            return subscription
