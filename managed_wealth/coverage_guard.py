"""
Managed Wealth - Guarantee Coverage Guard.

============================================================
PURPOSE
============================================================
Gates acceptance of guaranteed subscriptions on the reserve
fund's ability to cover the projected guarantee liability.

    existingLiability   = Σ principal_i * minYieldRate_i
                          over guaranteed PENDING/RUNNING/MATURED
    additionalLiability = principal * minYieldRate
    coverageRatio       = balance / (existing + additional)

CONCURRENCY:
    The check and the subscription insert must run inside one
    locked_transaction keyed by lock_keys(product_id). The guard
    itself does not lock; it reads through the caller's session.

============================================================
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.exceptions import ReserveCoverageError
from database.locks import GLOBAL_GUARANTEE_KEY, product_lock_key

from .config import ReserveConfig
from .models import ManagedProduct, ManagedSubscription, ManagedTerm
from .reserve_ledger import ReserveLedger
from .settlement_math import coverage_ratio, guarantee_liability
from .types import GUARANTEE_LIABLE_STATUSES, LiabilityScope, ReserveCoverage

logger = logging.getLogger(__name__)


class GuaranteeCoverageGuard:
    """Reserve coverage check for guaranteed products."""

    def __init__(self, ledger: ReserveLedger, config: Optional[ReserveConfig] = None):
        self._ledger = ledger
        self._config = config or ReserveConfig()

    def lock_keys(self, product_id: str) -> List[str]:
        """Keys serializing acceptance for this product under the configured scope."""
        if self._config.liability_scope == LiabilityScope.GLOBAL:
            return [GLOBAL_GUARANTEE_KEY]
        return [product_lock_key(product_id)]

    def existing_liability(self, session: Session, product_id: str) -> Decimal:
        stmt = (
            select(ManagedSubscription.principal, ManagedTerm.min_yield_rate)
            .join(ManagedTerm, ManagedSubscription.term_id == ManagedTerm.id)
            .join(ManagedProduct, ManagedSubscription.product_id == ManagedProduct.id)
            .where(ManagedProduct.is_guaranteed.is_(True))
            .where(ManagedSubscription.status.in_(GUARANTEE_LIABLE_STATUSES))
        )
        if self._config.liability_scope == LiabilityScope.PRODUCT:
            stmt = stmt.where(ManagedSubscription.product_id == product_id)

        total = Decimal("0")
        for principal, min_yield_rate in session.execute(stmt):
            total += guarantee_liability(principal, min_yield_rate)
        return total

    def check_coverage(
        self,
        session: Session,
        product_id: str,
        principal: Decimal,
        min_yield_rate: Decimal,
    ) -> ReserveCoverage:
        """Compute coverage as if a subscription of ``principal`` were accepted."""
        balance = self._ledger.balance(session)
        existing = self.existing_liability(session, product_id)
        additional = guarantee_liability(principal, min_yield_rate)
        return ReserveCoverage(
            balance=balance,
            existing_liability=existing,
            additional_liability=additional,
            projected_liability=existing + additional,
            coverage_ratio=coverage_ratio(balance, existing, additional),
        )

    def check_or_raise(
        self,
        session: Session,
        product: ManagedProduct,
        principal: Decimal,
        min_yield_rate: Decimal,
    ) -> ReserveCoverage:
        """
        Raises:
            ReserveCoverageError: coverage ratio below product.reserve_coverage_min
        """
        coverage = self.check_coverage(session, product.id, principal, min_yield_rate)
        required = Decimal(product.reserve_coverage_min)

        if coverage.coverage_ratio < required:
            logger.warning(
                f"Reserve coverage rejected for product {product.slug}: "
                f"ratio={coverage.coverage_ratio:.4f} required={required} "
                f"balance={coverage.balance} projected={coverage.projected_liability}"
            )
            raise ReserveCoverageError(coverage, required, product_id=product.id)

        logger.info(
            f"Reserve coverage ok for product {product.slug}: "
            f"ratio={'inf' if coverage.is_unbounded else f'{coverage.coverage_ratio:.4f}'} required={required}"
        )
        return coverage

    def current_coverage(self, session: Session, product_id: str) -> ReserveCoverage:
        """Coverage of already-accepted liability (no new subscription)."""
        return self.check_coverage(session, product_id, Decimal("0"), Decimal("0"))
