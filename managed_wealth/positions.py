"""
Managed Wealth - Position Book.

============================================================
PURPOSE
============================================================
Read/write access to a subscription's open exposure, as fed by
the copy-trade execution engine.

- Buys raise shares and re-average the entry price
- Sells (including liquidation fills) reduce shares and book
  realized PnL against the average entry price
- Equity = principal + realized PnL + Σ shares × (mark − avgEntry)

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import ManagedSubscriptionPosition
from .types import OpenPosition

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class PositionBook(Protocol):
    """Contract the lifecycle and liquidation worker consume."""

    def open_positions(self, session: Session, subscription_id: str) -> List[OpenPosition]:
        ...

    def apply_sell(
        self,
        session: Session,
        subscription_id: str,
        token_id: str,
        shares: Decimal,
        price: Decimal,
        at: datetime,
    ) -> Decimal:
        ...

    def realized_pnl(self, session: Session, subscription_id: str) -> Decimal:
        ...


class SqlPositionBook:
    """PositionBook backed by managed_subscription_positions."""

    def _get(self, session: Session, subscription_id: str, token_id: str) -> Optional[ManagedSubscriptionPosition]:
        return session.scalars(
            select(ManagedSubscriptionPosition)
            .where(ManagedSubscriptionPosition.subscription_id == subscription_id)
            .where(ManagedSubscriptionPosition.token_id == token_id)
        ).first()

    def open_positions(self, session: Session, subscription_id: str) -> List[OpenPosition]:
        rows = session.scalars(
            select(ManagedSubscriptionPosition)
            .where(ManagedSubscriptionPosition.subscription_id == subscription_id)
            .where(ManagedSubscriptionPosition.shares > ZERO)
            .order_by(ManagedSubscriptionPosition.token_id)
        )
        return [
            OpenPosition(
                subscription_id=row.subscription_id,
                token_id=row.token_id,
                shares=Decimal(row.shares),
                avg_entry_price=Decimal(row.avg_entry_price),
                market_slug=row.market_slug,
            )
            for row in rows
        ]

    def has_open_exposure(self, session: Session, subscription_id: str) -> bool:
        return bool(self.open_positions(session, subscription_id))

    def has_position_rows(self, session: Session, subscription_id: str) -> bool:
        count = session.scalar(
            select(func.count())
            .select_from(ManagedSubscriptionPosition)
            .where(ManagedSubscriptionPosition.subscription_id == subscription_id)
        )
        return bool(count)

    def apply_buy(
        self,
        session: Session,
        subscription_id: str,
        token_id: str,
        shares: Decimal,
        price: Decimal,
        at: datetime,
        market_slug: Optional[str] = None,
    ) -> ManagedSubscriptionPosition:
        position = self._get(session, subscription_id, token_id)
        if position is None:
            position = ManagedSubscriptionPosition(
                subscription_id=subscription_id,
                token_id=token_id,
                market_slug=market_slug,
                shares=ZERO,
                avg_entry_price=price,
                realized_pnl=ZERO,
                updated_at=at,
            )
            session.add(position)

        held = Decimal(position.shares or ZERO)
        total = held + shares
        if total > ZERO:
            position.avg_entry_price = (held * Decimal(position.avg_entry_price) + shares * price) / total
        position.shares = total
        position.updated_at = at
        session.flush()
        return position

    def apply_sell(
        self,
        session: Session,
        subscription_id: str,
        token_id: str,
        shares: Decimal,
        price: Decimal,
        at: datetime,
    ) -> Decimal:
        """
        Reduce a position by ``shares`` sold at ``price``.

        Returns:
            Realized PnL booked by this sell
        """
        position = self._get(session, subscription_id, token_id)
        if position is None:
            logger.warning(f"Sell for unknown position {subscription_id}/{token_id} ignored")
            return ZERO

        sold = min(Decimal(shares), Decimal(position.shares))
        realized = sold * (price - Decimal(position.avg_entry_price))
        position.shares = Decimal(position.shares) - sold
        position.realized_pnl = Decimal(position.realized_pnl) + realized
        position.last_mark_price = price
        position.updated_at = at
        session.flush()

        logger.info(
            f"Position {subscription_id}/{token_id} sold {sold} @ {price}, "
            f"realized {realized}, remaining {position.shares}"
        )
        return realized

    def realized_pnl(self, session: Session, subscription_id: str) -> Decimal:
        total = session.scalar(
            select(func.sum(ManagedSubscriptionPosition.realized_pnl))
            .where(ManagedSubscriptionPosition.subscription_id == subscription_id)
        )
        return Decimal(total) if total is not None else ZERO

    def mark_equity(
        self,
        session: Session,
        subscription_id: str,
        principal: Decimal,
        marks: Dict[str, Decimal],
    ) -> Decimal:
        """Equity at the given marks; tokens without a mark are carried at entry."""
        equity = Decimal(principal) + self.realized_pnl(session, subscription_id)
        for position in self.open_positions(session, subscription_id):
            mark = marks.get(position.token_id, position.avg_entry_price)
            equity += position.shares * (mark - position.avg_entry_price)
        return equity
