"""
Managed Wealth Package.

============================================================
PURPOSE
============================================================
Reserve-guarantee and liquidation control plane for managed
copy-trading subscriptions.

CRITICAL PRINCIPLE:
    "A guaranteed subscription is accepted only if the reserve
     can still cover every outstanding guarantee."

AUTHORITY BOUNDARIES:
    CAN:
        - Accept, mature, cancel and settle subscriptions
        - Enqueue and execute liquidation sells
        - Record reserve payouts for guarantee top-ups

    MUST NOT:
        - Write to the commission / profit fee ledger
        - Settle a subscription with non-terminal liquidation tasks

============================================================
MODULES
============================================================
- types: Enums and value objects
- config: Configuration
- models: ORM models
- reserve_ledger / coverage_guard: Reserve balance and acceptance gate
- lifecycle / state_machine / referral / settlement_math: Subscription lifecycle
- positions / pricing / nav_sampler: Exposure, marks, NAV
- liquidation_queue / liquidation_errors / liquidation_worker / executor: Liquidation
- parity_auditor / allocation_monitor / staleness / health_reporter: Ops health
- commission: Profit fee hand-off
- alerting: Telegram alerts
- container: Service wiring

============================================================
"""

from .config import ManagedWealthConfig
from .container import ManagedWealthContainer, create_container
from .types import LiquidationStatus, OperatorAction, SubscriptionStatus

__all__ = [
    "ManagedWealthConfig",
    "ManagedWealthContainer",
    "create_container",
    "LiquidationStatus",
    "OperatorAction",
    "SubscriptionStatus",
]
