"""
Managed Wealth API Routers.
"""
from . import managed_liquidation, managed_settlement, managed_subscriptions

__all__ = ["managed_liquidation", "managed_settlement", "managed_subscriptions"]
