"""
Managed Wealth - Configuration.

============================================================
PURPOSE
============================================================
All tunables for the reserve guard, lifecycle, liquidation
queue, audits and alerting.

Environment overrides (MANAGED_*) are loaded through
python-dotenv and clamped to a sane range; an unparseable or
out-of-range value falls back to the default.

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from dotenv import load_dotenv

from .types import LiabilityScope

logger = logging.getLogger(__name__)


# ============================================================
# ENVIRONMENT HELPERS
# ============================================================

def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value < minimum or value > maximum:
        logger.warning(f"Ignoring out-of-range {name}={value}, using {default}")
        return default
    return value


def _env_decimal(name: str, default: Decimal, minimum: Decimal, maximum: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
    if not value.is_finite() or value < minimum or value > maximum:
        logger.warning(f"Ignoring out-of-range {name}={value}, using {default}")
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# SUBSCRIPTION CONFIGURATION
# ============================================================

@dataclass
class SubscriptionConfig:
    """Subscription acceptance rules."""

    min_principal: Decimal = Decimal("500")
    """Minimum principal when the product sets none."""

    trial_days: int = 7
    """Length of the one-time per-wallet trial."""

    referral_bonus_days: int = 1
    """Extension granted to the referrer's running subscription."""


# ============================================================
# RESERVE CONFIGURATION
# ============================================================

@dataclass
class ReserveConfig:
    """Reserve coverage guard settings."""

    liability_scope: LiabilityScope = LiabilityScope.PRODUCT
    """PRODUCT sums liability per product; GLOBAL across all guaranteed products."""


# ============================================================
# LIQUIDATION CONFIGURATION
# ============================================================

@dataclass
class LiquidationConfig:
    """
    Liquidation queue and worker settings.

    SAFETY: bounded attempts; tasks that keep failing stop at BLOCKED.
    """

    max_attempts: int = 20
    """Failures after which a task is BLOCKED instead of retried."""

    retry_base_seconds: int = 60
    """Backoff base delay."""

    retry_max_seconds: int = 1800
    """Backoff cap."""

    claim_lease_seconds: int = 120
    """How long a claim fences out other workers."""

    batch_size: int = 20
    """Tasks claimed per worker cycle."""

    concurrency: int = 4
    """Tasks executed in parallel within a cycle."""

    min_order_notional_usd: Decimal = Decimal("1")
    """Orders below this notional are BLOCKED."""

    loop_interval_seconds: int = 30
    """Sleep between worker cycles."""

    allow_fallback_execution: bool = False
    """Whether a fallback (non-live) price may be used to execute."""

    max_operator_task_ids: int = 100
    """Upper bound on task ids per admin mutation."""

    max_operator_delay_seconds: int = 86400
    """Upper bound on retry delay an operator may request."""


# ============================================================
# PRICING CONFIGURATION
# ============================================================

@dataclass
class PricingConfig:
    """External price source settings."""

    timeout_seconds: float = 3.0
    """Hard bound on one price lookup."""

    base_url: str = "https://clob.polymarket.com"
    """Order book service base URL."""


# ============================================================
# NAV CONFIGURATION
# ============================================================

@dataclass
class NavConfig:
    """NAV sampling job settings."""

    interval_seconds: int = 60
    """Sleep between sampling passes."""

    batch_size: int = 500
    """Subscriptions sampled per pass."""


# ============================================================
# AUDIT CONFIGURATION
# ============================================================

@dataclass
class AuditConfig:
    """Defaults and bounds for the read-only health scans."""

    fee_epsilon: Decimal = Decimal("0.0001")
    """Tolerance between expected and posted fee."""

    profit_fee_rate: Decimal = Decimal("0.20")
    """Rate the commission system charges on positive gross PnL."""

    window_days: int = 7
    """Default trailing window for parity audits."""

    parity_limit: int = 500
    """Default settlements scanned per audit."""

    liquidation_limit: int = 200
    """Default backlog rows scanned per health snapshot."""

    stale_mapping_minutes: int = 30
    """Age after which an unmapped subscription is reported."""

    max_items: int = 50
    """Items echoed per finding list."""

    max_window_days: int = 90
    max_parity_limit: int = 5000
    max_liquidation_limit: int = 2000


# ============================================================
# ALERTING CONFIGURATION
# ============================================================

@dataclass
class AlertingConfig:
    """Telegram alerting for operator-relevant events."""

    enabled: bool = True
    """Whether alerting is enabled (still a no-op without credentials)."""

    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    """Environment variable for Telegram bot token."""

    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"
    """Environment variable for Telegram chat ID."""

    min_interval_seconds: float = 60.0
    """Minimum interval between identical alerts."""

    request_timeout_seconds: float = 5.0


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ManagedWealthConfig:
    """Master configuration for the managed wealth control plane."""

    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    reserve: ReserveConfig = field(default_factory=ReserveConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    nav: NavConfig = field(default_factory=NavConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)

    admin_token_env: str = "MANAGED_ADMIN_TOKEN"
    """Environment variable holding the admin API token."""

    admin_token: Optional[str] = None
    """Resolved admin token; None disables admin auth (testing only)."""

    dry_run: bool = False
    """Execute liquidations against the paper executor."""

    @classmethod
    def for_testing(cls) -> "ManagedWealthConfig":
        """Get configuration for testing."""
        return cls(
            liquidation=LiquidationConfig(
                max_attempts=5,
                retry_base_seconds=60,
                retry_max_seconds=1800,
                concurrency=2,
            ),
            pricing=PricingConfig(timeout_seconds=0.2),
            alerting=AlertingConfig(enabled=False),
            dry_run=True,
        )

    @classmethod
    def for_production(cls) -> "ManagedWealthConfig":
        """Get configuration for production."""
        config = cls.from_env()
        config.dry_run = False
        return config

    @classmethod
    def from_env(cls) -> "ManagedWealthConfig":
        """Build configuration from MANAGED_* environment variables."""
        load_dotenv()

        scope_raw = os.getenv("MANAGED_RESERVE_LIABILITY_SCOPE", LiabilityScope.PRODUCT.value)
        try:
            scope = LiabilityScope(scope_raw.strip().lower())
        except ValueError:
            logger.warning(f"Ignoring unknown MANAGED_RESERVE_LIABILITY_SCOPE={scope_raw!r}")
            scope = LiabilityScope.PRODUCT

        config = cls(
            subscription=SubscriptionConfig(
                min_principal=_env_decimal(
                    "MANAGED_MIN_PRINCIPAL", Decimal("500"), Decimal("0"), Decimal("100000000")
                ),
                trial_days=_env_int("MANAGED_TRIAL_DAYS", 7, 0, 365),
                referral_bonus_days=_env_int("MANAGED_REFERRAL_BONUS_DAYS", 1, 0, 30),
            ),
            reserve=ReserveConfig(liability_scope=scope),
            liquidation=LiquidationConfig(
                max_attempts=_env_int("MANAGED_LIQUIDATION_MAX_ATTEMPTS", 20, 1, 1000),
                retry_base_seconds=_env_int("MANAGED_LIQUIDATION_RETRY_BASE_SECONDS", 60, 1, 86400),
                retry_max_seconds=_env_int("MANAGED_LIQUIDATION_RETRY_MAX_SECONDS", 1800, 1, 604800),
                claim_lease_seconds=_env_int("MANAGED_LIQUIDATION_LEASE_SECONDS", 120, 10, 3600),
                batch_size=_env_int("MANAGED_LIQUIDATION_BATCH_SIZE", 20, 1, 500),
                concurrency=_env_int("MANAGED_LIQUIDATION_CONCURRENCY", 4, 1, 64),
                min_order_notional_usd=_env_decimal(
                    "MANAGED_LIQUIDATION_MIN_NOTIONAL_USD", Decimal("1"), Decimal("0"), Decimal("1000000")
                ),
                loop_interval_seconds=_env_int("MANAGED_LIQUIDATION_LOOP_SECONDS", 30, 1, 3600),
                allow_fallback_execution=_env_bool("MANAGED_LIQUIDATION_ALLOW_FALLBACK", False),
            ),
            pricing=PricingConfig(
                timeout_seconds=float(_env_int("MANAGED_PRICE_TIMEOUT_MS", 3000, 100, 60000)) / 1000.0,
                base_url=os.getenv("MANAGED_PRICE_BASE_URL", PricingConfig.base_url),
            ),
            nav=NavConfig(
                interval_seconds=_env_int("MANAGED_NAV_INTERVAL_SECONDS", 60, 5, 86400),
                batch_size=_env_int("MANAGED_NAV_BATCH_SIZE", 500, 1, 10000),
            ),
            audit=AuditConfig(
                fee_epsilon=_env_decimal(
                    "MANAGED_FEE_EPSILON", Decimal("0.0001"), Decimal("0"), Decimal("1")
                ),
                profit_fee_rate=_env_decimal(
                    "MANAGED_PROFIT_FEE_RATE", Decimal("0.20"), Decimal("0"), Decimal("1")
                ),
                stale_mapping_minutes=_env_int("MANAGED_STALE_MAPPING_MINUTES", 30, 1, 10080),
            ),
            alerting=AlertingConfig(enabled=_env_bool("MANAGED_ALERTS_ENABLED", True)),
            dry_run=_env_bool("MANAGED_DRY_RUN", False),
        )
        config.admin_token = os.getenv(config.admin_token_env) or None
        return config
