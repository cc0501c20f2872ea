"""
Managed Wealth - Alerting.

============================================================
PURPOSE
============================================================
Sends operator alerts via Telegram.

ALERT TYPES:
- Liquidation task BLOCKED (needs operator action)
- Guarantee coverage rejection
- Settlement parity findings (missing / mismatched fees)
- Worker errors

RULES:
- Identical alerts are rate limited per key
- Without credentials or when disabled, alerts are only logged

============================================================
"""

import asyncio
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import aiohttp

from core.clock import ClockFactory, ClockProtocol

from .config import AlertingConfig
from .types import ParityReport, ReserveCoverage

logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertSeverity(Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    """Operator action required."""


class AlertType(Enum):
    LIQUIDATION_BLOCKED = "LIQUIDATION_BLOCKED"
    """A liquidation task moved to BLOCKED."""

    COVERAGE_REJECTED = "COVERAGE_REJECTED"
    """A guaranteed subscription was refused for reserve coverage."""

    PARITY_DRIFT = "PARITY_DRIFT"
    """Settlements with missing or mismatched fee postings."""

    WORKER_ERROR = "WORKER_ERROR"
    """A background loop cycle raised."""


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    key: Optional[str] = None
    """Narrows throttling below the alert type, e.g. a task or product id."""

    timestamp: Optional[datetime] = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.alert_type.value}:{self.key or ''}"


# ============================================================
# TELEGRAM ALERTER
# ============================================================

TELEGRAM_API = "https://api.telegram.org"

SEVERITY_MARKERS = {
    AlertSeverity.INFO: "🔹",
    AlertSeverity.WARNING: "🟠",
    AlertSeverity.CRITICAL: "🔴",
}


class TelegramAlerter:
    """
    Operator alerts over the Telegram Bot API.

    Every alert is kept in a bounded in-memory history (served by the
    health endpoints and asserted on in tests) whether or not it is
    delivered. Delivery is throttled per ``Alert.dedupe_key``.
    """

    def __init__(self, config: Optional[AlertingConfig] = None, clock: Optional[ClockProtocol] = None):
        self._config = config or AlertingConfig()
        self._clock = clock or ClockFactory.get_clock()
        self._bot_token = os.environ.get(self._config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(self._config.telegram_chat_id_env, "")

        self._recent: Deque[Alert] = deque(maxlen=100)
        self._last_sent: Dict[str, datetime] = {}
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self._bot_token) and bool(self._chat_id)

    async def send_alert(self, alert: Alert) -> bool:
        """Record the alert and try to deliver it; True only when Telegram accepted it."""
        alert.timestamp = alert.timestamp or self._clock.now()
        self._recent.append(alert)

        if not self._config.enabled:
            logger.info(f"Alert (delivery disabled) {alert.alert_type.value}: {alert.message}")
            return False
        if self._throttled(alert):
            logger.debug(f"Alert {alert.dedupe_key} throttled")
            return False
        return await self._send_telegram(alert)

    def _throttled(self, alert: Alert) -> bool:
        previous = self._last_sent.get(alert.dedupe_key)
        if previous is None:
            return False
        return (alert.timestamp - previous).total_seconds() < self._config.min_interval_seconds

    async def _send_telegram(self, alert: Alert) -> bool:
        if not self.is_configured:
            logger.warning(f"No Telegram credentials; {alert.alert_type.value} not delivered: {alert.message}")
            return False

        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
            )

        endpoint = f"{TELEGRAM_API}/bot{self._bot_token}/sendMessage"
        message = {"chat_id": self._chat_id, "text": self._format_message(alert), "parse_mode": "HTML"}
        try:
            async with self._http.post(endpoint, json=message) as response:
                if response.status != 200:
                    logger.error(f"Telegram rejected {alert.dedupe_key}: HTTP {response.status} {await response.text()}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Telegram delivery of {alert.dedupe_key} failed: {e}")
            return False

        self._last_sent[alert.dedupe_key] = alert.timestamp
        logger.info(f"Delivered {alert.alert_type.value} alert")
        return True

    def _format_message(self, alert: Alert) -> str:
        marker = SEVERITY_MARKERS.get(alert.severity, "")
        text = (
            f"{marker} <b>[{alert.severity.value}] {alert.alert_type.value}</b>\n"
            f"{alert.message}\n"
            f"<i>{alert.timestamp:%Y-%m-%d %H:%M:%S} UTC</i>"
        )
        if alert.details:
            text += "\n\n" + "\n".join(f"{name}: <code>{value}</code>" for name, value in alert.details.items())
        return text

    def get_history(self, limit: int = 10) -> List[Alert]:
        """Most recent alerts, oldest first."""
        return list(self._recent)[-limit:]

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None


# ============================================================
# ALERT BUILDERS
# ============================================================

def create_blocked_task_alert(task_id: str, subscription_id: str, token_id: str, error_code: str, message: str) -> Alert:
    return Alert(
        alert_type=AlertType.LIQUIDATION_BLOCKED,
        severity=AlertSeverity.CRITICAL,
        message=f"Liquidation task {task_id} BLOCKED: {message}",
        details={
            "subscription": subscription_id,
            "token": token_id,
            "error_code": error_code,
        },
        key=task_id,
    )


def create_coverage_rejected_alert(product_id: str, coverage: ReserveCoverage, required_ratio) -> Alert:
    ratio = "unbounded" if coverage.is_unbounded else f"{coverage.coverage_ratio:.4f}"
    return Alert(
        alert_type=AlertType.COVERAGE_REJECTED,
        severity=AlertSeverity.WARNING,
        message=f"Guaranteed subscription rejected: coverage {ratio} < required {required_ratio}",
        details={
            "product": product_id,
            "balance": str(coverage.balance),
            "projected_liability": str(coverage.projected_liability),
        },
        key=product_id,
    )


def create_parity_alert(report: ParityReport) -> Alert:
    return Alert(
        alert_type=AlertType.PARITY_DRIFT,
        severity=AlertSeverity.WARNING,
        message=(
            f"Settlement parity: {len(report.missing)} missing, "
            f"{len(report.fee_mismatches)} mismatched of {report.checked_settlements} checked"
        ),
        details={"window_days": report.window_days},
    )


def create_worker_error_alert(component: str, error_message: str) -> Alert:
    return Alert(
        alert_type=AlertType.WORKER_ERROR,
        severity=AlertSeverity.CRITICAL,
        message=f"Error in {component}: {error_message}",
        details={"component": component},
        key=component,
    )
