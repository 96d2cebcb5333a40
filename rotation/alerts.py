"""Alert service: persist alert history, apply per-type cooldowns, optionally notify a webhook.

Alerts never raise into the caller. A suppressed alert (still in cooldown)
is recorded with ``sent=False`` so the history stays complete.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import AlertConfig
from .logging_setup import component_logger
from .models import Alert, utcnow

log = component_logger("alerts")


class AlertType(str, Enum):
    ORDER_FAILURE = "order_failure"
    EXCHANGE_UNREACHABLE = "exchange_unreachable"
    LOW_BALANCE = "low_balance"
    LARGE_DRAWDOWN = "large_drawdown"
    JOB_FAILURE = "job_failure"
    HEALTH_CHECK_FAILED = "health_check_failed"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class WebhookNotifier:
    """POST alerts as JSON to a webhook (Slack-compatible ``text`` field included).

    Uses a requests session with urllib3 retries for 5xx and 429 responses.
    """

    def __init__(self, url: str, *, timeout: int = 10, max_retries: int = 3):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(429, 500, 502, 503, 504), allowed_methods=frozenset(["POST"]))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    def send(self, alert: Alert) -> None:
        payload = {
            "text": f"[{alert.severity.upper()}] {alert.title}\n{alert.message}",
            "type": alert.type,
            "severity": alert.severity,
            "title": alert.title,
            "message": alert.message,
            "metadata": alert.metadata,
            "created_at": alert.created_at.isoformat(),
        }
        resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


def _jsonable(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in metadata.items()}


class AlertService:
    def __init__(self, ledger, config: AlertConfig, notifier: Optional[WebhookNotifier] = None, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.config = config
        self.notifier = notifier
        self.clock = clock
        self._last_sent: Dict[str, datetime] = {}

    @staticmethod
    def cooldown_key(alert_type: AlertType, key: Optional[str] = None) -> str:
        return f"{alert_type.value}:{key}" if key else alert_type.value

    def should_send(self, alert_type: AlertType, key: Optional[str] = None) -> bool:
        last = self._last_sent.get(self.cooldown_key(alert_type, key))
        if last is None:
            return True
        minutes = self.config.cooldown_minutes.get(alert_type.value, 60)
        return self.clock() - last >= timedelta(minutes=minutes)

    async def send(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
    ) -> Optional[Alert]:
        """Record and deliver an alert unless its type/key is cooling down. Never raises."""
        try:
            sent = self.should_send(alert_type, key)
            alert = Alert(
                type=alert_type.value,
                severity=severity.value,
                title=title,
                message=message,
                metadata=_jsonable(metadata or {}),
                sent=sent,
                created_at=self.clock(),
            )
            await asyncio.to_thread(self.ledger.alerts.create, alert)
            if not sent:
                log.debug(f"Alert suppressed due to cooldown | type={alert_type.value} key={key}")
                return alert

            self._last_sent[self.cooldown_key(alert_type, key)] = self.clock()
            log.warning(f"Alert | type={alert_type.value} severity={severity.value} title={title}")
            if self.notifier is not None:
                try:
                    await asyncio.to_thread(self.notifier.send, alert)
                except Exception as e:
                    log.error(f"Alert delivery failed | type={alert_type.value} error={e}")
            return alert
        except Exception as e:
            log.error(f"Error recording alert | type={alert_type.value} title={title} error={e}")
            return None

    async def alert_order_failure(self, symbol: str, error: str, order_id: Optional[str] = None):
        return await self.send(
            AlertType.ORDER_FAILURE,
            AlertSeverity.ERROR,
            f"Order Failed: {symbol}",
            f"Failed to execute order for {symbol}.\n\nError: {error}",
            {"symbol": symbol, "order_id": order_id, "error": error},
            key=symbol,
        )

    async def alert_exchange_unreachable(self, error: str):
        return await self.send(
            AlertType.EXCHANGE_UNREACHABLE,
            AlertSeverity.CRITICAL,
            "Exchange Unreachable",
            f"Cannot connect to exchange API.\n\nError: {error}",
            {"error": error},
        )

    async def alert_low_balance(self, balance: Decimal, threshold: Decimal):
        return await self.send(
            AlertType.LOW_BALANCE,
            AlertSeverity.WARNING,
            "Low Balance Alert",
            f"Account balance (${balance:.2f}) is below threshold (${threshold:.2f}).",
            {"balance": balance, "threshold": threshold},
        )

    async def alert_large_drawdown(self, drawdown_pct: Decimal, current_nav: Decimal, peak_nav: Decimal):
        return await self.send(
            AlertType.LARGE_DRAWDOWN,
            AlertSeverity.WARNING,
            f"Large Drawdown: {drawdown_pct:.2f}%",
            f"Portfolio has experienced a {drawdown_pct:.2f}% drawdown.\n\n"
            f"Current NAV: ${current_nav:.2f}\nPeak NAV: ${peak_nav:.2f}",
            {"drawdown_pct": drawdown_pct, "current_nav": current_nav, "peak_nav": peak_nav},
        )

    async def alert_job_failure(self, job_name: str, error: str, job_id: Optional[str] = None):
        return await self.send(
            AlertType.JOB_FAILURE,
            AlertSeverity.ERROR,
            f"Job Failed: {job_name}",
            f'Job "{job_name}" failed to execute.\n\nError: {error}',
            {"job_name": job_name, "job_id": job_id, "error": error},
            key=job_name,
        )

    async def alert_health_check_failed(self, component: str, error: str):
        return await self.send(
            AlertType.HEALTH_CHECK_FAILED,
            AlertSeverity.CRITICAL,
            f"Health Check Failed: {component}",
            f"Health check failed for {component}.\n\nError: {error}",
            {"component": component, "error": error},
            key=component,
        )
