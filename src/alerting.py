"""
Webhook alerts for conditions an operator has to look at.

Raised for: circuit opened/closed, unresolvable reconciliation drift, ledger
durability failures, the stream falling back to polling (and recovering),
engine start/stop. Delivery is asynchronous and batched; repeats of the same
alert type inside `rate_limit_seconds` are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from src.core.json_utils import dumps

log = logging.getLogger("dcabot")


class AlertSeverity(Enum):
    CRITICAL = auto()
    WARNING = auto()
    INFO = auto()


class AlertType(Enum):
    CIRCUIT_OPEN = auto()
    CIRCUIT_CLOSED = auto()
    UNRESOLVABLE_RECONCILIATION = auto()
    DURABILITY_ERROR = auto()
    STREAM_DEGRADED = auto()
    STREAM_RECOVERED = auto()
    STARTUP = auto()
    SHUTDOWN = auto()


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    instrument: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "instrument": self.instrument,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "dca-engine"
    retries: int = 2


_COLORS = {
    AlertSeverity.CRITICAL: 0xFF0000,
    AlertSeverity.WARNING: 0xFFA500,
    AlertSeverity.INFO: 0x0000FF,
}


def _fields(alert: Alert, config: AlertConfig) -> List[tuple]:
    out = []
    if alert.instrument:
        out.append(("Instrument", alert.instrument))
    out.append(("Type", alert.alert_type.name))
    if config.include_details:
        out.extend((k, str(v)) for k, v in list(alert.details.items())[:5])
    return out


def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
    return alert.to_dict()


def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
    return {
        "username": config.bot_name,
        "attachments": [{
            "color": f"#{_COLORS.get(alert.severity, 0x808080):06X}",
            "title": alert.title,
            "text": alert.message,
            "fields": [{"title": k, "value": v, "short": True} for k, v in _fields(alert, config)],
            "footer": f"{config.bot_name} | {alert.severity.name}",
            "ts": alert.timestamp_ms // 1000,
        }],
    }


def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
    return {
        "username": config.bot_name,
        "embeds": [{
            "title": alert.title,
            "description": alert.message,
            "color": _COLORS.get(alert.severity, 0x808080),
            "fields": [{"name": k, "value": v, "inline": True} for k, v in _fields(alert, config)],
            "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
            "timestamp": alert.to_dict()["timestamp_iso"],
        }],
    }


FORMATTERS: Dict[str, Callable[[Alert, AlertConfig], Dict[str, Any]]] = {
    "generic": format_generic,
    "slack": format_slack,
    "discord": format_discord,
}


class AlertManager:
    def __init__(
        self,
        config: Optional[AlertConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or AlertConfig()
        self._session = session
        self._owns_session = session is None
        self._last_sent: Dict[AlertType, int] = {}
        self._pending: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failed = 0

    async def send_alert(self, alert: Alert) -> bool:
        """Queue an alert. False when disabled, below threshold or rate limited."""
        if not self.config.enabled or not self.config.webhook_url:
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False
        now = int(time.time() * 1000)
        if now - self._last_sent.get(alert.alert_type, 0) < self.config.rate_limit_seconds * 1000:
            log.debug(dumps({"event": "alert_rate_limited", "type": alert.alert_type.name}))
            return False
        self._last_sent[alert.alert_type] = now
        self._pending.append(alert)
        if self._batch_task is None or self._batch_task.done():
            self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self.flush()

    async def flush(self) -> bool:
        alerts, self._pending = self._pending, []
        if not alerts:
            return True
        return await self._http_post(self._payload(alerts))

    def _payload(self, alerts: List[Alert]) -> Dict[str, Any]:
        fmt = FORMATTERS.get(self.config.webhook_type, format_generic)
        if len(alerts) == 1:
            return fmt(alerts[0], self.config)
        if self.config.webhook_type in ("slack", "discord"):
            key = "attachments" if self.config.webhook_type == "slack" else "embeds"
            payload = fmt(alerts[0], self.config)
            for alert in alerts[1:]:
                payload[key].extend(fmt(alert, self.config)[key])
            return payload
        return {"alerts": [a.to_dict() for a in alerts]}

    async def _http_post(self, payload: Dict[str, Any]) -> bool:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        for attempt in range(self.config.retries + 1):
            try:
                async with self._session.post(
                    self.config.webhook_url,
                    data=dumps(payload),
                    headers={"Content-Type": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as resp:
                    if resp.status < 300:
                        self.delivered += 1
                        return True
                    log.warning(dumps({"event": "alert_delivery_failed", "status": resp.status}))
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                log.warning(dumps({"event": "alert_delivery_error", "attempt": attempt + 1, "err": str(exc)}))
            if attempt < self.config.retries:
                await asyncio.sleep(attempt + 1)
        self.failed += 1
        return False

    async def close(self) -> None:
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            await asyncio.gather(self._batch_task, return_exceptions=True)
        if self._pending:
            await self.flush()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Common alerts
    # ------------------------------------------------------------------

    async def alert_circuit(self, is_open: bool, reason: str, **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.CIRCUIT_OPEN if is_open else AlertType.CIRCUIT_CLOSED,
            severity=AlertSeverity.WARNING if is_open else AlertSeverity.INFO,
            title="Venue circuit opened" if is_open else "Venue circuit closed",
            message=reason,
            details=details,
        ))

    async def alert_unresolvable(self, instrument: str, drift: float, **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.UNRESOLVABLE_RECONCILIATION,
            severity=AlertSeverity.CRITICAL,
            title="Position drift could not be resolved",
            message=f"{instrument}: venue balance differs by {drift:+.8f} and no reference price is available",
            instrument=instrument,
            details={"drift": drift, **details},
        ))

    async def alert_durability(self, instrument: Optional[str], error: str) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.DURABILITY_ERROR,
            severity=AlertSeverity.CRITICAL,
            title="Event ledger write failed",
            message=error,
            instrument=instrument,
        ))

    async def alert_stream(self, instrument: str, degraded: bool, **details: Any) -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STREAM_DEGRADED if degraded else AlertType.STREAM_RECOVERED,
            severity=AlertSeverity.WARNING if degraded else AlertSeverity.INFO,
            title="Stream degraded, polling" if degraded else "Stream recovered",
            message=f"{instrument} push feed {'unavailable' if degraded else 'delivering again'}",
            instrument=instrument,
            details=details,
        ))

    async def alert_lifecycle(self, started: bool, instruments: List[str], reason: str = "normal") -> bool:
        return await self.send_alert(Alert(
            alert_type=AlertType.STARTUP if started else AlertType.SHUTDOWN,
            severity=AlertSeverity.INFO if started or reason == "normal" else AlertSeverity.WARNING,
            title="Engine started" if started else "Engine stopped",
            message=f"{', '.join(instruments)} ({reason})",
            details={"instruments": instruments},
        ))
