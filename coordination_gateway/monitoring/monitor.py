# coordination_gateway/monitoring/monitor.py
"""
Coordination Monitor

Tracks every running coordination (conversation, conflict resolution,
context sync) with latency, error-rate and success-rate metrics, and raises
alerts when a configured threshold is crossed. Each alert configuration has
a cooldown so a flapping metric does not flood the alert list.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..errors import ValidationFailure
from ..models import new_id
from ..settings import settings


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertConfig(BaseModel):
    alert_id: str
    metric: str # latency_ms | error_rate | success_rate | any custom metric name
    operator: str = "gt" # gt | lt
    threshold: float
    severity: AlertSeverity = AlertSeverity.WARNING
    cooldown: float = 300.0
    enabled: bool = True

    def breached(self, value: float) -> bool:
        if self.operator == "lt":
            return value < self.threshold
        return value > self.threshold


class Alert(BaseModel):
    alert_id: str = Field(default_factory=lambda: new_id("alert"))
    config_id: str
    coordination_id: str
    metric: str
    value: float
    threshold: float
    severity: AlertSeverity
    message: str
    triggered_at: float
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None


class CoordinationRecord(BaseModel):
    coordination_id: str
    kind: str
    participant_count: int = 0
    status: str = "active"
    started_at: float
    ended_at: Optional[float] = None
    latency_ms: float = 0.0
    steps: int = 0
    completed_steps: int = 0
    errors: int = 0
    metrics: Dict[str, float] = Field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        return (self.errors / self.steps) * 100 if self.steps else 0.0

    @property
    def success_rate(self) -> float:
        return (self.completed_steps / self.steps) * 100 if self.steps else 100.0


def default_alert_configs() -> List[AlertConfig]:
    return [
        AlertConfig(alert_id="high-latency", metric="latency_ms", operator="gt", threshold=5000,
                    severity=AlertSeverity.WARNING, cooldown=300),
        AlertConfig(alert_id="high-error-rate", metric="error_rate", operator="gt", threshold=10,
                    severity=AlertSeverity.ERROR, cooldown=180),
        AlertConfig(alert_id="low-success-rate", metric="success_rate", operator="lt", threshold=80,
                    severity=AlertSeverity.WARNING, cooldown=600),
    ]


class CoordinationMonitor:
    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        alert_configs: Optional[List[AlertConfig]] = None,
        history_limit: Optional[int] = None,
    ):
        self.clock = clock
        self.history_limit = history_limit or settings.MONITOR_HISTORY
        self._records: Dict[str, CoordinationRecord] = {}
        self._configs: Dict[str, AlertConfig] = {}
        self._alerts: Dict[str, Alert] = {}
        self._last_fired: Dict[str, float] = {}
        for config in alert_configs if alert_configs is not None else default_alert_configs():
            self.add_alert_config(config)

    def add_alert_config(self, config: AlertConfig) -> str:
        if config.operator not in ("gt", "lt"):
            raise ValidationFailure(f"Unsupported alert operator: {config.operator}", alert_id=config.alert_id)
        self._configs[config.alert_id] = config
        return config.alert_id

    def start(self, coordination_id: str, kind: str, participant_count: int = 0) -> CoordinationRecord:
        record = CoordinationRecord(
            coordination_id=coordination_id,
            kind=kind,
            participant_count=participant_count,
            started_at=self.clock(),
        )
        self._records[coordination_id] = record
        logger.debug(f"📊 Monitoring {kind} {coordination_id}")
        return record

    def record_step(self, coordination_id: str, success: bool = True, latency_ms: Optional[float] = None) -> List[Alert]:
        record = self._require(coordination_id)
        record.steps += 1
        if success:
            record.completed_steps += 1
        else:
            record.errors += 1
        if latency_ms is not None:
            # Running average over all steps
            record.latency_ms += (latency_ms - record.latency_ms) / record.steps
        return self._evaluate(record)

    def update(self, coordination_id: str, **metrics: float) -> List[Alert]:
        record = self._require(coordination_id)
        if "latency_ms" in metrics:
            record.latency_ms = float(metrics.pop("latency_ms"))
        record.metrics.update({name: float(value) for name, value in metrics.items()})
        return self._evaluate(record)

    def stop(self, coordination_id: str, status: str = "completed") -> CoordinationRecord:
        record = self._require(coordination_id)
        record.status = status
        record.ended_at = self.clock()
        if not record.latency_ms:
            record.latency_ms = (record.ended_at - record.started_at) * 1000
        self._evaluate(record)
        self._prune()
        return record

    def _prune(self) -> None:
        """Keep only the newest finished records and acknowledged alerts."""
        finished = [cid for cid, record in self._records.items() if record.ended_at is not None]
        for coordination_id in finished[:max(len(finished) - self.history_limit, 0)]:
            del self._records[coordination_id]
        acknowledged = [aid for aid, alert in self._alerts.items() if alert.acknowledged]
        for alert_id in acknowledged[:max(len(acknowledged) - self.history_limit, 0)]:
            del self._alerts[alert_id]

    def get(self, coordination_id: str) -> Optional[CoordinationRecord]:
        return self._records.get(coordination_id)

    def _require(self, coordination_id: str) -> CoordinationRecord:
        record = self._records.get(coordination_id)
        if record is None:
            raise ValidationFailure(f"Coordination {coordination_id} is not being monitored", coordination_id=coordination_id)
        return record

    def _metric(self, record: CoordinationRecord, name: str) -> Optional[float]:
        if name == "latency_ms":
            return record.latency_ms
        if name == "error_rate":
            return record.error_rate if record.steps else None
        if name == "success_rate":
            return record.success_rate if record.steps else None
        return record.metrics.get(name)

    def _evaluate(self, record: CoordinationRecord) -> List[Alert]:
        fired = []
        now = self.clock()
        for config in self._configs.values():
            if not config.enabled:
                continue
            value = self._metric(record, config.metric)
            if value is None or not config.breached(value):
                continue
            last = self._last_fired.get(config.alert_id)
            if last is not None and now - last < config.cooldown:
                continue
            self._last_fired[config.alert_id] = now
            alert = Alert(
                config_id=config.alert_id,
                coordination_id=record.coordination_id,
                metric=config.metric,
                value=value,
                threshold=config.threshold,
                severity=config.severity,
                message=f"{config.metric} {value:.2f} breached {config.operator} {config.threshold}",
                triggered_at=now,
            )
            self._alerts[alert.alert_id] = alert
            fired.append(alert)
            logger.warning(f"🚨 Alert {config.alert_id} on {record.coordination_id}: {alert.message}")
        return fired

    def active_alerts(self) -> List[Alert]:
        return [a for a in self._alerts.values() if not a.acknowledged]

    def acknowledge(self, alert_id: str, acknowledged_by: Optional[str] = None) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise ValidationFailure(f"Unknown alert: {alert_id}", alert_id=alert_id)
        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        logger.info(f"✅ Alert {alert_id} acknowledged by {acknowledged_by or 'unknown'}")
        self._prune()
        return alert

    def system_metrics(self) -> Dict[str, Any]:
        records = list(self._records.values())
        finished = [r for r in records if r.ended_at is not None]
        failed = [r for r in finished if r.status != "completed"]
        by_kind: Dict[str, int] = {}
        for record in records:
            by_kind[record.kind] = by_kind.get(record.kind, 0) + 1
        active = [r for r in records if r.ended_at is None]
        return {
            "total_coordinations": len(records),
            "active_coordinations": len(active),
            "completed_coordinations": len(finished) - len(failed),
            "failed_coordinations": len(failed),
            "error_rate": (len(failed) / len(finished)) * 100 if finished else 0.0,
            "average_latency_ms": sum(r.latency_ms for r in finished) / len(finished) if finished else 0.0,
            "by_kind": by_kind,
            "active_alerts": len(self.active_alerts()),
        }

    def health_report(self) -> Dict[str, Any]:
        alerts = self.active_alerts()
        severities = {a.severity for a in alerts}
        if AlertSeverity.CRITICAL in severities:
            status = "critical"
        elif AlertSeverity.ERROR in severities or len(alerts) > 5:
            status = "degraded"
        else:
            status = "healthy"
        penalty = {AlertSeverity.INFO: 0.02, AlertSeverity.WARNING: 0.05, AlertSeverity.ERROR: 0.15, AlertSeverity.CRITICAL: 0.4}
        score = max(0.0, 1.0 - sum(penalty[a.severity] for a in alerts))
        return {
            "status": status,
            "health_score": round(score, 3),
            "active_alerts": [a.model_dump(mode="json") for a in alerts],
            "metrics": self.system_metrics(),
        }
