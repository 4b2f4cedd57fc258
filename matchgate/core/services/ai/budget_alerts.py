"""Budget threshold definitions and alert notifiers."""

from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Protocol, Tuple

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class BudgetThreshold:
    percent: int
    severity: AlertSeverity


@dataclass(frozen=True)
class BudgetAlert:
    period_start: dt.datetime
    threshold: int
    severity: AlertSeverity
    spent: Decimal
    ceiling: Decimal
    percentage: float
    created_at: dt.datetime

    @property
    def remaining(self) -> Decimal:
        return self.ceiling - self.spent

    def to_dict(self) -> dict:
        return {
            "period_start": self.period_start.isoformat(),
            "threshold": self.threshold,
            "severity": self.severity.value,
            "spent": str(self.spent),
            "ceiling": str(self.ceiling),
            "remaining": str(self.remaining),
            "percentage": round(self.percentage, 2),
            "created_at": self.created_at.isoformat(),
        }


def _severity_for(percent: int) -> AlertSeverity:
    if percent >= 95:
        return AlertSeverity.CRITICAL
    if percent >= 80:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def parse_thresholds(raw: str, defaults: Tuple[int, ...] = (50, 80, 95)) -> List[BudgetThreshold]:
    """Parse ``"50,80,95"`` into ordered, de-duplicated thresholds."""
    values: List[int] = []
    for item in str(raw or "").split(","):
        text = item.strip().rstrip("%")
        if not text:
            continue
        percent = int(text)
        if percent <= 0:
            raise ValueError(f"budget threshold must be positive, got {item!r}")
        values.append(percent)
    if not values:
        values = list(defaults)
    return [BudgetThreshold(percent=p, severity=_severity_for(p)) for p in sorted(set(values))]


class BudgetAlertNotifier(Protocol):
    def notify(self, alert: BudgetAlert) -> None: ...


class LoggingBudgetNotifier:
    """Writes one structured log line per crossed threshold."""

    _LEVELS = {
        AlertSeverity.INFO: logging.INFO,
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.CRITICAL: logging.ERROR,
    }

    def notify(self, alert: BudgetAlert) -> None:
        logger.log(
            self._LEVELS[alert.severity],
            "ai_budget_alert %s",
            json.dumps(alert.to_dict(), ensure_ascii=False),
        )
