"""Cost ledger: per-call cost records, daily aggregates and budget alerts.

Spend is accounted per calendar day in a fixed UTC offset (the platform
budget resets at local midnight). ``evaluate_budget`` is meant to run after
every recorded call; each threshold is marked as crossed under the ledger
lock before anyone is notified, so a threshold alerts at most once per day
no matter how many evaluations race.
"""

from __future__ import annotations

import collections
import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set

from matchgate.core.services.ai.budget_alerts import (
    BudgetAlert,
    BudgetAlertNotifier,
    BudgetThreshold,
    LoggingBudgetNotifier,
    parse_thresholds,
)
from matchgate.core.storage.ledger_store import AMOUNT_QUANTUM, CostRecord, LedgerStore

logger = logging.getLogger(__name__)

_ONE_DAY = dt.timedelta(days=1)
_MAX_TRACKED_PERIODS = 7
_ALERT_HISTORY_SIZE = 200


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_amount(value) -> Decimal:
    return Decimal(str(value)).quantize(AMOUNT_QUANTUM)


@dataclass(frozen=True)
class CostModel:
    """Token pricing per 1K units."""

    per_1k_input: Decimal
    per_1k_output: Decimal

    def price(self, input_units: int, output_units: int) -> Decimal:
        raw = (Decimal(int(input_units)) * self.per_1k_input + Decimal(int(output_units)) * self.per_1k_output) / 1000
        return raw.quantize(AMOUNT_QUANTUM)


@dataclass
class DailyCostBreakdown:
    date: str
    total_amount: Decimal = Decimal("0")
    total_requests: int = 0
    input_units: int = 0
    output_units: int = 0
    by_request_type: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "total_amount": str(self.total_amount),
            "total_requests": self.total_requests,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "by_request_type": {key: str(value) for key, value in sorted(self.by_request_type.items())},
        }


@dataclass
class BudgetAlertState:
    period_start: dt.datetime
    thresholds_crossed: Set[int] = field(default_factory=set)
    last_evaluated_at: Optional[dt.datetime] = None


@dataclass(frozen=True)
class BudgetAlertDecision:
    period_start: dt.datetime
    spent: Decimal
    ceiling: Decimal
    percentage: float
    newly_crossed: List[BudgetAlert]

    @property
    def should_notify(self) -> bool:
        return bool(self.newly_crossed)


class CostLedger:
    def __init__(
        self,
        store: LedgerStore,
        *,
        daily_budget,
        thresholds: Optional[Sequence[BudgetThreshold]] = None,
        cost_model: Optional[CostModel] = None,
        notifiers: Optional[Iterable[BudgetAlertNotifier]] = None,
        utc_offset_hours: int = 0,
        now_fn: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._ceiling = to_amount(daily_budget)
        self._thresholds = list(thresholds) if thresholds is not None else parse_thresholds("")
        self._cost_model = cost_model or CostModel(Decimal("3.90"), Decimal("19.50"))
        self._notifiers = list(notifiers) if notifiers is not None else [LoggingBudgetNotifier()]
        self._tz = dt.timezone(dt.timedelta(hours=int(utc_offset_hours)))
        self._now_fn = now_fn
        self._lock = threading.RLock()
        self._alert_states: Dict[dt.datetime, BudgetAlertState] = {}
        self._alert_history: Deque[BudgetAlert] = collections.deque(maxlen=_ALERT_HISTORY_SIZE)

    @property
    def ceiling(self) -> Decimal:
        return self._ceiling

    @property
    def store(self) -> LedgerStore:
        return self._store

    def price(self, input_units: int, output_units: int) -> Decimal:
        return self._cost_model.price(input_units, output_units)

    def period_start(self, at: Optional[dt.datetime] = None) -> dt.datetime:
        """Local midnight of the accounting day containing ``at``."""
        local = (at or self._now_fn()).astimezone(self._tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def record(
        self,
        caller_id: str,
        request_type: str,
        input_units: int,
        output_units: int,
        amount,
        *,
        endpoint: str = "",
        model: str = "",
        latency_ms: int = 0,
        occurred_at: Optional[dt.datetime] = None,
    ) -> CostRecord:
        if int(input_units) < 0 or int(output_units) < 0:
            raise ValueError("token units cannot be negative")
        value = to_amount(amount)
        if value < 0:
            raise ValueError("cost amount cannot be negative")

        record = CostRecord(
            occurred_at=occurred_at or self._now_fn(),
            caller_id=str(caller_id),
            request_type=str(request_type),
            input_units=int(input_units),
            output_units=int(output_units),
            amount=value,
            endpoint=endpoint,
            model=model,
            latency_ms=int(latency_ms),
        )
        self._store.append(record)
        logger.debug(
            "ai cost recorded caller=%s type=%s units=%d/%d amount=%s",
            record.caller_id,
            record.request_type,
            record.input_units,
            record.output_units,
            record.amount,
        )
        return record

    def period_spend(self, period_start: Optional[dt.datetime] = None) -> Decimal:
        start = period_start or self.period_start()
        return to_amount(self._store.sum_amount(start, start + _ONE_DAY))

    def daily_breakdown(self, days: int) -> List[DailyCostBreakdown]:
        """Per-day aggregates for the last ``days`` accounting days, oldest first."""
        count = max(1, int(days))
        today = self.period_start()
        first = today - (count - 1) * _ONE_DAY
        buckets: Dict[str, DailyCostBreakdown] = {}
        for offset in range(count):
            key = (first + offset * _ONE_DAY).date().isoformat()
            buckets[key] = DailyCostBreakdown(date=key)

        for record in self._store.query(first, today + _ONE_DAY):
            key = record.occurred_at.astimezone(self._tz).date().isoformat()
            bucket = buckets.get(key)
            if bucket is None:
                continue
            bucket.total_amount += record.amount
            bucket.total_requests += 1
            bucket.input_units += record.input_units
            bucket.output_units += record.output_units
            bucket.by_request_type[record.request_type] = (
                bucket.by_request_type.get(record.request_type, Decimal("0")) + record.amount
            )
        return list(buckets.values())

    def top_callers(self, days: int = 30, limit: int = 10) -> List[Dict[str, object]]:
        today = self.period_start()
        first = today - (max(1, int(days)) - 1) * _ONE_DAY
        totals: Dict[str, Dict[str, object]] = {}
        for record in self._store.query(first, today + _ONE_DAY):
            item = totals.setdefault(
                record.caller_id,
                {"caller_id": record.caller_id, "total_amount": Decimal("0"), "total_requests": 0},
            )
            item["total_amount"] += record.amount
            item["total_requests"] += 1
        ranked = sorted(totals.values(), key=lambda item: item["total_amount"], reverse=True)
        return ranked[: max(0, int(limit))]

    def _state_for(self, period_start: dt.datetime) -> BudgetAlertState:
        state = self._alert_states.get(period_start)
        if state is None:
            state = BudgetAlertState(period_start=period_start)
            self._alert_states[period_start] = state
            for stale in sorted(self._alert_states)[:-_MAX_TRACKED_PERIODS]:
                del self._alert_states[stale]
        return state

    def evaluate_budget(self, period_start: Optional[dt.datetime] = None) -> BudgetAlertDecision:
        """Mark newly crossed thresholds for the period and notify once each."""
        start = self.period_start(period_start) if period_start else self.period_start()
        spent = self.period_spend(start)
        now = self._now_fn()
        percentage = float(spent / self._ceiling * 100) if self._ceiling > 0 else 0.0

        newly_crossed: List[BudgetAlert] = []
        with self._lock:
            state = self._state_for(start)
            state.last_evaluated_at = now
            if self._ceiling > 0:
                for threshold in self._thresholds:
                    if percentage < threshold.percent or threshold.percent in state.thresholds_crossed:
                        continue
                    state.thresholds_crossed.add(threshold.percent)
                    alert = BudgetAlert(
                        period_start=start,
                        threshold=threshold.percent,
                        severity=threshold.severity,
                        spent=spent,
                        ceiling=self._ceiling,
                        percentage=percentage,
                        created_at=now,
                    )
                    newly_crossed.append(alert)
                    self._alert_history.append(alert)

        for alert in newly_crossed:
            for notifier in self._notifiers:
                try:
                    notifier.notify(alert)
                except Exception:
                    logger.exception("budget alert notifier %r failed for %s%%", notifier, alert.threshold)

        return BudgetAlertDecision(
            period_start=start,
            spent=spent,
            ceiling=self._ceiling,
            percentage=percentage,
            newly_crossed=newly_crossed,
        )

    def budget_exhausted(self) -> bool:
        if self._ceiling <= 0:
            return False
        return self.period_spend() >= self._ceiling

    def budget_status(self) -> Dict[str, object]:
        start = self.period_start()
        spent = self.period_spend(start)
        with self._lock:
            state = self._alert_states.get(start)
            crossed = sorted(state.thresholds_crossed) if state else []
            last_evaluated = state.last_evaluated_at if state else None
        return {
            "period_start": start.isoformat(),
            "resets_at": (start + _ONE_DAY).isoformat(),
            "spent": str(spent),
            "ceiling": str(self._ceiling),
            "remaining": str(max(Decimal("0"), self._ceiling - spent)),
            "percentage": round(float(spent / self._ceiling * 100), 2) if self._ceiling > 0 else None,
            "thresholds": [t.percent for t in self._thresholds],
            "thresholds_crossed": crossed,
            "last_evaluated_at": last_evaluated.isoformat() if last_evaluated else None,
        }

    def alert_history(self, limit: int = 50) -> List[BudgetAlert]:
        with self._lock:
            items = list(self._alert_history)
        return items[-max(0, int(limit)) :] if limit else []
