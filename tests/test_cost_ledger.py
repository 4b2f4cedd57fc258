"""Tests for the cost ledger and budget alerting."""

from __future__ import annotations

import datetime as dt
import threading
from decimal import Decimal

import pytest

from matchgate.core.services.ai.budget_alerts import AlertSeverity, parse_thresholds
from matchgate.core.services.ai.cost_ledger import CostLedger, CostModel
from matchgate.core.storage.ledger_store import InMemoryLedgerStore, SqlLedgerStore

KST = dt.timezone(dt.timedelta(hours=9))


class _Clock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def utc_now(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.alerts = []
        self._lock = threading.Lock()

    def notify(self, alert) -> None:
        with self._lock:
            self.alerts.append(alert)


class _BrokenNotifier:
    def notify(self, alert) -> None:
        raise RuntimeError("slack webhook down")


def _ledger(clock: _Clock, *, store=None, budget="1000", notifiers=None) -> CostLedger:
    return CostLedger(
        store if store is not None else InMemoryLedgerStore(),
        daily_budget=budget,
        thresholds=parse_thresholds("50,80,95"),
        notifiers=notifiers if notifiers is not None else [],
        utc_offset_hours=9,
        now_fn=clock.utc_now,
    )


# 2024-05-10 12:00 KST
NOON_KST = dt.datetime(2024, 5, 10, 3, 0, tzinfo=dt.timezone.utc)


def test_price_uses_per_thousand_rates() -> None:
    model = CostModel(per_1k_input=Decimal("3.90"), per_1k_output=Decimal("19.50"))

    assert model.price(1000, 1000) == Decimal("23.4000")
    assert model.price(1500, 200) == Decimal("9.7500")
    assert model.price(0, 0) == Decimal("0.0000")


def test_record_rejects_negative_values() -> None:
    ledger = _ledger(_Clock(NOON_KST))

    with pytest.raises(ValueError):
        ledger.record("org-1", "qa_chat", -1, 10, "1")
    with pytest.raises(ValueError):
        ledger.record("org-1", "qa_chat", 1, 10, "-0.5")


def test_period_starts_at_local_midnight() -> None:
    ledger = _ledger(_Clock(NOON_KST))

    start = ledger.period_start()
    assert start == dt.datetime(2024, 5, 10, 0, 0, tzinfo=KST)
    # 15:30 UTC on the 9th is already the 10th in KST
    assert ledger.period_start(dt.datetime(2024, 5, 9, 15, 30, tzinfo=dt.timezone.utc)) == start


def test_daily_breakdown_is_zero_filled_and_oldest_first() -> None:
    clock = _Clock(NOON_KST)
    ledger = _ledger(clock)
    ledger.record("org-1", "match_explanation", 1000, 500, "13.65", occurred_at=NOON_KST - dt.timedelta(days=2))
    ledger.record("org-1", "qa_chat", 100, 100, "2.34")
    ledger.record("org-2", "match_explanation", 100, 100, "2.34")

    days = ledger.daily_breakdown(3)

    assert [d.date for d in days] == ["2024-05-08", "2024-05-09", "2024-05-10"]
    assert days[0].total_amount == Decimal("13.65")
    assert days[1].total_requests == 0
    assert days[2].total_amount == Decimal("4.68")
    assert days[2].by_request_type == {"qa_chat": Decimal("2.34"), "match_explanation": Decimal("2.34")}
    assert days[2].to_dict()["total_amount"] == "4.6800"


def test_top_callers_ranked_by_spend() -> None:
    ledger = _ledger(_Clock(NOON_KST))
    ledger.record("org-1", "qa_chat", 10, 10, "1")
    ledger.record("org-2", "qa_chat", 10, 10, "5")
    ledger.record("org-1", "qa_chat", 10, 10, "1")

    ranked = ledger.top_callers(days=1, limit=5)

    assert [item["caller_id"] for item in ranked] == ["org-2", "org-1"]
    assert ranked[1]["total_requests"] == 2


def test_each_threshold_alerts_once_per_period() -> None:
    clock = _Clock(NOON_KST)
    notifier = _RecordingNotifier()
    ledger = _ledger(clock, notifiers=[notifier])

    for _ in range(1000):
        ledger.record("org-1", "qa_chat", 10, 10, "1")
        ledger.evaluate_budget()

    assert [a.threshold for a in notifier.alerts] == [50, 80, 95]
    assert [a.severity for a in notifier.alerts] == [
        AlertSeverity.INFO,
        AlertSeverity.WARNING,
        AlertSeverity.CRITICAL,
    ]
    assert ledger.budget_exhausted()
    status = ledger.budget_status()
    assert status["thresholds_crossed"] == [50, 80, 95]
    assert Decimal(status["remaining"]) == 0


def test_concurrent_evaluations_alert_once() -> None:
    clock = _Clock(NOON_KST)
    notifier = _RecordingNotifier()
    ledger = _ledger(clock, notifiers=[notifier])
    ledger.record("org-1", "qa_chat", 10, 10, "600")

    threads = [threading.Thread(target=ledger.evaluate_budget) for _ in range(25)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [a.threshold for a in notifier.alerts] == [50]


def test_thresholds_rearm_next_day() -> None:
    clock = _Clock(NOON_KST)
    notifier = _RecordingNotifier()
    ledger = _ledger(clock, notifiers=[notifier])
    ledger.record("org-1", "qa_chat", 10, 10, "600")
    ledger.evaluate_budget()

    clock.advance(days=1)
    assert not ledger.budget_exhausted()
    assert ledger.evaluate_budget().newly_crossed == []

    ledger.record("org-1", "qa_chat", 10, 10, "550")
    decision = ledger.evaluate_budget()
    assert [a.threshold for a in decision.newly_crossed] == [50]
    assert len(notifier.alerts) == 2


def test_notifier_failure_does_not_break_evaluation() -> None:
    clock = _Clock(NOON_KST)
    notifier = _RecordingNotifier()
    ledger = _ledger(clock, notifiers=[_BrokenNotifier(), notifier])
    ledger.record("org-1", "qa_chat", 10, 10, "500")

    decision = ledger.evaluate_budget()

    assert decision.should_notify
    assert len(notifier.alerts) == 1
    assert len(ledger.alert_history()) == 1


def test_zero_budget_disables_alerts() -> None:
    clock = _Clock(NOON_KST)
    notifier = _RecordingNotifier()
    ledger = _ledger(clock, budget="0", notifiers=[notifier])
    ledger.record("org-1", "qa_chat", 10, 10, "500")

    assert ledger.evaluate_budget().newly_crossed == []
    assert not ledger.budget_exhausted()


def test_sql_ledger_store_round_trips_records() -> None:
    clock = _Clock(NOON_KST)
    store = SqlLedgerStore("sqlite://")
    try:
        ledger = _ledger(clock, store=store)
        ledger.record("org-1", "match_set", 1200, 800, ledger.price(1200, 800), endpoint="anthropic:messages")
        ledger.record("org-2", "qa_chat", 10, 10, "0.2340", occurred_at=NOON_KST - dt.timedelta(days=1))

        assert ledger.period_spend() == Decimal("20.2800")
        records = store.query(NOON_KST - dt.timedelta(days=2), NOON_KST + dt.timedelta(hours=1))
        assert [r.caller_id for r in records] == ["org-2", "org-1"]
        assert records[1].occurred_at == NOON_KST
        assert records[1].endpoint == "anthropic:messages"
        assert [d.total_amount for d in ledger.daily_breakdown(2)] == [Decimal("0.2340"), Decimal("20.2800")]
    finally:
        store.dispose()


def test_parse_thresholds_defaults_and_validation() -> None:
    assert [t.percent for t in parse_thresholds("")] == [50, 80, 95]
    assert [t.percent for t in parse_thresholds("90, 75%, 90")] == [75, 90]
    with pytest.raises(ValueError):
        parse_thresholds("0,50")
