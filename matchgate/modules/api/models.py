from __future__ import annotations
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class BreakerStatusOut(BaseModel):
    status: str
    recent_failures: int = 0
    opened_seconds_ago: Optional[float] = None
    seconds_until_probe: float = 0.0
    probes_in_flight: int = 0
    last_reason: Optional[str] = None


class BreakersOut(BaseModel):
    endpoints: Dict[str, BreakerStatusOut] = Field(default_factory=dict)


class CacheStatsOut(BaseModel):
    model_config = ConfigDict(extra="allow")

    day: str
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class DailyCostOut(BaseModel):
    date: str
    total_amount: str
    total_requests: int = 0
    input_units: int = 0
    output_units: int = 0
    by_request_type: Dict[str, str] = Field(default_factory=dict)


class TopCallerOut(BaseModel):
    caller_id: str
    total_amount: str
    total_requests: int = 0


class CostsOut(BaseModel):
    days: int
    total_amount: str
    daily: List[DailyCostOut] = Field(default_factory=list)
    top_callers: List[TopCallerOut] = Field(default_factory=list)


class BudgetAlertOut(BaseModel):
    period_start: str
    threshold: int
    severity: str
    spent: str
    ceiling: str
    remaining: str
    percentage: float
    created_at: str


class BudgetStatusOut(BaseModel):
    period_start: str
    resets_at: str
    spent: str
    ceiling: str
    remaining: str
    percentage: Optional[float] = None
    thresholds: List[int] = Field(default_factory=list)
    thresholds_crossed: List[int] = Field(default_factory=list)
    last_evaluated_at: Optional[str] = None
    hard_stop: bool = True
    exhausted: bool = False
    recent_alerts: List[BudgetAlertOut] = Field(default_factory=list)
