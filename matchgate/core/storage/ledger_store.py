from __future__ import annotations

import datetime as dt
import logging
import threading
import uuid
from bisect import insort
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, create_engine, func, select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.0001")
_AMOUNT_SCALE = 10000

Base = declarative_base()


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class CostRecord:
    occurred_at: dt.datetime
    caller_id: str
    request_type: str
    input_units: int
    output_units: int
    amount: Decimal
    endpoint: str = ""
    model: str = ""
    latency_ms: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
            "caller_id": self.caller_id,
            "request_type": self.request_type,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "amount": str(self.amount),
            "endpoint": self.endpoint,
            "model": self.model,
            "latency_ms": self.latency_ms,
        }


class LedgerStore(Protocol):
    def append(self, record: CostRecord) -> None: ...

    def query(self, start: dt.datetime, end: dt.datetime) -> List[CostRecord]: ...

    def sum_amount(self, start: dt.datetime, end: dt.datetime) -> Decimal: ...


class InMemoryLedgerStore:
    """Append-only list kept ordered by ``occurred_at``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[tuple] = []

    def append(self, record: CostRecord) -> None:
        with self._lock:
            insort(self._records, (_as_utc(record.occurred_at), record.id, record))

    def query(self, start: dt.datetime, end: dt.datetime) -> List[CostRecord]:
        lo, hi = _as_utc(start), _as_utc(end)
        with self._lock:
            return [record for occurred, _, record in self._records if lo <= occurred < hi]

    def sum_amount(self, start: dt.datetime, end: dt.datetime) -> Decimal:
        return sum((record.amount for record in self.query(start, end)), Decimal("0"))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class CostRecordDB(Base):
    __tablename__ = "ai_cost_records"

    id = Column(String(32), primary_key=True)
    occurred_at = Column(DateTime, index=True, nullable=False)
    caller_id = Column(String(128), index=True, nullable=False)
    request_type = Column(String(64), nullable=False)
    endpoint = Column(String(128), default="")
    model = Column(String(128), default="")
    input_units = Column(Integer, default=0)
    output_units = Column(Integer, default=0)
    # Fixed-point amount in 1/10000 currency units.
    amount_e4 = Column(BigInteger, default=0)
    latency_ms = Column(Integer, default=0)


class SqlLedgerStore:
    """Durable ledger on any SQLAlchemy-supported database."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        kwargs = {}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        self.engine = create_engine(url, echo=echo, **kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)
        logger.info("Cost ledger tables verified on %s", self.engine.url.render_as_string(hide_password=True))

    def append(self, record: CostRecord) -> None:
        row = CostRecordDB(
            id=record.id,
            occurred_at=_as_utc(record.occurred_at).replace(tzinfo=None),
            caller_id=record.caller_id,
            request_type=record.request_type,
            endpoint=record.endpoint,
            model=record.model,
            input_units=int(record.input_units),
            output_units=int(record.output_units),
            amount_e4=int((record.amount * _AMOUNT_SCALE).to_integral_value()),
            latency_ms=int(record.latency_ms),
        )
        with self.SessionLocal() as session:
            session.add(row)
            session.commit()

    @staticmethod
    def _bounds(start: dt.datetime, end: dt.datetime) -> tuple:
        return _as_utc(start).replace(tzinfo=None), _as_utc(end).replace(tzinfo=None)

    def query(self, start: dt.datetime, end: dt.datetime) -> List[CostRecord]:
        lo, hi = self._bounds(start, end)
        stmt = (
            select(CostRecordDB)
            .where(CostRecordDB.occurred_at >= lo, CostRecordDB.occurred_at < hi)
            .order_by(CostRecordDB.occurred_at, CostRecordDB.id)
        )
        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            return [
                CostRecord(
                    id=row.id,
                    occurred_at=_as_utc(row.occurred_at),
                    caller_id=row.caller_id,
                    request_type=row.request_type,
                    endpoint=row.endpoint or "",
                    model=row.model or "",
                    input_units=int(row.input_units or 0),
                    output_units=int(row.output_units or 0),
                    amount=(Decimal(int(row.amount_e4 or 0)) / _AMOUNT_SCALE).quantize(AMOUNT_QUANTUM),
                    latency_ms=int(row.latency_ms or 0),
                )
                for row in rows
            ]

    def sum_amount(self, start: dt.datetime, end: dt.datetime) -> Decimal:
        lo, hi = self._bounds(start, end)
        stmt = select(func.coalesce(func.sum(CostRecordDB.amount_e4), 0)).where(
            CostRecordDB.occurred_at >= lo, CostRecordDB.occurred_at < hi
        )
        with self.SessionLocal() as session:
            total: Optional[int] = session.execute(stmt).scalar_one()
        return (Decimal(int(total or 0)) / _AMOUNT_SCALE).quantize(AMOUNT_QUANTUM)

    def dispose(self) -> None:
        self.engine.dispose()
