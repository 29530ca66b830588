"""
Point-in-time stock reconstruction.

Two independent answers are computed for "quantity on hand at T":

* ledger-anchored: ``balance_after`` of the last entry at or before T
* current-minus-delta: projection qty minus every delta recorded after T

When they agree the ledger figure is returned. When they do not, the scope's
facts are run through ``RECONSTRUCTION_RULES`` in order and the first matching
rule decides the answer. Nothing here writes.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, business_day, ensure_utc, normalize_cutoff, system_clock
from stockledger.core.config import settings
from stockledger.core.exceptions import LedgerDriftError, LedgerValidationError
from stockledger.core.observability import log_ledger_event
from stockledger.core.quantity import ZERO_QTY, to_money, to_quantity, within_tolerance
from stockledger.core.scope import StockScope
from stockledger.models.stock import StockLedgerEntry
from stockledger.services.ledger_service import get_projection


class BalanceSource(str, enum.Enum):
    LIVE = "live"
    LEDGER = "ledger"
    NOT_YET_STOCKED = "not_yet_stocked"
    NO_HISTORY = "no_history"
    PROJECTION_ESTIMATE = "projection_estimate"
    DRIFT_ESTIMATE = "drift_estimate"


class DriftPolicy(str, enum.Enum):
    ESTIMATE = "estimate"
    REFUSE = "refuse"


@dataclass(frozen=True)
class ScopeFacts:
    cutoff: datetime
    is_today: bool
    current_qty: Decimal
    projection_created_at: datetime | None
    anchor_balance: Decimal | None
    after_sum: Decimal
    first_entry_at: datetime | None
    unit_cost: Decimal | None
    tolerance: Decimal

    @property
    def has_entries(self) -> bool:
        return self.first_entry_at is not None

    @property
    def current_minus_after(self) -> Decimal:
        return self.current_qty - self.after_sum

    @property
    def ledger_consistent(self) -> bool:
        if self.anchor_balance is None:
            return False
        return within_tolerance(self.anchor_balance + self.after_sum, self.current_qty, self.tolerance)

    @property
    def drift(self) -> Decimal | None:
        if self.anchor_balance is None:
            return None
        return self.current_qty - (self.anchor_balance + self.after_sum)


@dataclass(frozen=True)
class PointInTimeBalance:
    scope: StockScope
    as_of: datetime
    quantity: Decimal
    raw_quantity: Decimal
    unit_cost: Decimal | None
    source: BalanceSource
    drift: Decimal | None = None

    @property
    def clamped(self) -> bool:
        return self.raw_quantity < 0


@dataclass(frozen=True)
class ReconstructionRule:
    name: str
    applies: Callable[[ScopeFacts], bool]
    source: BalanceSource
    value: Callable[[ScopeFacts], Decimal]


RECONSTRUCTION_RULES: tuple[ReconstructionRule, ...] = (
    ReconstructionRule(
        "today_is_live",
        lambda f: f.is_today,
        BalanceSource.LIVE,
        lambda f: f.current_qty,
    ),
    ReconstructionRule(
        "ledger_agrees_with_projection",
        lambda f: f.ledger_consistent,
        BalanceSource.LEDGER,
        lambda f: f.anchor_balance,
    ),
    ReconstructionRule(
        "first_entry_after_cutoff",
        lambda f: f.has_entries and f.first_entry_at > f.cutoff,
        BalanceSource.NOT_YET_STOCKED,
        lambda f: ZERO_QTY,
    ),
    ReconstructionRule(
        "no_ledger_no_projection",
        lambda f: not f.has_entries and f.projection_created_at is None,
        BalanceSource.NO_HISTORY,
        lambda f: ZERO_QTY,
    ),
    ReconstructionRule(
        "projection_created_after_cutoff",
        lambda f: not f.has_entries and f.projection_created_at > f.cutoff,
        BalanceSource.NOT_YET_STOCKED,
        lambda f: ZERO_QTY,
    ),
    ReconstructionRule(
        "projection_without_ledger",
        lambda f: not f.has_entries,
        BalanceSource.PROJECTION_ESTIMATE,
        lambda f: f.current_minus_after,
    ),
)


def _coerce_policy(policy: DriftPolicy | str | None) -> DriftPolicy:
    if policy is None:
        policy = settings.drift_policy
    try:
        return DriftPolicy(policy)
    except ValueError as exc:
        raise LedgerValidationError(f"Unknown drift policy '{policy}'") from exc


def gather_scope_facts(
    db: Session,
    scope: StockScope,
    cutoff: datetime,
    *,
    clock: Clock = system_clock,
) -> ScopeFacts:
    projection = get_projection(db, scope)
    clauses = scope.ledger_clauses()

    anchor = db.execute(
        select(StockLedgerEntry.balance_after)
        .where(*clauses, StockLedgerEntry.created_at <= cutoff)
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()

    after_sum = db.execute(
        select(func.coalesce(func.sum(StockLedgerEntry.quantity_delta), 0)).where(
            *clauses, StockLedgerEntry.created_at > cutoff
        )
    ).scalar_one()

    first_entry_at = db.execute(
        select(func.min(StockLedgerEntry.created_at)).where(*clauses)
    ).scalar_one_or_none()

    unit_cost = db.execute(
        select(StockLedgerEntry.unit_cost)
        .where(
            *clauses,
            StockLedgerEntry.created_at <= cutoff,
            StockLedgerEntry.unit_cost.is_not(None),
        )
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()

    return ScopeFacts(
        cutoff=cutoff,
        is_today=business_day(cutoff) == business_day(clock.now()),
        current_qty=to_quantity(projection.qty_available) if projection else ZERO_QTY,
        projection_created_at=ensure_utc(projection.created_at) if projection else None,
        anchor_balance=to_quantity(anchor) if anchor is not None else None,
        after_sum=to_quantity(after_sum),
        first_entry_at=ensure_utc(first_entry_at) if first_entry_at is not None else None,
        unit_cost=to_money(unit_cost) if unit_cost is not None else None,
        tolerance=settings.reconciliation_tolerance,
    )


def resolve_balance(
    scope: StockScope,
    facts: ScopeFacts,
    *,
    policy: DriftPolicy | str | None = None,
) -> PointInTimeBalance:
    for rule in RECONSTRUCTION_RULES:
        if rule.applies(facts):
            return _finalize(scope, facts, rule.value(facts), rule.source)

    # Ledger has history at or before the cutoff but does not add up to the projection.
    drift_policy = _coerce_policy(policy)
    log_ledger_event(
        logging.WARNING,
        "point_in_time_drift",
        scope=scope.as_dict(),
        cutoff=facts.cutoff.isoformat(),
        ledger_balance=str(facts.anchor_balance) if facts.anchor_balance is not None else None,
        after_sum=str(facts.after_sum),
        projection_balance=str(facts.current_qty),
        policy=drift_policy.value,
    )
    if drift_policy is DriftPolicy.REFUSE:
        raise LedgerDriftError(
            "Ledger and projection disagree; refusing to reconstruct a historical balance",
            ledger_balance=facts.anchor_balance,
            projection_balance=facts.current_qty,
        )
    return _finalize(scope, facts, facts.current_minus_after, BalanceSource.DRIFT_ESTIMATE)


def _finalize(
    scope: StockScope,
    facts: ScopeFacts,
    raw: Decimal,
    source: BalanceSource,
) -> PointInTimeBalance:
    raw = to_quantity(raw)
    if raw < 0:
        log_ledger_event(
            logging.WARNING,
            "negative_balance_clamped",
            scope=scope.as_dict(),
            cutoff=facts.cutoff.isoformat(),
            raw_quantity=str(raw),
            source=source.value,
        )
    return PointInTimeBalance(
        scope=scope,
        as_of=facts.cutoff,
        quantity=max(raw, ZERO_QTY),
        raw_quantity=raw,
        unit_cost=facts.unit_cost,
        source=source,
        drift=facts.drift,
    )


def get_balance_as_of(
    db: Session,
    scope: StockScope,
    as_of: date | datetime,
    *,
    policy: DriftPolicy | str | None = None,
    clock: Clock = system_clock,
) -> PointInTimeBalance:
    scope.validate()
    cutoff = normalize_cutoff(as_of)
    facts = gather_scope_facts(db, scope, cutoff, clock=clock)
    return resolve_balance(scope, facts, policy=policy)
