import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockledger.core.clock import Clock, ensure_utc, system_clock, to_storage
from stockledger.core.config import settings
from stockledger.core.exceptions import LedgerError
from stockledger.core.id_utils import generate_reference_number
from stockledger.core.observability import log_ledger_event
from stockledger.core.quantity import ZERO_QTY, to_money, to_quantity, within_tolerance
from stockledger.core.scope import StockScope
from stockledger.db.session import apply_report_timeout
from stockledger.models.stock import LedgerEntryType, StockLedgerEntry, StockProjection
from stockledger.services.audit_service import log_audit_event
from stockledger.services.ledger_service import get_current_stock, insert_ledger_row, latest_entry

RECONCILIATION_REFERENCE_TYPE = "reconciliation"
INVESTIGATION_ENTRY_LIMIT = 100
INVESTIGATION_GAP_DAYS = 30
INVESTIGATION_MAX_ADJUSTMENTS = 5


@dataclass(frozen=True)
class ChainBreak:
    entry_id: int
    expected_balance: Decimal
    recorded_balance: Decimal


@dataclass(frozen=True)
class ChainCheck:
    scope: StockScope
    entry_count: int
    replayed_balance: Decimal
    last_recorded_balance: Decimal | None
    projection_balance: Decimal
    breaks: list[ChainBreak] = field(default_factory=list)

    @property
    def telescopes(self) -> bool:
        return not self.breaks

    @property
    def projection_agrees(self) -> bool:
        expected = self.last_recorded_balance if self.last_recorded_balance is not None else ZERO_QTY
        return within_tolerance(expected, self.projection_balance, settings.reconciliation_tolerance)


@dataclass(frozen=True)
class VarianceDetection:
    scope: StockScope
    ledger_balance: Decimal
    system_balance: Decimal
    variance: Decimal
    variance_percentage: Decimal
    variance_type: str
    unit_cost: Decimal
    variance_value: Decimal
    requires_investigation: bool
    auto_fixable: bool
    total_transactions: int
    recent_transaction_count: int
    suspicious_activity: bool
    last_entry_type: str | None = None


@dataclass
class FixReport:
    fixed: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[dict] = field(default_factory=list)


def verify_scope_chain(db: Session, scope: StockScope) -> ChainCheck:
    """Replay a scope's ledger in order and report every row whose balance does not telescope."""
    scope.validate()
    rows = db.execute(
        select(StockLedgerEntry.id, StockLedgerEntry.quantity_delta, StockLedgerEntry.balance_after)
        .where(*scope.ledger_clauses())
        .order_by(StockLedgerEntry.created_at.asc(), StockLedgerEntry.id.asc())
    ).all()

    tolerance = settings.reconciliation_tolerance
    breaks: list[ChainBreak] = []
    replayed = ZERO_QTY
    previous_recorded: Decimal | None = None
    for entry_id, delta, balance_after in rows:
        delta = to_quantity(delta)
        recorded = to_quantity(balance_after)
        replayed += delta
        expected = (previous_recorded if previous_recorded is not None else ZERO_QTY) + delta
        if not within_tolerance(expected, recorded, tolerance):
            breaks.append(ChainBreak(entry_id=entry_id, expected_balance=expected, recorded_balance=recorded))
        previous_recorded = recorded

    return ChainCheck(
        scope=scope,
        entry_count=len(rows),
        replayed_balance=replayed,
        last_recorded_balance=previous_recorded,
        projection_balance=get_current_stock(db, scope),
        breaks=breaks,
    )


def _classify(
    *,
    scope: StockScope,
    ledger_balance: Decimal,
    system_balance: Decimal,
    unit_cost: Decimal,
    total_transactions: int,
    recent_transaction_count: int,
    last_entry_type: str | None,
) -> VarianceDetection:
    variance = system_balance - ledger_balance
    variance_value = to_money(variance * unit_cost)
    percentage = (
        (abs(variance / ledger_balance) * 100).quantize(Decimal("0.01")) if ledger_balance != 0 else Decimal("0.00")
    )
    within_limits = (
        percentage <= settings.variance_investigate_percent
        and abs(variance) <= settings.variance_investigate_units
        and abs(variance_value) <= settings.variance_investigate_value
    )
    suspicious = (
        (total_transactions == 0 and system_balance > 0)
        or recent_transaction_count > settings.variance_high_activity_count
        or ledger_balance < 0
    )
    return VarianceDetection(
        scope=scope,
        ledger_balance=ledger_balance,
        system_balance=system_balance,
        variance=variance,
        variance_percentage=percentage,
        variance_type="overage" if variance > 0 else "shortage",
        unit_cost=unit_cost,
        variance_value=variance_value,
        requires_investigation=not within_limits,
        auto_fixable=within_limits,
        total_transactions=total_transactions,
        recent_transaction_count=recent_transaction_count,
        suspicious_activity=suspicious,
        last_entry_type=last_entry_type,
    )


def _detect(
    db: Session,
    projection: StockProjection,
    *,
    recent_since: datetime,
) -> VarianceDetection | None:
    scope = StockScope.of(projection)
    last = latest_entry(db, scope)
    ledger_balance = to_quantity(last.balance_after) if last is not None else ZERO_QTY
    system_balance = to_quantity(projection.qty_available)
    if within_tolerance(ledger_balance, system_balance, settings.reconciliation_tolerance):
        return None

    total_transactions, recent_count = db.execute(
        select(
            func.count(StockLedgerEntry.id),
            func.count(StockLedgerEntry.id).filter(StockLedgerEntry.created_at >= recent_since),
        ).where(*scope.ledger_clauses())
    ).one()
    unit_cost = db.execute(
        select(StockLedgerEntry.unit_cost)
        .where(*scope.ledger_clauses(), StockLedgerEntry.unit_cost.is_not(None))
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(1)
    ).scalar_one_or_none()

    return _classify(
        scope=scope,
        ledger_balance=ledger_balance,
        system_balance=system_balance,
        unit_cost=to_money(unit_cost) if unit_cost is not None else Decimal("0.00"),
        total_transactions=int(total_transactions),
        recent_transaction_count=int(recent_count),
        last_entry_type=last.type if last is not None else None,
    )


def _recent_since(clock: Clock) -> datetime:
    return to_storage(clock.now() - timedelta(days=settings.variance_activity_window_days))


def reconcile_ledger_vs_projection(
    db: Session,
    *,
    business_id: str,
    location_id: str | None = None,
    clock: Clock = system_clock,
) -> list[VarianceDetection]:
    """Compare each projection row with its scope's last ledger balance. Matching scopes are left out."""
    apply_report_timeout(db)
    filters = [StockProjection.business_id == business_id]
    if location_id:
        filters.append(StockProjection.location_id == location_id)

    projections = db.execute(
        select(StockProjection)
        .where(*filters)
        .order_by(StockProjection.location_id.asc(), StockProjection.variation_id.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()

    recent_since = _recent_since(clock)
    variances: list[VarianceDetection] = []
    for projection in projections:
        variance = _detect(db, projection, recent_since=recent_since)
        if variance is not None:
            variances.append(variance)
    return variances


def realign_scope(
    db: Session,
    scope: StockScope,
    *,
    actor_id: str,
    clock: Clock = system_clock,
) -> tuple[VarianceDetection | None, StockLedgerEntry | None]:
    """
    Re-anchor one scope's ledger on its projection. Does not commit.

    The projection row is locked and the variance measured again before
    anything is written, so a movement that landed after an earlier sweep is
    taken into account. Returns the fresh variance (``None`` when the scope
    already agrees) and the adjustment written, if any. Variances that now
    need investigation are left alone.
    """
    projection = db.execute(
        select(StockProjection)
        .where(*scope.projection_clauses())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if projection is None:
        return None, None

    variance = _detect(db, projection, recent_since=_recent_since(clock))
    if variance is None or not variance.auto_fixable:
        return variance, None

    last = latest_entry(db, scope)
    at = to_storage(clock.now())
    if last is not None and at < ensure_utc(last.created_at):
        at = ensure_utc(last.created_at)
    entry = insert_ledger_row(
        db,
        scope=scope,
        entry_type=LedgerEntryType.ADJUSTMENT,
        delta=variance.variance,
        balance_after=variance.system_balance,
        created_by=actor_id,
        created_at=at,
        reference_type=RECONCILIATION_REFERENCE_TYPE,
        reference_number=generate_reference_number("RECON"),
        note=(
            f"Auto-reconciliation: ledger {variance.ledger_balance} -> system "
            f"{variance.system_balance} (variance {variance.variance})"
        ),
    )
    log_audit_event(
        db,
        business_id=scope.business_id,
        actor_id=actor_id,
        action="inventory_reconciliation.auto_fix",
        target_type="stock_ledger_entry",
        target_id=str(entry.id),
        scope=scope,
        metadata_json={
            "ledger_balance": str(variance.ledger_balance),
            "system_balance": str(variance.system_balance),
            "variance": str(variance.variance),
            "variance_value": str(variance.variance_value),
        },
        clock=clock,
    )
    return variance, entry


def fix_ledger_variances(
    db: Session,
    *,
    business_id: str,
    actor_id: str,
    location_id: str | None = None,
    variation_ids: list[str] | None = None,
    clock: Clock = system_clock,
) -> FixReport:
    """Close small ledger/projection gaps, one committed transaction per scope."""
    variances = reconcile_ledger_vs_projection(db, business_id=business_id, location_id=location_id, clock=clock)
    candidates = [item.scope for item in variances if item.auto_fixable]
    if variation_ids:
        wanted = set(variation_ids)
        candidates = [scope for scope in candidates if scope.variation_id in wanted]
    # Release the sweep's read transaction before taking row locks.
    db.rollback()

    report = FixReport()
    for scope in candidates:
        detail = {"variation_id": scope.variation_id, "location_id": scope.location_id}
        try:
            variance, entry = realign_scope(db, scope, actor_id=actor_id, clock=clock)
            entry_id = entry.id if entry is not None else None
            db.commit()
        except (LedgerError, SQLAlchemyError) as exc:
            db.rollback()
            log_ledger_event(
                logging.ERROR,
                "reconciliation_fix_failed",
                scope=scope.as_dict(),
                error=str(exc),
            )
            report.errors.append(f"{scope.variation_id}@{scope.location_id}: {exc}")
            report.details.append({**detail, "success": False, "error": str(exc)})
            continue

        if entry_id is None:
            status = "already_reconciled" if variance is None else "requires_investigation"
            report.details.append({**detail, "success": False, "skipped": status})
            continue

        report.fixed += 1
        report.details.append(
            {
                **detail,
                "variance": str(variance.variance),
                "success": True,
                "stock_entry_id": entry_id,
            }
        )
    return report


@dataclass
class VarianceAnalysis:
    missing_entries: bool = False
    unusual_patterns: list[str] = field(default_factory=list)
    suspected_causes: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VarianceInvestigation:
    scope: StockScope
    variance: VarianceDetection | None
    entries: list[StockLedgerEntry]
    analysis: VarianceAnalysis


def _analyze(variance: VarianceDetection, entries: list[StockLedgerEntry]) -> VarianceAnalysis:
    analysis = VarianceAnalysis()
    tolerance = settings.reconciliation_tolerance

    if not entries and variance.system_balance > 0:
        analysis.missing_entries = True
        analysis.suspected_causes.append("Stock exists but no ledger entries were found")
        analysis.recommendations.append("Review the opening stock setup")

    # entries are newest first
    chronological = list(reversed(entries))
    for previous, entry in zip(chronological, chronological[1:]):
        expected = to_quantity(previous.balance_after) + to_quantity(entry.quantity_delta)
        recorded = to_quantity(entry.balance_after)
        if not within_tolerance(expected, recorded, tolerance):
            analysis.unusual_patterns.append(
                f"Balance mismatch at {ensure_utc(entry.created_at).isoformat()}: "
                f"expected {expected}, found {recorded}"
            )
        gap_days = (ensure_utc(entry.created_at) - ensure_utc(previous.created_at)).days
        if gap_days > INVESTIGATION_GAP_DAYS:
            analysis.unusual_patterns.append(
                f"Large time gap: {gap_days} days between "
                f"{ensure_utc(previous.created_at).isoformat()} and {ensure_utc(entry.created_at).isoformat()}"
            )

    negative = [entry for entry in entries if to_quantity(entry.balance_after) < 0]
    if negative:
        analysis.unusual_patterns.append(f"{len(negative)} entries with a negative balance")
        analysis.suspected_causes.append("Stock left the location without sufficient stock on hand")
        analysis.recommendations.append("Review sales and keep negative stock disabled")

    adjustments = [entry for entry in entries if entry.type == LedgerEntryType.ADJUSTMENT.value]
    if len(adjustments) > INVESTIGATION_MAX_ADJUSTMENTS:
        analysis.unusual_patterns.append(f"High number of adjustments: {len(adjustments)}")
        analysis.suspected_causes.append("Frequent manual adjustments may hide an underlying process issue")
        analysis.recommendations.append("Review the inventory handling process")

    if variance.variance_type == "shortage":
        analysis.recommendations.append("Check for unrecorded sales or wastage")
        analysis.recommendations.append("Review shrinkage policies")
    else:
        analysis.recommendations.append("Check for unrecorded purchases or returns")
        analysis.recommendations.append("Verify physical count accuracy")

    if not analysis.unusual_patterns and not analysis.missing_entries:
        analysis.suspected_causes.append("No obvious ledger anomalies detected")
        analysis.recommendations.append("Perform a physical count")
        analysis.recommendations.append("Review the opening stock setup")
    return analysis


def investigate_variance(
    db: Session,
    scope: StockScope,
    *,
    days_back: int = 90,
    clock: Clock = system_clock,
) -> VarianceInvestigation:
    """Variance for one scope with its recent ledger entries and a rule-based analysis. Read-only."""
    scope.validate()
    apply_report_timeout(db)
    projection = db.execute(
        select(StockProjection)
        .where(*scope.projection_clauses())
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    variance = _detect(db, projection, recent_since=_recent_since(clock)) if projection is not None else None
    if variance is None:
        return VarianceInvestigation(
            scope=scope,
            variance=None,
            entries=[],
            analysis=VarianceAnalysis(
                suspected_causes=["No variance detected"],
                recommendations=["No action required"],
            ),
        )

    since = to_storage(clock.now() - timedelta(days=days_back))
    entries = list(
        db.execute(
            select(StockLedgerEntry)
            .where(*scope.ledger_clauses(), StockLedgerEntry.created_at >= since)
            .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
            .limit(INVESTIGATION_ENTRY_LIMIT)
        ).scalars().all()
    )
    return VarianceInvestigation(scope=scope, variance=variance, entries=entries, analysis=_analyze(variance, entries))
