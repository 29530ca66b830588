from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.clock import Clock
from stockledger.core.deps import get_actor_id, get_business_id, get_clock, get_db
from stockledger.core.scope import StockScope
from stockledger.routers.stock import entry_out
from stockledger.schemas.reconciliation import (
    ChainBreakOut,
    ChainCheckOut,
    ReconciliationFixIn,
    ReconciliationFixOut,
    VarianceAnalysisOut,
    VarianceInvestigationOut,
    VarianceListOut,
    VarianceOut,
    VarianceSummaryOut,
)
from stockledger.services.audit_service import log_audit_event
from stockledger.services.reconciliation_service import (
    VarianceDetection,
    fix_ledger_variances,
    investigate_variance,
    reconcile_ledger_vs_projection,
    verify_scope_chain,
)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


def _variance_out(item: VarianceDetection) -> VarianceOut:
    return VarianceOut(
        **item.scope.as_dict(),
        ledger_balance=item.ledger_balance,
        system_balance=item.system_balance,
        variance=item.variance,
        variance_percentage=item.variance_percentage,
        variance_type=item.variance_type,
        unit_cost=item.unit_cost,
        variance_value=item.variance_value,
        requires_investigation=item.requires_investigation,
        auto_fixable=item.auto_fixable,
        total_transactions=item.total_transactions,
        recent_transaction_count=item.recent_transaction_count,
        suspicious_activity=item.suspicious_activity,
        last_entry_type=item.last_entry_type,
    )


@router.get(
    "/variances",
    response_model=VarianceListOut,
    summary="Scopes whose ledger balance disagrees with the projection",
    responses=error_responses(400, 422, 500),
)
def list_variances(
    location_id: str | None = Query(default=None, description="Optional location filter"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    clock: Clock = Depends(get_clock),
):
    variances = reconcile_ledger_vs_projection(db, business_id=business_id, location_id=location_id, clock=clock)
    items = [_variance_out(item) for item in variances]
    return VarianceListOut(
        items=items,
        summary=VarianceSummaryOut(
            total_variances=len(items),
            auto_fixable=sum(1 for item in items if item.auto_fixable),
            requires_investigation=sum(1 for item in items if item.requires_investigation),
            suspicious=sum(1 for item in items if item.suspicious_activity),
            total_variance_value=sum((abs(item.variance_value) for item in items), Decimal("0.00")),
        ),
    )


@router.post(
    "/fix",
    response_model=ReconciliationFixOut,
    summary="Re-anchor the ledger on the projection for auto-fixable variances",
    responses=error_responses(400, 422, 500),
)
def fix_variances(
    payload: ReconciliationFixIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    report = fix_ledger_variances(
        db,
        business_id=business_id,
        actor_id=actor_id,
        location_id=payload.location_id,
        variation_ids=payload.variation_ids,
        clock=clock,
    )
    log_audit_event(
        db,
        business_id=business_id,
        actor_id=actor_id,
        action="inventory_reconciliation.run",
        target_type="business",
        target_id=business_id,
        metadata_json={
            "location_id": payload.location_id,
            "fixed": report.fixed,
            "errors": len(report.errors),
        },
        clock=clock,
    )
    db.commit()
    return ReconciliationFixOut(fixed=report.fixed, errors=report.errors, details=report.details)


@router.get(
    "/chain",
    response_model=ChainCheckOut,
    summary="Replay one scope's ledger and report balance breaks",
    responses=error_responses(400, 422, 500),
)
def check_chain(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    scope = StockScope(
        business_id=business_id,
        product_id=product_id,
        variation_id=variation_id,
        location_id=location_id,
    )
    check = verify_scope_chain(db, scope)
    return ChainCheckOut(
        **scope.as_dict(),
        entry_count=check.entry_count,
        replayed_balance=check.replayed_balance,
        last_recorded_balance=check.last_recorded_balance,
        projection_balance=check.projection_balance,
        telescopes=check.telescopes,
        projection_agrees=check.projection_agrees,
        breaks=[
            ChainBreakOut(
                entry_id=item.entry_id,
                expected_balance=item.expected_balance,
                recorded_balance=item.recorded_balance,
            )
            for item in check.breaks
        ],
    )


@router.get(
    "/investigate",
    response_model=VarianceInvestigationOut,
    summary="Explain one scope's variance from its recent ledger entries",
    responses=error_responses(400, 422, 500),
)
def investigate(
    product_id: str = Query(..., min_length=1),
    variation_id: str = Query(..., min_length=1),
    location_id: str = Query(..., min_length=1),
    days_back: int = Query(default=90, ge=1, le=365, description="How far back to read ledger entries"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    clock: Clock = Depends(get_clock),
):
    scope = StockScope(
        business_id=business_id,
        product_id=product_id,
        variation_id=variation_id,
        location_id=location_id,
    )
    result = investigate_variance(db, scope, days_back=days_back, clock=clock)
    return VarianceInvestigationOut(
        **scope.as_dict(),
        variance=_variance_out(result.variance) if result.variance is not None else None,
        entries=[entry_out(entry) for entry in result.entries],
        analysis=VarianceAnalysisOut(
            missing_entries=result.analysis.missing_entries,
            unusual_patterns=result.analysis.unusual_patterns,
            suspected_causes=result.analysis.suspected_causes,
            recommendations=result.analysis.recommendations,
        ),
    )
