from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from stockledger.core.api_docs import error_responses
from stockledger.core.clock import Clock
from stockledger.core.deps import get_actor_id, get_business_id, get_clock, get_db
from stockledger.core.exceptions import LedgerError
from stockledger.core.scope import StockScope
from stockledger.models.stock import CorrectionStatus, InventoryCorrection
from stockledger.schemas.common import PaginationMeta
from stockledger.schemas.correction import (
    ApprovalOutcomeOut,
    BulkApproveIn,
    BulkApproveOut,
    CorrectionCreateIn,
    CorrectionListOut,
    CorrectionOut,
)
from stockledger.services.correction_service import (
    approve_correction,
    approve_corrections,
    create_correction,
    list_corrections,
)

router = APIRouter(prefix="/corrections", tags=["corrections"])


def _correction_out(correction: InventoryCorrection) -> CorrectionOut:
    return CorrectionOut(
        id=correction.id,
        business_id=correction.business_id,
        product_id=correction.product_id,
        variation_id=correction.variation_id,
        location_id=correction.location_id,
        system_count=correction.system_count,
        physical_count=correction.physical_count,
        difference=correction.difference,
        reason=correction.reason,
        remarks=correction.remarks,
        status=correction.status,
        baseline_entry_id=correction.baseline_entry_id,
        stock_entry_id=correction.stock_entry_id,
        created_by=correction.created_by,
        created_at=correction.created_at,
        approved_by=correction.approved_by,
        approved_at=correction.approved_at,
    )


@router.post(
    "",
    response_model=CorrectionOut,
    summary="Record a physical count as a pending correction",
    responses=error_responses(400, 422, 500),
)
def create_inventory_correction(
    payload: CorrectionCreateIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    scope = StockScope(
        business_id=business_id,
        product_id=payload.product_id,
        variation_id=payload.variation_id,
        location_id=payload.location_id,
    )
    try:
        correction = create_correction(
            db,
            scope,
            physical_count=payload.physical_count,
            reason=payload.reason,
            remarks=payload.remarks,
            created_by=actor_id,
            clock=clock,
        )
    except LedgerError:
        db.rollback()
        raise
    out = _correction_out(correction)
    db.commit()
    return out


@router.get(
    "",
    response_model=CorrectionListOut,
    summary="List inventory corrections",
    responses=error_responses(400, 422, 500),
)
def list_inventory_corrections(
    status: CorrectionStatus | None = Query(default=None, description="Optional status filter"),
    location_id: str | None = Query(default=None, description="Optional location filter"),
    limit: int = Query(default=50, ge=1, le=200, description="Page size"),
    offset: int = Query(default=0, ge=0, description="Pagination offset"),
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
):
    total, rows = list_corrections(
        db,
        business_id=business_id,
        status=status.value if status else None,
        location_id=location_id,
        limit=limit,
        offset=offset,
    )
    items = [_correction_out(row) for row in rows]
    count = len(items)
    return CorrectionListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
    )


@router.post(
    "/bulk-approve",
    response_model=BulkApproveOut,
    summary="Approve several corrections, each in its own transaction",
    responses=error_responses(400, 422, 500),
)
def bulk_approve_corrections(
    payload: BulkApproveIn,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    outcomes = approve_corrections(
        db,
        business_id=business_id,
        correction_ids=payload.correction_ids,
        approved_by=actor_id,
        clock=clock,
    )
    approved = sum(1 for outcome in outcomes if outcome.success)
    return BulkApproveOut(
        approved=approved,
        failed=len(outcomes) - approved,
        results=[
            ApprovalOutcomeOut(
                correction_id=outcome.correction_id,
                success=outcome.success,
                error=outcome.error,
                stock_entry_id=outcome.stock_entry_id,
            )
            for outcome in outcomes
        ],
    )


@router.post(
    "/{correction_id}/approve",
    response_model=CorrectionOut,
    summary="Approve a correction and book its difference to the ledger",
    responses=error_responses(400, 404, 409, 422, 500),
)
def approve_inventory_correction(
    correction_id: str,
    db: Session = Depends(get_db),
    business_id: str = Depends(get_business_id),
    actor_id: str = Depends(get_actor_id),
    clock: Clock = Depends(get_clock),
):
    try:
        correction = approve_correction(
            db,
            business_id=business_id,
            correction_id=correction_id,
            approved_by=actor_id,
            clock=clock,
        )
    except LedgerError:
        db.rollback()
        raise
    out = _correction_out(correction)
    db.commit()
    return out
