from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fleetops.auth import Principal, get_current_principal
from fleetops.db import get_db
from fleetops.schemas import CashAdvanceOut
from fleetops.services.guards import parse_uuid
from fleetops.services.reconciliation_service import supervisor_ledger, trip_expense_totals

router = APIRouter(prefix='/reports', tags=['reports'])


@router.get('/trips/{trip_id}/finance')
def trip_finance_report(
    trip_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    report = trip_expense_totals(db, principal=principal, trip_id=parse_uuid(trip_id, 'trip_id'))
    report['linked_advances'] = [CashAdvanceOut.model_validate(advance) for advance in report['linked_advances']]
    return report


@router.get('/supervisors/{supervisor_id}/ledger')
def supervisor_ledger_report(
    supervisor_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    ledger = supervisor_ledger(db, principal=principal, supervisor_id=parse_uuid(supervisor_id, 'supervisor_id'))
    ledger['advances'] = [CashAdvanceOut.model_validate(advance) for advance in ledger['advances']]
    return ledger
