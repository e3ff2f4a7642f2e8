from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fleetops.auth import Principal, get_current_principal
from fleetops.capabilities import Capabilities
from fleetops.config import Settings
from fleetops.db import get_db
from fleetops.dependencies import get_capabilities, get_settings
from fleetops.schemas import (
    AdvanceClose,
    AdvanceCreate,
    CashAdvanceOut,
    CashExpenseOut,
    ExpenseAuditOut,
    ExpenseCreate,
    NotesBody,
    ReasonBody,
    ResolveAppealBody,
    TripOut,
)
from fleetops.services.cash_advance_service import (
    close_advance,
    create_advance,
    get_advance_for_principal,
    list_advance_expenses,
    list_advances,
    reopen_advance,
    submit_for_review,
    summarize_advances,
)
from fleetops.services.cash_expense_service import (
    ExpenseInput,
    appeal_expense,
    approve_expense,
    create_expense,
    get_expense_for_principal,
    list_expense_audit,
    list_expenses,
    reject_expense,
    reopen_expense,
    resolve_appeal,
    summarize_expenses,
)
from fleetops.services.guards import parse_optional_uuid, parse_uuid
from fleetops.services.reconciliation_service import advance_deficit_report, trip_finance_summary
from fleetops.services.trip_finance_service import close_trip_finance, open_trip_finance_review

router = APIRouter(prefix='/cash', tags=['cash'])


def _expense_payload(message: str, expense) -> dict:
    return {'message': message, 'expense': CashExpenseOut.model_validate(expense)}


# Advances


@router.post('/advances', status_code=201)
def create_advance_endpoint(
    body: AdvanceCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    advance = create_advance(
        db,
        principal=principal,
        field_supervisor_id=parse_uuid(body.field_supervisor_id, 'field_supervisor_id'),
        amount=body.amount,
    )
    db.commit()
    return {'message': 'Cash advance created', 'cash_advance': CashAdvanceOut.model_validate(advance)}


@router.get('/advances')
def list_advances_endpoint(
    status: str | None = None,
    q: str | None = None,
    page: int | None = None,
    page_size: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    result = list_advances(
        db,
        principal=principal,
        status=status,
        q=q,
        page=page,
        page_size=page_size,
        default_page_size=config.default_page_size,
        max_page_size=config.max_page_size,
    )
    result['items'] = [CashAdvanceOut.model_validate(item) for item in result['items']]
    return result


@router.get('/advances/summary')
def summarize_advances_endpoint(
    status: str | None = None,
    q: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return summarize_advances(db, principal=principal, status=status, q=q)


@router.get('/advances/{advance_id}')
def get_advance_endpoint(
    advance_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    advance = get_advance_for_principal(db, principal=principal, advance_id=parse_uuid(advance_id, 'advance_id'))
    return {'cash_advance': CashAdvanceOut.model_validate(advance)}


@router.get('/advances/{advance_id}/expenses')
def list_advance_expenses_endpoint(
    advance_id: str,
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    expenses = list_advance_expenses(
        db, principal=principal, advance_id=parse_uuid(advance_id, 'advance_id'), status=status
    )
    return {'items': [CashExpenseOut.model_validate(expense) for expense in expenses]}


@router.post('/advances/{advance_id}/submit-review')
def submit_review_endpoint(
    advance_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    advance = submit_for_review(db, principal=principal, advance_id=parse_uuid(advance_id, 'advance_id'))
    db.commit()
    return {'message': 'Cash advance moved to review', 'cash_advance': CashAdvanceOut.model_validate(advance)}


@router.post('/advances/{advance_id}/close')
def close_advance_endpoint(
    advance_id: str,
    body: AdvanceClose,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    advance, totals = close_advance(
        db,
        principal=principal,
        advance_id=parse_uuid(advance_id, 'advance_id'),
        settlement_type=body.settlement_type,
        amount=body.amount,
        reference=body.reference,
        notes=body.notes,
    )
    db.commit()
    return {
        'message': 'Cash advance closed',
        'cash_advance': CashAdvanceOut.model_validate(advance),
        'totals': totals.as_dict(),
    }


@router.post('/advances/{advance_id}/reopen')
def reopen_advance_endpoint(
    advance_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    advance = reopen_advance(db, principal=principal, advance_id=parse_uuid(advance_id, 'advance_id'))
    db.commit()
    return {'message': 'Cash advance reopened', 'cash_advance': CashAdvanceOut.model_validate(advance)}


# Expenses


@router.post('/expenses', status_code=201)
def create_expense_endpoint(
    body: ExpenseCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    data = ExpenseInput(
        expense_type=body.expense_type,
        amount=body.amount,
        payment_source=body.payment_source or body.expense_source,
        cash_advance_id=body.cash_advance_id,
        trip_id=body.trip_id,
        vehicle_id=body.vehicle_id,
        maintenance_work_order_id=body.maintenance_work_order_id,
        notes=body.notes,
        receipt_url=body.receipt_url,
        vendor_name=body.vendor_name,
        invoice_no=body.invoice_no,
        invoice_date=body.invoice_date,
        paid_method=body.paid_method,
        payment_ref=body.payment_ref,
        vat_amount=body.vat_amount,
        invoice_total=body.invoice_total,
    )
    expense = create_expense(db, principal=principal, data=data)
    db.commit()
    return _expense_payload('Expense created', expense)


@router.get('/expenses')
def list_expenses_endpoint(
    status: str | None = None,
    payment_source: str | None = None,
    q: str | None = None,
    page: int | None = None,
    page_size: int | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
):
    result = list_expenses(
        db,
        principal=principal,
        status=status,
        payment_source=payment_source,
        q=q,
        page=page,
        page_size=page_size,
        default_page_size=config.default_page_size,
        max_page_size=config.max_page_size,
    )
    result['items'] = [CashExpenseOut.model_validate(item) for item in result['items']]
    return result


@router.get('/expenses/summary')
def summarize_expenses_endpoint(
    status: str | None = None,
    payment_source: str | None = None,
    q: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return summarize_expenses(db, principal=principal, status=status, payment_source=payment_source, q=q)


@router.get('/expenses/{expense_id}')
def get_expense_endpoint(
    expense_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    expense = get_expense_for_principal(db, principal=principal, expense_id=parse_uuid(expense_id, 'expense_id'))
    return {'expense': CashExpenseOut.model_validate(expense)}


@router.get('/expenses/{expense_id}/audit')
def expense_audit_endpoint(
    expense_id: str,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    result = list_expense_audit(
        db, principal=principal, capabilities=capabilities, expense_id=parse_uuid(expense_id, 'expense_id')
    )
    result['items'] = [ExpenseAuditOut.model_validate(row) for row in result['items']]
    return result


@router.post('/expenses/{expense_id}/approve')
def approve_expense_endpoint(
    expense_id: str,
    body: NotesBody | None = None,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    expense = approve_expense(
        db,
        principal=principal,
        capabilities=capabilities,
        expense_id=parse_uuid(expense_id, 'expense_id'),
        notes=body.notes if body else None,
    )
    db.commit()
    return _expense_payload('Expense approved', expense)


@router.post('/expenses/{expense_id}/reject')
def reject_expense_endpoint(
    expense_id: str,
    body: ReasonBody,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    expense = reject_expense(
        db,
        principal=principal,
        capabilities=capabilities,
        expense_id=parse_uuid(expense_id, 'expense_id'),
        reason=body.text,
    )
    db.commit()
    return _expense_payload('Expense rejected', expense)


@router.post('/expenses/{expense_id}/appeal')
def appeal_expense_endpoint(
    expense_id: str,
    body: ReasonBody,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    expense = appeal_expense(
        db,
        principal=principal,
        capabilities=capabilities,
        expense_id=parse_uuid(expense_id, 'expense_id'),
        reason=body.text,
    )
    db.commit()
    return _expense_payload('Appeal submitted', expense)


@router.post('/expenses/{expense_id}/resolve-appeal')
def resolve_appeal_endpoint(
    expense_id: str,
    body: ResolveAppealBody,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    expense = resolve_appeal(
        db,
        principal=principal,
        capabilities=capabilities,
        expense_id=parse_uuid(expense_id, 'expense_id'),
        decision=body.decision,
        reason=body.text,
    )
    db.commit()
    return _expense_payload('Appeal resolved', expense)


@router.post('/expenses/{expense_id}/reopen')
def reopen_expense_endpoint(
    expense_id: str,
    body: NotesBody | None = None,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    expense = reopen_expense(
        db,
        principal=principal,
        capabilities=capabilities,
        expense_id=parse_uuid(expense_id, 'expense_id'),
        notes=body.notes if body else None,
    )
    db.commit()
    return _expense_payload('Expense reopened', expense)


# Reports and trip finance


@router.get('/reports/supervisor-deficit')
def supervisor_deficit_endpoint(
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return advance_deficit_report(db, principal=principal, status=status)


@router.get('/trips/finance-summary')
def trip_finance_summary_endpoint(
    trip_id: str | None = None,
    status: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return trip_finance_summary(
        db, principal=principal, trip_id=parse_optional_uuid(trip_id, 'trip_id'), status=status
    )


@router.post('/trips/{trip_id}/open-review')
def open_trip_review_endpoint(
    trip_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    trip = open_trip_finance_review(db, principal=principal, trip_id=parse_uuid(trip_id, 'trip_id'))
    db.commit()
    return {'message': 'Trip finance review opened', 'trip': TripOut.model_validate(trip)}


@router.post('/trips/{trip_id}/close-finance')
def close_trip_finance_endpoint(
    trip_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    trip = close_trip_finance(db, principal=principal, trip_id=parse_uuid(trip_id, 'trip_id'))
    db.commit()
    return {'message': 'Trip finance closed', 'trip': TripOut.model_validate(trip)}
