from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from fleetops.auth import PRIVILEGED_ROLES, Principal, is_privileged, require_role
from fleetops.capabilities import Capabilities
from fleetops.errors import (
    ConflictError,
    ForbiddenOwnershipError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from fleetops.models import (
    ApprovalStatus,
    CashAdvance,
    CashAdvanceStatus,
    CashExpense,
    MaintenanceWorkOrder,
    PaymentSource,
)
from fleetops.services.audit_service import list_audit_rows, log_expense_audit, snapshot_expense
from fleetops.services.collaborators import (
    get_trip,
    is_trip_financially_locked,
    supervisor_assigned_to_trip,
    vehicle_in_supervisor_portfolio,
)
from fleetops.services.guards import (
    _now,
    clean_text,
    money,
    page_bounds,
    parse_optional_uuid,
    to_decimal,
)

logger = logging.getLogger(__name__)

PAYMENT_SOURCE_ALIASES = {
    'ADVANCE': PaymentSource.ADVANCE,
    'CASH': PaymentSource.ADVANCE,
    'ADV': PaymentSource.ADVANCE,
    'COMPANY': PaymentSource.COMPANY,
    'CO': PaymentSource.COMPANY,
    'DIRECT': PaymentSource.COMPANY,
}


@dataclass
class ExpenseInput:
    expense_type: str | None
    amount: Any
    payment_source: str | None = None
    cash_advance_id: Any = None
    trip_id: Any = None
    vehicle_id: Any = None
    maintenance_work_order_id: Any = None
    notes: str | None = None
    receipt_url: str | None = None
    vendor_name: str | None = None
    invoice_no: str | None = None
    invoice_date: Any = None
    paid_method: str | None = None
    payment_ref: str | None = None
    vat_amount: Any = None
    invoice_total: Any = None


def normalize_payment_source(value) -> PaymentSource:
    if isinstance(value, PaymentSource):
        return value
    key = str(value or '').strip().upper()
    if not key:
        return PaymentSource.ADVANCE
    source = PAYMENT_SOURCE_ALIASES.get(key)
    if source is None:
        raise ValidationError(f'Unknown payment_source {value!r}', field='payment_source')
    return source


def _parse_invoice_date(value) -> date | None:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    # fromisoformat only accepts a trailing Z from Python 3.11 on.
    if raw[-1:] in ('Z', 'z'):
        raw = raw[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError as exc:
        raise ValidationError('Invalid invoice_date', field='invoice_date') from exc


def _optional_money(value, field: str) -> Decimal | None:
    if value is None or value == '':
        return None
    amount = money(to_decimal(value, field))
    if amount < 0:
        raise ValidationError(f'{field} must be >= 0', field=field)
    return amount


def _locked_advance_stmt(advance_id: uuid.UUID):
    # Held until commit so a concurrent close sees the new PENDING expense.
    return select(CashAdvance).where(CashAdvance.id == advance_id).with_for_update()


def _ensure_trip_open(db: Session, trip_id: uuid.UUID) -> None:
    trip = get_trip(db, trip_id, missing_is_validation=True)
    if is_trip_financially_locked(trip):
        raise ConflictError(
            f'Trip is financially locked ({trip.financial_status.value}). No more expenses allowed.',
            trip_id=str(trip_id),
            financial_status=trip.financial_status.value,
        )


def create_expense(db: Session, *, principal: Principal, data: ExpenseInput) -> CashExpense:
    source = normalize_payment_source(data.payment_source)
    expense_type = clean_text(data.expense_type)
    if not expense_type:
        raise ValidationError('expense_type is required', field='expense_type')
    if data.amount is None or data.amount == '':
        raise ValidationError('amount must be > 0', field='amount')
    amount = money(to_decimal(data.amount))
    if amount <= 0:
        raise ValidationError('amount must be > 0', field='amount')

    trip_id = parse_optional_uuid(data.trip_id, 'trip_id')
    vehicle_id = parse_optional_uuid(data.vehicle_id, 'vehicle_id')
    work_order_id = parse_optional_uuid(data.maintenance_work_order_id, 'maintenance_work_order_id')
    cash_advance_id = parse_optional_uuid(data.cash_advance_id, 'cash_advance_id')

    work_order_vehicle_id = None
    if work_order_id:
        work_order = db.get(MaintenanceWorkOrder, work_order_id)
        if not work_order:
            raise ValidationError('Invalid maintenance_work_order_id', field='maintenance_work_order_id')
        work_order_vehicle_id = work_order.vehicle_id

    expense = CashExpense(
        payment_source=source,
        amount=amount,
        trip_id=trip_id,
        vehicle_id=vehicle_id or work_order_vehicle_id,
        maintenance_work_order_id=work_order_id,
        expense_type=expense_type,
        notes=clean_text(data.notes),
        receipt_url=clean_text(data.receipt_url),
        approval_status=ApprovalStatus.PENDING,
        created_by=principal.id,
        created_at=_now(),
    )

    if source == PaymentSource.COMPANY:
        require_role(principal, *PRIVILEGED_ROLES, action='create COMPANY expenses')
        if cash_advance_id:
            raise ValidationError('cash_advance_id must be omitted for COMPANY expenses', field='cash_advance_id')
        vendor_name = clean_text(data.vendor_name)
        if not vendor_name or len(vendor_name) < 2:
            raise ValidationError('vendor_name is required for COMPANY expenses', field='vendor_name')
        expense.invoice_date = _parse_invoice_date(data.invoice_date)
        if trip_id:
            _ensure_trip_open(db, trip_id)
        expense.vendor_name = vendor_name
        expense.invoice_no = clean_text(data.invoice_no)
        paid_method = clean_text(data.paid_method)
        expense.paid_method = paid_method.upper() if paid_method else None
        expense.payment_ref = clean_text(data.payment_ref)
        expense.vat_amount = _optional_money(data.vat_amount, 'vat_amount')
        expense.invoice_total = _optional_money(data.invoice_total, 'invoice_total')
    else:
        if not cash_advance_id:
            raise ValidationError(
                'cash_advance_id is required for ADVANCE expenses and must be uuid', field='cash_advance_id'
            )
        advance = db.execute(_locked_advance_stmt(cash_advance_id)).scalar_one_or_none()
        if not advance:
            raise NotFoundError('Cash advance not found', cash_advance_id=str(cash_advance_id))
        if advance.status != CashAdvanceStatus.OPEN:
            raise ValidationError(
                f'Cash advance is not OPEN (current: {advance.status.value})',
                field='cash_advance_id',
                current=advance.status.value,
            )
        if advance.field_supervisor_id != principal.id:
            raise ForbiddenOwnershipError('Only the assigned field supervisor can add ADVANCE expenses')
        if trip_id:
            _ensure_trip_open(db, trip_id)
            if not supervisor_assigned_to_trip(db, trip_id=trip_id, supervisor_id=principal.id, vehicle_id=vehicle_id):
                raise ForbiddenOwnershipError('You are not allowed to add expenses to this trip (not assigned to you).')
        elif vehicle_id:
            if not vehicle_in_supervisor_portfolio(db, vehicle_id=vehicle_id, supervisor_id=principal.id):
                raise ForbiddenOwnershipError(
                    'You are not allowed to add expenses to this vehicle (not in your portfolio).'
                )
        expense.cash_advance_id = advance.id

    db.add(expense)
    db.flush()
    logger.info('Cash expense %s created (%s, %s) by %s', expense.id, source.value, expense.amount, principal.id)
    return expense


def _get_expense(db: Session, expense_id: uuid.UUID, *, for_update: bool = False) -> CashExpense:
    stmt = select(CashExpense).where(CashExpense.id == expense_id)
    if for_update:
        stmt = stmt.with_for_update()
    expense = db.execute(stmt).scalar_one_or_none()
    if not expense:
        raise NotFoundError('Cash expense not found', expense_id=str(expense_id))
    return expense


def _advance_supervisor_id(db: Session, expense: CashExpense) -> uuid.UUID | None:
    if expense.cash_advance_id is None:
        return None
    return db.execute(
        select(CashAdvance.field_supervisor_id).where(CashAdvance.id == expense.cash_advance_id)
    ).scalar_one_or_none()


def _can_view(db: Session, principal: Principal, expense: CashExpense) -> bool:
    if is_privileged(principal) or expense.created_by == principal.id:
        return True
    return _advance_supervisor_id(db, expense) == principal.id


def _require_status(expense: CashExpense, allowed: tuple[ApprovalStatus, ...], message: str) -> None:
    if expense.approval_status not in allowed:
        raise WrongStateError(
            f'{message} (current: {expense.approval_status.value})',
            current=expense.approval_status.value,
            required=[status.value for status in allowed],
        )


def _require_reason(reason: str | None, field: str = 'reason') -> str:
    text = clean_text(reason)
    if not text:
        raise ValidationError(f'{field} is required', field=field)
    return text


def _apply(
    db: Session,
    capabilities: Capabilities,
    *,
    expense: CashExpense,
    principal: Principal,
    action: str,
    changes: dict[str, Any],
    notes: str | None,
) -> CashExpense:
    before = snapshot_expense(expense)
    for key, value in changes.items():
        setattr(expense, key, value)
    expense.updated_at = _now()
    db.flush()
    log_expense_audit(
        db,
        capabilities,
        expense_id=expense.id,
        action=action,
        actor_id=principal.id,
        before=before,
        after=snapshot_expense(expense),
        notes=notes,
    )
    logger.info('Cash expense %s %s by %s', expense.id, action, principal.id)
    return expense


def approve_expense(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
    notes: str | None = None,
) -> CashExpense:
    require_role(principal, *PRIVILEGED_ROLES, action='approve expenses')
    expense = _get_expense(db, expense_id, for_update=True)
    _require_status(
        expense,
        (ApprovalStatus.PENDING, ApprovalStatus.APPEALED),
        'Expense must be PENDING or APPEALED to approve',
    )
    reapproval = expense.approval_status == ApprovalStatus.APPEALED
    now = _now()
    return _apply(
        db,
        capabilities,
        expense=expense,
        principal=principal,
        action='REAPPROVE' if reapproval else 'APPROVE',
        changes={
            'approval_status': ApprovalStatus.REAPPROVED if reapproval else ApprovalStatus.APPROVED,
            'approved_at': now,
            'approved_by': principal.id,
            'rejected_at': None,
            'rejected_by': None,
            'rejection_reason': None,
            'resolved_at': now,
            'resolved_by': principal.id,
        },
        notes=clean_text(notes),
    )


def reject_expense(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
    reason: str | None,
) -> CashExpense:
    require_role(principal, *PRIVILEGED_ROLES, action='reject expenses')
    reason = _require_reason(reason)
    expense = _get_expense(db, expense_id, for_update=True)
    _require_status(
        expense,
        (ApprovalStatus.PENDING, ApprovalStatus.APPEALED),
        'Expense must be PENDING or APPEALED to reject',
    )
    now = _now()
    return _apply(
        db,
        capabilities,
        expense=expense,
        principal=principal,
        action='REJECT',
        changes={
            'approval_status': ApprovalStatus.REJECTED,
            'rejected_at': now,
            'rejected_by': principal.id,
            'rejection_reason': reason,
            'resolved_at': now,
            'resolved_by': principal.id,
        },
        notes=reason,
    )


def appeal_expense(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
    reason: str | None,
) -> CashExpense:
    reason = _require_reason(reason)
    expense = _get_expense(db, expense_id, for_update=True)
    _require_status(expense, (ApprovalStatus.REJECTED,), 'Only REJECTED expenses can be appealed')
    if not _can_view(db, principal, expense):
        raise ForbiddenOwnershipError('Only the owner, the advance supervisor or finance can appeal this expense')
    return _apply(
        db,
        capabilities,
        expense=expense,
        principal=principal,
        action='APPEAL',
        changes={
            'approval_status': ApprovalStatus.APPEALED,
            'appealed_at': _now(),
            'appealed_by': principal.id,
            'appeal_reason': reason,
            'resolved_at': None,
            'resolved_by': None,
        },
        notes=reason,
    )


def resolve_appeal(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
    decision: str,
    reason: str | None = None,
) -> CashExpense:
    require_role(principal, *PRIVILEGED_ROLES, action='resolve appeals')
    decision = str(decision or '').strip().upper()
    if decision not in {'APPROVE', 'REJECT'}:
        raise ValidationError('decision must be APPROVE | REJECT', field='decision')
    notes = clean_text(reason)
    if decision == 'REJECT':
        notes = _require_reason(reason)

    expense = _get_expense(db, expense_id, for_update=True)
    _require_status(expense, (ApprovalStatus.APPEALED,), 'Expense must be APPEALED to resolve')
    now = _now()
    if decision == 'APPROVE':
        changes = {
            'approval_status': ApprovalStatus.REAPPROVED,
            'approved_at': now,
            'approved_by': principal.id,
            'rejected_at': None,
            'rejected_by': None,
            'rejection_reason': None,
            'resolved_at': now,
            'resolved_by': principal.id,
        }
    else:
        # Appeal fields stay as history of the rejected appeal.
        changes = {
            'approval_status': ApprovalStatus.REJECTED,
            'rejected_at': now,
            'rejected_by': principal.id,
            'rejection_reason': notes,
            'resolved_at': now,
            'resolved_by': principal.id,
        }
    return _apply(
        db,
        capabilities,
        expense=expense,
        principal=principal,
        action=f'RESOLVE_APPEAL_{decision}',
        changes=changes,
        notes=notes,
    )


def reopen_expense(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
    notes: str | None = None,
) -> CashExpense:
    require_role(principal, *PRIVILEGED_ROLES, action='reopen rejected expenses')
    expense = _get_expense(db, expense_id, for_update=True)
    _require_status(expense, (ApprovalStatus.REJECTED,), 'Only REJECTED expenses can be reopened')
    return _apply(
        db,
        capabilities,
        expense=expense,
        principal=principal,
        action='REOPEN',
        changes={
            'approval_status': ApprovalStatus.PENDING,
            'rejected_at': None,
            'rejected_by': None,
            'rejection_reason': None,
            'appealed_at': None,
            'appealed_by': None,
            'appeal_reason': None,
            'resolved_at': None,
            'resolved_by': None,
        },
        notes=clean_text(notes),
    )


def get_expense_for_principal(db: Session, *, principal: Principal, expense_id: uuid.UUID) -> CashExpense:
    expense = _get_expense(db, expense_id)
    if not _can_view(db, principal, expense):
        raise ForbiddenOwnershipError('Forbidden')
    return expense


def _expense_filters(
    principal: Principal,
    *,
    status: str | None,
    payment_source: str | None,
    q: str | None,
) -> list:
    criteria = []
    if status:
        try:
            criteria.append(CashExpense.approval_status == ApprovalStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    if payment_source:
        criteria.append(CashExpense.payment_source == normalize_payment_source(payment_source))
    if not is_privileged(principal):
        criteria.append(CashExpense.created_by == principal.id)
    term = clean_text(q)
    if term:
        pattern = f'%{term}%'
        criteria.append(
            or_(
                CashExpense.expense_type.ilike(pattern),
                CashExpense.notes.ilike(pattern),
                CashExpense.vendor_name.ilike(pattern),
                CashExpense.invoice_no.ilike(pattern),
                CashExpense.payment_ref.ilike(pattern),
            )
        )
    return criteria


def list_expenses(
    db: Session,
    *,
    principal: Principal,
    status: str | None = None,
    payment_source: str | None = None,
    q: str | None = None,
    page: int | None = None,
    page_size: int | None = None,
    default_page_size: int = 50,
    max_page_size: int = 200,
) -> dict:
    criteria = _expense_filters(principal, status=status, payment_source=payment_source, q=q)
    page, size = page_bounds(page, page_size, default_size=default_page_size, max_size=max_page_size)
    total = db.execute(select(func.count(CashExpense.id)).where(*criteria)).scalar_one()
    items = db.execute(
        select(CashExpense)
        .where(*criteria)
        .order_by(CashExpense.created_at.desc(), CashExpense.id.asc())
        .offset((page - 1) * size)
        .limit(size)
    ).scalars().all()
    return {'items': items, 'total': total, 'page': page, 'page_size': size}


def summarize_expenses(
    db: Session,
    *,
    principal: Principal,
    status: str | None = None,
    payment_source: str | None = None,
    q: str | None = None,
) -> dict:
    criteria = _expense_filters(principal, status=status, payment_source=payment_source, q=q)
    groups = db.execute(
        select(CashExpense.approval_status, func.sum(CashExpense.amount), func.count(CashExpense.id))
        .where(*criteria)
        .group_by(CashExpense.approval_status)
    ).all()
    by_status = {row[0]: (money(row[1]), row[2]) for row in groups}

    def _sum(*statuses: ApprovalStatus) -> Decimal:
        return money(sum((by_status.get(s, (Decimal('0'), 0))[0] for s in statuses), Decimal('0')))

    def _count(*statuses: ApprovalStatus) -> int:
        return sum(by_status.get(s, (Decimal('0'), 0))[1] for s in statuses)

    return {
        'scope': 'ALL' if is_privileged(principal) else 'OWN_CREATED',
        'sum_all': _sum(*ApprovalStatus),
        'count_all': _count(*ApprovalStatus),
        'sum_approved': _sum(ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED),
        'count_approved': _count(ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED),
        'sum_pending': _sum(ApprovalStatus.PENDING),
        'count_pending': _count(ApprovalStatus.PENDING),
        'sum_rejected': _sum(ApprovalStatus.REJECTED),
        'count_rejected': _count(ApprovalStatus.REJECTED),
        'sum_appealed': _sum(ApprovalStatus.APPEALED),
        'count_appealed': _count(ApprovalStatus.APPEALED),
    }


def list_expense_audit(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    expense_id: uuid.UUID,
) -> dict:
    expense = get_expense_for_principal(db, principal=principal, expense_id=expense_id)
    if not capabilities.expense_audit:
        return {'items': [], 'note': 'Expense audit trail is not enabled'}
    return {'items': list_audit_rows(db, expense_id=expense.id), 'note': None}
