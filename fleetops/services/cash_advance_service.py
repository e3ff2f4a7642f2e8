from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from fleetops.auth import PRIVILEGED_ROLES, Principal, is_privileged, require_role
from fleetops.errors import (
    AlreadyClosedError,
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
    SettlementType,
)
from fleetops.services.collaborators import get_active_user
from fleetops.services.guards import _now, clean_text, money, money_equal, page_bounds, to_decimal

logger = logging.getLogger(__name__)

APPROVED_STATUSES = (ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED)
OPEN_REVIEW_STATUSES = (ApprovalStatus.PENDING, ApprovalStatus.APPEALED)


@dataclass
class AdvanceTotals:
    advance_amount: Decimal
    total_approved: Decimal
    remaining: Decimal
    shortage: Decimal

    def as_dict(self) -> dict:
        return {key: str(value) for key, value in asdict(self).items()}


def _get_advance(db: Session, advance_id: uuid.UUID, *, for_update: bool = False) -> CashAdvance:
    stmt = select(CashAdvance).where(CashAdvance.id == advance_id)
    if for_update:
        stmt = stmt.with_for_update()
    advance = db.execute(stmt).scalar_one_or_none()
    if not advance:
        raise NotFoundError('Cash advance not found', cash_advance_id=str(advance_id))
    return advance


def _parse_settlement_type(value) -> SettlementType:
    try:
        return SettlementType(str(value or '').strip().upper())
    except ValueError as exc:
        raise ValidationError('settlement_type must be RETURN | SHORTAGE | ADJUSTMENT', field='settlement_type') from exc


def approved_total(db: Session, advance_id: uuid.UUID) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(CashExpense.amount), 0)).where(
            CashExpense.cash_advance_id == advance_id,
            CashExpense.approval_status.in_(APPROVED_STATUSES),
        )
    ).scalar_one()
    return money(total)


def compute_totals(advance_amount, total_approved) -> AdvanceTotals:
    advance_amount = money(advance_amount)
    total_approved = money(total_approved)
    return AdvanceTotals(
        advance_amount=advance_amount,
        total_approved=total_approved,
        remaining=advance_amount - total_approved,
        shortage=total_approved - advance_amount,
    )


def create_advance(db: Session, *, principal: Principal, field_supervisor_id: uuid.UUID, amount) -> CashAdvance:
    require_role(principal, *PRIVILEGED_ROLES, action='issue cash advances')
    amount = money(to_decimal(amount))
    if amount <= 0:
        raise ValidationError('amount must be greater than 0', field='amount')
    if not get_active_user(db, field_supervisor_id):
        raise ValidationError('Invalid field_supervisor_id', field='field_supervisor_id')

    advance = CashAdvance(
        amount=amount,
        status=CashAdvanceStatus.OPEN,
        field_supervisor_id=field_supervisor_id,
        issued_by=principal.id,
        created_at=_now(),
    )
    db.add(advance)
    db.flush()
    logger.info('Cash advance %s issued to %s for %s', advance.id, field_supervisor_id, advance.amount)
    return advance


def submit_for_review(db: Session, *, principal: Principal, advance_id: uuid.UUID) -> CashAdvance:
    require_role(principal, *PRIVILEGED_ROLES, action='submit advance for review')
    advance = _get_advance(db, advance_id, for_update=True)
    if advance.status == CashAdvanceStatus.CLOSED:
        raise AlreadyClosedError(
            'Cash advance already CLOSED', current=advance.status.value, required=[CashAdvanceStatus.OPEN.value]
        )
    if advance.status != CashAdvanceStatus.OPEN:
        raise WrongStateError(
            f'Cash advance must be OPEN to submit review (current: {advance.status.value})',
            current=advance.status.value,
            required=[CashAdvanceStatus.OPEN.value],
        )
    advance.status = CashAdvanceStatus.IN_REVIEW
    advance.updated_at = _now()
    db.flush()
    return advance


def close_advance(
    db: Session,
    *,
    principal: Principal,
    advance_id: uuid.UUID,
    settlement_type,
    amount,
    reference: str | None = None,
    notes: str | None = None,
) -> tuple[CashAdvance, AdvanceTotals]:
    require_role(principal, *PRIVILEGED_ROLES, action='close cash advances')
    settlement = _parse_settlement_type(settlement_type)
    amount = money(to_decimal(amount))
    if amount < 0:
        raise ValidationError('amount must be a number >= 0', field='amount')

    advance = _get_advance(db, advance_id, for_update=True)
    if advance.status == CashAdvanceStatus.CLOSED:
        raise AlreadyClosedError(
            'Cash advance already CLOSED', current=advance.status.value, required=[CashAdvanceStatus.IN_REVIEW.value]
        )
    if advance.status != CashAdvanceStatus.IN_REVIEW:
        raise WrongStateError(
            f'Cash advance must be IN_REVIEW before CLOSE (current: {advance.status.value})',
            current=advance.status.value,
            required=[CashAdvanceStatus.IN_REVIEW.value],
        )

    pending_count = db.execute(
        select(func.count(CashExpense.id)).where(
            CashExpense.cash_advance_id == advance.id,
            CashExpense.approval_status.in_(OPEN_REVIEW_STATUSES),
        )
    ).scalar_one()
    if pending_count:
        raise ConflictError(
            'Cannot close cash advance while there are pending/appealed expenses',
            pending_count=pending_count,
        )

    totals = compute_totals(advance.amount, approved_total(db, advance.id))
    if settlement == SettlementType.RETURN:
        if totals.remaining < 0:
            raise ValidationError(
                'Cannot RETURN when there is a shortage. Use SHORTAGE or ADJUSTMENT.',
                totals=totals.as_dict(),
            )
        if not money_equal(totals.remaining, amount):
            raise ValidationError(
                'For CLOSE with RETURN, amount must equal remaining exactly',
                totals=totals.as_dict(),
            )
    elif settlement == SettlementType.SHORTAGE:
        if totals.shortage <= 0:
            raise ValidationError(
                'No shortage detected. Use RETURN or ADJUSTMENT.',
                totals=totals.as_dict(),
            )
        if not money_equal(totals.shortage, amount):
            raise ValidationError(
                'For CLOSE with SHORTAGE, amount must equal shortage exactly',
                totals=totals.as_dict(),
            )

    now = _now()
    advance.status = CashAdvanceStatus.CLOSED
    advance.settlement_type = settlement
    advance.settlement_amount = amount
    advance.settlement_reference = clean_text(reference)
    advance.settlement_notes = clean_text(notes)
    advance.settled_at = now
    advance.settled_by = principal.id
    advance.updated_at = now
    db.flush()
    logger.info('Cash advance %s closed with %s %s', advance.id, settlement.value, advance.settlement_amount)
    return advance, totals


def reopen_advance(db: Session, *, principal: Principal, advance_id: uuid.UUID) -> CashAdvance:
    require_role(principal, *PRIVILEGED_ROLES, action='reopen cash advances')
    advance = _get_advance(db, advance_id, for_update=True)
    if advance.status != CashAdvanceStatus.CLOSED:
        raise WrongStateError(
            f'Only CLOSED advances can be reopened (current: {advance.status.value})',
            current=advance.status.value,
            required=[CashAdvanceStatus.CLOSED.value],
        )
    advance.status = CashAdvanceStatus.IN_REVIEW
    advance.settlement_type = None
    advance.settlement_amount = None
    advance.settlement_reference = None
    advance.settlement_notes = None
    advance.settled_at = None
    advance.settled_by = None
    advance.updated_at = _now()
    db.flush()
    logger.info('Cash advance %s reopened by %s', advance.id, principal.id)
    return advance


def get_advance_for_principal(db: Session, *, principal: Principal, advance_id: uuid.UUID) -> CashAdvance:
    advance = _get_advance(db, advance_id)
    if not is_privileged(principal) and advance.field_supervisor_id != principal.id:
        raise ForbiddenOwnershipError('Forbidden')
    return advance


def _advance_filters(principal: Principal, *, status: str | None, q: str | None) -> list:
    criteria = []
    if status:
        try:
            criteria.append(CashAdvance.status == CashAdvanceStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    if not is_privileged(principal):
        criteria.append(CashAdvance.field_supervisor_id == principal.id)
    term = clean_text(q)
    if term:
        pattern = f'%{term}%'
        criteria.append(or_(CashAdvance.settlement_reference.ilike(pattern), CashAdvance.settlement_notes.ilike(pattern)))
    return criteria


def list_advances(
    db: Session,
    *,
    principal: Principal,
    status: str | None = None,
    q: str | None = None,
    page: int | None = None,
    page_size: int | None = None,
    default_page_size: int = 50,
    max_page_size: int = 200,
) -> dict:
    criteria = _advance_filters(principal, status=status, q=q)
    page, size = page_bounds(page, page_size, default_size=default_page_size, max_size=max_page_size)
    total = db.execute(select(func.count(CashAdvance.id)).where(*criteria)).scalar_one()
    items = db.execute(
        select(CashAdvance)
        .where(*criteria)
        .order_by(CashAdvance.created_at.desc(), CashAdvance.id.asc())
        .offset((page - 1) * size)
        .limit(size)
    ).scalars().all()
    return {'items': items, 'total': total, 'page': page, 'page_size': size}


def summarize_advances(db: Session, *, principal: Principal, status: str | None = None, q: str | None = None) -> dict:
    criteria = _advance_filters(principal, status=status, q=q)
    rows = db.execute(select(CashAdvance.amount, CashAdvance.status).where(*criteria)).all()
    open_count = sum(1 for row in rows if row.status in (CashAdvanceStatus.OPEN, CashAdvanceStatus.IN_REVIEW))
    closed_count = sum(1 for row in rows if row.status == CashAdvanceStatus.CLOSED)
    return {
        'scope': 'ALL' if is_privileged(principal) else 'OWN_ONLY',
        'sum_amount': money(sum((row.amount for row in rows), Decimal('0'))),
        'count_all': len(rows),
        'open_count': open_count,
        'closed_count': closed_count,
    }


def list_advance_expenses(
    db: Session,
    *,
    principal: Principal,
    advance_id: uuid.UUID,
    status: str | None = None,
) -> list[CashExpense]:
    advance = get_advance_for_principal(db, principal=principal, advance_id=advance_id)
    stmt = select(CashExpense).where(CashExpense.cash_advance_id == advance.id)
    if status:
        try:
            stmt = stmt.where(CashExpense.approval_status == ApprovalStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    return db.execute(stmt.order_by(CashExpense.created_at.desc(), CashExpense.id.asc())).scalars().all()
