"""Read-only money and parts reports.

Nothing in this module writes. Money is rounded to cents, bulk quantities to
thousandths, both ROUND_HALF_UP.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fleetops.auth import PRIVILEGED_ROLES, Principal, is_privileged, require_role
from fleetops.capabilities import Capabilities
from fleetops.errors import ForbiddenOwnershipError, NotFoundError, ValidationError
from fleetops.models import (
    ApprovalStatus,
    BulkPartIssue,
    CashAdvance,
    CashAdvanceStatus,
    CashExpense,
    InventoryIssue,
    InventoryIssueLine,
    InventoryIssueStatus,
    PaymentSource,
    Trip,
    TripFinancialStatus,
    User,
    WorkOrderInstallation,
)
from fleetops.services.collaborators import get_trip, get_work_order, supervisor_assigned_to_trip
from fleetops.services.guards import money, quantity

ZERO = Decimal('0')
BUCKETS = ('APPROVED', 'PENDING', 'REJECTED')


def status_bucket(status: ApprovalStatus) -> str:
    if status in (ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED):
        return 'APPROVED'
    if status in (ApprovalStatus.PENDING, ApprovalStatus.APPEALED):
        return 'PENDING'
    return 'REJECTED'


def _balance(net: Decimal) -> dict:
    net = money(net)
    return {'remaining': max(ZERO, net), 'shortage': max(ZERO, -net), 'net': net}


def advance_deficit_report(db: Session, *, principal: Principal, status: str | None = None) -> dict:
    require_role(principal, *PRIVILEGED_ROLES, action='view the deficit report')
    stmt = select(CashAdvance, User.full_name).join(User, User.id == CashAdvance.field_supervisor_id)
    if status:
        try:
            stmt = stmt.where(CashAdvance.status == CashAdvanceStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    rows = db.execute(stmt.order_by(CashAdvance.created_at.desc(), CashAdvance.id.asc())).all()

    advance_ids = [advance.id for advance, _ in rows]
    spent: dict[uuid.UUID, Decimal] = {}
    if advance_ids:
        spent = {
            advance_id: total
            for advance_id, total in db.execute(
                select(CashExpense.cash_advance_id, func.sum(CashExpense.amount))
                .where(
                    CashExpense.cash_advance_id.in_(advance_ids),
                    CashExpense.approval_status.in_([ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED]),
                )
                .group_by(CashExpense.cash_advance_id)
            ).all()
        }

    items = []
    for advance, supervisor_name in rows:
        amount = money(advance.amount)
        approved_spent = money(spent.get(advance.id, ZERO))
        deficit = approved_spent - amount
        items.append(
            {
                'cash_advance_id': advance.id,
                'supervisor_id': advance.field_supervisor_id,
                'supervisor_name': supervisor_name,
                'status': advance.status.value,
                'advance_amount': amount,
                'approved_spent': approved_spent,
                'remaining': amount - approved_spent,
                'shortage': max(ZERO, deficit),
                'deficit': deficit,
                'created_at': advance.created_at,
            }
        )
    return {'items': items, 'total': len(items), 'status': status.strip().upper() if status else None}


def supervisor_ledger(db: Session, *, principal: Principal, supervisor_id: uuid.UUID) -> dict:
    if not is_privileged(principal) and principal.id != supervisor_id:
        raise ForbiddenOwnershipError('Forbidden')
    supervisor = db.get(User, supervisor_id)
    if not supervisor:
        raise NotFoundError('Supervisor not found', supervisor_id=str(supervisor_id))

    advances = db.execute(
        select(CashAdvance)
        .where(CashAdvance.field_supervisor_id == supervisor_id)
        .order_by(CashAdvance.created_at.desc(), CashAdvance.id.asc())
    ).scalars().all()
    total_advances = money(sum((advance.amount for advance in advances), ZERO))

    totals_by_bucket = {bucket: ZERO for bucket in BUCKETS}
    if advances:
        for approval_status, amount in db.execute(
            select(CashExpense.approval_status, func.sum(CashExpense.amount))
            .where(
                CashExpense.cash_advance_id.in_([advance.id for advance in advances]),
                CashExpense.payment_source == PaymentSource.ADVANCE,
            )
            .group_by(CashExpense.approval_status)
        ).all():
            bucket = status_bucket(approval_status)
            totals_by_bucket[bucket] = money(totals_by_bucket[bucket] + money(amount))

    return {
        'supervisor': {'id': supervisor.id, 'full_name': supervisor.full_name, 'role': supervisor.role.value},
        'totals': {
            'total_advances': total_advances,
            'total_approved': totals_by_bucket['APPROVED'],
            'total_pending': totals_by_bucket['PENDING'],
            'total_rejected': totals_by_bucket['REJECTED'],
        },
        'balance': _balance(total_advances - totals_by_bucket['APPROVED']),
        'advances': advances,
    }


def trip_expense_totals(db: Session, *, principal: Principal, trip_id: uuid.UUID) -> dict:
    trip = get_trip(db, trip_id)
    if not is_privileged(principal) and not supervisor_assigned_to_trip(
        db, trip_id=trip.id, supervisor_id=principal.id
    ):
        raise ForbiddenOwnershipError('Forbidden')

    by_source = {source.value: {bucket: ZERO for bucket in BUCKETS} for source in PaymentSource}
    by_type: dict[str, dict[str, Decimal]] = defaultdict(lambda: {bucket: ZERO for bucket in BUCKETS})
    for payment_source, expense_type, approval_status, amount in db.execute(
        select(
            CashExpense.payment_source,
            CashExpense.expense_type,
            CashExpense.approval_status,
            func.sum(CashExpense.amount),
        )
        .where(CashExpense.trip_id == trip.id)
        .group_by(CashExpense.payment_source, CashExpense.expense_type, CashExpense.approval_status)
    ).all():
        bucket = status_bucket(approval_status)
        by_source[payment_source.value][bucket] = money(by_source[payment_source.value][bucket] + money(amount))
        key = expense_type.upper()
        by_type[key][bucket] = money(by_type[key][bucket] + money(amount))

    totals = {
        f'total_{bucket.lower()}': money(sum((by_source[source][bucket] for source in by_source), ZERO))
        for bucket in BUCKETS
    }
    totals['approved_paid_from_advances'] = by_source[PaymentSource.ADVANCE.value]['APPROVED']
    totals['approved_paid_by_company'] = by_source[PaymentSource.COMPANY.value]['APPROVED']

    advance_ids = select(CashExpense.cash_advance_id).where(
        CashExpense.trip_id == trip.id, CashExpense.cash_advance_id.is_not(None)
    )
    linked_advances = db.execute(
        select(CashAdvance).where(CashAdvance.id.in_(advance_ids)).order_by(CashAdvance.created_at.asc())
    ).scalars().all()
    total_advances_linked = money(sum((advance.amount for advance in linked_advances), ZERO))

    return {
        'trip': {'id': trip.id, 'financial_status': trip.financial_status.value},
        'totals': totals,
        'by_payment_source': by_source,
        'grouped_by_expense_type': [
            {'expense_type': key, **values, 'total': money(sum(values.values(), ZERO))}
            for key, values in sorted(by_type.items())
        ],
        'linked_advances': linked_advances,
        'total_advances_linked': total_advances_linked,
        'balance': _balance(total_advances_linked - totals['approved_paid_from_advances']),
    }


def trip_finance_summary(
    db: Session,
    *,
    principal: Principal,
    trip_id: uuid.UUID | None = None,
    status: str | None = None,
) -> dict:
    if not is_privileged(principal) and trip_id is None:
        raise ForbiddenOwnershipError('Forbidden')
    if trip_id is not None and not is_privileged(principal):
        if not supervisor_assigned_to_trip(db, trip_id=trip_id, supervisor_id=principal.id):
            raise ForbiddenOwnershipError('Forbidden')

    stmt = select(Trip)
    if trip_id is not None:
        stmt = stmt.where(Trip.id == trip_id)
    if status:
        try:
            stmt = stmt.where(Trip.financial_status == TripFinancialStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    trips = db.execute(stmt.order_by(Trip.created_at.desc()).limit(2000)).scalars().all()

    sums: dict[uuid.UUID, dict[str, Decimal]] = defaultdict(lambda: {'ADVANCE': ZERO, 'COMPANY': ZERO})
    if trips:
        for row_trip_id, payment_source, amount in db.execute(
            select(CashExpense.trip_id, CashExpense.payment_source, func.sum(CashExpense.amount))
            .where(
                CashExpense.trip_id.in_([trip.id for trip in trips]),
                CashExpense.approval_status.in_([ApprovalStatus.APPROVED, ApprovalStatus.REAPPROVED]),
            )
            .group_by(CashExpense.trip_id, CashExpense.payment_source)
        ).all():
            sums[row_trip_id][payment_source.value] = money(amount)

    items = [
        {
            'trip_id': trip.id,
            'financial_status': trip.financial_status.value,
            'sum_approved_expenses': money(sums[trip.id]['ADVANCE'] + sums[trip.id]['COMPANY']),
            'sum_company': sums[trip.id]['COMPANY'],
            'sum_advance': sums[trip.id]['ADVANCE'],
        }
        for trip in trips
    ]
    return {'items': items, 'total': len(items)}


def work_order_parts_reconciliation(db: Session, *, capabilities: Capabilities, work_order_id: uuid.UUID) -> dict:
    """Compare what was issued to a work order with what was installed, per part."""
    work_order = get_work_order(db, work_order_id)
    degraded: list[str] = []

    issued: dict[uuid.UUID, dict[str, Decimal]] = defaultdict(lambda: {'qty': ZERO, 'cost': ZERO})
    for part_id, qty, cost in db.execute(
        select(
            InventoryIssueLine.part_id,
            func.sum(InventoryIssueLine.qty),
            func.sum(func.coalesce(InventoryIssueLine.unit_cost, 0) * InventoryIssueLine.qty),
        )
        .join(InventoryIssue, InventoryIssue.id == InventoryIssueLine.issue_id)
        .where(InventoryIssue.work_order_id == work_order.id, InventoryIssue.status == InventoryIssueStatus.POSTED)
        .group_by(InventoryIssueLine.part_id)
    ).all():
        issued[part_id]['qty'] += quantity(qty)
        issued[part_id]['cost'] += money(cost)

    bulk_filter = []
    if capabilities.bulk_inventory:
        for part_id, qty, cost in db.execute(
            select(BulkPartIssue.part_id, func.sum(BulkPartIssue.qty), func.sum(BulkPartIssue.total_cost))
            .where(BulkPartIssue.work_order_id == work_order.id)
            .group_by(BulkPartIssue.part_id)
        ).all():
            issued[part_id]['qty'] += quantity(qty)
            issued[part_id]['cost'] += money(cost)
    else:
        degraded.append('bulk_inventory')
        # Without bulk issue data, only serial installations can be compared.
        bulk_filter.append(WorkOrderInstallation.part_item_id.is_not(None))

    installed: dict[uuid.UUID, Decimal] = defaultdict(lambda: ZERO)
    for part_id, qty in db.execute(
        select(WorkOrderInstallation.part_id, func.sum(WorkOrderInstallation.qty_installed))
        .where(WorkOrderInstallation.work_order_id == work_order.id, *bulk_filter)
        .group_by(WorkOrderInstallation.part_id)
    ).all():
        installed[part_id] += quantity(qty)

    report = {'matched': [], 'issued_not_installed': [], 'installed_not_issued': []}
    for part_id in sorted(set(issued) | set(installed), key=str):
        issued_qty = quantity(issued[part_id]['qty']) if part_id in issued else quantity(ZERO)
        installed_qty = quantity(installed.get(part_id, ZERO))
        row = {
            'part_id': part_id,
            'issued_qty': issued_qty,
            'installed_qty': installed_qty,
            'issued_cost': money(issued[part_id]['cost']) if part_id in issued else money(ZERO),
        }
        delta = issued_qty - installed_qty
        if delta == 0:
            report['matched'].append(row)
        elif delta > 0:
            report['issued_not_installed'].append({**row, 'extra_issued_qty': delta})
        else:
            report['installed_not_issued'].append({**row, 'extra_installed_qty': -delta})

    return {
        'work_order': {'id': work_order.id, 'status': work_order.status.value, 'vehicle_id': work_order.vehicle_id},
        **report,
        'totals': {
            'issued_total_qty': quantity(sum((issued[p]['qty'] for p in issued), ZERO)),
            'installed_total_qty': quantity(sum(installed.values(), ZERO)),
            'parts_cost_total': money(sum((issued[p]['cost'] for p in issued), ZERO)),
            'mismatch_counts': {
                'matched': len(report['matched']),
                'issued_not_installed': len(report['issued_not_installed']),
                'installed_not_issued': len(report['installed_not_issued']),
            },
        },
        'degraded': degraded,
    }
