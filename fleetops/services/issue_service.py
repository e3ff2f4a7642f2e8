from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from fleetops.auth import Principal, Role, require_role
from fleetops.capabilities import Capabilities
from fleetops.errors import ConflictError, NotFoundError, ValidationError, WrongStateError
from fleetops.models import (
    BulkPartIssue,
    InventoryIssue,
    InventoryIssueLine,
    InventoryIssueStatus,
    InventoryRequestReservation,
    InventoryRequestStatus,
    PartItem,
    PartItemStatus,
)
from fleetops.services.collaborators import (
    ensure_work_order_accepts_parts,
    get_part,
    get_warehouse,
    get_work_order,
)
from fleetops.services.guards import (
    _now,
    clean_text,
    conditional_update,
    money,
    parse_optional_uuid,
    parse_uuid,
    quantity,
    to_decimal,
)
from fleetops.services.reservation_service import get_request, reserved_item_ids

logger = logging.getLogger(__name__)

REQUEST_ISSUE_ROLES = (Role.ADMIN, Role.STOREKEEPER, Role.ACCOUNTANT)
DIRECT_ISSUE_ROLES = (Role.ADMIN, Role.STOREKEEPER)
MIN_DIRECT_REASON_LENGTH = 5


@dataclass
class IssueLineInput:
    part_id: Any
    part_item_id: Any
    qty: Any = 1
    unit_cost: Any = None
    notes: str | None = None


def _require_issue_role(principal: Principal, request_id: uuid.UUID | None) -> None:
    if request_id:
        require_role(principal, *REQUEST_ISSUE_ROLES, action='issue stock against a request')
    else:
        require_role(principal, *DIRECT_ISSUE_ROLES, action='issue stock directly')


def _require_direct_reason(reason: str | None) -> str:
    text = clean_text(reason)
    if not text or len(text) < MIN_DIRECT_REASON_LENGTH:
        raise ValidationError(
            f'A reason of at least {MIN_DIRECT_REASON_LENGTH} characters is required for direct issues',
            field='reason',
        )
    return text


def _parse_lines(lines: list[IssueLineInput]) -> list[tuple[uuid.UUID, uuid.UUID, Decimal | None, str | None]]:
    if not lines:
        raise ValidationError('lines is required', field='lines')
    parsed = []
    seen: set[uuid.UUID] = set()
    for index, line in enumerate(lines):
        part_id = parse_uuid(line.part_id, f'lines[{index}].part_id')
        if line.part_item_id is None or str(line.part_item_id).strip() == '':
            raise ValidationError(f'lines[{index}].part_item_id is required (serial)', field=f'lines[{index}].part_item_id')
        part_item_id = parse_uuid(line.part_item_id, f'lines[{index}].part_item_id')
        qty = 1 if line.qty is None else line.qty
        if isinstance(qty, bool) or to_decimal(qty, f'lines[{index}].qty') != 1:
            raise ValidationError(f'lines[{index}].qty must be 1 for serial items', field=f'lines[{index}].qty')
        if part_item_id in seen:
            raise ValidationError(f'Duplicate part_item_id {part_item_id}', field=f'lines[{index}].part_item_id')
        seen.add(part_item_id)
        unit_cost = None if line.unit_cost in (None, '') else money(to_decimal(line.unit_cost, 'unit_cost'))
        parsed.append((part_id, part_item_id, unit_cost, clean_text(line.notes)))
    return parsed


def _validate_units(
    db: Session,
    *,
    warehouse_id: uuid.UUID,
    work_order_id: uuid.UUID,
    request_id: uuid.UUID | None,
    units: list[tuple[uuid.UUID, uuid.UUID]],
) -> dict[uuid.UUID, PartItem]:
    """Check every (part_id, part_item_id) pair against the issue rules.

    Request-linked issues take RESERVED units held for that request; direct
    issues take IN_STOCK units.
    """
    expected = PartItemStatus.IN_STOCK
    reserved: set[uuid.UUID] = set()
    if request_id:
        request = get_request(db, request_id)
        if request.status != InventoryRequestStatus.APPROVED:
            raise WrongStateError(
                f'Request must be APPROVED to issue (current: {request.status.value})',
                current=request.status.value,
                required=[InventoryRequestStatus.APPROVED.value],
            )
        if request.warehouse_id != warehouse_id:
            raise ValidationError('Issue warehouse does not match the request warehouse', field='warehouse_id')
        if request.work_order_id is not None and request.work_order_id != work_order_id:
            raise ValidationError('Issue work order does not match the request work order', field='work_order_id')
        expected = PartItemStatus.RESERVED
        reserved = set(reserved_item_ids(db, request.id))

    item_ids = [part_item_id for _, part_item_id in units]
    items = {
        item.id: item
        for item in db.execute(select(PartItem).where(PartItem.id.in_(item_ids))).scalars()
    }
    for part_id, part_item_id in units:
        item = items.get(part_item_id)
        if not item:
            raise ValidationError(f'part_item not found: {part_item_id}', field='part_item_id')
        if item.warehouse_id != warehouse_id:
            raise ValidationError(f'part_item not in this warehouse: {part_item_id}', field='part_item_id')
        if item.part_id != part_id:
            raise ValidationError(f'part_item {part_item_id} is not of part {part_id}', field='part_id')
        if item.status != expected:
            raise ConflictError(
                f'part_item not available (status={item.status.value}): {part_item_id}',
                part_item_id=str(part_item_id),
                current=item.status.value,
                required=[expected.value],
            )
        if request_id and part_item_id not in reserved:
            raise ConflictError(
                f'part_item {part_item_id} is not reserved for this request',
                part_item_id=str(part_item_id),
            )
    return items


def create_issue_draft(
    db: Session,
    *,
    principal: Principal,
    warehouse_id: Any,
    work_order_id: Any,
    lines: list[IssueLineInput],
    request_id: Any = None,
    reason: str | None = None,
    notes: str | None = None,
) -> InventoryIssue:
    warehouse_id = parse_uuid(warehouse_id, 'warehouse_id')
    work_order_id = parse_uuid(work_order_id, 'work_order_id')
    request_id = parse_optional_uuid(request_id, 'request_id')
    _require_issue_role(principal, request_id)
    direct_reason = None if request_id else _require_direct_reason(reason)
    parsed = _parse_lines(lines)

    get_warehouse(db, warehouse_id)
    ensure_work_order_accepts_parts(get_work_order(db, work_order_id))
    items = _validate_units(
        db,
        warehouse_id=warehouse_id,
        work_order_id=work_order_id,
        request_id=request_id,
        units=[(part_id, part_item_id) for part_id, part_item_id, _, _ in parsed],
    )

    issue = InventoryIssue(
        warehouse_id=warehouse_id,
        work_order_id=work_order_id,
        request_id=request_id,
        status=InventoryIssueStatus.DRAFT,
        direct_reason=direct_reason,
        notes=clean_text(notes),
        issued_by=principal.id,
        created_at=_now(),
        lines=[
            InventoryIssueLine(
                part_id=part_id,
                part_item_id=part_item_id,
                qty=1,
                unit_cost=unit_cost if unit_cost is not None else items[part_item_id].unit_cost,
                notes=line_notes,
                position=position,
            )
            for position, (part_id, part_item_id, unit_cost, line_notes) in enumerate(parsed)
        ],
    )
    db.add(issue)
    db.flush()
    return issue


def get_issue(db: Session, issue_id: uuid.UUID, *, for_update: bool = False) -> InventoryIssue:
    stmt = select(InventoryIssue).where(InventoryIssue.id == issue_id)
    if for_update:
        stmt = stmt.with_for_update()
    issue = db.execute(stmt).scalar_one_or_none()
    if not issue:
        raise NotFoundError('Issue not found', issue_id=str(issue_id))
    return issue


def post_issue(db: Session, *, principal: Principal, issue_id: uuid.UUID) -> InventoryIssue:
    issue = get_issue(db, issue_id, for_update=True)
    _require_issue_role(principal, issue.request_id)
    if issue.status != InventoryIssueStatus.DRAFT:
        raise WrongStateError(
            f'Only DRAFT issues can be posted (current: {issue.status.value})',
            current=issue.status.value,
            required=[InventoryIssueStatus.DRAFT.value],
        )
    if not issue.lines:
        raise ValidationError('Issue has no lines')
    if not issue.warehouse_id:
        raise ValidationError('Issue missing warehouse_id')
    if not issue.request_id:
        _require_direct_reason(issue.direct_reason)
    ensure_work_order_accepts_parts(get_work_order(db, issue.work_order_id))

    units = [(line.part_id, line.part_item_id) for line in issue.lines]
    _validate_units(
        db,
        warehouse_id=issue.warehouse_id,
        work_order_id=issue.work_order_id,
        request_id=issue.request_id,
        units=units,
    )

    now = _now()
    issued_ids = [part_item_id for _, part_item_id in units]
    conditional_update(
        db,
        PartItem,
        issued_ids,
        expected_status=PartItemStatus.RESERVED if issue.request_id else PartItemStatus.IN_STOCK,
        values={'status': PartItemStatus.ISSUED, 'last_moved_at': now},
        extra_criteria=[PartItem.warehouse_id == issue.warehouse_id],
    )
    issue.status = InventoryIssueStatus.POSTED
    issue.posted_by = principal.id
    issue.posted_at = now

    if issue.request_id:
        request = get_request(db, issue.request_id, for_update=True)
        issued_set = set(issued_ids)
        leftover = [item_id for item_id in reserved_item_ids(db, request.id) if item_id not in issued_set]
        db.execute(delete(InventoryRequestReservation).where(InventoryRequestReservation.request_id == request.id))
        if leftover:
            # Units reserved but not issued go back on the shelf with their reservations.
            conditional_update(
                db,
                PartItem,
                leftover,
                expected_status=PartItemStatus.RESERVED,
                values={'status': PartItemStatus.IN_STOCK, 'last_moved_at': now},
                strict=False,
            )
        request.status = InventoryRequestStatus.ISSUED
        request.updated_at = now

    db.flush()
    logger.info('Inventory issue %s posted, %s units issued to work order %s', issue.id, len(issued_ids), issue.work_order_id)
    return issue


def list_issues(
    db: Session,
    *,
    status: str | None = None,
    warehouse_id: Any = None,
    request_id: Any = None,
    work_order_id: Any = None,
    limit: int = 200,
) -> list[InventoryIssue]:
    stmt = select(InventoryIssue)
    if status:
        try:
            stmt = stmt.where(InventoryIssue.status == InventoryIssueStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    for column, value, field in (
        (InventoryIssue.warehouse_id, warehouse_id, 'warehouse_id'),
        (InventoryIssue.request_id, request_id, 'request_id'),
        (InventoryIssue.work_order_id, work_order_id, 'work_order_id'),
    ):
        parsed = parse_optional_uuid(value, field)
        if parsed:
            stmt = stmt.where(column == parsed)
    return db.execute(stmt.order_by(InventoryIssue.created_at.desc()).limit(limit)).scalars().all()


def record_bulk_issue(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    work_order_id: Any,
    warehouse_id: Any,
    part_id: Any,
    qty: Any,
    unit_cost: Any,
    notes: str | None = None,
) -> BulkPartIssue:
    require_role(principal, *DIRECT_ISSUE_ROLES, action='issue bulk parts')
    if not capabilities.bulk_inventory:
        raise ValidationError('Bulk inventory is not enabled')
    work_order_id = parse_uuid(work_order_id, 'work_order_id')
    warehouse_id = parse_uuid(warehouse_id, 'warehouse_id')
    part_id = parse_uuid(part_id, 'part_id')
    qty = quantity(to_decimal(qty, 'qty'))
    if qty <= 0:
        raise ValidationError('qty must be > 0', field='qty')
    unit_cost = money(to_decimal(unit_cost, 'unit_cost'))
    if unit_cost < 0:
        raise ValidationError('unit_cost must be >= 0', field='unit_cost')

    ensure_work_order_accepts_parts(get_work_order(db, work_order_id))
    get_warehouse(db, warehouse_id)
    get_part(db, part_id)

    row = BulkPartIssue(
        work_order_id=work_order_id,
        warehouse_id=warehouse_id,
        part_id=part_id,
        qty=qty,
        unit_cost=unit_cost,
        total_cost=money(qty * unit_cost),
        issued_by=principal.id,
        issued_at=_now(),
        notes=clean_text(notes),
    )
    db.add(row)
    db.flush()
    logger.info('Bulk issue %s: %s of part %s to work order %s', row.id, qty, part_id, work_order_id)
    return row
