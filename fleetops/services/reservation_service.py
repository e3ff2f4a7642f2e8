from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from fleetops.auth import Principal, Role, require_role
from fleetops.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from fleetops.models import (
    InventoryRequest,
    InventoryRequestLine,
    InventoryRequestReservation,
    InventoryRequestStatus,
    PartItem,
    PartItemStatus,
)
from fleetops.services.collaborators import get_part, get_warehouse, get_work_order
from fleetops.services.guards import _now, clean_text, conditional_update, parse_optional_uuid, parse_uuid

logger = logging.getLogger(__name__)

STOCK_ROLES = (Role.ADMIN, Role.STOREKEEPER)


@dataclass
class RequestLineInput:
    part_id: Any
    needed_qty: Any
    notes: str | None = None


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be > 0', field=field)
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{field} must be > 0', field=field) from exc
    if number <= 0:
        raise ValidationError(f'{field} must be > 0', field=field)
    return number


def get_request(db: Session, request_id: uuid.UUID, *, for_update: bool = False) -> InventoryRequest:
    stmt = select(InventoryRequest).where(InventoryRequest.id == request_id)
    if for_update:
        stmt = stmt.with_for_update()
    request = db.execute(stmt).scalar_one_or_none()
    if not request:
        raise NotFoundError('Request not found', request_id=str(request_id))
    return request


def reserved_item_ids(db: Session, request_id: uuid.UUID) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(InventoryRequestReservation.part_item_id).where(InventoryRequestReservation.request_id == request_id)
        ).scalars()
    )


def create_request(
    db: Session,
    *,
    principal: Principal,
    warehouse_id: Any,
    lines: list[RequestLineInput],
    work_order_id: Any = None,
    notes: str | None = None,
) -> InventoryRequest:
    warehouse_id = parse_uuid(warehouse_id, 'warehouse_id')
    work_order_id = parse_optional_uuid(work_order_id, 'work_order_id')
    if not lines:
        raise ValidationError('lines is required', field='lines')
    parsed = []
    for index, line in enumerate(lines):
        part_id = parse_uuid(line.part_id, f'lines[{index}].part_id')
        needed_qty = _positive_int(line.needed_qty, f'lines[{index}].needed_qty')
        parsed.append((part_id, needed_qty, clean_text(line.notes)))

    get_warehouse(db, warehouse_id)
    if work_order_id:
        get_work_order(db, work_order_id)
    for part_id, _, _ in parsed:
        get_part(db, part_id)

    request = InventoryRequest(
        warehouse_id=warehouse_id,
        work_order_id=work_order_id,
        requested_by=principal.id,
        status=InventoryRequestStatus.PENDING,
        notes=clean_text(notes),
        created_at=_now(),
        lines=[
            InventoryRequestLine(part_id=part_id, needed_qty=needed_qty, notes=line_notes, position=position)
            for position, (part_id, needed_qty, line_notes) in enumerate(parsed)
        ],
    )
    db.add(request)
    db.flush()
    return request


def _fifo_candidates(db: Session, *, warehouse_id: uuid.UUID, part_id: uuid.UUID, limit: int) -> list[uuid.UUID]:
    return list(
        db.execute(
            select(PartItem.id)
            .where(
                PartItem.warehouse_id == warehouse_id,
                PartItem.part_id == part_id,
                PartItem.status == PartItemStatus.IN_STOCK,
            )
            .order_by(PartItem.received_at.asc(), PartItem.created_at.asc(), PartItem.id.asc())
            .limit(limit)
        ).scalars()
    )


def approve_request(db: Session, *, principal: Principal, request_id: uuid.UUID) -> tuple[InventoryRequest, list[dict]]:
    """Reserve FIFO stock for every line of a PENDING request.

    All units are picked before anything is written, so a shortfall on any
    line leaves the request and the stock untouched.
    """
    require_role(principal, *STOCK_ROLES, action='approve inventory requests')
    request = get_request(db, request_id, for_update=True)
    if request.status != InventoryRequestStatus.PENDING:
        raise WrongStateError(
            f'Only PENDING requests can be approved (current: {request.status.value})',
            current=request.status.value,
            required=[InventoryRequestStatus.PENDING.value],
        )
    if not request.lines:
        raise ValidationError('Request has no lines')
    existing = db.execute(
        select(func.count(InventoryRequestReservation.id)).where(InventoryRequestReservation.request_id == request.id)
    ).scalar_one()
    if existing:
        raise ConflictError('Request already has reservations', reservation_count=existing)

    needed_by_part: dict[uuid.UUID, int] = {}
    for line in request.lines:
        needed_by_part[line.part_id] = needed_by_part.get(line.part_id, 0) + line.needed_qty

    picks: dict[uuid.UUID, list[uuid.UUID]] = {}
    for part_id, needed in needed_by_part.items():
        picked = _fifo_candidates(db, warehouse_id=request.warehouse_id, part_id=part_id, limit=needed)
        if len(picked) < needed:
            raise InsufficientStockError(part_id=str(part_id), needed=needed, available=len(picked))
        picks[part_id] = picked

    now = _now()
    all_ids = [item_id for ids in picks.values() for item_id in ids]
    conditional_update(
        db,
        PartItem,
        all_ids,
        expected_status=PartItemStatus.IN_STOCK,
        values={'status': PartItemStatus.RESERVED, 'last_moved_at': now},
        extra_criteria=[PartItem.warehouse_id == request.warehouse_id],
    )
    db.add_all(
        InventoryRequestReservation(request_id=request.id, part_item_id=item_id, created_at=now) for item_id in all_ids
    )
    request.status = InventoryRequestStatus.APPROVED
    request.approved_by = principal.id
    request.approved_at = now
    request.updated_at = now
    db.flush()
    logger.info('Inventory request %s approved, %s units reserved', request.id, len(all_ids))
    reserved = [
        {'part_id': part_id, 'reserved_qty': len(ids), 'part_item_ids': ids} for part_id, ids in picks.items()
    ]
    return request, reserved


def _release_reservations(db: Session, request: InventoryRequest) -> int:
    item_ids = reserved_item_ids(db, request.id)
    if item_ids:
        conditional_update(
            db,
            PartItem,
            item_ids,
            expected_status=PartItemStatus.RESERVED,
            values={'status': PartItemStatus.IN_STOCK, 'last_moved_at': _now()},
            strict=False,
        )
        db.execute(delete(InventoryRequestReservation).where(InventoryRequestReservation.request_id == request.id))
    return len(item_ids)


def unreserve_request(db: Session, *, principal: Principal, request_id: uuid.UUID) -> tuple[InventoryRequest, int]:
    require_role(principal, *STOCK_ROLES, action='unreserve inventory requests')
    request = get_request(db, request_id, for_update=True)
    if request.status != InventoryRequestStatus.APPROVED:
        raise WrongStateError(
            f'Only APPROVED requests can be unreserved (current: {request.status.value})',
            current=request.status.value,
            required=[InventoryRequestStatus.APPROVED.value],
        )
    released = _release_reservations(db, request)
    request.status = InventoryRequestStatus.PENDING
    request.approved_by = None
    request.approved_at = None
    request.updated_at = _now()
    db.flush()
    logger.info('Inventory request %s unreserved, %s units released', request.id, released)
    return request, released


def reject_request(
    db: Session,
    *,
    principal: Principal,
    request_id: uuid.UUID,
    reason: str | None = None,
) -> InventoryRequest:
    require_role(principal, *STOCK_ROLES, action='reject inventory requests')
    request = get_request(db, request_id, for_update=True)
    if request.status == InventoryRequestStatus.APPROVED:
        _release_reservations(db, request)
    elif request.status != InventoryRequestStatus.PENDING:
        raise WrongStateError(
            f'Only PENDING/APPROVED requests can be rejected (current: {request.status.value})',
            current=request.status.value,
            required=[InventoryRequestStatus.PENDING.value, InventoryRequestStatus.APPROVED.value],
        )
    reason = clean_text(reason)
    if reason:
        marker = f'REJECT_REASON: {reason}'
        request.notes = f'{request.notes}\n{marker}' if request.notes else marker
    request.status = InventoryRequestStatus.REJECTED
    request.updated_at = _now()
    db.flush()
    logger.info('Inventory request %s rejected by %s', request.id, principal.id)
    return request


def list_requests(
    db: Session,
    *,
    status: str | None = None,
    warehouse_id: Any = None,
    work_order_id: Any = None,
    limit: int = 200,
) -> list[InventoryRequest]:
    stmt = select(InventoryRequest)
    if status:
        try:
            stmt = stmt.where(InventoryRequest.status == InventoryRequestStatus(status.strip().upper()))
        except ValueError as exc:
            raise ValidationError('Invalid status filter', field='status') from exc
    warehouse_id = parse_optional_uuid(warehouse_id, 'warehouse_id')
    if warehouse_id:
        stmt = stmt.where(InventoryRequest.warehouse_id == warehouse_id)
    work_order_id = parse_optional_uuid(work_order_id, 'work_order_id')
    if work_order_id:
        stmt = stmt.where(InventoryRequest.work_order_id == work_order_id)
    return db.execute(stmt.order_by(InventoryRequest.created_at.desc()).limit(limit)).scalars().all()
