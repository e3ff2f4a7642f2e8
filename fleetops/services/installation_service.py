from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fleetops.auth import Principal
from fleetops.capabilities import Capabilities
from fleetops.errors import ConflictError, NotFoundError, ValidationError
from fleetops.models import (
    BulkPartIssue,
    InventoryIssue,
    InventoryIssueLine,
    InventoryIssueStatus,
    PartItem,
    PartItemStatus,
    WorkOrderInstallation,
    WorkOrderStatus,
)
from fleetops.services.collaborators import ensure_work_order_accepts_parts, get_work_order
from fleetops.services.guards import (
    _now,
    clean_text,
    conditional_update,
    parse_optional_uuid,
    parse_uuid,
    quantity,
    to_decimal,
)

logger = logging.getLogger(__name__)


@dataclass
class InstallationInput:
    part_id: Any
    qty_installed: Any = 1
    part_item_id: Any = None
    odometer: Any = None
    notes: str | None = None


def _serial_issued_to_work_order(db: Session, *, work_order_id: uuid.UUID, part_item_id: uuid.UUID) -> bool:
    row = db.execute(
        select(InventoryIssueLine.id)
        .join(InventoryIssue, InventoryIssue.id == InventoryIssueLine.issue_id)
        .where(
            InventoryIssueLine.part_item_id == part_item_id,
            InventoryIssue.work_order_id == work_order_id,
            InventoryIssue.status == InventoryIssueStatus.POSTED,
        )
        .limit(1)
    ).first()
    return row is not None


def bulk_available(db: Session, *, work_order_id: uuid.UUID, part_id: uuid.UUID) -> Decimal:
    """Quantity of a part that may still be installed by quantity on a work order.

    Everything issued to the work order (serial lines plus bulk quantities),
    minus everything already installed, minus serial units that are issued
    but still waiting for their own serial installation.
    """
    serial_issued_ids = (
        select(InventoryIssueLine.part_item_id)
        .join(InventoryIssue, InventoryIssue.id == InventoryIssueLine.issue_id)
        .where(
            InventoryIssue.work_order_id == work_order_id,
            InventoryIssue.status == InventoryIssueStatus.POSTED,
            InventoryIssueLine.part_id == part_id,
        )
    )
    serial_issued = db.execute(select(func.count()).select_from(serial_issued_ids.subquery())).scalar_one()
    bulk_issued = db.execute(
        select(func.coalesce(func.sum(BulkPartIssue.qty), 0)).where(
            BulkPartIssue.work_order_id == work_order_id,
            BulkPartIssue.part_id == part_id,
        )
    ).scalar_one()
    installed = db.execute(
        select(func.coalesce(func.sum(WorkOrderInstallation.qty_installed), 0)).where(
            WorkOrderInstallation.work_order_id == work_order_id,
            WorkOrderInstallation.part_id == part_id,
        )
    ).scalar_one()
    serial_outstanding = db.execute(
        select(func.count(PartItem.id)).where(
            PartItem.id.in_(serial_issued_ids),
            PartItem.status == PartItemStatus.ISSUED,
        )
    ).scalar_one()
    return quantity(Decimal(serial_issued) + Decimal(bulk_issued) - Decimal(installed) - Decimal(serial_outstanding))


def _parse_items(items: list[InstallationInput]) -> list[dict]:
    if not items:
        raise ValidationError('items is required', field='items')
    parsed = []
    seen: set[uuid.UUID] = set()
    for index, item in enumerate(items):
        part_id = parse_uuid(item.part_id, f'items[{index}].part_id')
        part_item_id = parse_optional_uuid(item.part_item_id, f'items[{index}].part_item_id')
        raw_qty = to_decimal(1 if item.qty_installed is None else item.qty_installed, f'items[{index}].qty_installed')
        qty = quantity(raw_qty)
        if qty <= 0:
            raise ValidationError(f'items[{index}].qty_installed must be > 0', field=f'items[{index}].qty_installed')
        if qty != raw_qty:
            raise ValidationError(
                f'items[{index}].qty_installed allows at most 3 decimals', field=f'items[{index}].qty_installed'
            )
        if part_item_id:
            if raw_qty != 1:
                raise ValidationError(
                    f'items[{index}].qty_installed must be 1 for serial items', field=f'items[{index}].qty_installed'
                )
            if part_item_id in seen:
                raise ValidationError(f'Duplicate part_item_id {part_item_id}', field=f'items[{index}].part_item_id')
            seen.add(part_item_id)
        odometer = None
        if item.odometer not in (None, ''):
            try:
                odometer = int(item.odometer)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f'items[{index}].odometer must be an integer', field=f'items[{index}].odometer') from exc
        parsed.append(
            {
                'part_id': part_id,
                'part_item_id': part_item_id,
                'qty': qty,
                'odometer': odometer,
                'notes': clean_text(item.notes),
            }
        )
    return parsed


def add_installations(
    db: Session,
    *,
    principal: Principal,
    capabilities: Capabilities,
    work_order_id: uuid.UUID,
    items: list[InstallationInput],
) -> list[WorkOrderInstallation]:
    parsed = _parse_items(items)
    work_order = get_work_order(db, work_order_id)
    ensure_work_order_accepts_parts(work_order)

    serial_ids = [item['part_item_id'] for item in parsed if item['part_item_id']]
    if serial_ids:
        units = {unit.id: unit for unit in db.execute(select(PartItem).where(PartItem.id.in_(serial_ids))).scalars()}
        for item in parsed:
            part_item_id = item['part_item_id']
            if not part_item_id:
                continue
            unit = units.get(part_item_id)
            if not unit:
                raise NotFoundError(f'part_item not found: {part_item_id}', part_item_id=str(part_item_id))
            if unit.part_id != item['part_id']:
                raise ValidationError(f'part_item {part_item_id} is not of part {item["part_id"]}', field='part_id')
            if unit.status != PartItemStatus.ISSUED:
                raise ConflictError(
                    f'part_item must be ISSUED to install (current: {unit.status.value})',
                    part_item_id=str(part_item_id),
                    current=unit.status.value,
                )
            if not _serial_issued_to_work_order(db, work_order_id=work_order.id, part_item_id=part_item_id):
                raise ConflictError(
                    'Part item not issued for this work order',
                    part_item_id=str(part_item_id),
                    work_order_id=str(work_order.id),
                )

    bulk_requested: dict[uuid.UUID, Decimal] = {}
    for item in parsed:
        if not item['part_item_id']:
            bulk_requested[item['part_id']] = bulk_requested.get(item['part_id'], Decimal('0')) + item['qty']
    if bulk_requested and not capabilities.bulk_inventory:
        raise ValidationError('Bulk inventory is not enabled, installations need part_item_id')
    for part_id, requested in bulk_requested.items():
        available = bulk_available(db, work_order_id=work_order.id, part_id=part_id)
        if requested > available:
            raise ConflictError(
                f'Installing more than was issued for part_id={part_id}. Requested {requested}, available {available}.',
                part_id=str(part_id),
                requested=str(requested),
                available=str(available),
            )

    now = _now()
    if serial_ids:
        conditional_update(
            db,
            PartItem,
            serial_ids,
            expected_status=PartItemStatus.ISSUED,
            values={
                'status': PartItemStatus.INSTALLED,
                'installed_vehicle_id': work_order.vehicle_id,
                'installed_at': now,
                'last_moved_at': now,
            },
        )

    rows = [
        WorkOrderInstallation(
            work_order_id=work_order.id,
            vehicle_id=work_order.vehicle_id,
            part_id=item['part_id'],
            part_item_id=item['part_item_id'],
            qty_installed=item['qty'],
            installed_by=principal.id,
            installed_at=now,
            odometer_at_install=item['odometer'],
            notes=item['notes'],
        )
        for item in parsed
    ]
    db.add_all(rows)

    if work_order.status == WorkOrderStatus.OPEN:
        work_order.status = WorkOrderStatus.IN_PROGRESS
        work_order.started_at = work_order.started_at or now
    work_order.updated_at = now
    db.flush()
    logger.info('Work order %s: %s installations recorded by %s', work_order.id, len(rows), principal.id)
    return rows


def list_installations(db: Session, *, work_order_id: uuid.UUID) -> list[WorkOrderInstallation]:
    get_work_order(db, work_order_id)
    return db.execute(
        select(WorkOrderInstallation)
        .where(WorkOrderInstallation.work_order_id == work_order_id)
        .order_by(WorkOrderInstallation.installed_at.asc(), WorkOrderInstallation.id.asc())
    ).scalars().all()
