from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from fleetops.auth import Principal, Role, require_role
from fleetops.errors import ConflictError, ValidationError
from fleetops.models import InventoryReceipt, PartItem, PartItemStatus, ReceiptStatus
from fleetops.services.collaborators import get_part, get_warehouse
from fleetops.services.guards import _now, clean_text, money, parse_uuid, to_decimal

logger = logging.getLogger(__name__)

RECEIPT_ROLES = (Role.ADMIN, Role.STOREKEEPER, Role.ACCOUNTANT)


@dataclass
class ReceiptItemInput:
    part_id: Any
    internal_serial: str | None
    manufacturer_serial: str | None = None
    unit_cost: Any = None


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    dupes = []
    for value in values:
        if value in seen and value not in dupes:
            dupes.append(value)
        seen.add(value)
    return dupes


def receive_part_items(
    db: Session,
    *,
    principal: Principal,
    warehouse_id: Any,
    items: list[ReceiptItemInput],
    supplier_name: str | None = None,
    invoice_no: str | None = None,
    received_at: datetime | None = None,
) -> tuple[InventoryReceipt, list[PartItem]]:
    """Post a receipt in one step and put every received unit IN_STOCK."""
    require_role(principal, *RECEIPT_ROLES, action='receive stock')
    warehouse_id = parse_uuid(warehouse_id, 'warehouse_id')
    if not items:
        raise ValidationError('items is required', field='items')

    parsed = []
    for index, item in enumerate(items):
        part_id = parse_uuid(item.part_id, f'items[{index}].part_id')
        internal_serial = clean_text(item.internal_serial)
        if not internal_serial:
            raise ValidationError(f'items[{index}].internal_serial is required', field=f'items[{index}].internal_serial')
        unit_cost = None
        if item.unit_cost not in (None, ''):
            unit_cost = money(to_decimal(item.unit_cost, f'items[{index}].unit_cost'))
            if unit_cost < 0:
                raise ValidationError(f'items[{index}].unit_cost is invalid', field=f'items[{index}].unit_cost')
        parsed.append((part_id, internal_serial, clean_text(item.manufacturer_serial), unit_cost))

    internal = [row[1] for row in parsed]
    manufacturer = [row[2] for row in parsed if row[2]]
    dupes = _duplicates(internal) + _duplicates(manufacturer)
    if dupes:
        raise ConflictError(f'Duplicate serials in payload: {", ".join(dupes)}', serials=dupes)

    get_warehouse(db, warehouse_id)
    for part_id in {row[0] for row in parsed}:
        get_part(db, part_id)

    criteria = [PartItem.internal_serial.in_(internal)]
    if manufacturer:
        criteria.append(PartItem.manufacturer_serial.in_(manufacturer))
    existing = db.execute(
        select(PartItem.internal_serial, PartItem.manufacturer_serial).where(or_(*criteria))
    ).all()
    if existing:
        taken = sorted({value for row in existing for value in row if value and (value in internal or value in manufacturer)})
        raise ConflictError(f'Serials already received: {", ".join(taken)}', serials=taken)

    now = _now()
    receipt = InventoryReceipt(
        warehouse_id=warehouse_id,
        status=ReceiptStatus.POSTED,
        supplier_name=clean_text(supplier_name),
        invoice_no=clean_text(invoice_no),
        received_by=principal.id,
        created_at=now,
        posted_at=now,
    )
    db.add(receipt)
    db.flush()

    units = [
        PartItem(
            part_id=part_id,
            warehouse_id=warehouse_id,
            internal_serial=internal_serial,
            manufacturer_serial=manufacturer_serial,
            status=PartItemStatus.IN_STOCK,
            unit_cost=unit_cost,
            received_receipt_id=receipt.id,
            received_at=received_at or now,
            last_moved_at=now,
            created_at=now,
        )
        for part_id, internal_serial, manufacturer_serial, unit_cost in parsed
    ]
    db.add_all(units)
    db.flush()
    logger.info('Receipt %s posted with %s units into warehouse %s', receipt.id, len(units), warehouse_id)
    return receipt, units
