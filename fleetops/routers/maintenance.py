from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fleetops.auth import Principal, get_current_principal
from fleetops.capabilities import Capabilities
from fleetops.db import get_db
from fleetops.dependencies import get_capabilities
from fleetops.schemas import InstallationOut, InstallationsCreate
from fleetops.services.guards import parse_uuid
from fleetops.services.installation_service import InstallationInput, add_installations, list_installations
from fleetops.services.reconciliation_service import work_order_parts_reconciliation

router = APIRouter(prefix='/maintenance', tags=['maintenance'])


@router.post('/work-orders/{work_order_id}/installations', status_code=201)
def add_installations_endpoint(
    work_order_id: str,
    body: InstallationsCreate,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    rows = add_installations(
        db,
        principal=principal,
        capabilities=capabilities,
        work_order_id=parse_uuid(work_order_id, 'work_order_id'),
        items=[
            InstallationInput(
                part_id=item.part_id,
                part_item_id=item.part_item_id,
                qty_installed=item.qty_installed,
                odometer=item.odometer,
                notes=item.notes,
            )
            for item in body.items
        ],
    )
    db.commit()
    return {'message': 'Installations recorded', 'items': [InstallationOut.model_validate(row) for row in rows]}


@router.get('/work-orders/{work_order_id}/installations')
def list_installations_endpoint(
    work_order_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    rows = list_installations(db, work_order_id=parse_uuid(work_order_id, 'work_order_id'))
    return {'items': [InstallationOut.model_validate(row) for row in rows]}


@router.get('/work-orders/{work_order_id}/parts-reconciliation')
def parts_reconciliation_endpoint(
    work_order_id: str,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    return work_order_parts_reconciliation(
        db, capabilities=capabilities, work_order_id=parse_uuid(work_order_id, 'work_order_id')
    )
