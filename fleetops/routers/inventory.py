from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fleetops.auth import Principal, get_current_principal
from fleetops.capabilities import Capabilities
from fleetops.db import get_db
from fleetops.dependencies import get_capabilities
from fleetops.schemas import (
    BulkIssueCreate,
    BulkIssueOut,
    InventoryIssueOut,
    InventoryRequestCreate,
    InventoryRequestOut,
    IssueCreate,
    PartItemOut,
    ReasonBody,
    ReceiptCreate,
    ReceiptOut,
)
from fleetops.services.guards import parse_uuid
from fleetops.services.issue_service import (
    IssueLineInput,
    create_issue_draft,
    get_issue,
    list_issues,
    post_issue,
    record_bulk_issue,
)
from fleetops.services.receipt_service import ReceiptItemInput, receive_part_items
from fleetops.services.reservation_service import (
    RequestLineInput,
    approve_request,
    create_request,
    get_request,
    list_requests,
    reject_request,
    reserved_item_ids,
    unreserve_request,
)

router = APIRouter(prefix='/inventory', tags=['inventory'])


@router.post('/receipts', status_code=201)
def create_receipt(
    body: ReceiptCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    receipt, units = receive_part_items(
        db,
        principal=principal,
        warehouse_id=body.warehouse_id,
        supplier_name=body.supplier_name,
        invoice_no=body.invoice_no,
        items=[
            ReceiptItemInput(
                part_id=item.part_id,
                internal_serial=item.internal_serial,
                manufacturer_serial=item.manufacturer_serial,
                unit_cost=item.unit_cost,
            )
            for item in body.items
        ],
    )
    db.commit()
    return {
        'message': 'Receipt posted',
        'receipt': ReceiptOut.model_validate(receipt),
        'items': [PartItemOut.model_validate(unit) for unit in units],
    }


# Requests


@router.post('/requests', status_code=201)
def create_request_endpoint(
    body: InventoryRequestCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    request = create_request(
        db,
        principal=principal,
        warehouse_id=body.warehouse_id,
        work_order_id=body.work_order_id,
        notes=body.notes,
        lines=[RequestLineInput(part_id=line.part_id, needed_qty=line.needed_qty, notes=line.notes) for line in body.lines],
    )
    db.commit()
    return {'message': 'Request created', 'request': InventoryRequestOut.model_validate(request)}


@router.get('/requests')
def list_requests_endpoint(
    status: str | None = None,
    warehouse_id: str | None = None,
    work_order_id: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    requests = list_requests(db, status=status, warehouse_id=warehouse_id, work_order_id=work_order_id)
    return {'items': [InventoryRequestOut.model_validate(request) for request in requests]}


@router.get('/requests/{request_id}')
def get_request_endpoint(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    request = get_request(db, parse_uuid(request_id, 'request_id'))
    return {
        'request': InventoryRequestOut.model_validate(request),
        'reserved_part_item_ids': reserved_item_ids(db, request.id),
    }


@router.post('/requests/{request_id}/approve')
def approve_request_endpoint(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    request, reserved = approve_request(db, principal=principal, request_id=parse_uuid(request_id, 'request_id'))
    db.commit()
    return {
        'message': 'Request approved and stock reserved',
        'request': InventoryRequestOut.model_validate(request),
        'reserved': reserved,
    }


@router.post('/requests/{request_id}/unreserve')
def unreserve_request_endpoint(
    request_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    request, released = unreserve_request(db, principal=principal, request_id=parse_uuid(request_id, 'request_id'))
    db.commit()
    return {
        'message': 'Reservations released',
        'request': InventoryRequestOut.model_validate(request),
        'released_count': released,
    }


@router.post('/requests/{request_id}/reject')
def reject_request_endpoint(
    request_id: str,
    body: ReasonBody | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    request = reject_request(
        db,
        principal=principal,
        request_id=parse_uuid(request_id, 'request_id'),
        reason=body.text if body else None,
    )
    db.commit()
    return {'message': 'Request rejected', 'request': InventoryRequestOut.model_validate(request)}


# Issues


@router.post('/issues', status_code=201)
def create_issue_endpoint(
    body: IssueCreate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    issue = create_issue_draft(
        db,
        principal=principal,
        warehouse_id=body.warehouse_id,
        work_order_id=body.work_order_id,
        request_id=body.request_id,
        reason=body.reason,
        notes=body.notes,
        lines=[
            IssueLineInput(
                part_id=line.part_id,
                part_item_id=line.part_item_id,
                qty=line.qty,
                unit_cost=line.unit_cost,
                notes=line.notes,
            )
            for line in body.lines
        ],
    )
    db.commit()
    return {'message': 'Issue draft created', 'issue': InventoryIssueOut.model_validate(issue)}


@router.get('/issues')
def list_issues_endpoint(
    status: str | None = None,
    warehouse_id: str | None = None,
    request_id: str | None = None,
    work_order_id: str | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    issues = list_issues(
        db, status=status, warehouse_id=warehouse_id, request_id=request_id, work_order_id=work_order_id
    )
    return {'items': [InventoryIssueOut.model_validate(issue) for issue in issues]}


@router.get('/issues/{issue_id}')
def get_issue_endpoint(
    issue_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return {'issue': InventoryIssueOut.model_validate(get_issue(db, parse_uuid(issue_id, 'issue_id')))}


@router.post('/issues/{issue_id}/post')
def post_issue_endpoint(
    issue_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    issue = post_issue(db, principal=principal, issue_id=parse_uuid(issue_id, 'issue_id'))
    db.commit()
    return {'message': 'Issue posted', 'issue': InventoryIssueOut.model_validate(issue)}


@router.post('/bulk-issues', status_code=201)
def create_bulk_issue_endpoint(
    body: BulkIssueCreate,
    principal: Principal = Depends(get_current_principal),
    capabilities: Capabilities = Depends(get_capabilities),
    db: Session = Depends(get_db),
):
    row = record_bulk_issue(
        db,
        principal=principal,
        capabilities=capabilities,
        work_order_id=body.work_order_id,
        warehouse_id=body.warehouse_id,
        part_id=body.part_id,
        qty=body.qty,
        unit_cost=body.unit_cost,
        notes=body.notes,
    )
    db.commit()
    return {'message': 'Bulk issue recorded', 'bulk_issue': BulkIssueOut.model_validate(row)}
