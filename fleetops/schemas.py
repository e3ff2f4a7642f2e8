from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetops.models import (
    ApprovalStatus,
    CashAdvanceStatus,
    InventoryIssueStatus,
    InventoryRequestStatus,
    PartItemStatus,
    PaymentSource,
    ReceiptStatus,
    SettlementType,
    TripFinancialStatus,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Requests. Identifiers arrive as plain strings and are parsed by the services.


class AdvanceCreate(BaseModel):
    field_supervisor_id: str
    amount: Any


class AdvanceClose(BaseModel):
    settlement_type: str
    amount: Any
    reference: str | None = None
    notes: str | None = None


class ExpenseCreate(BaseModel):
    expense_type: str | None = None
    amount: Any = None
    payment_source: str | None = None
    # Older clients send expense_source instead of payment_source.
    expense_source: str | None = None
    cash_advance_id: str | None = None
    trip_id: str | None = None
    vehicle_id: str | None = None
    maintenance_work_order_id: str | None = None
    notes: str | None = None
    receipt_url: str | None = None
    vendor_name: str | None = None
    invoice_no: str | None = None
    invoice_date: str | None = None
    paid_method: str | None = None
    payment_ref: str | None = None
    vat_amount: Any = None
    invoice_total: Any = None


class NotesBody(BaseModel):
    notes: str | None = None


class ReasonBody(BaseModel):
    reason: str | None = None
    notes: str | None = None

    @property
    def text(self) -> str | None:
        return self.reason if self.reason not in (None, '') else self.notes


class ResolveAppealBody(ReasonBody):
    decision: str


class RequestLineIn(BaseModel):
    part_id: str
    needed_qty: Any
    notes: str | None = None


class InventoryRequestCreate(BaseModel):
    warehouse_id: str
    work_order_id: str | None = None
    notes: str | None = None
    lines: list[RequestLineIn] = Field(default_factory=list)


class IssueLineIn(BaseModel):
    part_id: str
    part_item_id: str | None = None
    qty: Any = 1
    unit_cost: Any = None
    notes: str | None = None


class IssueCreate(BaseModel):
    warehouse_id: str
    work_order_id: str
    request_id: str | None = None
    reason: str | None = None
    notes: str | None = None
    lines: list[IssueLineIn] = Field(default_factory=list)


class BulkIssueCreate(BaseModel):
    work_order_id: str
    warehouse_id: str
    part_id: str
    qty: Any
    unit_cost: Any
    notes: str | None = None


class ReceiptItemIn(BaseModel):
    part_id: str
    internal_serial: str | None = None
    manufacturer_serial: str | None = None
    unit_cost: Any = None


class ReceiptCreate(BaseModel):
    warehouse_id: str
    supplier_name: str | None = None
    invoice_no: str | None = None
    items: list[ReceiptItemIn] = Field(default_factory=list)


class InstallationIn(BaseModel):
    part_id: str
    part_item_id: str | None = None
    qty_installed: Any = 1
    odometer: Any = None
    notes: str | None = None


class InstallationsCreate(BaseModel):
    items: list[InstallationIn] = Field(default_factory=list)


# Responses


class CashAdvanceOut(ORMModel):
    id: uuid.UUID
    amount: Decimal
    status: CashAdvanceStatus
    field_supervisor_id: uuid.UUID
    issued_by: uuid.UUID
    settlement_type: SettlementType | None = None
    settlement_amount: Decimal | None = None
    settlement_reference: str | None = None
    settlement_notes: str | None = None
    settled_at: datetime | None = None
    settled_by: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CashExpenseOut(ORMModel):
    id: uuid.UUID
    payment_source: PaymentSource
    amount: Decimal
    cash_advance_id: uuid.UUID | None = None
    trip_id: uuid.UUID | None = None
    vehicle_id: uuid.UUID | None = None
    maintenance_work_order_id: uuid.UUID | None = None
    expense_type: str
    notes: str | None = None
    receipt_url: str | None = None
    approval_status: ApprovalStatus
    created_by: uuid.UUID
    approved_by: uuid.UUID | None = None
    approved_at: datetime | None = None
    rejected_by: uuid.UUID | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    appealed_by: uuid.UUID | None = None
    appealed_at: datetime | None = None
    appeal_reason: str | None = None
    resolved_by: uuid.UUID | None = None
    resolved_at: datetime | None = None
    vendor_name: str | None = None
    invoice_no: str | None = None
    invoice_date: date | None = None
    paid_method: str | None = None
    payment_ref: str | None = None
    vat_amount: Decimal | None = None
    invoice_total: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ExpenseAuditOut(ORMModel):
    id: uuid.UUID
    expense_id: uuid.UUID
    action: str
    actor_id: uuid.UUID
    before: dict | None = None
    after: dict | None = None
    notes: str | None = None
    created_at: datetime | None = None


class TripOut(ORMModel):
    id: uuid.UUID
    financial_status: TripFinancialStatus


class RequestLineOut(ORMModel):
    id: uuid.UUID
    part_id: uuid.UUID
    needed_qty: int
    notes: str | None = None


class InventoryRequestOut(ORMModel):
    id: uuid.UUID
    warehouse_id: uuid.UUID
    work_order_id: uuid.UUID | None = None
    requested_by: uuid.UUID
    status: InventoryRequestStatus
    notes: str | None = None
    approved_by: uuid.UUID | None = None
    approved_at: datetime | None = None
    created_at: datetime | None = None
    lines: list[RequestLineOut] = Field(default_factory=list)


class IssueLineOut(ORMModel):
    id: uuid.UUID
    part_id: uuid.UUID
    part_item_id: uuid.UUID
    qty: int
    unit_cost: Decimal | None = None
    notes: str | None = None


class InventoryIssueOut(ORMModel):
    id: uuid.UUID
    warehouse_id: uuid.UUID
    work_order_id: uuid.UUID
    request_id: uuid.UUID | None = None
    status: InventoryIssueStatus
    direct_reason: str | None = None
    notes: str | None = None
    issued_by: uuid.UUID
    posted_by: uuid.UUID | None = None
    posted_at: datetime | None = None
    created_at: datetime | None = None
    lines: list[IssueLineOut] = Field(default_factory=list)


class BulkIssueOut(ORMModel):
    id: uuid.UUID
    work_order_id: uuid.UUID
    warehouse_id: uuid.UUID
    part_id: uuid.UUID
    qty: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    issued_by: uuid.UUID
    issued_at: datetime | None = None


class PartItemOut(ORMModel):
    id: uuid.UUID
    part_id: uuid.UUID
    warehouse_id: uuid.UUID
    internal_serial: str
    manufacturer_serial: str | None = None
    status: PartItemStatus
    unit_cost: Decimal | None = None
    received_at: datetime | None = None


class ReceiptOut(ORMModel):
    id: uuid.UUID
    warehouse_id: uuid.UUID
    status: ReceiptStatus
    supplier_name: str | None = None
    invoice_no: str | None = None
    posted_at: datetime | None = None


class InstallationOut(ORMModel):
    id: uuid.UUID
    work_order_id: uuid.UUID
    vehicle_id: uuid.UUID
    part_id: uuid.UUID
    part_item_id: uuid.UUID | None = None
    qty_installed: Decimal
    installed_by: uuid.UUID
    installed_at: datetime | None = None
    odometer_at_install: int | None = None
    notes: str | None = None
