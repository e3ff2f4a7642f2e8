from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    ACCOUNTANT = 'ACCOUNTANT'
    FIELD_SUPERVISOR = 'FIELD_SUPERVISOR'
    GENERAL_SUPERVISOR = 'GENERAL_SUPERVISOR'
    STOREKEEPER = 'STOREKEEPER'
    DISPATCHER = 'DISPATCHER'
    DEPT_MANAGER = 'DEPT_MANAGER'
    GENERAL_MANAGER = 'GENERAL_MANAGER'
    GENERAL_RESPONSIBLE = 'GENERAL_RESPONSIBLE'
    HR = 'HR'


class TripFinancialStatus(str, Enum):
    OPEN = 'OPEN'
    IN_REVIEW = 'IN_REVIEW'
    CLOSED = 'CLOSED'


class WorkOrderStatus(str, Enum):
    OPEN = 'OPEN'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELED = 'CANCELED'


class CashAdvanceStatus(str, Enum):
    OPEN = 'OPEN'
    IN_REVIEW = 'IN_REVIEW'
    CLOSED = 'CLOSED'


class SettlementType(str, Enum):
    RETURN = 'RETURN'
    SHORTAGE = 'SHORTAGE'
    ADJUSTMENT = 'ADJUSTMENT'


class PaymentSource(str, Enum):
    ADVANCE = 'ADVANCE'
    COMPANY = 'COMPANY'


class ApprovalStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    APPEALED = 'APPEALED'
    REAPPROVED = 'REAPPROVED'


class PartItemStatus(str, Enum):
    IN_STOCK = 'IN_STOCK'
    RESERVED = 'RESERVED'
    ISSUED = 'ISSUED'
    INSTALLED = 'INSTALLED'
    SCRAPPED = 'SCRAPPED'


class InventoryRequestStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    ISSUED = 'ISSUED'


class InventoryIssueStatus(str, Enum):
    DRAFT = 'DRAFT'
    POSTED = 'POSTED'


class ReceiptStatus(str, Enum):
    DRAFT = 'DRAFT'
    POSTED = 'POSTED'


# External collaborators. The core reads these and writes only the work order status.


class User(Base):
    __tablename__ = 'users'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(SQLEnum(UserRole, name='user_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Vehicle(Base):
    __tablename__ = 'vehicles'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plate_no: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Trip(Base):
    __tablename__ = 'trips'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    financial_status: Mapped[TripFinancialStatus] = mapped_column(
        SQLEnum(TripFinancialStatus, name='trip_financial_status'),
        nullable=False,
        default=TripFinancialStatus.OPEN,
        server_default='OPEN',
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TripAssignment(Base):
    __tablename__ = 'trip_assignments'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    trip_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('trips.id'), nullable=False)
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('vehicles.id'))
    field_supervisor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class VehiclePortfolio(Base):
    __tablename__ = 'vehicle_portfolio'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('vehicles.id'), nullable=False)
    field_supervisor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class MaintenanceWorkOrder(Base):
    __tablename__ = 'maintenance_work_orders'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('vehicles.id'), nullable=False)
    status: Mapped[WorkOrderStatus] = mapped_column(
        SQLEnum(WorkOrderStatus, name='work_order_status'),
        nullable=False,
        default=WorkOrderStatus.OPEN,
        server_default='OPEN',
    )
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Warehouse(Base):
    __tablename__ = 'warehouses'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


class Part(Base):
    __tablename__ = 'parts'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    part_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')


# Cash ledger


class CashAdvance(Base):
    __tablename__ = 'cash_advances'
    __table_args__ = (CheckConstraint('amount >= 0', name='ck_cash_advances_amount_non_negative'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[CashAdvanceStatus] = mapped_column(
        SQLEnum(CashAdvanceStatus, name='cash_advance_status'),
        nullable=False,
        default=CashAdvanceStatus.OPEN,
        server_default='OPEN',
    )
    field_supervisor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    issued_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    settlement_type: Mapped[SettlementType | None] = mapped_column(SQLEnum(SettlementType, name='settlement_type'))
    settlement_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    settlement_reference: Mapped[str | None] = mapped_column(Text)
    settlement_notes: Mapped[str | None] = mapped_column(Text)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    settled_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class CashExpense(Base):
    __tablename__ = 'cash_expenses'
    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_cash_expenses_amount_positive'),
        CheckConstraint(
            "(payment_source = 'ADVANCE' AND cash_advance_id IS NOT NULL) "
            "OR (payment_source = 'COMPANY' AND cash_advance_id IS NULL)",
            name='ck_cash_expenses_source_advance_link',
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_source: Mapped[PaymentSource] = mapped_column(SQLEnum(PaymentSource, name='payment_source'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    cash_advance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('cash_advances.id'))
    trip_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('trips.id'))
    vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('vehicles.id'))
    maintenance_work_order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('maintenance_work_orders.id'))
    expense_type: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    receipt_url: Mapped[str | None] = mapped_column(Text)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        SQLEnum(ApprovalStatus, name='approval_status'),
        nullable=False,
        default=ApprovalStatus.PENDING,
        server_default='PENDING',
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    appealed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    appealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    appeal_reason: Mapped[str | None] = mapped_column(Text)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # COMPANY invoices only
    vendor_name: Mapped[str | None] = mapped_column(Text)
    invoice_no: Mapped[str | None] = mapped_column(Text)
    invoice_date: Mapped[date | None] = mapped_column(Date)
    paid_method: Mapped[str | None] = mapped_column(Text)
    payment_ref: Mapped[str | None] = mapped_column(Text)
    vat_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    invoice_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class CashExpenseAudit(Base):
    __tablename__ = 'cash_expense_audits'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    expense_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('cash_expenses.id'), nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    before: Mapped[dict | None] = mapped_column(JSON)
    after: Mapped[dict | None] = mapped_column(JSON)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Inventory


class InventoryReceipt(Base):
    __tablename__ = 'inventory_receipts'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    warehouse_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('warehouses.id'), nullable=False)
    status: Mapped[ReceiptStatus] = mapped_column(
        SQLEnum(ReceiptStatus, name='receipt_status'), nullable=False, default=ReceiptStatus.DRAFT, server_default='DRAFT'
    )
    supplier_name: Mapped[str | None] = mapped_column(Text)
    invoice_no: Mapped[str | None] = mapped_column(Text)
    received_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class PartItem(Base):
    __tablename__ = 'part_items'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('parts.id'), nullable=False)
    warehouse_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('warehouses.id'), nullable=False)
    internal_serial: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    manufacturer_serial: Mapped[str | None] = mapped_column(Text, unique=True)
    status: Mapped[PartItemStatus] = mapped_column(
        SQLEnum(PartItemStatus, name='part_item_status'),
        nullable=False,
        default=PartItemStatus.IN_STOCK,
        server_default='IN_STOCK',
    )
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    installed_vehicle_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('vehicles.id'))
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_receipt_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('inventory_receipts.id'))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_moved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryRequest(Base):
    __tablename__ = 'inventory_requests'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    warehouse_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('warehouses.id'), nullable=False)
    work_order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('maintenance_work_orders.id'))
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    status: Mapped[InventoryRequestStatus] = mapped_column(
        SQLEnum(InventoryRequestStatus, name='inventory_request_status'),
        nullable=False,
        default=InventoryRequestStatus.PENDING,
        server_default='PENDING',
    )
    notes: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    lines: Mapped[list[InventoryRequestLine]] = relationship(
        order_by='InventoryRequestLine.position', cascade='all, delete-orphan'
    )


class InventoryRequestLine(Base):
    __tablename__ = 'inventory_request_lines'
    __table_args__ = (CheckConstraint('needed_qty > 0', name='ck_inventory_request_lines_needed_qty_positive'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('inventory_requests.id', ondelete='CASCADE'), nullable=False)
    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('parts.id'), nullable=False)
    needed_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)


class InventoryRequestReservation(Base):
    __tablename__ = 'inventory_request_reservations'
    __table_args__ = (UniqueConstraint('part_item_id', name='uq_inventory_request_reservations_part_item'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('inventory_requests.id'), nullable=False)
    part_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('part_items.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryIssue(Base):
    __tablename__ = 'inventory_issues'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    warehouse_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('warehouses.id'), nullable=False)
    work_order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('maintenance_work_orders.id'), nullable=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('inventory_requests.id'))
    status: Mapped[InventoryIssueStatus] = mapped_column(
        SQLEnum(InventoryIssueStatus, name='inventory_issue_status'),
        nullable=False,
        default=InventoryIssueStatus.DRAFT,
        server_default='DRAFT',
    )
    direct_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    issued_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    posted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('users.id'))
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lines: Mapped[list[InventoryIssueLine]] = relationship(
        order_by='InventoryIssueLine.position', cascade='all, delete-orphan'
    )


class InventoryIssueLine(Base):
    __tablename__ = 'inventory_issue_lines'
    __table_args__ = (CheckConstraint('qty = 1', name='ck_inventory_issue_lines_serial_qty'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    issue_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('inventory_issues.id', ondelete='CASCADE'), nullable=False)
    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('parts.id'), nullable=False)
    part_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('part_items.id'), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)


class BulkPartIssue(Base):
    __tablename__ = 'bulk_part_issues'
    __table_args__ = (CheckConstraint('qty > 0', name='ck_bulk_part_issues_qty_positive'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    work_order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('maintenance_work_orders.id'), nullable=False)
    warehouse_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('warehouses.id'), nullable=False)
    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('parts.id'), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    issued_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    notes: Mapped[str | None] = mapped_column(Text)


class WorkOrderInstallation(Base):
    __tablename__ = 'work_order_installations'
    __table_args__ = (CheckConstraint('qty_installed > 0', name='ck_work_order_installations_qty_positive'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    work_order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('maintenance_work_orders.id'), nullable=False)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('vehicles.id'), nullable=False)
    part_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('parts.id'), nullable=False)
    part_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('part_items.id'))
    qty_installed: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    installed_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('users.id'), nullable=False)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    odometer_at_install: Mapped[int | None] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)
