from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetops.errors import NotFoundError, ValidationError, WrongStateError
from fleetops.models import (
    MaintenanceWorkOrder,
    Part,
    Trip,
    TripAssignment,
    TripFinancialStatus,
    User,
    VehiclePortfolio,
    Warehouse,
    WorkOrderStatus,
)

LOCKED_TRIP_STATUSES = {TripFinancialStatus.IN_REVIEW, TripFinancialStatus.CLOSED}
CLOSED_WORK_ORDER_STATUSES = {WorkOrderStatus.COMPLETED, WorkOrderStatus.CANCELED}


def get_active_user(db: Session, user_id: uuid.UUID) -> User | None:
    return db.execute(select(User).where(User.id == user_id, User.active.is_(True))).scalar_one_or_none()


def get_trip(db: Session, trip_id: uuid.UUID, *, missing_is_validation: bool = False) -> Trip:
    trip = db.get(Trip, trip_id)
    if not trip:
        if missing_is_validation:
            raise ValidationError('Invalid trip_id', field='trip_id')
        raise NotFoundError('Trip not found', trip_id=str(trip_id))
    return trip


def is_trip_financially_locked(trip: Trip) -> bool:
    return (trip.financial_status or TripFinancialStatus.OPEN) in LOCKED_TRIP_STATUSES


def supervisor_assigned_to_trip(
    db: Session,
    *,
    trip_id: uuid.UUID,
    supervisor_id: uuid.UUID,
    vehicle_id: uuid.UUID | None = None,
) -> bool:
    # Any historical assignment counts, not only the latest one.
    stmt = select(TripAssignment.id).where(
        TripAssignment.trip_id == trip_id,
        TripAssignment.field_supervisor_id == supervisor_id,
    )
    if vehicle_id is not None:
        stmt = stmt.where(TripAssignment.vehicle_id == vehicle_id)
    return db.execute(stmt.limit(1)).first() is not None


def vehicle_in_supervisor_portfolio(db: Session, *, vehicle_id: uuid.UUID, supervisor_id: uuid.UUID) -> bool:
    row = db.execute(
        select(VehiclePortfolio.id)
        .where(
            VehiclePortfolio.vehicle_id == vehicle_id,
            VehiclePortfolio.field_supervisor_id == supervisor_id,
            VehiclePortfolio.is_active.is_(True),
        )
        .limit(1)
    ).first()
    return row is not None


def get_work_order(db: Session, work_order_id: uuid.UUID) -> MaintenanceWorkOrder:
    work_order = db.get(MaintenanceWorkOrder, work_order_id)
    if not work_order:
        raise NotFoundError('Work order not found', work_order_id=str(work_order_id))
    return work_order


def ensure_work_order_accepts_parts(work_order: MaintenanceWorkOrder) -> None:
    if work_order.status in CLOSED_WORK_ORDER_STATUSES:
        raise WrongStateError(
            f'Work order is {work_order.status.value}',
            current=work_order.status.value,
            required=[WorkOrderStatus.OPEN.value, WorkOrderStatus.IN_PROGRESS.value],
        )


def get_warehouse(db: Session, warehouse_id: uuid.UUID) -> Warehouse:
    warehouse = db.get(Warehouse, warehouse_id)
    if not warehouse or not warehouse.active:
        raise NotFoundError('Warehouse not found', warehouse_id=str(warehouse_id))
    return warehouse


def get_part(db: Session, part_id: uuid.UUID) -> Part:
    part = db.get(Part, part_id)
    if not part or not part.active:
        raise NotFoundError('Part not found', part_id=str(part_id))
    return part
