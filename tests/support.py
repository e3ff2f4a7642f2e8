from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from fleetops.auth import Principal
from fleetops.capabilities import Capabilities
from fleetops.db import create_schema, make_engine, make_session_factory
from fleetops.models import (
    CashAdvance,
    CashAdvanceStatus,
    MaintenanceWorkOrder,
    Part,
    PartItem,
    PartItemStatus,
    Trip,
    TripAssignment,
    TripFinancialStatus,
    User,
    UserRole,
    Vehicle,
    VehiclePortfolio,
    Warehouse,
    WorkOrderStatus,
)

BASE_TIME = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
FULL_CAPABILITIES = Capabilities(expense_audit=True, bulk_inventory=True)


def principal_for(user: User) -> Principal:
    return Principal(id=user.id, full_name=user.full_name, role=user.role, active=user.active)


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory SQLite database per test with small row factories."""

    def setUp(self) -> None:
        self.engine = make_engine('sqlite://')
        create_schema(self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.db: Session = self.session_factory()
        self._serial = 0

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _next(self) -> int:
        self._serial += 1
        return self._serial

    def make_user(self, role: UserRole = UserRole.FIELD_SUPERVISOR, *, active: bool = True) -> User:
        user = User(full_name=f'{role.value.title()} {self._next()}', role=role, active=active)
        self.db.add(user)
        self.db.flush()
        return user

    def make_principal(self, role: UserRole = UserRole.FIELD_SUPERVISOR) -> Principal:
        return principal_for(self.make_user(role))

    def make_vehicle(self) -> Vehicle:
        vehicle = Vehicle(plate_no=f'TRK-{self._next():03d}')
        self.db.add(vehicle)
        self.db.flush()
        return vehicle

    def make_trip(
        self,
        *,
        supervisor: User | Principal | None = None,
        vehicle: Vehicle | None = None,
        financial_status: TripFinancialStatus = TripFinancialStatus.OPEN,
    ) -> Trip:
        trip = Trip(financial_status=financial_status)
        self.db.add(trip)
        self.db.flush()
        if supervisor is not None:
            self.db.add(
                TripAssignment(
                    trip_id=trip.id,
                    vehicle_id=vehicle.id if vehicle else None,
                    field_supervisor_id=supervisor.id,
                )
            )
            self.db.flush()
        return trip

    def add_to_portfolio(self, vehicle: Vehicle, supervisor: User | Principal) -> None:
        self.db.add(VehiclePortfolio(vehicle_id=vehicle.id, field_supervisor_id=supervisor.id, is_active=True))
        self.db.flush()

    def make_work_order(
        self, *, vehicle: Vehicle | None = None, status: WorkOrderStatus = WorkOrderStatus.OPEN
    ) -> MaintenanceWorkOrder:
        work_order = MaintenanceWorkOrder(vehicle_id=(vehicle or self.make_vehicle()).id, status=status)
        self.db.add(work_order)
        self.db.flush()
        return work_order

    def make_warehouse(self) -> Warehouse:
        warehouse = Warehouse(name=f'Depot {self._next()}', active=True)
        self.db.add(warehouse)
        self.db.flush()
        return warehouse

    def make_part(self, *, active: bool = True) -> Part:
        serial = self._next()
        part = Part(part_number=f'P-{serial:04d}', name=f'Part {serial}', active=active)
        self.db.add(part)
        self.db.flush()
        return part

    def make_part_item(
        self,
        part: Part,
        warehouse: Warehouse,
        *,
        status: PartItemStatus = PartItemStatus.IN_STOCK,
        received_offset_minutes: int = 0,
        unit_cost: str | None = '10.00',
    ) -> PartItem:
        serial = self._next()
        received_at = BASE_TIME + timedelta(minutes=received_offset_minutes)
        item = PartItem(
            part_id=part.id,
            warehouse_id=warehouse.id,
            internal_serial=f'SN-{serial:05d}',
            status=status,
            unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
            received_at=received_at,
            created_at=received_at,
        )
        self.db.add(item)
        self.db.flush()
        return item

    def make_advance(
        self,
        supervisor: User | Principal,
        issuer: User | Principal,
        *,
        amount: str = '1000.00',
        status: CashAdvanceStatus = CashAdvanceStatus.OPEN,
    ) -> CashAdvance:
        advance = CashAdvance(
            amount=Decimal(amount),
            status=status,
            field_supervisor_id=supervisor.id,
            issued_by=issuer.id,
        )
        self.db.add(advance)
        self.db.flush()
        return advance
