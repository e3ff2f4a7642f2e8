from __future__ import annotations

import argparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from fleetops.auth import Principal
from fleetops.db import SessionLocal, create_schema, get_engine
from fleetops.models import (
    MaintenanceWorkOrder,
    Part,
    PartItem,
    Trip,
    TripAssignment,
    User,
    UserRole,
    Vehicle,
    VehiclePortfolio,
    Warehouse,
)
from fleetops.services.receipt_service import ReceiptItemInput, receive_part_items

DEMO_USERS = [
    ('Admin User', UserRole.ADMIN),
    ('Alya Accountant', UserRole.ACCOUNTANT),
    ('Samir Supervisor', UserRole.FIELD_SUPERVISOR),
    ('Karim Storekeeper', UserRole.STOREKEEPER),
]

DEMO_PARTS = [
    ('OIL-FLT-01', 'Oil filter'),
    ('BRK-PAD-02', 'Brake pad set'),
    ('TYR-315-80', 'Tyre 315/80 R22.5'),
]


def _get_or_create_user(db: Session, full_name: str, role: UserRole) -> User:
    user = db.execute(select(User).where(User.full_name == full_name)).scalar_one_or_none()
    if not user:
        user = User(full_name=full_name, role=role, active=True)
        db.add(user)
        db.flush()
    return user


def seed(*, units_per_part: int = 5) -> dict[str, User]:
    with SessionLocal() as db:
        users = {role.value: _get_or_create_user(db, name, role) for name, role in DEMO_USERS}
        supervisor = users[UserRole.FIELD_SUPERVISOR.value]

        warehouse = db.execute(select(Warehouse).where(Warehouse.name == 'Main Depot')).scalar_one_or_none()
        if not warehouse:
            warehouse = Warehouse(name='Main Depot', active=True)
            db.add(warehouse)
            db.flush()

        vehicle = db.execute(select(Vehicle).where(Vehicle.plate_no == 'DEMO-001')).scalar_one_or_none()
        if not vehicle:
            vehicle = Vehicle(plate_no='DEMO-001')
            db.add(vehicle)
            db.flush()
            db.add(VehiclePortfolio(vehicle_id=vehicle.id, field_supervisor_id=supervisor.id, is_active=True))
            trip = Trip()
            db.add(trip)
            db.flush()
            db.add(TripAssignment(trip_id=trip.id, vehicle_id=vehicle.id, field_supervisor_id=supervisor.id))
            db.add(MaintenanceWorkOrder(vehicle_id=vehicle.id))

        parts = []
        for part_number, name in DEMO_PARTS:
            part = db.execute(select(Part).where(Part.part_number == part_number)).scalar_one_or_none()
            if not part:
                part = Part(part_number=part_number, name=name, active=True)
                db.add(part)
                db.flush()
            parts.append(part)

        storekeeper = users[UserRole.STOREKEEPER.value]
        principal = Principal(id=storekeeper.id, full_name=storekeeper.full_name, role=storekeeper.role)
        items = []
        for part in parts:
            in_store = db.execute(select(PartItem.id).where(PartItem.part_id == part.id)).first()
            if in_store:
                continue
            items.extend(
                ReceiptItemInput(part_id=part.id, internal_serial=f'{part.part_number}-{index:04d}', unit_cost='25.00')
                for index in range(1, units_per_part + 1)
            )
        if items:
            receive_part_items(db, principal=principal, warehouse_id=warehouse.id, items=items, supplier_name='Demo Supplier')

        db.commit()
        return users


def main() -> None:
    parser = argparse.ArgumentParser(description='Create the schema and load demo users, parts and stock.')
    parser.add_argument('--units-per-part', type=int, default=5, help='Serialized units to receive for each demo part.')
    parser.add_argument('--skip-schema', action='store_true', help='Assume the tables already exist.')
    args = parser.parse_args()

    if not args.skip_schema:
        create_schema(get_engine())
    users = seed(units_per_part=args.units_per_part)
    for role, user in users.items():
        print(f'{role:<18} X-Actor-Id: {user.id}')


if __name__ == '__main__':
    main()
