from __future__ import annotations

import uuid
from unittest.mock import patch

from sqlalchemy import func, select

from fleetops.errors import (
    ConcurrencyConflictError,
    ConflictError,
    InsufficientStockError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from fleetops.models import (
    InventoryRequestReservation,
    InventoryRequestStatus,
    PartItem,
    PartItemStatus,
    UserRole,
)
from fleetops.services.reservation_service import (
    RequestLineInput,
    approve_request,
    create_request,
    list_requests,
    reject_request,
    reserved_item_ids,
    unreserve_request,
)
from support import DatabaseTestCase


class ReservationServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.storekeeper = self.make_principal(UserRole.STOREKEEPER)
        self.mechanic = self.make_principal(UserRole.DISPATCHER)
        self.warehouse = self.make_warehouse()
        self.part = self.make_part()

    def _request(self, *lines: tuple, work_order=None):
        return create_request(
            self.db,
            principal=self.mechanic,
            warehouse_id=str(self.warehouse.id),
            work_order_id=str(work_order.id) if work_order else None,
            lines=[RequestLineInput(part_id=str(part.id), needed_qty=qty) for part, qty in lines],
        )

    def _reservation_count(self) -> int:
        return self.db.execute(select(func.count(InventoryRequestReservation.id))).scalar_one()

    def test_create_request_validates_lines(self) -> None:
        with self.assertRaises(ValidationError):
            self._request()
        with self.assertRaises(ValidationError):
            self._request((self.part, 0))
        with self.assertRaises(ValidationError):
            self._request((self.part, 'two'))
        with self.assertRaises(NotFoundError):
            self._request((self.make_part(active=False), 1))

        request = self._request((self.part, '2'))
        self.assertEqual(request.status, InventoryRequestStatus.PENDING)
        self.assertEqual([line.needed_qty for line in request.lines], [2])

    def test_insufficient_stock_leaves_request_pending(self) -> None:
        self.make_part_item(self.part, self.warehouse)
        self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 3))

        with self.assertRaises(InsufficientStockError) as ctx:
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        self.assertEqual(ctx.exception.needed, 3)
        self.assertEqual(ctx.exception.available, 2)
        self.assertEqual(request.status, InventoryRequestStatus.PENDING)
        self.assertEqual(self._reservation_count(), 0)

    def test_fifo_reserves_oldest_units(self) -> None:
        u1 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=1)
        u2 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=2)
        u3 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=3)
        request = self._request((self.part, 2))

        approved, reserved = approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        self.assertEqual(approved.status, InventoryRequestStatus.APPROVED)
        self.assertEqual(approved.approved_by, self.storekeeper.id)
        self.assertEqual(set(reserved_item_ids(self.db, request.id)), {u1.id, u2.id})
        self.assertEqual(reserved[0]['reserved_qty'], 2)
        self.db.expire_all()
        self.assertEqual(u1.status, PartItemStatus.RESERVED)
        self.assertEqual(u2.status, PartItemStatus.RESERVED)
        self.assertEqual(u3.status, PartItemStatus.IN_STOCK)

    def test_all_or_nothing_across_lines(self) -> None:
        other_part = self.make_part()
        self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1), (other_part, 1))

        with self.assertRaises(InsufficientStockError):
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        self.assertEqual(self._reservation_count(), 0)
        self.db.expire_all()
        statuses = {item.status for item in self.db.query(PartItem).all()}
        self.assertEqual(statuses, {PartItemStatus.IN_STOCK})

    def test_lines_for_same_part_are_summed(self) -> None:
        self.make_part_item(self.part, self.warehouse)
        self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1), (self.part, 2))

        with self.assertRaises(InsufficientStockError) as ctx:
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)
        self.assertEqual(ctx.exception.needed, 3)

    def test_stock_in_other_warehouse_is_ignored(self) -> None:
        self.make_part_item(self.part, self.make_warehouse())
        request = self._request((self.part, 1))

        with self.assertRaises(InsufficientStockError):
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)

    def test_concurrent_change_aborts_approval(self) -> None:
        taken = self.make_part_item(self.part, self.warehouse, status=PartItemStatus.RESERVED)
        request = self._request((self.part, 1))

        with patch('fleetops.services.reservation_service._fifo_candidates', return_value=[taken.id]):
            with self.assertRaises(ConcurrencyConflictError) as ctx:
                approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        self.assertEqual(ctx.exception.message, 'Stock changed, retry')
        self.assertEqual(ctx.exception.details, {'expected': 1, 'updated': 0})
        self.assertEqual(request.status, InventoryRequestStatus.PENDING)

    def test_approve_requires_pending_and_stock_role(self) -> None:
        self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1))

        with self.assertRaises(NotAuthorizedError):
            approve_request(self.db, principal=self.mechanic, request_id=request.id)
        approve_request(self.db, principal=self.storekeeper, request_id=request.id)
        with self.assertRaises(WrongStateError) as ctx:
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)
        self.assertEqual(ctx.exception.current, 'APPROVED')

    def test_unreserve_returns_units_to_stock(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1))
        approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        pending, released = unreserve_request(self.db, principal=self.storekeeper, request_id=request.id)

        self.assertEqual(released, 1)
        self.assertEqual(pending.status, InventoryRequestStatus.PENDING)
        self.assertIsNone(pending.approved_by)
        self.assertEqual(self._reservation_count(), 0)
        self.db.expire_all()
        self.assertEqual(unit.status, PartItemStatus.IN_STOCK)

        with self.assertRaises(WrongStateError):
            unreserve_request(self.db, principal=self.storekeeper, request_id=request.id)

    def test_reject_approved_request_releases_and_records_reason(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1))
        approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        rejected = reject_request(
            self.db, principal=self.storekeeper, request_id=request.id, reason='work order cancelled'
        )

        self.assertEqual(rejected.status, InventoryRequestStatus.REJECTED)
        self.assertIn('REJECT_REASON: work order cancelled', rejected.notes)
        self.assertEqual(self._reservation_count(), 0)
        self.db.expire_all()
        self.assertEqual(unit.status, PartItemStatus.IN_STOCK)

        with self.assertRaises(WrongStateError):
            reject_request(self.db, principal=self.storekeeper, request_id=request.id)

    def test_missing_request(self) -> None:
        with self.assertRaises(NotFoundError):
            approve_request(self.db, principal=self.storekeeper, request_id=uuid.uuid4())

    def test_list_requests_filters(self) -> None:
        self._request((self.part, 1))
        self.make_part_item(self.part, self.warehouse)
        approved = self._request((self.part, 1))
        approve_request(self.db, principal=self.storekeeper, request_id=approved.id)

        self.assertEqual([r.id for r in list_requests(self.db, status='approved')], [approved.id])
        self.assertEqual(len(list_requests(self.db, warehouse_id=str(self.warehouse.id))), 2)
        with self.assertRaises(ValidationError):
            list_requests(self.db, status='DONE')

    def test_request_reservations_conflict_guard(self) -> None:
        self.make_part_item(self.part, self.warehouse)
        request = self._request((self.part, 1))
        held = self.make_part_item(self.part, self.warehouse, status=PartItemStatus.RESERVED)
        self.db.add(InventoryRequestReservation(request_id=request.id, part_item_id=held.id))
        self.db.flush()

        with self.assertRaises(ConflictError):
            approve_request(self.db, principal=self.storekeeper, request_id=request.id)
