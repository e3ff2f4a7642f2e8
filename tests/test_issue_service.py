from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select

from fleetops.capabilities import Capabilities
from fleetops.errors import (
    ConcurrencyConflictError,
    ConflictError,
    NotAuthorizedError,
    ValidationError,
    WrongStateError,
)
from fleetops.models import (
    InventoryIssueStatus,
    InventoryRequestReservation,
    InventoryRequestStatus,
    PartItemStatus,
    UserRole,
    WorkOrderStatus,
)
from fleetops.services.issue_service import (
    IssueLineInput,
    create_issue_draft,
    list_issues,
    post_issue,
    record_bulk_issue,
)
from fleetops.services.reservation_service import RequestLineInput, approve_request, create_request
from support import FULL_CAPABILITIES, DatabaseTestCase


class IssueServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.storekeeper = self.make_principal(UserRole.STOREKEEPER)
        self.accountant = self.make_principal(UserRole.ACCOUNTANT)
        self.warehouse = self.make_warehouse()
        self.part = self.make_part()
        self.work_order = self.make_work_order()

    def _approved_request(self, needed: int, *, work_order=None):
        request = create_request(
            self.db,
            principal=self.storekeeper,
            warehouse_id=self.warehouse.id,
            work_order_id=(work_order or self.work_order).id,
            lines=[RequestLineInput(part_id=self.part.id, needed_qty=needed)],
        )
        approve_request(self.db, principal=self.storekeeper, request_id=request.id)
        return request

    def _draft(self, units, *, request=None, reason=None, principal=None, work_order=None):
        return create_issue_draft(
            self.db,
            principal=principal or self.storekeeper,
            warehouse_id=str(self.warehouse.id),
            work_order_id=str((work_order or self.work_order).id),
            request_id=str(request.id) if request else None,
            reason=reason,
            lines=[IssueLineInput(part_id=str(unit.part_id), part_item_id=str(unit.id)) for unit in units],
        )

    def test_request_linked_issue_posts_reserved_units(self) -> None:
        u1 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=1, unit_cost='12.00')
        u2 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=2)
        request = self._approved_request(2)

        issue = self._draft([u1, u2], request=request, principal=self.accountant)
        self.assertEqual(issue.status, InventoryIssueStatus.DRAFT)
        self.assertEqual(issue.lines[0].unit_cost, Decimal('12.00'))

        posted = post_issue(self.db, principal=self.accountant, issue_id=issue.id)

        self.assertEqual(posted.status, InventoryIssueStatus.POSTED)
        self.assertEqual(posted.posted_by, self.accountant.id)
        self.db.expire_all()
        self.assertEqual(u1.status, PartItemStatus.ISSUED)
        self.assertEqual(u2.status, PartItemStatus.ISSUED)
        self.assertEqual(request.status, InventoryRequestStatus.ISSUED)
        remaining = self.db.execute(select(func.count(InventoryRequestReservation.id))).scalar_one()
        self.assertEqual(remaining, 0)

    def test_partial_issue_releases_leftover_reservations(self) -> None:
        u1 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=1)
        u2 = self.make_part_item(self.part, self.warehouse, received_offset_minutes=2)
        request = self._approved_request(2)

        post_issue(self.db, principal=self.storekeeper, issue_id=self._draft([u1], request=request).id)

        self.db.expire_all()
        self.assertEqual(u1.status, PartItemStatus.ISSUED)
        self.assertEqual(u2.status, PartItemStatus.IN_STOCK)

    def test_request_issue_rules(self) -> None:
        reserved = self.make_part_item(self.part, self.warehouse)
        loose = self.make_part_item(self.part, self.warehouse, received_offset_minutes=60)
        request = self._approved_request(1)

        with self.assertRaises(ConflictError):
            self._draft([loose], request=request)
        with self.assertRaises(ValidationError):
            self._draft([reserved], request=request, work_order=self.make_work_order())

        pending = create_request(
            self.db,
            principal=self.storekeeper,
            warehouse_id=self.warehouse.id,
            lines=[RequestLineInput(part_id=self.part.id, needed_qty=1)],
        )
        with self.assertRaises(WrongStateError):
            self._draft([reserved], request=pending)

    def test_request_without_work_order_issues_to_any_work_order(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        request = create_request(
            self.db,
            principal=self.storekeeper,
            warehouse_id=self.warehouse.id,
            lines=[RequestLineInput(part_id=self.part.id, needed_qty=1)],
        )
        approve_request(self.db, principal=self.storekeeper, request_id=request.id)

        issue = self._draft([unit], request=request, work_order=self.make_work_order())
        self.assertEqual(issue.request_id, request.id)

    def test_direct_issue_needs_reason_and_in_stock_unit(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        reserved = self.make_part_item(self.part, self.warehouse, status=PartItemStatus.RESERVED)

        with self.assertRaises(ValidationError):
            self._draft([unit], reason='ok')
        with self.assertRaises(NotAuthorizedError):
            self._draft([unit], reason='urgent breakdown', principal=self.accountant)
        with self.assertRaises(ConflictError) as ctx:
            self._draft([reserved], reason='urgent breakdown')
        self.assertEqual(ctx.exception.details['current'], 'RESERVED')

        issue = self._draft([unit], reason='urgent breakdown')
        self.assertEqual(issue.direct_reason, 'urgent breakdown')
        post_issue(self.db, principal=self.storekeeper, issue_id=issue.id)
        self.db.expire_all()
        self.assertEqual(unit.status, PartItemStatus.ISSUED)

    def test_line_validation(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        other_part = self.make_part()

        def draft(lines):
            return create_issue_draft(
                self.db,
                principal=self.storekeeper,
                warehouse_id=self.warehouse.id,
                work_order_id=self.work_order.id,
                reason='urgent breakdown',
                lines=lines,
            )

        with self.assertRaises(ValidationError):
            draft([])
        with self.assertRaises(ValidationError):
            draft([IssueLineInput(part_id=self.part.id, part_item_id=None)])
        with self.assertRaises(ValidationError):
            draft([IssueLineInput(part_id=self.part.id, part_item_id=unit.id, qty=2)])
        with self.assertRaises(ValidationError):
            draft([IssueLineInput(part_id=self.part.id, part_item_id=unit.id)] * 2)
        with self.assertRaises(ValidationError):
            draft([IssueLineInput(part_id=other_part.id, part_item_id=unit.id)])

    def test_unit_from_other_warehouse_rejected(self) -> None:
        elsewhere = self.make_part_item(self.part, self.make_warehouse())

        with self.assertRaises(ValidationError):
            self._draft([elsewhere], reason='urgent breakdown')

    def test_closed_work_order_rejects_issue(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        done = self.make_work_order(status=WorkOrderStatus.COMPLETED)

        with self.assertRaises(WrongStateError):
            self._draft([unit], reason='urgent breakdown', work_order=done)

    def test_post_only_once_and_revalidates(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        first = self._draft([unit], reason='urgent breakdown')
        second = self._draft([unit], reason='urgent breakdown')

        post_issue(self.db, principal=self.storekeeper, issue_id=first.id)
        with self.assertRaises(WrongStateError):
            post_issue(self.db, principal=self.storekeeper, issue_id=first.id)
        with self.assertRaises(ConflictError) as ctx:
            post_issue(self.db, principal=self.storekeeper, issue_id=second.id)
        self.assertNotIsInstance(ctx.exception, ConcurrencyConflictError)
        self.assertEqual(ctx.exception.details['current'], 'ISSUED')

    def test_list_issues_filters(self) -> None:
        unit = self.make_part_item(self.part, self.warehouse)
        issue = self._draft([unit], reason='urgent breakdown')
        post_issue(self.db, principal=self.storekeeper, issue_id=issue.id)

        self.assertEqual([i.id for i in list_issues(self.db, status='posted')], [issue.id])
        self.assertEqual(list_issues(self.db, status='draft'), [])
        self.assertEqual(len(list_issues(self.db, work_order_id=str(self.work_order.id))), 1)


class BulkIssueTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.storekeeper = self.make_principal(UserRole.STOREKEEPER)
        self.warehouse = self.make_warehouse()
        self.part = self.make_part()
        self.work_order = self.make_work_order()

    def _bulk(self, capabilities=FULL_CAPABILITIES, **overrides):
        values = {
            'work_order_id': str(self.work_order.id),
            'warehouse_id': str(self.warehouse.id),
            'part_id': str(self.part.id),
            'qty': '2.5',
            'unit_cost': '4.10',
        }
        values.update(overrides)
        return record_bulk_issue(self.db, principal=self.storekeeper, capabilities=capabilities, **values)

    def test_records_quantity_and_cost(self) -> None:
        row = self._bulk()

        self.assertEqual(row.qty, Decimal('2.500'))
        self.assertEqual(row.total_cost, Decimal('10.25'))

    def test_rejects_bad_input_and_disabled_capability(self) -> None:
        with self.assertRaises(ValidationError):
            self._bulk(qty='0')
        with self.assertRaises(ValidationError):
            self._bulk(unit_cost='-1')
        with self.assertRaises(ValidationError):
            self._bulk(capabilities=Capabilities(expense_audit=True, bulk_inventory=False))
