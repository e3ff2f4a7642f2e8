from __future__ import annotations

import unittest
import uuid
from decimal import Decimal

from fleetops.errors import (
    AlreadyClosedError,
    ConflictError,
    ForbiddenOwnershipError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
    WrongStateError,
)
from fleetops.models import CashAdvanceStatus, SettlementType, UserRole
from fleetops.services.cash_advance_service import (
    close_advance,
    compute_totals,
    create_advance,
    get_advance_for_principal,
    list_advances,
    reopen_advance,
    submit_for_review,
    summarize_advances,
)
from fleetops.services.cash_expense_service import ExpenseInput, approve_expense, create_expense
from support import FULL_CAPABILITIES, DatabaseTestCase


class CashAdvanceServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.accountant = self.make_principal(UserRole.ACCOUNTANT)
        self.supervisor = self.make_principal(UserRole.FIELD_SUPERVISOR)

    def _approved_expense(self, advance, amount: str):
        expense = create_expense(
            self.db,
            principal=self.supervisor,
            data=ExpenseInput(expense_type='FUEL', amount=amount, cash_advance_id=str(advance.id)),
        )
        return approve_expense(
            self.db, principal=self.accountant, capabilities=FULL_CAPABILITIES, expense_id=expense.id
        )

    def test_create_advance_starts_open(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='1000'
        )

        self.assertEqual(advance.status, CashAdvanceStatus.OPEN)
        self.assertEqual(advance.amount, Decimal('1000.00'))
        self.assertEqual(advance.issued_by, self.accountant.id)

    def test_create_advance_requires_privileged_role(self) -> None:
        with self.assertRaises(NotAuthorizedError):
            create_advance(self.db, principal=self.supervisor, field_supervisor_id=self.supervisor.id, amount='10')

    def test_create_advance_rejects_non_positive_amount_and_unknown_supervisor(self) -> None:
        with self.assertRaises(ValidationError):
            create_advance(self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='0')
        with self.assertRaises(ValidationError):
            create_advance(self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='abc')
        with self.assertRaises(ValidationError):
            create_advance(self.db, principal=self.accountant, field_supervisor_id=uuid.uuid4(), amount='10')

    def test_create_advance_rejects_amount_rounding_to_zero(self) -> None:
        for amount in ('0.004', '0.001'):
            with self.assertRaises(ValidationError):
                create_advance(self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount=amount)

        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='0.005'
        )
        self.assertEqual(advance.amount, Decimal('0.01'))

    def test_close_with_return_after_approved_expense(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='1000'
        )
        self._approved_expense(advance, '300')
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        closed, totals = close_advance(
            self.db,
            principal=self.accountant,
            advance_id=advance.id,
            settlement_type='return',
            amount='700',
            reference='BANK-1',
        )

        self.assertEqual(closed.status, CashAdvanceStatus.CLOSED)
        self.assertEqual(closed.settlement_type, SettlementType.RETURN)
        self.assertEqual(closed.settlement_amount, Decimal('700.00'))
        self.assertEqual(closed.settled_by, self.accountant.id)
        self.assertEqual(totals.remaining, Decimal('700.00'))

    def test_close_blocked_while_expense_pending(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='1000'
        )
        self._approved_expense(advance, '300')
        create_expense(
            self.db,
            principal=self.supervisor,
            data=ExpenseInput(expense_type='TOLL', amount='50', cash_advance_id=str(advance.id)),
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        with self.assertRaises(ConflictError) as ctx:
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='700'
            )

        self.assertEqual(ctx.exception.details['pending_count'], 1)
        self.assertIn('pending/appealed', ctx.exception.message)

    def test_shortage_settlement_and_return_rejected_on_shortage(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='500'
        )
        self._approved_expense(advance, '400')
        self._approved_expense(advance, '250')
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        with self.assertRaises(ValidationError) as ctx:
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='0'
            )
        self.assertIn('shortage', ctx.exception.message)
        self.assertEqual(ctx.exception.details['totals']['shortage'], '150.00')

        closed, totals = close_advance(
            self.db, principal=self.accountant, advance_id=advance.id, settlement_type='SHORTAGE', amount='150'
        )
        self.assertEqual(closed.status, CashAdvanceStatus.CLOSED)
        self.assertEqual(totals.shortage, Decimal('150.00'))

    def test_return_amount_must_match_remaining(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='1000'
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        with self.assertRaises(ValidationError):
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='999.99'
            )
        closed, _ = close_advance(
            self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='1000.001'
        )
        self.assertEqual(closed.settlement_amount, Decimal('1000.00'))

    def test_shortage_requires_actual_shortage(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        with self.assertRaises(ValidationError):
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='SHORTAGE', amount='0'
            )

    def test_adjustment_accepts_any_non_negative_amount(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

        closed, _ = close_advance(
            self.db, principal=self.accountant, advance_id=advance.id, settlement_type='ADJUSTMENT', amount='12.5'
        )
        self.assertEqual(closed.settlement_type, SettlementType.ADJUSTMENT)
        self.assertEqual(closed.settlement_amount, Decimal('12.50'))

    def test_close_requires_in_review(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )

        with self.assertRaises(WrongStateError) as ctx:
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='100'
            )
        self.assertEqual(ctx.exception.current, 'OPEN')
        self.assertEqual(ctx.exception.required, ['IN_REVIEW'])

    def test_close_twice_reports_already_closed(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)
        close_advance(self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='100')

        with self.assertRaises(AlreadyClosedError):
            close_advance(
                self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='100'
            )
        with self.assertRaises(AlreadyClosedError):
            submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)

    def test_unknown_settlement_type(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        with self.assertRaises(ValidationError):
            close_advance(self.db, principal=self.accountant, advance_id=advance.id, settlement_type='REFUND', amount='1')

    def test_reopen_clears_settlement(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        submit_for_review(self.db, principal=self.accountant, advance_id=advance.id)
        close_advance(self.db, principal=self.accountant, advance_id=advance.id, settlement_type='RETURN', amount='100')

        reopened = reopen_advance(self.db, principal=self.accountant, advance_id=advance.id)

        self.assertEqual(reopened.status, CashAdvanceStatus.IN_REVIEW)
        self.assertIsNone(reopened.settlement_type)
        self.assertIsNone(reopened.settlement_amount)
        self.assertIsNone(reopened.settled_at)

    def test_reopen_only_closed(self) -> None:
        advance = create_advance(
            self.db, principal=self.accountant, field_supervisor_id=self.supervisor.id, amount='100'
        )
        with self.assertRaises(WrongStateError):
            reopen_advance(self.db, principal=self.accountant, advance_id=advance.id)

    def test_missing_advance(self) -> None:
        with self.assertRaises(NotFoundError):
            submit_for_review(self.db, principal=self.accountant, advance_id=uuid.uuid4())

    def test_supervisor_sees_only_own_advances(self) -> None:
        other = self.make_principal(UserRole.FIELD_SUPERVISOR)
        mine = self.make_advance(self.supervisor, self.accountant, amount='100')
        theirs = self.make_advance(other, self.accountant, amount='200')

        self.assertEqual(get_advance_for_principal(self.db, principal=self.supervisor, advance_id=mine.id).id, mine.id)
        with self.assertRaises(ForbiddenOwnershipError):
            get_advance_for_principal(self.db, principal=self.supervisor, advance_id=theirs.id)

        listing = list_advances(self.db, principal=self.supervisor)
        self.assertEqual([item.id for item in listing['items']], [mine.id])
        self.assertEqual(listing['total'], 1)

        summary = summarize_advances(self.db, principal=self.accountant)
        self.assertEqual(summary['scope'], 'ALL')
        self.assertEqual(summary['count_all'], 2)
        self.assertEqual(summary['sum_amount'], Decimal('300.00'))

    def test_list_advances_pages_and_filters(self) -> None:
        for _ in range(3):
            self.make_advance(self.supervisor, self.accountant)
        self.make_advance(self.supervisor, self.accountant, status=CashAdvanceStatus.CLOSED)

        page = list_advances(self.db, principal=self.accountant, status='open', page=1, page_size=2)
        self.assertEqual(page['total'], 3)
        self.assertEqual(len(page['items']), 2)
        self.assertEqual(page['page_size'], 2)

        with self.assertRaises(ValidationError):
            list_advances(self.db, principal=self.accountant, status='LOST')


class ComputeTotalsTests(unittest.TestCase):
    def test_remaining_and_shortage_are_mirrored(self) -> None:
        totals = compute_totals(Decimal('500'), Decimal('650'))

        self.assertEqual(totals.remaining, Decimal('-150.00'))
        self.assertEqual(totals.shortage, Decimal('150.00'))
        self.assertEqual(totals.as_dict()['advance_amount'], '500.00')
