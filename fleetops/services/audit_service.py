from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fleetops.capabilities import Capabilities
from fleetops.models import CashExpense, CashExpenseAudit
from fleetops.services.guards import _now

logger = logging.getLogger(__name__)


def _json_value(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot_expense(expense: CashExpense) -> dict:
    return {attr.key: _json_value(getattr(expense, attr.key)) for attr in inspect(CashExpense).column_attrs}


def log_expense_audit(
    db: Session,
    capabilities: Capabilities,
    *,
    expense_id: uuid.UUID,
    action: str,
    actor_id: uuid.UUID,
    before: dict | None,
    after: dict | None,
    notes: str | None = None,
) -> bool:
    """Append an audit row next to an expense change.

    The insert runs in a SAVEPOINT: if it fails only the audit row is lost and
    the caller's expense update stays in the transaction.
    """
    if not capabilities.expense_audit:
        return False

    db.flush()
    try:
        with db.begin_nested():
            db.add(
                CashExpenseAudit(
                    expense_id=expense_id,
                    action=action,
                    actor_id=actor_id,
                    before=before,
                    after=after,
                    notes=notes,
                    created_at=_now(),
                )
            )
    except SQLAlchemyError:
        logger.warning('Expense audit skipped for expense %s action %s', expense_id, action, exc_info=True)
        return False
    return True


def list_audit_rows(db: Session, *, expense_id: uuid.UUID) -> list[CashExpenseAudit]:
    return db.execute(
        select(CashExpenseAudit)
        .where(CashExpenseAudit.expense_id == expense_id)
        .order_by(CashExpenseAudit.created_at.asc(), CashExpenseAudit.id.asc())
    ).scalars().all()
