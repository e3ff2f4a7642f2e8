from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from fleetops.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """Optional features, resolved once per process.

    Deployments that predate the audit trail or bulk parts keep working with
    the corresponding capability switched off.
    """

    expense_audit: bool = True
    bulk_inventory: bool = True


def resolve_capabilities(engine: Engine, config: Settings) -> Capabilities:
    inspector = inspect(engine)
    expense_audit = config.expense_audit_enabled and inspector.has_table('cash_expense_audits')
    bulk_inventory = config.bulk_inventory_enabled and inspector.has_table('bulk_part_issues')
    if config.expense_audit_enabled and not expense_audit:
        logger.warning('cash_expense_audits table missing, expense audit disabled')
    if config.bulk_inventory_enabled and not bulk_inventory:
        logger.warning('bulk_part_issues table missing, bulk inventory disabled')
    return Capabilities(expense_audit=expense_audit, bulk_inventory=bulk_inventory)
