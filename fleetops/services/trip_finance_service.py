from __future__ import annotations

import logging
import uuid

from sqlalchemy.orm import Session

from fleetops.auth import PRIVILEGED_ROLES, Principal, require_role
from fleetops.errors import AlreadyClosedError, WrongStateError
from fleetops.models import Trip, TripFinancialStatus
from fleetops.services.collaborators import get_trip

logger = logging.getLogger(__name__)


def open_trip_finance_review(db: Session, *, principal: Principal, trip_id: uuid.UUID) -> Trip:
    require_role(principal, *PRIVILEGED_ROLES, action='open trip finance review')
    trip = get_trip(db, trip_id)
    if trip.financial_status == TripFinancialStatus.CLOSED:
        raise AlreadyClosedError(
            'Trip finance already CLOSED',
            current=TripFinancialStatus.CLOSED.value,
            required=[TripFinancialStatus.OPEN.value, TripFinancialStatus.IN_REVIEW.value],
        )
    trip.financial_status = TripFinancialStatus.IN_REVIEW
    db.flush()
    logger.info('Trip %s finance moved to IN_REVIEW by %s', trip.id, principal.id)
    return trip


def close_trip_finance(db: Session, *, principal: Principal, trip_id: uuid.UUID) -> Trip:
    require_role(principal, *PRIVILEGED_ROLES, action='close trip finance')
    trip = get_trip(db, trip_id)
    current = trip.financial_status or TripFinancialStatus.OPEN
    if current != TripFinancialStatus.IN_REVIEW:
        raise WrongStateError(
            f'Trip must be IN_REVIEW to close finance (current: {current.value})',
            current=current.value,
            required=[TripFinancialStatus.IN_REVIEW.value],
        )
    trip.financial_status = TripFinancialStatus.CLOSED
    db.flush()
    logger.info('Trip %s finance CLOSED by %s', trip.id, principal.id)
    return trip
