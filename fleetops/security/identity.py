from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fleetops.auth import Principal
from fleetops.errors import NotAuthorizedError, ServiceError, UnauthenticatedError, ValidationError
from fleetops.models import User
from fleetops.services.guards import parse_uuid

logger = logging.getLogger(__name__)

AUTH_EXEMPT_PATHS = {'/health', '/docs', '/openapi.json'}


def load_principal(db: Session, actor_id: uuid.UUID) -> Principal | None:
    user = db.get(User, actor_id)
    if not user:
        return None
    return Principal(id=user.id, full_name=user.full_name, role=user.role, active=user.active)


def _error_response(exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def install_identity_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        request.state.principal = None
        if request.url.path in AUTH_EXEMPT_PATHS:
            return await call_next(request)

        header = request.app.state.settings.identity_header
        raw = request.headers.get(header)
        if not raw:
            return _error_response(UnauthenticatedError(f'Missing {header} header'))
        try:
            actor_id = parse_uuid(raw, 'actor_id')
        except ValidationError as exc:
            return _error_response(exc)

        with request.app.state.session_factory() as db:
            principal = load_principal(db, actor_id)

        if principal is None:
            logger.info('Rejected unknown actor %s on %s', actor_id, request.url.path)
            return _error_response(UnauthenticatedError('Unknown actor'))
        if not principal.active:
            return _error_response(NotAuthorizedError('Actor is inactive'))

        request.state.principal = principal
        return await call_next(request)
