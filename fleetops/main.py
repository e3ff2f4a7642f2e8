from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from fleetops.capabilities import resolve_capabilities
from fleetops.config import Settings, settings
from fleetops.db import get_engine, make_session_factory
from fleetops.errors import ServiceError
from fleetops.logging_config import configure_logging
from fleetops.routers import cash, inventory, maintenance, reports
from fleetops.security.headers import install_security_headers
from fleetops.security.identity import install_identity_middleware

logger = logging.getLogger(__name__)


def create_app(engine: Engine | None = None, *, config: Settings | None = None) -> FastAPI:
    config = config or settings
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.capabilities = resolve_capabilities(app.state.engine, config)
        logger.info('Capabilities resolved: %s', app.state.capabilities)
        yield

    app = FastAPI(title='FleetOps Back-Office', lifespan=lifespan)
    app.state.settings = config
    app.state.engine = engine or get_engine()
    app.state.session_factory = make_session_factory(app.state.engine)

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({'message': 'Invalid request', 'kind': 'VALIDATION', 'errors': exc.errors()}),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception('Database error on %s %s', request.method, request.url.path)
        return JSONResponse(status_code=500, content={'message': 'internal error', 'kind': 'INTERNAL'})

    # Middleware added last runs outermost.
    install_identity_middleware(app)
    install_security_headers(app)

    app.include_router(cash.router)
    app.include_router(inventory.router)
    app.include_router(maintenance.router)
    app.include_router(reports.router)

    @app.get('/health')
    def health() -> dict:
        return {'status': 'ok'}

    return app


app = create_app()
