"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hrm_payroll.api.routes import health_router, payroll_router
from hrm_payroll.config import Settings, configure_logging, get_settings
from hrm_payroll.database import create_schema, dispose_db, init_db
from hrm_payroll.errors import LockTimeoutError, PayrollError
from hrm_payroll.services.side_effects import PayslipSideEffects, TextPayslipRenderer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    configure_logging(settings.log_level)

    owns_engine = app.state.session_factory is None
    if owns_engine:
        engine, session_factory = init_db()
        app.state.session_factory = session_factory
        if settings.auto_create_schema:
            await create_schema(engine)
    if app.state.side_effects is None:
        app.state.side_effects = PayslipSideEffects(
            app.state.session_factory,
            TextPayslipRenderer(settings.payslip_storage_dir),
        )

    yield

    if owns_engine:
        await dispose_db()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    side_effects: PayslipSideEffects | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    When no session factory is given, the global engine from settings is
    created on startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="HRM Payroll API",
        description="Payroll period run, finalize, and reopen",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.side_effects = side_effects
    if session_factory is not None and side_effects is None:
        app.state.side_effects = PayslipSideEffects(
            session_factory, TextPayslipRenderer(settings.payslip_storage_dir)
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollError)
    async def payroll_exception_handler(
        request: Request, exc: PayrollError
    ) -> JSONResponse:
        """Map domain errors to their stable code and status."""
        headers = {"Retry-After": "1"} if isinstance(exc, LockTimeoutError) else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Report malformed requests as validation errors."""
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": "Request validation failed",
                "code": "validation_error",
                "context": {"errors": jsonable_errors(exc)},
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "internal_error",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_router, prefix="/api/v1")

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation error entries reduced to JSON-safe fields."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


# Default app instance for uvicorn
app = create_app()
