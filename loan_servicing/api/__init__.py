"""
Loan Servicing API Application Factory
"""

from fastapi import FastAPI

from .. import __version__
from ..config import ServicingConfig, load_config
from ..logging_config import setup_logging
from .audit import router as audit_router
from .auth import router as auth_router
from .csrf import router as csrf_router
from .deps import ServicingSystem
from .error_handlers import register_error_handlers
from .loans import router as loans_router
from .settings import router as settings_router
from .transactions import router as transactions_router


def create_app(system: ServicingSystem) -> FastAPI:
    """Create and configure the FastAPI application around a servicing system"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Access control, request integrity, idempotent ledger and payoff quotes",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    register_error_handlers(app)

    app.include_router(csrf_router, prefix="/csrf", tags=["CSRF"])
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(audit_router, prefix="/audit-log", tags=["Audit"])
    app.include_router(settings_router, prefix="/admin/settings", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    return app


def create_app_from_env(config: ServicingConfig = None) -> FastAPI:
    """Build config, logging and the servicing system, then the app (uvicorn factory)"""
    config = config or load_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    return create_app(ServicingSystem(config))
