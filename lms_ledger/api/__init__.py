"""
Loan Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .ledger import router as ledger_router
from .installments import router as installments_router
from .loans import router as loans_router
from .audit import router as audit_router
from .accounts import router as accounts_router
from ..config import get_config
from .. import __version__


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()
    app = FastAPI(
        title="Loan Ledger API",
        description="Customer ledgers, installment plans and amount reconciliation for loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(installments_router, prefix="/installments", tags=["Installments"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(audit_router, prefix="/audit-logs", tags=["Audit"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lms_ledger_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "lms_ledger.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
