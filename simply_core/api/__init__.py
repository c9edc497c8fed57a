"""
Simply Core API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .wallet import router as wallet_router
from .investments import router as investments_router
from .financing import router as financing_router
from .transfers import router as transfers_router, contacts_router
from .admin import router as admin_router
from ..config import get_config
from ..errors import (
    ConflictError, ForbiddenError, InsufficientCollateralError, InsufficientCreditError,
    InsufficientFundsError, LimitExceededError, NotFoundError, ProvisioningError,
    SimplyError, StateError, ValidationError
)
from ..logging_config import get_logger
from ..system import SimplySystem

logger = get_logger("simply.api")

# Checked in order; first match wins
ERROR_STATUS_CODES = [
    (ValidationError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
    (InsufficientFundsError, 422),
    (InsufficientCreditError, 422),
    (InsufficientCollateralError, 422),
    (LimitExceededError, 422),
    (ProvisioningError, 503),
]


def status_code_for(error: SimplyError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 400


def create_app(system: Optional[SimplySystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Simply Core API",
        description="Wallet ledger, FCI accrual, financing and transfers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or SimplySystem()
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    @app.exception_handler(SimplyError)
    async def handle_domain_error(request: Request, error: SimplyError):
        status_code = status_code_for(error)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {error.message}")
        return JSONResponse(status_code=status_code, content=error.to_dict())
    
    app.include_router(wallet_router, prefix="/wallet", tags=["Wallet"])
    app.include_router(investments_router, prefix="/investments", tags=["Investments"])
    app.include_router(financing_router, prefix="/financing", tags=["Financing"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(contacts_router, prefix="/contacts", tags=["Contacts"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])
    
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "simply_core_api",
            "version": "1.0.0"
        }
    
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Simply Core API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "wallet": "/wallet",
                "investments": "/investments",
                "financing": "/financing",
                "transfers": "/transfers",
                "contacts": "/contacts",
                "admin": "/admin",
            }
        }
    
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "simply_core.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        workers=config.api_workers,
        log_level=config.log_level.lower()
    )
