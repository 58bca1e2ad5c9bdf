"""FastAPI application factory for Stashu-Engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stashu_engine.common.config import StashuSettings, get_settings
from stashu_engine.common.exceptions import StashuError
from stashu_engine.common.logging import setup_logging
from stashu_engine.common.ratelimit import RateLimitMiddleware
from stashu_engine.common.schemas import HealthResponse
from stashu_engine.common.security import SignatureVerifier
from stashu_engine.ecash.wallet import MintWallet
from stashu_engine.settlement.lnaddress import InvoiceResolver

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": message, "code": code}, status_code=status_code,
    )


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StashuError)
    async def stashu_error(request: Request, exc: StashuError):
        if exc.status_code >= 500:
            logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return _error(exc.status_code, exc.message, exc.code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else "Invalid request"
        return _error(400, message, "VALIDATION")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail), "HTTP_ERROR")

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error", "INTERNAL")


def create_app(
    settings: StashuSettings | None = None,
    wallet: MintWallet | None = None,
    resolver: InvoiceResolver | None = None,
    verifier: SignatureVerifier | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    from stashu_engine.deps import build_services, shutdown, startup
    services = build_services(settings, wallet=wallet, resolver=resolver, verifier=verifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Reconciliation completes before the first request is served
        await startup(services)
        yield
        await shutdown(services)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RateLimitMiddleware, limiter=services.limiter)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    _register_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from stashu_engine.stashes.router import router as stash_router
    from stashu_engine.payments.router import router as payments_router
    from stashu_engine.settlement.router import router as settlement_router

    app.include_router(stash_router, tags=["stashes"])
    app.include_router(payments_router, tags=["payments"])
    app.include_router(settlement_router, tags=["settlement"])

    return app
