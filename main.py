from fastapi import FastAPI, HTTPException, Request, Depends, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import structlog
import time
from typing import Optional
from contextlib import asynccontextmanager

from config import get_settings
from errors import AppError
from models import ChargeRequest, ChargeResult, ErrorResponse, HealthResponse, ResetRequest
from repositories import BalanceStore, InMemoryBalanceStore, RedisBalanceStore
from services import ChargeService, get_charge_service

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def build_store() -> BalanceStore:
    if settings.store_backend == "memory":
        logger.info("Using in-memory balance store")
        return InMemoryBalanceStore()
    url = settings.get_redis_url()
    logger.info("Using redis URL", url=url)
    return RedisBalanceStore.from_url(url)


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Account Charge API")
    app.state.balance_store = build_store()
    yield
    # Shutdown
    await app.state.balance_store.close()
    logger.info("Shutting down Account Charge API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account balance charging with optimistic concurrency control",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_balance_store(request: Request) -> BalanceStore:
    return request.app.state.balance_store


def get_service(store: BalanceStore = Depends(get_balance_store)) -> ChargeService:
    return get_charge_service(
        store,
        default_balance=settings.default_balance,
        timeout=settings.charge_timeout_seconds
    )

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and balance store connectivity"
)
async def health_check(store: BalanceStore = Depends(get_balance_store)):
    backend = type(store).__name__
    if not await store.ping():
        logger.error("Health check failed", store=backend)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=HealthResponse(status="unhealthy", store=backend).model_dump(mode="json")
        )
    return HealthResponse(status="healthy", store=backend)


@app.post(
    "/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reset Account",
    description="Set the account balance back to the default value"
)
async def reset_account(
    reset_request: Optional[ResetRequest] = None,
    service: ChargeService = Depends(get_service)
):
    reset_request = reset_request or ResetRequest()
    await service.reset(reset_request.account)
    logger.info("Successfully reset account", account=reset_request.account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/charge",
    response_model=ChargeResult,
    summary="Charge Account",
    description="Charge with a plain read then write. Concurrent charges may overdraw the account.",
    responses={
        200: {"description": "Charge evaluated; see status"},
        422: {"description": "Validation error"},
        500: {"description": "Balance missing or malformed"},
        503: {"description": "Balance store unavailable"}
    }
)
async def charge_account(
    charge_request: Optional[ChargeRequest] = None,
    service: ChargeService = Depends(get_service)
):
    charge_request = charge_request or ChargeRequest()
    return await service.original_charge(charge_request.account, charge_request.charges)


@app.post(
    "/charge/v2",
    response_model=ChargeResult,
    summary="Charge Account (optimistic)",
    description="Charge with a watched read and conditional commit. Contention is reported as TransactionError.",
    responses={
        200: {"description": "Charge evaluated; see status"},
        422: {"description": "Validation error"},
        500: {"description": "Balance malformed"},
        503: {"description": "Balance store unavailable"}
    }
)
async def charge_account_v2(
    charge_request: Optional[ChargeRequest] = None,
    service: ChargeService = Depends(get_service)
):
    charge_request = charge_request or ChargeRequest()
    return await service.transaction_charge(charge_request.account, charge_request.charges)


# Global exception handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.error(
        "Error while handling request",
        error=exc.message,
        error_code=exc.code,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=ErrorResponse(
            detail=exc.message,
            error_code=f"E{exc.code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=str(exc.detail),
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
