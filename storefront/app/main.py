import asyncio
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront.app.api import orders, payments, flash_sales, settlements, subscriptions, cron
from storefront.app.api.deps import get_session, get_dispatcher
from storefront.app.core.database import async_session, check_db_readiness
from storefront.app.core.exceptions import ServiceError, UnavailableError
from storefront.app.core.logging import setup_logging, get_logger, bind_request_context, clear_request_context
from storefront.app.core.settings import get_settings
from storefront.app.core.metrics import PrometheusMiddleware, get_metrics_response
from storefront.app.services.settlement import SettlementSweep

VERSION = "1.0.0"

try:
    settings = get_settings()
except ValueError as e:
    print(f"Refusing to start: {e}", file=sys.stderr)
    sys.exit(1)

setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)

logger = get_logger(__name__)

logger.info(
    "Storefront configured",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    mpesa_environment=settings.MPESA_ENVIRONMENT,
    scheduler=settings.SCHEDULER_ENABLED,
)


async def run_daily_sweep():
    """One billing sweep with its own sessions; side effects are dispatched as it goes."""
    clear_request_context()
    bind_request_context(job="daily_sweep")
    report = await SettlementSweep(async_session, dispatch=get_dispatcher().dispatch).run()
    if report.errors:
        logger.warning("Daily sweep finished with errors", errors=len(report.errors))
    return report


def seconds_until_sweep(now: datetime, hour: int) -> float:
    """Delay until the next ``hour``:05 UTC, always in the future."""
    next_run = now.replace(hour=hour, minute=5, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def _sweep_scheduler():
    while True:
        try:
            delay = seconds_until_sweep(datetime.now(tz=timezone.utc), settings.SWEEP_HOUR_UTC)
            logger.info("Next billing sweep scheduled", in_seconds=int(delay))
            await asyncio.sleep(delay)
            await run_daily_sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The sweep isolates its own units; this only catches setup failures
            logger.error("Billing sweep crashed", error=str(e))
            await asyncio.sleep(60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Storefront starting", version=VERSION)
    scheduler = asyncio.create_task(_sweep_scheduler()) if settings.SCHEDULER_ENABLED else None
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.cancel()
        logger.info("Storefront stopped")


app = FastAPI(title="Storefront", version=VERSION, lifespan=lifespan)


# -- Error bodies: always {"error", "code"} ---------------------------------

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("Service error", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
@app.exception_handler(InterfaceError)
async def database_unavailable_handler(request: Request, exc: Exception):
    """Store unreachable or not migrated: tell clients to retry later."""
    logger.error("Database unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content=UnavailableError().to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": code.get(exc.status_code, "http_error")},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"error": "Request validation failed", "code": "invalid_request", "details": jsonable_encoder(exc.errors())},
    )


# -- Middleware --------------------------------------------------------------

origins = settings.allowed_origins_list
if not origins:
    # Only reachable in development; production settings require ALLOWED_ORIGINS
    origins = ["*"]
    logger.warning("CORS open to every origin")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Seller-Id", "X-Request-Id"],
    expose_headers=["X-Request-Id"],
)
app.add_middleware(PrometheusMiddleware)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tag every log line of a request with its id and the acting seller."""
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:16]
    clear_request_context()
    bind_request_context(
        request_id=request_id,
        seller_id=request.headers.get("X-Seller-Id"),
        path=request.url.path,
    )
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-Id"] = request_id
    return response


app.include_router(orders.router, prefix="/orders", tags=["orders"])
app.include_router(payments.router, prefix="/payments", tags=["payments"])
app.include_router(flash_sales.router, prefix="/flash-sales", tags=["flash-sales"])
app.include_router(settlements.router, prefix="/settlements", tags=["settlements"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
app.include_router(cron.router, prefix="/cron", tags=["cron"])


@app.get("/")
async def root():
    return {"service": "storefront", "version": VERSION}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """Liveness plus database readiness; 503 until the schema is migrated."""
    readiness = await check_db_readiness(session)
    return JSONResponse(
        status_code=200 if readiness["ok"] else 503,
        content={
            "status": "healthy" if readiness["ok"] else "unhealthy",
            "version": VERSION,
            "checks": {"database": readiness},
        },
    )


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    return get_metrics_response(openmetrics=openmetrics)
