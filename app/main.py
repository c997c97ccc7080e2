import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from app.core.background import BestEffortDispatcher
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, configure_logging, get_logger
from app.db.init import create_client, init_db, init_ledger_store
from app.routers import admin, auth, credits, payments, resources
from app.services.payments import StripeGateway

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

# Polled by load balancers; not worth an access log line each time
QUIET_PATHS = frozenset({"/health"})

app = FastAPI(
    title="Credit Ledger API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    bind_request_id(request_id)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    if request.url.path not in QUIET_PATHS:
        log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(auth.router, prefix="/v1/auth", tags=["auth"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(payments.router, prefix="/v1/payments", tags=["payments"])
app.include_router(resources.router, prefix="/v1/resources", tags=["resources"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


async def _build_services(target: FastAPI, cfg: Settings) -> None:
    """Ledger store, payment gateway and side-effect dispatcher, shared by every request."""
    client = create_client(cfg)
    database = await init_db(client)
    target.state.ledger_store = await init_ledger_store(client, database)
    target.state.payment_gateway = StripeGateway()
    target.state.dispatcher = BestEffortDispatcher()


@app.on_event("startup")
async def startup():
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
    await _build_services(app, settings)
    log.info(
        "startup",
        env=settings.env,
        sentry=bool(settings.sentry_dsn),
        mongo_transactions=app.state.ledger_store.supports_transactions,
    )


@app.on_event("shutdown")
async def shutdown():
    # Let in-flight audit writes and emails finish before the client goes away
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.drain(timeout=10)
    store = getattr(app.state, "ledger_store", None)
    if store is not None:
        await store.close()
    log.info("shutdown")


@app.get("/health")
async def health():
    return {"status": "ok"}
