from routes.auth import auth_router
from credit_wallet.routes import credits_router
from credit_wallet.db_init import ensure_indexes
from credit_wallet.errors import CreditError
from credit_wallet.guard import WriteRateLimiter
from credit_wallet.repository import MongoAccountStore, MongoCreditStore
from credit_wallet.tokens import TokenAuthority
from database import validate_required_env_vars, create_client, check_db_connection
from utils.environment import ENVIRONMENT, is_production, cors_allowed_origins
from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from datetime import datetime, timezone

# Create the main app
app = FastAPI(title="Kiosk Credits API")

api_router = APIRouter(prefix="/api")


# ==================== ERROR HANDLERS ====================

@app.exception_handler(CreditError)
async def credit_error_handler(request: Request, exc: CreditError):
    headers = None
    if "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return JSONResponse(
        status_code=400,
        content={"error_code": "VALIDATION_ERROR", "message": "; ".join(problems) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error_code": "INTERNAL_ERROR", "message": "Server error."})


# ==================== HEALTH ====================

@api_router.get("/health")
async def health(request: Request):
    authority = getattr(request.app.state, "token_authority", None)
    client = getattr(request.app.state, "mongo_client", None)

    db_status = "not_connected"
    if client is not None:
        try:
            await client.admin.command('ping')
            db_status = "connected"
        except Exception as e:
            logger.warning(f"Health check ping failed: {e}")
            db_status = "unavailable"

    return {
        "status": "healthy",
        "database": db_status,
        "environment": ENVIRONMENT,
        "scan_key_mode": authority.scan_key_mode if authority else None,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(auth_router)
api_router.include_router(credits_router)

app.include_router(api_router)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


app.add_middleware(
    CORSMiddleware,
    allow_credentials=False,
    allow_origins=cors_allowed_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-Timestamp"],
)

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    validate_required_env_vars()

    # Key provisioning first - a misconfigured keypair must stop the boot
    app.state.token_authority = TokenAuthority.from_environment(production=is_production())

    client = create_client(os.environ['MONGO_URL'])
    db = client[os.environ['DB_NAME']]

    # Check database connection - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection(client, db)
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Unique indexes back username uniqueness and idempotency-key deduplication
    await ensure_indexes(db)

    app.state.mongo_client = client
    app.state.credit_store = MongoCreditStore(client, db)
    app.state.account_store = MongoAccountStore(db)
    app.state.write_limiter = WriteRateLimiter()

    logger.info(
        f"Kiosk Credits started - environment={ENVIRONMENT}, "
        f"scan_key_mode={app.state.token_authority.scan_key_mode}"
    )


@app.on_event("shutdown")
async def shutdown_db_client():
    client = getattr(app.state, "mongo_client", None)
    if client is not None:
        client.close()
