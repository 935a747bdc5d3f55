import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import models so every table is registered on Base before create_all
from . import models  # noqa: F401
from .config import ALLOWED_ORIGINS
from .database import Base, engine
from .domain.billing import router as billing_router
from .domain.bookings import router as bookings_router
from .domain.coaching import router as coaching_router
from .domain.goals import router as goals_router
from .routes.cal import router as cal_router
from .routes.cal_webhooks import router as cal_webhooks_router
from .routes.calendly import cron_router
from .routes.calendly import router as calendly_router
from .routes.calendly_webhooks import router as calendly_webhooks_router
from .routes.support import router as support_router
from .routes.users import router as users_router
from .shared.responses import STATUS_CODES, ApiError, error_body

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    from .rate_limiter import get_redis_client

    try:
        if get_redis_client() is not None:
            logger.info("Redis connection established")
        else:
            logger.info("Redis not configured - rate limiting uses in-memory counters")
    except Exception as e:
        logger.warning(f"Redis connection failed - Rate limiting falls back to memory: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="coachmarket API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Wrap every HTTP error in the {data, error} envelope"""
    if isinstance(exc, ApiError):
        code, message = exc.code, exc.message
    else:
        code = STATUS_CODES.get(exc.status_code, "ERROR")
        message = exc.detail
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {exc.status_code} {code}: {message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, message),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content=error_body(
                    "UNAUTHORIZED",
                    "Not authenticated. Please provide a valid Bearer token in the Authorization header.",
                ),
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return JSONResponse(
        status_code=422,
        content=error_body("VALIDATION_ERROR", "; ".join(messages) or "Invalid request"),
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# Log CORS configuration for debugging
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(users_router)
app.include_router(bookings_router)
app.include_router(coaching_router)
app.include_router(goals_router)
app.include_router(support_router)
app.include_router(billing_router)
app.include_router(cal_router)
app.include_router(cal_webhooks_router)
app.include_router(calendly_router)
app.include_router(calendly_webhooks_router)
app.include_router(cron_router)


@app.get("/")
def root():
    return {"message": "coachmarket API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
