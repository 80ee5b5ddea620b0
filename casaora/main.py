import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import FRONTEND_URL
from .database import Base, engine
from .domain.bookings.router import router as bookings_router
from .domain.bookings.router import webhooks_router as payment_webhooks_router
from .domain.credits.router import router as credits_router
from .domain.plans.router import router as plans_router
from .domain.pricing.router import router as pricing_router
from .exceptions import (
    BookingEngineError,
    InsufficientCredit,
    NotFoundError,
    PaymentProcessorError,
    StateConflictError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("stripe").setLevel(logging.WARNING)


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

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Casaora Booking Engine", version="1.0.0", lifespan=lifespan)


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
                content={"detail": "Not authenticated. Please provide a valid Bearer token."},
            )

    # Validator errors carry the raw exception in ctx
    errors = jsonable_encoder(exc.errors())
    logger.warning(f"Validation error for {request.url.path}: {errors}")
    return JSONResponse(status_code=422, content={"detail": errors})


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.message, "context": exc.context})


@app.exception_handler(InsufficientCredit)
async def insufficient_credit_handler(request: Request, exc: InsufficientCredit):
    return JSONResponse(
        status_code=422,
        content={"detail": exc.message, "requested": exc.requested, "available": exc.available},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(StateConflictError)
async def state_conflict_handler(request: Request, exc: StateConflictError):
    logger.warning(
        f"⚠️ Conflict on {request.method} {request.url.path}: attempted={exc.attempted} "
        f"current={exc.current_status} {exc.context}"
    )
    return JSONResponse(
        status_code=409,
        content={"detail": "This booking changed while you were working on it. Please refresh and try again."},
    )


@app.exception_handler(PaymentProcessorError)
async def payment_processor_handler(request: Request, exc: PaymentProcessorError):
    logger.error(
        f"❌ Payment processor error on {request.method} {request.url.path}: {exc.message} "
        f"(outcome_unknown={exc.outcome_unknown}) {exc.context}"
    )
    return JSONResponse(
        status_code=502,
        content={"detail": "The payment could not be processed right now. Please try again."},
    )


@app.exception_handler(BookingEngineError)
async def booking_engine_handler(request: Request, exc: BookingEngineError):
    logger.warning(f"⚠️ {type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=422, content={"detail": exc.message})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", f"{FRONTEND_URL},http://localhost:3000").split(",")
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(pricing_router)
app.include_router(bookings_router)
app.include_router(credits_router)
app.include_router(plans_router)
app.include_router(payment_webhooks_router)


@app.get("/")
def root():
    return {"message": "Casaora Booking Engine is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
