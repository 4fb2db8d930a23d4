# src/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admin.routes import router as admin_router
from auth.routes import router as auth_router
from config import settings
from errors import (
    AuthError,
    InvalidRequestError,
    LedgerError,
    NotFoundError,
    ProviderError,
    QuotaExceededError,
    TrialUnavailableError,
)
from listings.routes import router as listings_router
from notifications.services import build_dispatcher
from payment.gateway import PesapalGateway
from payment.routes import router as payment_router
from scheduler.tasks import ExpiryScheduler
from subscription.routes import router as subscription_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Car Directory Backend",
    description="Dealer subscriptions, payments and listing quotas",
    version="0.1.0",
)

# Configure CORS
origins = [settings.FRONTEND_URL, "http://localhost:5173", "http://127.0.0.1:5173"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.gateway = PesapalGateway()
app.state.dispatcher = build_dispatcher()
app.state.expiry_scheduler = ExpiryScheduler(dispatcher=app.state.dispatcher, gateway=app.state.gateway)

# Include routers
app.include_router(auth_router)
app.include_router(payment_router)
app.include_router(subscription_router)
app.include_router(listings_router)
app.include_router(admin_router)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError):
    return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": exc.message})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": "not_found", "detail": exc.message})


@app.exception_handler(TrialUnavailableError)
async def trial_unavailable_handler(request: Request, exc: TrialUnavailableError):
    return JSONResponse(status_code=403, content={"error": "trial_unavailable", "detail": exc.message})


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    return JSONResponse(
        status_code=402,
        content={"error": "subscription_required", "detail": exc.message, "redirect": "/pricing"},
    )


@app.exception_handler(AuthError)
@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"Payment provider failure on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=502, content={"error": "payment_failed", "detail": "Payment failed, please retry."})


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=503, content={"error": "unavailable", "detail": "Service temporarily unavailable, try again later."})


@app.on_event("startup")
async def startup_event():
    """Run initial tasks on startup."""
    if settings.SCHEDULER_ENABLED:
        app.state.expiry_scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    app.state.expiry_scheduler.shutdown()


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Welcome to Car Directory Backend!"}
