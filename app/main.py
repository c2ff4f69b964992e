"""
Main FastAPI application for the credit ledger.
Serves health, wallet (chat front-end), YooKassa webhook, admin API and metrics.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.errors import register_error_handlers
from app.api.routes import admin, health, payments, wallet
from app.core.config import settings
from app.core.logging import configure_logging
from app.utils.metrics import router as metrics_router

configure_logging()

app = FastAPI(
    title="Credit Ledger API",
    description="Balances, YooKassa top-ups and paid generations",
    version="1.0.0",
)

# CORS
origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
if not origins:
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(wallet.router)
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(metrics_router)
