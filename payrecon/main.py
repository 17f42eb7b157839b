# payrecon/main.py

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from payrecon.config import get_settings
from payrecon.routers import health, materialize, reconcile, payments

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# ============================================
# Create FastAPI app
# ============================================

app = FastAPI(
    title=settings.app_name,
    description="Payment reconciliation & materialization engine",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ============================================
# CORS middleware
# ============================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# Include routers
# ============================================

app.include_router(health.router, tags=["Health"])
app.include_router(materialize.router, tags=["Materialization"])
app.include_router(reconcile.router, prefix="/reconcile", tags=["Reconciliation"])
app.include_router(payments.router, prefix="/payments", tags=["Payments"])

# ============================================
# Root endpoint
# ============================================

@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs" if settings.debug else None,
    }
