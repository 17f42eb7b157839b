# payrecon/routers/health.py

from fastapi import APIRouter

from payrecon.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": "payrecon-api",
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check - reports whether storage and provider credentials are configured."""
    settings = get_settings()
    checks = {
        "database": "ok" if settings.supabase_url and settings.supabase_service_role_key else "not_configured",
        "bepaid": "ok" if settings.bepaid_shop_id and settings.bepaid_secret_key else "not_configured",
    }
    return {
        "status": "ready" if checks["database"] == "ok" else "degraded",
        "checks": checks,
    }
