"""
Health check endpoint for deployment monitoring.
"""
from datetime import datetime, timezone
from fastapi import APIRouter
from sqlalchemy import text
from examprep.db.session import SessionLocal
from examprep.services.stripe_service import is_configured

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
def health_check():
    """
    Health check endpoint for deployment monitoring.
    
    Reports database connectivity and whether billing is configured.
    """
    status = "healthy"
    
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {type(e).__name__}"
        status = "degraded"
    
    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_status,
        "billing": "configured" if is_configured() else "disabled",
        "version": "1.0.0",
    }
