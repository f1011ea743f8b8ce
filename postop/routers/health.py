import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "Post-op Follow-up Server is Running",
        "features": ["whatsapp_webhook", "questionnaires", "risk_assessment", "physician_alerts"],
        "endpoints": {
            "webhook": "/api/whatsapp/webhook",
            "status": "/api/whatsapp/status",
            "health": "/api/whatsapp/health",
            "metrics": "/api/whatsapp/metrics",
            "dlq": "/api/whatsapp/dlq",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "postop-followup",
        "port": os.environ.get("PORT", 8080)
    }
