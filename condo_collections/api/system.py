from typing import Any, Dict

from fastapi import APIRouter

from ..config import settings
from ..core.version import get_version_info
from ..services.scheduler import collection_scheduler

router = APIRouter()


@router.get("/health")
def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "version": get_version_info(),
        "scheduler": {
            "enabled": settings.collections_scheduler_enabled,
            "loop_active": collection_scheduler.loop_active,
            "cycle_running": collection_scheduler.is_running,
        },
    }


@router.get("/runtime")
def get_runtime_diagnostics() -> Dict[str, Any]:
    """Expose non-sensitive runtime settings for debugging."""
    return {
        "email_backend": settings.email_backend,
        "email_host": settings.email_host,
        "email_port": settings.email_port,
        "email_use_tls": settings.email_use_tls,
        "collections_run_time": f"{settings.collections_run_hour:02d}:{settings.collections_run_minute:02d}",
        "collections_timezone": settings.collections_timezone,
        "dispatch_timeout_seconds": settings.dispatch_timeout_seconds,
        "transport_max_attempts": settings.transport_max_attempts,
        "auto_attorney_referral": settings.auto_attorney_referral,
    }
