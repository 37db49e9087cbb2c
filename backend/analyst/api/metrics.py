"""
Metrics endpoint for performance monitoring.
"""
from fastapi import APIRouter

from analyst.core.performance import PerformanceMonitor
from analyst.core.storage import InMemoryStorage, get_storage
from analyst.services.session import get_registry

router = APIRouter()


@router.get("/metrics")
async def get_metrics():
    """
    Timing statistics for every tracked operation, plus session counts.
    """
    storage = get_storage()
    sessions = {
        'live': get_registry().live_count(),
        'backend': type(storage).__name__,
    }
    if isinstance(storage, InMemoryStorage):
        sessions['stored'] = storage.size()

    return {
        'performance': PerformanceMonitor.get_all_metrics(),
        'sessions': sessions,
    }
