from cardmint.api.allocation import router as allocation_router
from cardmint.api.events import router as events_router
from cardmint.api.health import router as health_router

__all__ = [
    "allocation_router",
    "events_router",
    "health_router",
]
