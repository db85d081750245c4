# Consolidated route imports
from .health import router as health_router
from .pipeline import router as pipeline_router

# Export all routers for easy importing
__all__ = [
    "health_router",
    "pipeline_router",
]
