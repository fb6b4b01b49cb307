"""
API Routes Module
"""
from .health import router as health_router
from .margin import router as margin_router

__all__ = [
    "health_router",
    "margin_router",
]
