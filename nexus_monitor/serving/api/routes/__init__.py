"""
API Routes Module
"""
from .health import router as health_router
from .nexus import router as nexus_router

__all__ = ["health_router", "nexus_router"]
