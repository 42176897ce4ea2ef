# API routers package
"""
API routers initialization
"""
from .health import router as health_router
from .import_url import router as import_url_router
from .documents import router as documents_router

__all__ = ["health_router", "import_url_router", "documents_router"]
