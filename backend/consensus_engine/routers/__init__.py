"""Consensus Engine - API Routers"""
from .verify import router as verify_router
from .admin import router as admin_router

__all__ = [
    "verify_router",
    "admin_router",
]
