"""
Market Data API - HTTP surface over the aggregation service.

Usage:
    uvicorn api.app:create_app --factory
"""

from api.app import create_app
from api.routes import router


__all__ = ["create_app", "router"]
