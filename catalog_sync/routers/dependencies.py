"""
FastAPI dependencies shared by the routers.
"""
from fastapi import Request

from catalog_sync.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """Service container attached to the app at startup."""
    return request.app.state.container
