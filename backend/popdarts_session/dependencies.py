"""FastAPI dependencies."""
from fastapi import Request

from .services.session_core import SessionCore


def get_core(request: Request) -> SessionCore:
    """The session core created in the application lifespan."""
    return request.app.state.core
