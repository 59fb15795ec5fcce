from .router import create_router
from .server import create_app

__all__ = ["create_app", "create_router"]
