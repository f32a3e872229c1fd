"""API package for docqueue."""

from docqueue.api.app import app, create_app
from docqueue.api.routes import router

__all__ = ["app", "create_app", "router"]
