"""Webhook intake and read-only API."""

from .server import create_app, serve

__all__ = ["create_app", "serve"]
