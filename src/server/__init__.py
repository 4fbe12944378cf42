"""aiohttp HTTP API for canvases, layers, tiles and cleanup."""

from server.app import create_app, error_middleware

__all__ = ['create_app', 'error_middleware']
