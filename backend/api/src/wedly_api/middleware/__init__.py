"""ASGI middleware for the API."""
