"""Shared domain package for the Wedly payment pipeline."""

__version__ = "0.1.0"
