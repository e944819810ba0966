"""FastAPI application for the Wedly payment pipeline.

Exposes the payment webhook receiver, checkout session initiation and
operational health endpoints. Domain logic lives in ``wedly_shared``.
"""
