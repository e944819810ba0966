"""HTTP request/response models of the API layer.

Domain models (PurchaseRecord, WebhookEvent, ...) live in
``wedly_shared.models``; this package holds wire shapes only.
"""
