"""FastAPI dependency injection providers for shared services.

This module provides factory functions for service instances using @lru_cache
so each process holds one instance of every service. Services are lazily
instantiated on first use.

Usage in routes:
    from wedly_api.dependencies import get_webhook_handler

    @router.post("/webhooks/payment")
    async def receive(handler: WebhookHandler = Depends(get_webhook_handler)):
        ...

Service Dependency Graph:
    DocumentStore (singleton via get_document_store)
        ├── IdempotencyLedger ─┐
        ├── PurchaseProcessor ─┴── WebhookHandler
        └── RateLimiter (when RATE_LIMIT_BACKEND=dynamodb)
    StripeService (singleton via get_stripe_service)
        ├── WebhookVerifier
        └── PurchaseProcessor

Testing:
    Use reset_services() to clear cached instances between tests.
"""

from functools import lru_cache

from wedly_shared.config import get_settings
from wedly_shared.services.email_service import get_email_service
from wedly_shared.services.idempotency import IdempotencyLedger
from wedly_shared.services.identity_service import CognitoIdentityProvider, get_identity_provider
from wedly_shared.services.purchase_processor import PurchaseProcessor
from wedly_shared.services.rate_limiter import RateLimiter, build_rate_limiter
from wedly_shared.services.security_gate import SecurityGate
from wedly_shared.services.ssm_service import get_ssm_service
from wedly_shared.services.stripe_service import StripeService, get_stripe_service
from wedly_shared.services.webhook_handler import WebhookHandler
from wedly_shared.services.webhook_verifier import WebhookVerifier


@lru_cache
def get_security_gate() -> SecurityGate:
    return SecurityGate(get_settings())


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Get the process-wide RateLimiter.

    Returns:
        RateLimiter backed by the store selected by RATE_LIMIT_BACKEND.
    """
    return build_rate_limiter(get_settings())


@lru_cache
def get_webhook_verifier() -> WebhookVerifier:
    return WebhookVerifier(get_stripe_service())


@lru_cache
def get_idempotency_ledger() -> IdempotencyLedger:
    return IdempotencyLedger()


@lru_cache
def get_purchase_processor() -> PurchaseProcessor:
    """Get cached PurchaseProcessor instance.

    Returns:
        PurchaseProcessor wired to the Stripe, DynamoDB and SES singletons.
    """
    return PurchaseProcessor(
        gateway=get_stripe_service(),
        email=get_email_service(),
        settings=get_settings(),
    )


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(
        ledger=get_idempotency_ledger(),
        processor=get_purchase_processor(),
    )


def get_payment_gateway() -> StripeService:
    return get_stripe_service()


def get_identity() -> CognitoIdentityProvider:
    return get_identity_provider()


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    Also resets the underlying singletons of the shared package.

    Example:
        @pytest.fixture(autouse=True)
        def reset_state():
            yield
            reset_services()
    """
    from wedly_shared.services.dynamodb import reset_document_store

    get_security_gate.cache_clear()
    get_rate_limiter.cache_clear()
    get_webhook_verifier.cache_clear()
    get_idempotency_ledger.cache_clear()
    get_purchase_processor.cache_clear()
    get_webhook_handler.cache_clear()

    get_stripe_service.cache_clear()
    get_email_service.cache_clear()
    get_identity_provider.cache_clear()
    get_ssm_service.cache_clear()
    get_settings.cache_clear()

    reset_document_store()
