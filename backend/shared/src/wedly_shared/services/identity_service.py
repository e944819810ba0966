"""Bearer credential verification against Amazon Cognito."""

import logging
import os
from functools import lru_cache

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from wedly_shared.models.errors import CollaboratorError

logger = logging.getLogger(__name__)

# Cognito codes meaning the token itself is bad; anything else is a provider fault
REJECTED_TOKEN_CODES = frozenset(
    {"NotAuthorizedException", "UserNotFoundException", "UserNotConfirmedException", "InvalidParameterException"}
)


class IdentityServiceError(CollaboratorError):
    """Raised when a credential cannot be verified."""


class VerifiedIdentity(BaseModel):
    """The subject a verified credential belongs to."""

    subject_id: str
    email: str
    email_verified: bool = False


class CognitoIdentityProvider:
    """Verifies Cognito access tokens with ``GetUser``.

    Usage:
        identity = get_identity_provider().verify_credential(access_token)
    """

    def __init__(self, region: str | None = None) -> None:
        self._client = boto3.client(
            "cognito-idp", region_name=region or os.environ.get("COGNITO_REGION") or None
        )

    def verify_credential(self, token: str) -> VerifiedIdentity:
        """Resolve an access token to its subject and email.

        Args:
            token: Bearer access token

        Returns:
            VerifiedIdentity of the token's user

        Raises:
            IdentityServiceError: ``authentication`` type for rejected tokens,
                ``network`` code when the provider itself failed
        """
        if not token:
            raise IdentityServiceError(
                "Authentication required: empty bearer token",
                code="auth_missing",
                error_type="authentication",
            )

        try:
            response = self._client.get_user(AccessToken=token)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code in REJECTED_TOKEN_CODES:
                raise IdentityServiceError(
                    "Authentication failed: invalid token",
                    code="auth_invalid",
                    error_type="authentication",
                ) from e
            logger.warning("Cognito GetUser failed with %s", code)
            raise IdentityServiceError(
                f"Identity provider temporarily unavailable ({code})",
                code="network",
                error_type="identity_provider",
            ) from e
        except BotoCoreError as e:
            raise IdentityServiceError(
                f"Identity provider network error: {e}",
                code="network",
                error_type="identity_provider",
            ) from e

        attributes = {attr["Name"]: attr["Value"] for attr in response.get("UserAttributes", [])}
        email = attributes.get("email")
        if not email:
            raise IdentityServiceError(
                "Authenticated user has no email address",
                code="auth_no_email",
                error_type="authentication",
            )

        return VerifiedIdentity(
            subject_id=attributes.get("sub") or response["Username"],
            email=email,
            email_verified=attributes.get("email_verified", "false").lower() == "true",
        )


@lru_cache(maxsize=1)
def get_identity_provider() -> CognitoIdentityProvider:
    """Get the shared identity provider."""
    return CognitoIdentityProvider()
