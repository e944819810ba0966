"""SSM Parameter Store access for provider secrets.

Secrets are fetched with decryption on first use and cached in-process.
Any failure to read one is a configuration failure: the pipeline cannot
verify or fetch anything without its keys.
"""

import logging
from functools import lru_cache

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from wedly_shared.models.errors import CollaboratorError

logger = logging.getLogger(__name__)


class SSMServiceError(CollaboratorError):
    """Raised when a secret cannot be read from Parameter Store."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message, code=code or "configuration", error_type="ConfigurationError")


class SSMService:
    """Cached reader of SecureString parameters.

    Usage:
        ssm = get_ssm_service()
        webhook_secret = ssm.get_parameter("/wedly/dev/stripe/webhook_secret")
    """

    def __init__(self) -> None:
        self._client = boto3.client("ssm")
        self._cache: dict[str, str] = {}

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Retrieve a decrypted parameter value.

        Args:
            name: Full parameter path
            use_cache: Whether to use cached value if available (default: True)

        Returns:
            The decrypted parameter value

        Raises:
            SSMServiceError: If the parameter is missing, empty or unreadable
        """
        if use_cache and name in self._cache:
            logger.debug("SSM cache hit for %s", name)
            return self._cache[name]

        try:
            logger.info("Fetching SSM parameter: %s", name)
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "ParameterNotFound":
                raise SSMServiceError(
                    f"Configuration error: SSM parameter not found: {name}",
                    code="configuration_not_found",
                ) from e
            if error_code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Configuration error: access denied to SSM parameter {name}. "
                    "Check IAM permissions for ssm:GetParameter."
                ) from e
            raise SSMServiceError(
                f"Configuration error: failed to retrieve SSM parameter {name} ({error_code})"
            ) from e
        except BotoCoreError as e:
            raise SSMServiceError(
                f"Configuration error: failed to retrieve SSM parameter {name}: {e}"
            ) from e

        value = response["Parameter"].get("Value", "")
        if not value:
            raise SSMServiceError(f"Configuration error: SSM parameter {name} is empty")

        self._cache[name] = value
        return value

    def clear_cache(self) -> None:
        """Clear all cached parameters."""
        self._cache.clear()
        logger.info("SSM parameter cache cleared")


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance (singleton pattern).

    Returns:
        SSMService: Shared service instance.
    """
    return SSMService()
