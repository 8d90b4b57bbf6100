"""SSM Parameter Store access for gateway secrets.

Values are SecureString parameters under ``/payments/{env}/gateway/`` and
are cached in-process after the first read.
"""

import threading
from functools import lru_cache

import boto3
from botocore.exceptions import ClientError

from paycore.utils.logging import get_logger

logger = get_logger(__name__)

GATEWAY_SECRET_KEY_PARAM = "/payments/{env}/gateway/secret_key"
WEBHOOK_SIGNATURE_KEY_PARAM = "/payments/{env}/gateway/webhook_signature_key"


class SSMServiceError(Exception):
    """Raised when an SSM parameter cannot be retrieved."""


class SSMService:
    """Cached, decrypted reads from SSM Parameter Store.

    Usage:
        ssm = get_ssm_service()
        key = ssm.get_gateway_secret_key("prod")
    """

    def __init__(self) -> None:
        self._client = boto3.client("ssm")
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_parameter(self, name: str, *, use_cache: bool = True) -> str:
        """Retrieve and decrypt a parameter.

        Raises:
            SSMServiceError: If the parameter is missing or unreadable.
        """
        with self._lock:
            if use_cache and name in self._cache:
                return self._cache[name]

        try:
            logger.info("Fetching SSM parameter: %s", name)
            response = self._client.get_parameter(Name=name, WithDecryption=True)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "ParameterNotFound":
                raise SSMServiceError(f"SSM parameter not found: {name}") from e
            if error_code == "AccessDeniedException":
                raise SSMServiceError(
                    f"Access denied to SSM parameter: {name}. "
                    "Check IAM permissions for ssm:GetParameter."
                ) from e
            raise SSMServiceError(f"Failed to retrieve SSM parameter {name}: {e}") from e

        value: str = response["Parameter"]["Value"]
        with self._lock:
            self._cache[name] = value
        return value

    def get_optional_parameter(self, name: str) -> str | None:
        """Like ``get_parameter`` but returns None when the parameter is absent."""
        try:
            return self.get_parameter(name)
        except SSMServiceError as e:
            if isinstance(e.__cause__, ClientError) and (
                e.__cause__.response.get("Error", {}).get("Code") == "ParameterNotFound"
            ):
                logger.warning("SSM parameter not configured: %s", name)
                return None
            raise

    def get_gateway_secret_key(self, environment: str) -> str:
        return self.get_parameter(GATEWAY_SECRET_KEY_PARAM.format(env=environment))

    def get_webhook_signature_key(self, environment: str) -> str | None:
        """The webhook signing key, or None if none is configured."""
        return self.get_optional_parameter(
            WEBHOOK_SIGNATURE_KEY_PARAM.format(env=environment)
        )

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("SSM parameter cache cleared")


@lru_cache(maxsize=1)
def get_ssm_service() -> SSMService:
    """Get the shared SSMService instance."""
    return SSMService()
