"""
Cloud Client Factory - boto3 clients bound to one resolved credential set.

A factory lives for a single action. Clients are never cached beyond it, so
credentials saved by the user are picked up on the next action.
"""

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from broker.config import settings
from broker.exceptions import (
    CloudProviderError,
    CredentialError,
    ExpiredCredentialsError,
    ForbiddenCredentialsError,
    InvalidCredentialsError,
)
from broker.models.domain import CredentialSet

T = TypeVar("T")

# Services that only exist in a single region
_PINNED_REGIONS: dict[str, Callable[[], str]] = {
    "ce": lambda: settings.cost_region,
    "iam": lambda: "us-east-1",
    "bedrock-runtime": lambda: settings.ai_region,
}

INVALID_CODES = frozenset(
    {
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "InvalidAccessKeyId",
        "UnrecognizedClientException",
        "IncompleteSignature",
        "AuthFailure",
        "InvalidToken",
        "InvalidSecurity",
    }
)
EXPIRED_CODES = frozenset({"ExpiredToken", "ExpiredTokenException", "RequestExpired"})
FORBIDDEN_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnauthorizedAccess",
        "AuthorizationError",
        "AuthorizationErrorException",
    }
)

# Services that report credential problems under generic codes; matched in order
MESSAGE_PATTERNS: tuple[tuple[str, type[CredentialError]], ...] = (
    ("accessdenied", ForbiddenCredentialsError),
    ("access denied", ForbiddenCredentialsError),
    ("not authorized", ForbiddenCredentialsError),
    ("expired", ExpiredCredentialsError),
    ("security token", InvalidCredentialsError),
)


def classify_provider_error(
    exc: Exception, user_id: str | None
) -> CredentialError | CloudProviderError:
    """
    Map a provider failure into the broker's error taxonomy.

    Credential-shaped failures become INVALID, EXPIRED or FORBIDDEN so every
    caller handles them the same way no matter which provider error code
    produced them. Anything else becomes a CloudProviderError.
    """
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        message = str(error.get("Message", "")) or str(exc)
        if code in INVALID_CODES:
            return InvalidCredentialsError(user_id, code)
        if code in EXPIRED_CODES:
            return ExpiredCredentialsError(user_id, code)
        if code in FORBIDDEN_CODES:
            return ForbiddenCredentialsError(user_id, code)
        lowered = message.lower()
        for pattern, error_class in MESSAGE_PATTERNS:
            if pattern in lowered:
                return error_class(user_id, code)
        return CloudProviderError(code, message)
    if isinstance(exc, BotoCoreError):
        return CloudProviderError(type(exc).__name__, str(exc))
    return CloudProviderError(type(exc).__name__, str(exc))


class CloudClientFactory:
    """Builds provider clients for one credential set."""

    def __init__(self, credentials: CredentialSet, region: str | None = None) -> None:
        self.credentials = credentials
        self.region = region or credentials.region
        self._session = boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
            region_name=self.region,
        )
        self._config = Config(
            connect_timeout=settings.provider_timeout_seconds,
            read_timeout=settings.provider_timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        )

    def region_for(self, service: str) -> str:
        pinned = _PINNED_REGIONS.get(service)
        return pinned() if pinned else self.region

    def client(self, service: str) -> Any:
        return self._session.client(
            service, region_name=self.region_for(service), config=self._config
        )

    async def call(self, service: str, method: str, **kwargs: Any) -> Any:
        """Run one provider method off the event loop, mapping failures."""
        return await self.run(lambda: getattr(self.client(service), method)(**kwargs))

    async def run(self, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except (ClientError, BotoCoreError) as exc:
            raise classify_provider_error(exc, self.credentials.user_id) from exc

    async def caller_identity(self) -> dict[str, Any]:
        """STS GetCallerIdentity, the cheapest call that proves the keys work."""
        return await self.call("sts", "get_caller_identity")
