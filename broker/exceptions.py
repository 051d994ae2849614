"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from broker.models.api import CredentialErrorKind
from broker.models.domain import PaidCategory


class BrokerError(Exception):
    """Base exception for all broker errors."""

    pass


class CredentialError(BrokerError):
    """Base for the four credential failure kinds."""

    kind: CredentialErrorKind = CredentialErrorKind.UNCONFIGURED
    remediation: str = "Run the credential setup to connect your cloud account."

    def __init__(self, user_id: str | None, detail: str | None = None) -> None:
        self.user_id = user_id
        self.detail = detail
        message = f"Credential failure ({self.kind.value}) for user {user_id or '<anonymous>'}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CredentialsNotConfiguredError(CredentialError):
    """Raised when the user has no credential record."""

    kind = CredentialErrorKind.UNCONFIGURED
    remediation = "You have not set up your cloud credentials yet. Run the setup command."


class InvalidCredentialsError(CredentialError):
    """Raised when the provider rejects the access key or signature."""

    kind = CredentialErrorKind.INVALID
    remediation = "Your access key id or secret key is invalid. Update your credentials."


class ExpiredCredentialsError(CredentialError):
    """Raised when the provider reports the credentials or token as expired."""

    kind = CredentialErrorKind.EXPIRED
    remediation = "Your credentials have expired. Generate new access keys and update them."


class ForbiddenCredentialsError(CredentialError):
    """Raised when the credentials lack permission for the action."""

    kind = CredentialErrorKind.FORBIDDEN
    remediation = (
        "Your IAM identity lacks permission for this action. Run the permission check "
        "(POST /v1/credentials/permissions) to see what is missing, then attach the "
        "policy from GET /v1/credentials/policy."
    )


CREDENTIAL_ERRORS: dict[CredentialErrorKind, type[CredentialError]] = {
    CredentialErrorKind.UNCONFIGURED: CredentialsNotConfiguredError,
    CredentialErrorKind.INVALID: InvalidCredentialsError,
    CredentialErrorKind.EXPIRED: ExpiredCredentialsError,
    CredentialErrorKind.FORBIDDEN: ForbiddenCredentialsError,
}


class ConsentRequiredError(BrokerError):
    """Raised when a metered action is attempted without a consent grant."""

    def __init__(self, user_id: str, category: PaidCategory) -> None:
        self.user_id = user_id
        self.category = category
        super().__init__(
            f"Consent required for {category.category_id.value} ({category.label}) "
            f"for user {user_id}"
        )


class UnknownCategoryError(BrokerError):
    """Raised when a grant or revoke names a category outside the catalog."""

    def __init__(self, category_id: str) -> None:
        self.category_id = category_id
        super().__init__(f"Unknown paid category: {category_id}")


class UnknownActionError(BrokerError):
    """Raised when no handler is registered for service:action."""

    def __init__(self, service: str, action: str) -> None:
        self.service = service
        self.action = action
        super().__init__(f"Unknown action: {service}:{action}")


class UnknownPermissionCheckError(BrokerError):
    """Raised when a permission check key is not registered."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Unknown permission check: {key}")


class CloudProviderError(BrokerError):
    """Raised when the provider call fails for a non-credential reason."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"Cloud provider error {code}: {message}")


class WriteVerificationError(BrokerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class InvalidActionParamsError(BrokerError):
    """Raised when an action parameter is missing or malformed."""

    def __init__(
        self, service: str, action: str, param: str, reason: str | None = None
    ) -> None:
        self.service = service
        self.action = action
        self.param = param
        self.reason = reason
        if reason:
            message = f"Action {service}:{action} has invalid parameter '{param}': {reason}"
        else:
            message = f"Action {service}:{action} requires parameter '{param}'"
        super().__init__(message)
