"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
The action envelope's ``params`` is the one free-form field, since it is
passed through untouched to the provider call.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CredentialErrorKind(str, Enum):
    """Uniform credential failure taxonomy."""

    UNCONFIGURED = "UNCONFIGURED"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    FORBIDDEN = "FORBIDDEN"


class PaidCategoryId(str, Enum):
    """Metered action categories that require explicit opt-in."""

    COST_EXPLORER = "cost_explorer"
    BEDROCK_AI = "bedrock_ai"
    LAMBDA_INVOKE = "lambda_invoke"
    SNS_PUBLISH = "sns_publish"


class NotificationType(str, Enum):
    """Notification types a user can route to a channel."""

    COMPUTE_LIFECYCLE = "compute_lifecycle"
    STORAGE_LIFECYCLE = "storage_lifecycle"
    ALARM_LIFECYCLE = "alarm_lifecycle"
    MESSAGING = "messaging"
    FUNCTION_LIFECYCLE = "function_lifecycle"
    DATABASE_LIFECYCLE = "database_lifecycle"
    SCHEDULED_COST_DIGEST = "scheduled_cost_digest"
    SCHEDULED_SUMMARY_DIGEST = "scheduled_summary_digest"


class TargetSource(str, Enum):
    """Which resolver stage produced a notification target list."""

    DYNAMIC = "dynamic"
    LEGACY = "legacy"
    NONE = "none"


class ContractModel(BaseModel):
    """Base for payloads consumed by the chat layer (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Credential Models
# ============================================================================


class CredentialSetupRequest(BaseModel):
    """PUT /v1/credentials request body. Replaces any existing record."""

    access_key_id: str = Field(..., min_length=16, max_length=128)
    secret_access_key: str = Field(..., min_length=1, max_length=255)
    session_token: str | None = Field(None, max_length=4096)
    region: str | None = Field(None, min_length=1, max_length=32)

    @field_validator("access_key_id", "secret_access_key")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Pasted keys frequently carry trailing whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("value cannot be blank")
        return v


class CredentialStatusResponse(BaseModel):
    """GET /v1/credentials/status response. Never carries secrets."""

    user_id: str
    configured: bool
    region: str | None = None
    access_key_hint: str | None = None
    has_session_token: bool = False
    updated_at: datetime | None = None


class CredentialVerifyResponse(BaseModel):
    """POST /v1/credentials/verify response."""

    valid: bool
    account_id: str | None = None
    arn: str | None = None


class CredentialErrorResponse(ContractModel):
    """Credential failure payload shared by every action wrapper."""

    success: Literal[False] = False
    error_kind: CredentialErrorKind
    message: str
    remediation: str


# ============================================================================
# Permission Models
# ============================================================================


class PermissionStatus(str, Enum):
    """Outcome of one permission check."""

    GRANTED = "granted"
    DENIED = "denied"
    SKIPPED = "skipped"


class PermissionCheckResponse(BaseModel):
    """Result of a single permission check."""

    key: str
    name: str
    description: str
    required: bool
    actions: list[str]
    status: PermissionStatus
    message: str | None = None
    error_code: str | None = None
    fix: str | None = None


class PermissionSummary(BaseModel):
    total: int
    passed: int
    failed: int
    skipped: int
    required_missing: list[str]


class PermissionReportResponse(BaseModel):
    """POST /v1/credentials/permissions response."""

    region: str
    account_id: str | None = None
    arn: str | None = None
    checks: list[PermissionCheckResponse]
    summary: PermissionSummary
    recommendations: list[str]


class PolicyStatement(BaseModel):
    """One IAM policy statement, serialized with the provider's field names."""

    model_config = ConfigDict(populate_by_name=True)

    sid: str = Field(..., alias="Sid")
    effect: Literal["Allow"] = Field("Allow", alias="Effect")
    action: list[str] = Field(..., alias="Action")
    resource: str = Field("*", alias="Resource")


class PolicyDocument(BaseModel):
    """IAM policy covering every action the broker can run."""

    model_config = ConfigDict(populate_by_name=True)

    version: str = Field("2012-10-17", alias="Version")
    statement: list[PolicyStatement] = Field(..., alias="Statement")


# ============================================================================
# Consent Models
# ============================================================================


class ConsentBlockedResponse(ContractModel):
    """Returned instead of running a metered action the user has not opted into."""

    allowed: Literal[False] = False
    requires_consent: Literal[True] = True
    category_id: PaidCategoryId
    category_label: str
    cost_description: str
    description: str
    message: str
    how_to_consent: str


class ConsentCategoryRequest(BaseModel):
    """POST /v1/consent/grant and /v1/consent/revoke request body."""

    category_id: str = Field(..., min_length=1, max_length=64)


class PaidCategoryResponse(BaseModel):
    """One entry of GET /v1/consent/categories."""

    category_id: PaidCategoryId
    label: str
    description: str
    cost_description: str
    action_count: int


class ConsentCategoryStatus(BaseModel):
    """Consent state of one category for one user."""

    category_id: PaidCategoryId
    label: str
    cost_description: str
    granted: bool
    granted_at: datetime | None = None


class ConsentStatusResponse(BaseModel):
    """GET /v1/consent/status response."""

    user_id: str
    categories: list[ConsentCategoryStatus]
    total: int
    consented: int


class ConsentChangeResponse(BaseModel):
    """Response for grant/revoke operations."""

    user_id: str
    category_ids: list[PaidCategoryId]
    granted: bool
    message: str


# ============================================================================
# Notification Models
# ============================================================================


class NotificationPreferenceRequest(BaseModel):
    """PUT /v1/notifications/preferences/{notification_type} request body."""

    channel: str | None = Field(None, max_length=1024)
    enabled: bool = True


class NotificationPreferenceResponse(BaseModel):
    """A stored per-type preference row."""

    notification_type: NotificationType
    channel: str | None
    enabled: bool
    updated_at: datetime | None = None


class LegacyPreferenceRequest(BaseModel):
    """PUT /v1/notifications/legacy request body."""

    channel: str | None = Field(None, max_length=1024)
    realtime_enabled: bool = False
    daily_digest_enabled: bool = False
    weekly_digest_enabled: bool = False


class LegacyPreferenceResponse(BaseModel):
    """The stored legacy global record."""

    channel: str | None
    realtime_enabled: bool
    daily_digest_enabled: bool
    weekly_digest_enabled: bool
    updated_at: datetime | None = None


class NotificationTargetsResponse(BaseModel):
    """GET /v1/notifications/targets/{notification_type} response."""

    user_id: str
    notification_type: NotificationType
    targets: list[str]
    source: TargetSource


# ============================================================================
# Action Envelope Models
# ============================================================================


class ActionRequest(BaseModel):
    """POST /v1/actions request body."""

    service: str = Field(..., min_length=1, max_length=32)
    action: str = Field(..., min_length=1, max_length=64)
    region: str | None = Field(None, min_length=1, max_length=32)
    consent: bool = False
    params: dict[str, Any] = Field(default_factory=dict)


class CostWarningResponse(BaseModel):
    """Cost note attached to successful metered actions."""

    category_id: PaidCategoryId
    estimated_cost: str
    warning: str


class ActionResponse(BaseModel):
    """Successful action envelope."""

    success: Literal[True] = True
    service: str
    action: str
    region: str
    data: Any
    cost_warning: CostWarningResponse | None = None
    request_id: str | None = None
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Generic non-credential failure envelope."""

    success: Literal[False] = False
    error: str
    code: str


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
