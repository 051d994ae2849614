"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from broker.models.api import NotificationType, PaidCategoryId, TargetSource


@dataclass(frozen=True)
class RequestContext:
    """Explicit per-request parameters threaded through every call."""

    user_id: str
    region: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class CredentialSet:
    """Resolved cloud credentials for one user. Secrets are kept out of repr."""

    user_id: str
    access_key_id: str
    secret_access_key: str = field(repr=False)
    region: str
    session_token: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Validate credential fields."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.access_key_id or not self.secret_access_key:
            raise ValueError("access key id and secret are required")
        if not self.region:
            raise ValueError("region cannot be empty")

    @property
    def access_key_hint(self) -> str:
        """Masked access key id, safe for logs and responses."""
        return mask_access_key(self.access_key_id)


def mask_access_key(access_key_id: str) -> str:
    """Mask all but the last four characters of an access key id."""
    if len(access_key_id) <= 4:
        return "****"
    return f"****{access_key_id[-4:]}"


@dataclass(frozen=True)
class PaidCategory:
    """Static metered-category reference data."""

    category_id: PaidCategoryId
    label: str
    description: str
    cost_description: str
    actions: tuple[str, ...]
    gate_required: bool = True


@dataclass(frozen=True)
class ConsentAllowed:
    """The gated action may proceed."""

    category: PaidCategory | None = None
    newly_granted: bool = False

    allowed = True


@dataclass(frozen=True)
class ConsentBlocked:
    """The gated action must not run until the user opts in."""

    category: PaidCategory

    allowed = False


ConsentDecision = ConsentAllowed | ConsentBlocked


@dataclass(frozen=True)
class ConsentGrantData:
    """Immutable consent grant snapshot."""

    user_id: str
    category_id: PaidCategoryId
    granted: bool
    granted_at: datetime | None


# ============================================================================
# Channel values
# ============================================================================


@dataclass(frozen=True)
class RawIdentifier:
    """A bare routable channel identifier."""

    value: str

    def canonical(self) -> str:
        return self.value


@dataclass(frozen=True)
class StructuredRecord:
    """A structured channel record as saved by the settings form."""

    unique_name: str | None = None
    display_name: str | None = None

    def canonical(self) -> str:
        """Prefer the unique name; otherwise strip one leading '#' from the display name."""
        if self.unique_name:
            return self.unique_name
        if self.display_name:
            if self.display_name.startswith("#"):
                return self.display_name[1:]
            return self.display_name
        return ""


ChannelValue = RawIdentifier | StructuredRecord


@dataclass(frozen=True)
class NotificationPreferenceData:
    """Per-type preference row with its channel parsed at the storage boundary."""

    user_id: str
    notification_type: NotificationType
    channel: ChannelValue | None
    enabled: bool


@dataclass(frozen=True)
class LegacyPreferenceData:
    """Legacy global preference record with its channel parsed."""

    user_id: str
    channel: ChannelValue | None
    realtime_enabled: bool
    daily_digest_enabled: bool
    weekly_digest_enabled: bool


@dataclass(frozen=True)
class TargetResolution:
    """Definitive answer produced by one stage of the notification resolver chain."""

    targets: tuple[str, ...]
    source: TargetSource

    @classmethod
    def empty(cls, source: TargetSource) -> "TargetResolution":
        return cls(targets=(), source=source)


@dataclass(frozen=True)
class CostWarning:
    """Cost note for a metered action."""

    category_id: PaidCategoryId
    estimated_cost: str
    warning: str
