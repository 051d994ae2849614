"""
Notification Router - decides where a completed action is announced.

Resolution is an ordered chain of stages. Each stage either returns a
definitive TargetResolution or None to defer to the next stage:

1. DynamicPreferenceStage  - per-type row; when present it is final, even
                             when disabled or its channel is unusable.
2. LegacyPreferenceStage   - single global channel gated by the flag that
                             covers the notification type.

Resolution is read-only and never creates preference rows.
"""

from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from broker.config import settings
from broker.db.models import (
    ENABLED_FALSE,
    ENABLED_TRUE,
    LegacyPreference,
    NotificationPreference,
    utc_now,
)
from broker.db.session import get_read_session
from broker.models.api import (
    LegacyPreferenceRequest,
    LegacyPreferenceResponse,
    NotificationPreferenceResponse,
    NotificationType,
    TargetSource,
)
from broker.models.domain import (
    LegacyPreferenceData,
    NotificationPreferenceData,
    TargetResolution,
)
from broker.observability.metrics import metrics
from broker.services.channels import canonical, parse_channel

logger = get_logger(__name__)

REALTIME_FLAG = "realtime_enabled"
DAILY_DIGEST_FLAG = "daily_digest_enabled"
WEEKLY_DIGEST_FLAG = "weekly_digest_enabled"

# Legacy flag that governs each type; types absent here have no legacy
# equivalent and resolve to nothing without a per-type row.
LEGACY_FLAG_BY_TYPE: dict[NotificationType, str] = {
    NotificationType.COMPUTE_LIFECYCLE: REALTIME_FLAG,
    NotificationType.STORAGE_LIFECYCLE: REALTIME_FLAG,
    NotificationType.ALARM_LIFECYCLE: REALTIME_FLAG,
    NotificationType.MESSAGING: REALTIME_FLAG,
    NotificationType.FUNCTION_LIFECYCLE: REALTIME_FLAG,
    NotificationType.DATABASE_LIFECYCLE: REALTIME_FLAG,
    NotificationType.SCHEDULED_COST_DIGEST: DAILY_DIGEST_FLAG,
    NotificationType.SCHEDULED_SUMMARY_DIGEST: WEEKLY_DIGEST_FLAG,
}


def parse_enabled(value: str | bool | None) -> bool:
    """Stored flags are the text "TRUE"/"FALSE"; anything else is disabled."""
    if isinstance(value, bool):
        return value
    return (value or "").strip().upper() == ENABLED_TRUE


# ============================================================================
# Storage boundary
# ============================================================================


async def load_preference(
    session: AsyncSession, user_id: str, notification_type: NotificationType
) -> NotificationPreferenceData | None:
    stmt = select(NotificationPreference).where(
        NotificationPreference.user_id == user_id,
        NotificationPreference.notification_type == notification_type.value,
    )
    result = await session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return NotificationPreferenceData(
        user_id=row.user_id,
        notification_type=notification_type,
        channel=parse_channel(row.channel),
        enabled=parse_enabled(row.enabled),
    )


async def load_legacy(session: AsyncSession, user_id: str) -> LegacyPreferenceData | None:
    stmt = select(LegacyPreference).where(LegacyPreference.user_id == user_id)
    result = await session.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return LegacyPreferenceData(
        user_id=row.user_id,
        channel=parse_channel(row.channel),
        realtime_enabled=bool(row.realtime_enabled),
        daily_digest_enabled=bool(row.daily_digest_enabled),
        weekly_digest_enabled=bool(row.weekly_digest_enabled),
    )


# ============================================================================
# Resolver chain
# ============================================================================


class TargetStage(ABC):
    """One link of the resolver chain."""

    @abstractmethod
    async def resolve(
        self, user_id: str, notification_type: NotificationType
    ) -> TargetResolution | None:
        """Return a definitive resolution, or None to defer to the next stage."""


class DynamicPreferenceStage(TargetStage):
    """Per-type override. Final whenever a row exists."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve(
        self, user_id: str, notification_type: NotificationType
    ) -> TargetResolution | None:
        preference = await load_preference(self.session, user_id, notification_type)
        if preference is None:
            return None
        target = canonical(preference.channel)
        if not preference.enabled or not target:
            return TargetResolution.empty(TargetSource.DYNAMIC)
        return TargetResolution(targets=(target,), source=TargetSource.DYNAMIC)


class LegacyPreferenceStage(TargetStage):
    """Global channel plus per-category flags. Always final."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve(
        self, user_id: str, notification_type: NotificationType
    ) -> TargetResolution | None:
        flag = LEGACY_FLAG_BY_TYPE.get(notification_type)
        if flag is None:
            return TargetResolution.empty(TargetSource.NONE)

        legacy = await load_legacy(self.session, user_id)
        if legacy is None or not getattr(legacy, flag):
            return TargetResolution.empty(TargetSource.NONE)

        target = canonical(legacy.channel)
        if not target:
            return TargetResolution.empty(TargetSource.LEGACY)
        return TargetResolution(targets=(target,), source=TargetSource.LEGACY)


class NotificationRouter:
    """Runs the resolver chain for one (user, notification type)."""

    def __init__(self, session: AsyncSession, stages: list[TargetStage] | None = None) -> None:
        self.session = session
        self.stages = stages or [
            DynamicPreferenceStage(session),
            LegacyPreferenceStage(session),
        ]

    async def resolve(self, user_id: str, notification_type: NotificationType) -> TargetResolution:
        """
        Resolve the destination channels. Never raises.

        An empty result means "skip delivery silently".
        """
        resolution = TargetResolution.empty(TargetSource.NONE)
        if user_id:
            try:
                for stage in self.stages:
                    answer = await stage.resolve(user_id, notification_type)
                    if answer is not None:
                        resolution = answer
                        break
            except SQLAlchemyError as exc:
                metrics.record_error(type(exc).__name__, "notification_resolve")
                logger.error(
                    "notification_resolution_error",
                    user_id=user_id,
                    notification_type=notification_type.value,
                    error=str(exc),
                    exc_info=True,
                )
                resolution = TargetResolution.empty(TargetSource.NONE)

        outcome = resolution.source.value if resolution.targets else "unresolved"
        metrics.record_notification_resolution(notification_type.value, outcome)
        if not resolution.targets:
            logger.info(
                "notification_channel_unresolved",
                user_id=user_id,
                notification_type=notification_type.value,
                source=resolution.source.value,
            )
        return resolution

    async def resolve_targets(self, user_id: str, notification_type: NotificationType) -> list[str]:
        return list((await self.resolve(user_id, notification_type)).targets)


# ============================================================================
# Settings save
# ============================================================================


class PreferenceService:
    """Explicit settings-save operations. The only writer of preference rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save_preference(
        self,
        user_id: str,
        notification_type: NotificationType,
        channel: str | None,
        enabled: bool,
    ) -> NotificationPreferenceResponse:
        now = utc_now()
        values = {
            "channel": channel,
            "enabled": ENABLED_TRUE if enabled else ENABLED_FALSE,
            "updated_at": now,
        }
        stmt = insert(NotificationPreference).values(
            user_id=user_id,
            notification_type=notification_type.value,
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[NotificationPreference.user_id, NotificationPreference.notification_type],
            set_=values,
        )
        await self.session.execute(stmt)
        await self.session.commit()
        logger.info(
            "notification_preference_saved",
            user_id=user_id,
            notification_type=notification_type.value,
            enabled=enabled,
        )
        return NotificationPreferenceResponse(
            notification_type=notification_type,
            channel=channel,
            enabled=enabled,
            updated_at=now,
        )

    async def list_preferences(self, user_id: str) -> list[NotificationPreferenceResponse]:
        stmt = (
            select(NotificationPreference)
            .where(NotificationPreference.user_id == user_id)
            .order_by(NotificationPreference.notification_type)
        )
        result = await self.session.execute(stmt)
        preferences = []
        for row in result.scalars().all():
            try:
                notification_type = NotificationType(row.notification_type)
            except ValueError:
                continue
            preferences.append(
                NotificationPreferenceResponse(
                    notification_type=notification_type,
                    channel=row.channel,
                    enabled=parse_enabled(row.enabled),
                    updated_at=row.updated_at,
                )
            )
        return preferences

    async def save_legacy(
        self, user_id: str, request: LegacyPreferenceRequest
    ) -> LegacyPreferenceResponse:
        now = utc_now()
        values = {
            "channel": request.channel,
            "realtime_enabled": request.realtime_enabled,
            "daily_digest_enabled": request.daily_digest_enabled,
            "weekly_digest_enabled": request.weekly_digest_enabled,
            "updated_at": now,
        }
        stmt = insert(LegacyPreference).values(user_id=user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[LegacyPreference.user_id], set_=values)
        await self.session.execute(stmt)
        await self.session.commit()
        logger.info("legacy_preference_saved", user_id=user_id)
        return LegacyPreferenceResponse(
            channel=request.channel,
            realtime_enabled=request.realtime_enabled,
            daily_digest_enabled=request.daily_digest_enabled,
            weekly_digest_enabled=request.weekly_digest_enabled,
            updated_at=now,
        )


# ============================================================================
# Delivery
# ============================================================================


class NotificationDispatcher:
    """
    Posts a message to a resolved channel through the chat webhook.

    One attempt per delivery. Failures are logged and counted, never raised.
    """

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client

    def _url_for(self, channel: str) -> str:
        return settings.notification_webhook_url.format(channel=quote(channel, safe=""))

    def _headers(self) -> dict[str, str]:
        if not settings.notification_bot_token:
            return {}
        return {"Authorization": f"Bearer {settings.notification_bot_token}"}

    async def deliver(self, channel: str, message: str) -> bool:
        if not settings.delivery_configured:
            metrics.record_notification_delivery("skipped")
            logger.debug("notification_delivery_disabled", channel=channel)
            return False

        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, channel, message)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, channel, message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            metrics.record_notification_delivery("failed")
            logger.warning(
                "notification_delivery_failed",
                channel=channel,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        metrics.record_notification_delivery("delivered")
        logger.info("notification_delivered", channel=channel)
        return True

    async def _post(self, client: httpx.AsyncClient, channel: str, message: str) -> httpx.Response:
        return await client.post(
            self._url_for(channel),
            json={"text": message},
            headers=self._headers(),
            timeout=settings.notification_timeout_seconds,
        )


async def dispatch_notification(
    user_id: str,
    notification_type: NotificationType,
    message: str,
    dispatcher: NotificationDispatcher | None = None,
) -> int:
    """
    Resolve targets and deliver, best effort. Runs after the response.

    Opens its own session because the request session is closed by the time
    this runs. Returns the number of successful deliveries.
    """
    dispatcher = dispatcher or NotificationDispatcher()
    delivered = 0
    try:
        async with get_read_session() as session:
            targets = await NotificationRouter(session).resolve_targets(user_id, notification_type)
        for target in targets:
            if await dispatcher.deliver(target, message):
                delivered += 1
    except Exception as exc:
        # Background work: the action's response has already been sent
        metrics.record_error(type(exc).__name__, "notification_dispatch")
        logger.error(
            "notification_dispatch_failed",
            user_id=user_id,
            notification_type=notification_type.value,
            error=str(exc),
            exc_info=True,
        )
    return delivered
