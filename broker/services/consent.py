"""
Consent Gate - per-user opt-in for metered action categories.

A grant is monotonic: once granted it stays granted until an explicit
revoke. A blocked check never writes anything.
"""

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from broker.db.models import ConsentGrant, utc_now
from broker.exceptions import UnknownCategoryError
from broker.models.api import (
    ConsentBlockedResponse,
    ConsentCategoryStatus,
    ConsentChangeResponse,
    ConsentStatusResponse,
    PaidCategoryId,
)
from broker.models.domain import (
    ConsentAllowed,
    ConsentBlocked,
    ConsentDecision,
    ConsentGrantData,
    PaidCategory,
)
from broker.observability.metrics import metrics
from broker.services.catalog import category_for_action, get_category, list_paid_categories

logger = get_logger(__name__)


def blocked_response(category: PaidCategory) -> ConsentBlockedResponse:
    """Consent-request payload presented to the user instead of running the action."""
    return ConsentBlockedResponse(
        category_id=category.category_id,
        category_label=category.label,
        cost_description=category.cost_description,
        description=category.description,
        message=(
            f"This action uses {category.label} which costs {category.cost_description}. "
            "Do you want to enable this for your account?"
        ),
        how_to_consent=(
            f'Re-submit the request with "consent": true to enable {category.label} '
            "for your account"
        ),
    )


class ConsentGate:
    """
    Decides whether a metered action may run for a user.

    Two concurrent first-time grants for the same (user, category) both
    upsert the same final state, so no locking is needed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def check(
        self,
        user_id: str | None,
        category_id: str | PaidCategoryId | None,
        explicit_consent: bool = False,
    ) -> ConsentDecision:
        """
        Gate one action category.

        Non-metered categories are always allowed. A metered category is
        allowed when a grant exists, or when the caller passes explicit
        consent, in which case the grant is committed before returning.
        """
        category = get_category(category_id) if category_id else None
        if category is None or not category.gate_required:
            return ConsentAllowed()

        label = category.category_id.value

        if user_id:
            grant = await self._find_grant(user_id, category.category_id)
            if grant is not None and grant.granted:
                metrics.record_consent_decision(label, "allowed")
                return ConsentAllowed(category=category)

        if not explicit_consent or not user_id:
            metrics.record_consent_decision(label, "blocked")
            logger.info("consent_blocked", user_id=user_id, category_id=label)
            return ConsentBlocked(category=category)

        await self._upsert_grant(user_id, category.category_id)
        await self.session.commit()
        metrics.record_consent_decision(label, "granted")
        logger.info("consent_granted", user_id=user_id, category_id=label, source="action")
        return ConsentAllowed(category=category, newly_granted=True)

    async def check_action(
        self, user_id: str | None, service: str, action: str, explicit_consent: bool = False
    ) -> ConsentDecision:
        """Gate a service:action pair through its catalog category."""
        category = category_for_action(service, action)
        if category is None:
            return ConsentAllowed()
        return await self.check(user_id, category.category_id, explicit_consent)

    async def grant(self, user_id: str, category_id: str) -> ConsentChangeResponse:
        """
        Explicitly grant one category.

        Raises:
            UnknownCategoryError: category_id is not in the catalog
        """
        category = self._require_category(category_id)
        await self._upsert_grant(user_id, category.category_id)
        await self.session.commit()
        logger.info(
            "consent_granted",
            user_id=user_id,
            category_id=category.category_id.value,
            source="explicit",
        )
        return ConsentChangeResponse(
            user_id=user_id,
            category_ids=[category.category_id],
            granted=True,
            message=f"You have enabled {category.label}. You can now use these features.",
        )

    async def revoke(self, user_id: str, category_id: str) -> ConsentChangeResponse:
        """
        Explicitly revoke one category.

        Raises:
            UnknownCategoryError: category_id is not in the catalog
        """
        category = self._require_category(category_id)
        await self._revoke_where(user_id, [category.category_id])
        await self.session.commit()
        logger.info("consent_revoked", user_id=user_id, category_id=category.category_id.value)
        return ConsentChangeResponse(
            user_id=user_id,
            category_ids=[category.category_id],
            granted=False,
            message=f"You have disabled {category.label}.",
        )

    async def revoke_all(self, user_id: str) -> ConsentChangeResponse:
        """Revoke every category for the user."""
        category_ids = [category.category_id for category in list_paid_categories()]
        await self._revoke_where(user_id, category_ids)
        await self.session.commit()
        logger.info("consent_revoked_all", user_id=user_id)
        return ConsentChangeResponse(
            user_id=user_id,
            category_ids=category_ids,
            granted=False,
            message="All paid feature consents have been revoked.",
        )

    async def status(self, user_id: str) -> ConsentStatusResponse:
        """Consent state of every catalog category for the user."""
        grants = {grant.category_id: grant for grant in await self._list_grants(user_id)}
        categories = []
        for category in list_paid_categories():
            grant = grants.get(category.category_id)
            granted = grant is not None and grant.granted
            categories.append(
                ConsentCategoryStatus(
                    category_id=category.category_id,
                    label=category.label,
                    cost_description=category.cost_description,
                    granted=granted,
                    granted_at=grant.granted_at if granted and grant else None,
                )
            )
        return ConsentStatusResponse(
            user_id=user_id,
            categories=categories,
            total=len(categories),
            consented=sum(1 for c in categories if c.granted),
        )

    # ========================================================================
    # Storage helpers
    # ========================================================================

    @staticmethod
    def _require_category(category_id: str) -> PaidCategory:
        category = get_category(category_id)
        if category is None:
            raise UnknownCategoryError(category_id)
        return category

    async def _find_grant(
        self, user_id: str, category_id: PaidCategoryId
    ) -> ConsentGrantData | None:
        stmt = select(ConsentGrant).where(
            ConsentGrant.user_id == user_id,
            ConsentGrant.category_id == category_id.value,
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return ConsentGrantData(
            user_id=row.user_id,
            category_id=PaidCategoryId(row.category_id),
            granted=row.granted,
            granted_at=row.granted_at,
        )

    async def _list_grants(self, user_id: str) -> list[ConsentGrantData]:
        stmt = select(ConsentGrant).where(ConsentGrant.user_id == user_id)
        result = await self.session.execute(stmt)
        grants = []
        for row in result.scalars().all():
            if get_category(row.category_id) is None:
                # Category retired from the catalog
                continue
            grants.append(
                ConsentGrantData(
                    user_id=row.user_id,
                    category_id=PaidCategoryId(row.category_id),
                    granted=row.granted,
                    granted_at=row.granted_at,
                )
            )
        return grants

    async def _upsert_grant(self, user_id: str, category_id: PaidCategoryId) -> None:
        """Idempotent grant: one row per (user, category), converging to granted=true."""
        now = utc_now()
        stmt = insert(ConsentGrant).values(
            user_id=user_id,
            category_id=category_id.value,
            granted=True,
            granted_at=now,
            revoked_at=None,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ConsentGrant.user_id, ConsentGrant.category_id],
            set_={"granted": True, "granted_at": now, "revoked_at": None, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def _revoke_where(self, user_id: str, category_ids: list[PaidCategoryId]) -> None:
        now = utc_now()
        stmt = (
            update(ConsentGrant)
            .where(
                ConsentGrant.user_id == user_id,
                ConsentGrant.category_id.in_([c.value for c in category_ids]),
                ConsentGrant.granted.is_(True),
            )
            .values(granted=False, revoked_at=now, updated_at=now)
        )
        await self.session.execute(stmt)
        await self.session.flush()
