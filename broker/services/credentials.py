"""
Credential Service - per-user cloud credential resolution and setup.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from broker.config import settings
from broker.db.models import UserCredential, utc_now
from broker.exceptions import CredentialError, CredentialsNotConfiguredError, WriteVerificationError
from broker.models.api import CredentialSetupRequest, CredentialStatusResponse, CredentialVerifyResponse
from broker.models.domain import CredentialSet, mask_access_key
from broker.observability.metrics import metrics
from broker.services.cloud import CloudClientFactory

logger = get_logger(__name__)


def _to_credential_set(row: UserCredential) -> CredentialSet:
    return CredentialSet(
        user_id=row.user_id,
        access_key_id=row.access_key_id,
        secret_access_key=row.secret_access_key,
        session_token=row.session_token or None,
        region=row.region or settings.default_region,
    )


class CredentialResolver:
    """
    Resolves the credential set an action executes under.

    Read-only. Every call reads the store, so a credential save is visible
    on the very next resolution. The resolver never calls the provider;
    provider rejections are mapped later by ``classify_provider_error``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve(self, user_id: str | None) -> CredentialSet:
        """
        Return the user's credentials.

        Raises:
            CredentialsNotConfiguredError: empty user id or no record
        """
        if not user_id:
            metrics.record_credential_resolution("unconfigured")
            raise CredentialsNotConfiguredError(user_id, "no user identity")

        row = await self._find(user_id)
        if row is None:
            metrics.record_credential_resolution("unconfigured")
            logger.info("credential_resolution_failed", user_id=user_id, kind="UNCONFIGURED")
            raise CredentialsNotConfiguredError(user_id)

        metrics.record_credential_resolution("resolved")
        return _to_credential_set(row)

    async def _find(self, user_id: str) -> UserCredential | None:
        stmt = select(UserCredential).where(UserCredential.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class CredentialService:
    """
    Credential setup operations.

    A save replaces the whole record; there is no partial update.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, user_id: str, request: CredentialSetupRequest) -> CredentialStatusResponse:
        """
        Create or wholesale-replace the user's credential record.

        Raises:
            WriteVerificationError: Row missing or mismatched after upsert
        """
        now = utc_now()
        values = {
            "access_key_id": request.access_key_id,
            "secret_access_key": request.secret_access_key,
            "session_token": request.session_token,
            "region": request.region,
            "updated_at": now,
        }
        stmt = insert(UserCredential).values(user_id=user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[UserCredential.user_id], set_=values)
        await self.session.execute(stmt)
        await self.session.flush()

        # Verify write
        verified = await self._find_fresh(user_id)
        if verified is None:
            raise WriteVerificationError(f"Credentials for {user_id} not found after save")
        if verified.access_key_id != request.access_key_id:
            raise WriteVerificationError(f"Credentials for {user_id} not replaced")

        await self.session.commit()

        logger.info(
            "credentials_saved",
            user_id=user_id,
            access_key=mask_access_key(request.access_key_id),
            region=request.region or settings.default_region,
        )
        return self._status_from_row(user_id, verified)

    async def status(self, user_id: str) -> CredentialStatusResponse:
        row = await self._find_fresh(user_id)
        return self._status_from_row(user_id, row)

    async def delete(self, user_id: str) -> bool:
        """Remove the record. Returns False when there was nothing to delete."""
        result = await self.session.execute(
            delete(UserCredential).where(UserCredential.user_id == user_id)
        )
        await self.session.commit()
        deleted = bool(result.rowcount)
        logger.info("credentials_deleted", user_id=user_id, deleted=deleted)
        return deleted

    async def verify(self, credentials: CredentialSet) -> CredentialVerifyResponse:
        """
        Check the credentials against the provider.

        Raises:
            CredentialError: INVALID, EXPIRED or FORBIDDEN
            CloudProviderError: Provider unreachable or other failure
        """
        try:
            identity = await CloudClientFactory(credentials).caller_identity()
        except CredentialError as exc:
            logger.info(
                "credential_verification_failed",
                user_id=credentials.user_id,
                kind=exc.kind.value,
            )
            raise
        return CredentialVerifyResponse(
            valid=True,
            account_id=identity.get("Account"),
            arn=identity.get("Arn"),
        )

    async def _find_fresh(self, user_id: str) -> UserCredential | None:
        stmt = (
            select(UserCredential)
            .where(UserCredential.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _status_from_row(user_id: str, row: UserCredential | None) -> CredentialStatusResponse:
        if row is None:
            return CredentialStatusResponse(user_id=user_id, configured=False)
        return CredentialStatusResponse(
            user_id=user_id,
            configured=True,
            region=row.region or settings.default_region,
            access_key_hint=mask_access_key(row.access_key_id),
            has_session_token=bool(row.session_token),
            updated_at=row.updated_at,
        )
