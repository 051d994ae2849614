"""
Tests for the consent gate.

Covers the decision table, grant monotonicity, the consent-request payload
and the idempotent grant upsert.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.dialects import postgresql

from broker.exceptions import UnknownCategoryError
from broker.models.api import PaidCategoryId
from broker.models.domain import ConsentAllowed, ConsentBlocked, ConsentGrantData
from broker.services.catalog import get_category
from broker.services.consent import ConsentGate, blocked_response
from conftest import TEST_USER, create_mock_grant, make_result


class GrantStore:
    """In-memory stand-in for the consent_grants table."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, PaidCategoryId], ConsentGrantData] = {}
        self.writes = 0

    async def find(self, user_id: str, category_id: PaidCategoryId) -> ConsentGrantData | None:
        return self.rows.get((user_id, category_id))

    async def upsert(self, user_id: str, category_id: PaidCategoryId) -> None:
        self.writes += 1
        self.rows[(user_id, category_id)] = ConsentGrantData(
            user_id=user_id, category_id=category_id, granted=True, granted_at=datetime.now(UTC)
        )


def gate_with_store(db_session: AsyncMock, store: GrantStore) -> ConsentGate:
    gate = ConsentGate(db_session)
    gate._find_grant = store.find  # type: ignore[method-assign]
    gate._upsert_grant = store.upsert  # type: ignore[method-assign]
    return gate


class TestConsentCheck:
    """Tests for ConsentGate.check()."""

    async def test_non_metered_category_always_allowed(self, db_session: AsyncMock):
        decision = await ConsentGate(db_session).check(TEST_USER, "ec2_lifecycle")

        assert isinstance(decision, ConsentAllowed)
        db_session.execute.assert_not_called()

    async def test_existing_grant_allows_without_flag(self, db_session: AsyncMock):
        db_session.execute.return_value = make_result(scalar=create_mock_grant())

        decision = await ConsentGate(db_session).check(TEST_USER, PaidCategoryId.COST_EXPLORER)

        assert isinstance(decision, ConsentAllowed)
        assert decision.newly_granted is False
        db_session.commit.assert_not_called()

    async def test_no_grant_without_consent_blocks(self, db_session: AsyncMock):
        decision = await ConsentGate(db_session).check(TEST_USER, "bedrock_ai")

        assert isinstance(decision, ConsentBlocked)
        assert decision.allowed is False
        assert decision.category.label == "Bedrock AI (Claude)"
        assert decision.category.cost_description == "~$0.01-0.15 per query"
        # Only the lookup ran; nothing was written
        assert db_session.execute.await_count == 1
        db_session.commit.assert_not_called()

    async def test_revoked_grant_blocks(self, db_session: AsyncMock):
        db_session.execute.return_value = make_result(scalar=create_mock_grant(granted=False))

        decision = await ConsentGate(db_session).check(TEST_USER, "sns_publish")

        assert isinstance(decision, ConsentBlocked)

    async def test_explicit_consent_grants_before_allowing(self, db_session: AsyncMock):
        decision = await ConsentGate(db_session).check(
            TEST_USER, PaidCategoryId.LAMBDA_INVOKE, explicit_consent=True
        )

        assert isinstance(decision, ConsentAllowed)
        assert decision.newly_granted is True
        db_session.commit.assert_awaited_once()

    async def test_missing_user_blocks(self, db_session: AsyncMock):
        decision = await ConsentGate(db_session).check(
            "", PaidCategoryId.COST_EXPLORER, explicit_consent=True
        )

        assert isinstance(decision, ConsentBlocked)
        db_session.execute.assert_not_called()

    async def test_check_action_uses_catalog(self, db_session: AsyncMock):
        gate = ConsentGate(db_session)

        assert isinstance(await gate.check_action(TEST_USER, "ec2", "listInstances"), ConsentAllowed)
        assert isinstance(await gate.check_action(TEST_USER, "cost", "forecast"), ConsentBlocked)


class TestGrantUpsert:
    """The grant write converges under concurrent duplicates."""

    async def test_upsert_is_on_conflict_update(self, db_session: AsyncMock):
        await ConsentGate(db_session)._upsert_grant(TEST_USER, PaidCategoryId.COST_EXPLORER)

        stmt = db_session.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "INSERT INTO consent_grants" in sql
        assert "ON CONFLICT (user_id, category_id) DO UPDATE" in sql

    async def test_revoke_only_touches_granted_rows(self, db_session: AsyncMock):
        await ConsentGate(db_session).revoke(TEST_USER, "cost_explorer")

        stmt = db_session.execute.call_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert sql.startswith("UPDATE consent_grants")
        assert "consent_grants.granted IS true" in sql
        db_session.commit.assert_awaited_once()


class TestConsentOperations:
    """Tests for grant/revoke/status."""

    async def test_grant_unknown_category(self, db_session: AsyncMock):
        with pytest.raises(UnknownCategoryError):
            await ConsentGate(db_session).grant(TEST_USER, "free_stuff")

    async def test_revoke_unknown_category(self, db_session: AsyncMock):
        with pytest.raises(UnknownCategoryError):
            await ConsentGate(db_session).revoke(TEST_USER, "free_stuff")

    async def test_grant(self, db_session: AsyncMock):
        response = await ConsentGate(db_session).grant(TEST_USER, "bedrock_ai")

        assert response.granted is True
        assert response.category_ids == [PaidCategoryId.BEDROCK_AI]
        db_session.commit.assert_awaited_once()

    async def test_revoke_all(self, db_session: AsyncMock):
        response = await ConsentGate(db_session).revoke_all(TEST_USER)

        assert response.granted is False
        assert set(response.category_ids) == set(PaidCategoryId)

    async def test_status(self, db_session: AsyncMock):
        db_session.execute.return_value = make_result(
            rows=[
                create_mock_grant(category_id="cost_explorer"),
                create_mock_grant(category_id="sns_publish", granted=False),
                create_mock_grant(category_id="retired_category"),
            ]
        )

        status = await ConsentGate(db_session).status(TEST_USER)

        assert status.total == 4
        assert status.consented == 1
        by_id = {c.category_id: c for c in status.categories}
        assert by_id[PaidCategoryId.COST_EXPLORER].granted is True
        assert by_id[PaidCategoryId.COST_EXPLORER].granted_at is not None
        assert by_id[PaidCategoryId.SNS_PUBLISH].granted is False
        assert by_id[PaidCategoryId.SNS_PUBLISH].granted_at is None


class TestBlockedResponse:
    """Tests for the consent-request payload."""

    def test_payload_fields(self):
        category = get_category(PaidCategoryId.COST_EXPLORER)
        assert category is not None

        payload = blocked_response(category).model_dump(by_alias=True)

        assert payload["allowed"] is False
        assert payload["requiresConsent"] is True
        assert payload["categoryId"] == PaidCategoryId.COST_EXPLORER
        assert payload["categoryLabel"] == "Cost Explorer"
        assert payload["costDescription"] == "$0.01 per API call"
        assert "consent" in payload["howToConsent"]


class TestConsentScenario:
    """Blocked, then granted, then allowed without the flag."""

    async def test_end_to_end(self, db_session: AsyncMock):
        store = GrantStore()
        gate = gate_with_store(db_session, store)

        first = await gate.check(TEST_USER, "cost_explorer", explicit_consent=False)
        assert isinstance(first, ConsentBlocked)
        assert first.category.label == "Cost Explorer"
        assert store.rows == {}

        second = await gate.check(TEST_USER, "cost_explorer", explicit_consent=True)
        assert isinstance(second, ConsentAllowed)
        assert store.rows[(TEST_USER, PaidCategoryId.COST_EXPLORER)].granted is True

        third = await gate.check(TEST_USER, "cost_explorer", explicit_consent=False)
        assert isinstance(third, ConsentAllowed)
        assert store.writes == 1

    async def test_grants_are_per_user(self, db_session: AsyncMock):
        store = GrantStore()
        gate = gate_with_store(db_session, store)

        await gate.check("alice", "bedrock_ai", explicit_consent=True)

        assert isinstance(await gate.check("bob", "bedrock_ai"), ConsentBlocked)


class TestConsentMonotonicity:
    """Property: once granted, no sequence of checks un-grants."""

    @settings(max_examples=50)
    @given(
        st.lists(
            st.tuples(st.sampled_from(list(PaidCategoryId)), st.booleans()),
            min_size=1,
            max_size=20,
        )
    )
    def test_checks_never_revoke(self, calls: list[tuple[PaidCategoryId, bool]]):
        store = GrantStore()
        gate = gate_with_store(AsyncMock(), store)
        granted: set[PaidCategoryId] = set()

        async def run() -> None:
            for category_id, explicit in calls:
                decision = await gate.check(TEST_USER, category_id, explicit_consent=explicit)
                if category_id in granted or explicit:
                    assert isinstance(decision, ConsentAllowed)
                    granted.add(category_id)
                else:
                    assert isinstance(decision, ConsentBlocked)

        asyncio.run(run())

        assert {key[1] for key in store.rows} == granted



class TestConsentIdempotence:
    """Repeated explicit consent leaves a single grant."""

    async def test_double_consent_writes_once(self, db_session: AsyncMock):
        store = GrantStore()
        gate = gate_with_store(db_session, store)

        await gate.check(TEST_USER, "lambda_invoke", explicit_consent=True)
        await gate.check(TEST_USER, "lambda_invoke", explicit_consent=True)

        assert len(store.rows) == 1
        assert store.writes == 1
