"""
Tests for the action gateway and handlers.

Gateway order: credentials, consent, provider call, then notification.
"""

import io
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from broker.exceptions import (
    CloudProviderError,
    ConsentRequiredError,
    CredentialsNotConfiguredError,
    ForbiddenCredentialsError,
    InvalidActionParamsError,
    UnknownActionError,
)
from broker.models.api import ActionResponse, NotificationType
from broker.models.domain import ConsentAllowed, ConsentBlocked, CredentialSet, RequestContext
from broker.services import actions as actions_module
from broker.services.actions import ActionGateway
from broker.services.catalog import get_category
from broker.services.cloud import CloudClientFactory
from broker.services.consent import ConsentGate
from broker.services.credentials import CredentialResolver
from broker.services.handlers import HANDLERS, get_handler
from conftest import TEST_USER

STARTED = {"instance_id": "i-0abc", "previous_state": "stopped", "current_state": "pending"}


@pytest.fixture
def schedule() -> MagicMock:
    return MagicMock()


@pytest.fixture
def resolved(credential_set: CredentialSet):
    with patch.object(
        CredentialResolver, "resolve", new_callable=AsyncMock, return_value=credential_set
    ) as resolve:
        yield resolve


@pytest.fixture
def allowed():
    with patch.object(
        ConsentGate, "check_action", new_callable=AsyncMock, return_value=ConsentAllowed()
    ) as check:
        yield check


class TestGatewayOrdering:
    """Each stage gates everything after it."""

    async def test_unconfigured_stops_before_consent_and_provider(
        self, db_session: AsyncMock, request_context: RequestContext, schedule: MagicMock
    ):
        with (
            patch.object(ConsentGate, "check_action", new_callable=AsyncMock) as check,
            patch.object(CloudClientFactory, "run", new_callable=AsyncMock) as run,
        ):
            with pytest.raises(CredentialsNotConfiguredError):
                await ActionGateway(db_session, schedule).execute(
                    request_context, "ec2", "startInstance", {"instanceId": "i-0abc"}
                )

        check.assert_not_called()
        run.assert_not_called()
        schedule.assert_not_called()

    async def test_blocked_consent_stops_before_provider(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
    ):
        category = get_category("cost_explorer")
        with (
            patch.object(
                ConsentGate,
                "check_action",
                new_callable=AsyncMock,
                return_value=ConsentBlocked(category=category),
            ),
            patch.object(CloudClientFactory, "run", new_callable=AsyncMock) as run,
        ):
            with pytest.raises(ConsentRequiredError) as exc_info:
                await ActionGateway(db_session, schedule).execute(
                    request_context, "cost", "monthToDate"
                )

        assert exc_info.value.category.label == "Cost Explorer"
        run.assert_not_called()
        schedule.assert_not_called()

    async def test_unknown_action(self, db_session: AsyncMock, request_context: RequestContext):
        with pytest.raises(UnknownActionError):
            await ActionGateway(db_session).execute(request_context, "ec2", "terminateEverything")

        db_session.execute.assert_not_called()


class TestGatewaySuccess:
    """Successful actions."""

    async def test_success_schedules_notification(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        with patch.object(CloudClientFactory, "run", new_callable=AsyncMock, return_value=STARTED):
            result = await ActionGateway(db_session, schedule).execute(
                request_context, "ec2", "startInstance", {"instanceId": "i-0abc"}
            )

        assert isinstance(result, ActionResponse)
        assert result.data == STARTED
        assert result.region == "eu-west-1"
        assert result.cost_warning is None
        assert result.request_id == "req-123"
        schedule.assert_called_once_with(
            actions_module.dispatch_notification,
            TEST_USER,
            NotificationType.COMPUTE_LIFECYCLE,
            "Instance i-0abc is starting (eu-west-1)",
        )

    async def test_consent_flag_is_passed_through(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        with patch.object(CloudClientFactory, "run", new_callable=AsyncMock, return_value={}):
            await ActionGateway(db_session, schedule).execute(
                request_context, "cost", "monthToDate", consent=True
            )

        allowed.assert_awaited_once_with(TEST_USER, "cost", "monthToDate", True)

    async def test_metered_success_carries_cost_warning(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        with patch.object(CloudClientFactory, "run", new_callable=AsyncMock, return_value={}):
            result = await ActionGateway(db_session, schedule).execute(
                request_context, "bedrock", "chat", {"prompt": "hi"}, consent=True
            )

        assert result.cost_warning is not None
        assert result.cost_warning.estimated_cost == "$0.01-0.05"
        # Read-only handler: nothing to announce
        schedule.assert_not_called()

    async def test_request_region_overrides_credential_region(
        self,
        db_session: AsyncMock,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        ctx = RequestContext(user_id=TEST_USER, region="us-west-2")
        with patch.object(CloudClientFactory, "run", new_callable=AsyncMock, return_value=[]):
            result = await ActionGateway(db_session, schedule).execute(ctx, "ec2", "listInstances")

        assert result.region == "us-west-2"


class TestGatewayProviderFailures:
    """Provider failures surface through the taxonomy; no notification."""

    async def test_forbidden(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        with patch.object(
            CloudClientFactory,
            "run",
            new_callable=AsyncMock,
            side_effect=ForbiddenCredentialsError(TEST_USER, "AccessDenied"),
        ):
            with pytest.raises(ForbiddenCredentialsError):
                await ActionGateway(db_session, schedule).execute(
                    request_context, "ec2", "stopInstance", {"instanceId": "i-0abc"}
                )

        schedule.assert_not_called()

    async def test_other_provider_error(
        self,
        db_session: AsyncMock,
        request_context: RequestContext,
        schedule: MagicMock,
        resolved: AsyncMock,
        allowed: AsyncMock,
    ):
        with patch.object(
            CloudClientFactory,
            "run",
            new_callable=AsyncMock,
            side_effect=CloudProviderError("ThrottlingException", "slow down"),
        ):
            with pytest.raises(CloudProviderError):
                await ActionGateway(db_session, schedule).execute(
                    request_context, "s3", "listBuckets"
                )

        schedule.assert_not_called()


class TestHandlers:
    """Handlers against a stubbed client factory."""

    @pytest.fixture
    def factory(self) -> MagicMock:
        factory = MagicMock(spec=CloudClientFactory)
        factory.region_for.return_value = "eu-west-1"
        return factory

    def test_registry_keys(self):
        assert "ec2:startInstance" in HANDLERS
        assert get_handler("sns", "publish").notification_type == NotificationType.MESSAGING

    def test_missing_param(self, factory: MagicMock):
        with pytest.raises(InvalidActionParamsError) as exc_info:
            get_handler("ec2", "startInstance").run(factory, {})

        assert exc_info.value.param == "instanceId"

    def test_list_instances(self, factory: MagicMock):
        factory.client.return_value.describe_instances.return_value = {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-1",
                            "State": {"Name": "running"},
                            "InstanceType": "t3.micro",
                            "Tags": [{"Key": "Name", "Value": "web"}],
                        }
                    ]
                }
            ]
        }

        result = get_handler("ec2", "listInstances").run(factory, {})

        assert result == [
            {"instance_id": "i-1", "name": "web", "state": "running", "instance_type": "t3.micro"}
        ]
        factory.client.assert_called_with("ec2")

    def test_create_bucket_location_constraint(self, factory: MagicMock):
        get_handler("s3", "createBucket").run(factory, {"bucket": "logs"})

        factory.client.return_value.create_bucket.assert_called_once_with(
            Bucket="logs", CreateBucketConfiguration={"LocationConstraint": "eu-west-1"}
        )

    def test_invoke_function_reads_payload(self, factory: MagicMock):
        factory.client.return_value.invoke.return_value = {
            "StatusCode": 200,
            "Payload": io.BytesIO(b'{"ok": true}'),
        }

        result = get_handler("lambda", "invoke").run(
            factory, {"functionName": "cleanup", "payload": {"dry": True}}
        )

        assert result["status_code"] == 200
        assert result["payload"] == '{"ok": true}'

    def test_ai_chat(self, factory: MagicMock):
        body = {"content": [{"type": "text", "text": "Hello"}], "usage": {"input_tokens": 3}}
        factory.client.return_value.invoke_model.return_value = {
            "body": io.BytesIO(json.dumps(body).encode())
        }

        result = get_handler("bedrock", "chat").run(factory, {"prompt": "hi"})

        assert result["response"] == "Hello"
        factory.client.assert_called_with("bedrock-runtime")

    @pytest.mark.parametrize("max_tokens", ["lots", None, 0, 100_000, True])
    def test_ai_chat_rejects_bad_max_tokens(self, factory: MagicMock, max_tokens):
        with pytest.raises(InvalidActionParamsError) as exc_info:
            get_handler("bedrock", "chat").run(factory, {"prompt": "hi", "maxTokens": max_tokens})

        assert exc_info.value.param == "maxTokens"
        assert exc_info.value.reason
        factory.client.return_value.invoke_model.assert_not_called()

    @pytest.mark.parametrize(
        ("action", "method"),
        [("startInstance", "start_instances"), ("stopInstance", "stop_instances")],
    )
    def test_instance_change_with_empty_response(
        self, factory: MagicMock, action: str, method: str
    ):
        getattr(factory.client.return_value, method).return_value = {}

        result = get_handler("ec2", action).run(factory, {"instanceId": "i-0abc"})

        assert result == {"instance_id": "i-0abc", "previous_state": None, "current_state": None}

    def test_cost_month_to_date(self, factory: MagicMock):
        factory.client.return_value.get_cost_and_usage.return_value = {
            "ResultsByTime": [{"Total": {"UnblendedCost": {"Amount": "12.34", "Unit": "USD"}}}]
        }

        result = get_handler("cost", "monthToDate").run(factory, {})

        assert result["amount"] == "12.34"
        kwargs = factory.client.return_value.get_cost_and_usage.call_args.kwargs
        assert kwargs["TimePeriod"]["Start"] < kwargs["TimePeriod"]["End"]
