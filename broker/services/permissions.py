"""
Permission Service - reports which provider permissions the stored keys have.

Each check runs one cheap read call through the client factory. Write
permissions and metered APIs are never exercised; those checks are
reported as skipped with a note to verify the policy by hand.
"""

from dataclasses import dataclass, field
from typing import Any

from structlog import get_logger

from broker.exceptions import (
    CloudProviderError,
    ForbiddenCredentialsError,
    UnknownPermissionCheckError,
)
from broker.models.api import (
    PermissionCheckResponse,
    PermissionReportResponse,
    PermissionStatus,
    PermissionSummary,
    PolicyDocument,
    PolicyStatement,
)
from broker.observability.metrics import metrics
from broker.services.cloud import CloudClientFactory

logger = get_logger(__name__)


@dataclass(frozen=True)
class PermissionCheck:
    """One permission check. A check without a method is never executed."""

    key: str
    name: str
    description: str
    required: bool
    actions: tuple[str, ...]
    service: str | None = None
    method: str | None = None
    kwargs: dict[str, Any] = field(default_factory=dict)
    skip_message: str | None = None

    @property
    def fix(self) -> str:
        return f"Add these IAM actions to your policy: {', '.join(self.actions)}"


IDENTITY_CHECK = PermissionCheck(
    key="sts",
    name="Identity (STS)",
    description="Basic authentication",
    required=True,
    actions=("sts:GetCallerIdentity",),
    service="sts",
    method="get_caller_identity",
)

PERMISSION_CHECKS: tuple[PermissionCheck, ...] = (
    PermissionCheck(
        key="ec2_read",
        name="EC2 Read",
        description="List and describe instances",
        required=True,
        actions=("ec2:DescribeInstances", "ec2:DescribeInstanceStatus"),
        service="ec2",
        method="describe_instances",
        kwargs={"MaxResults": 5},
    ),
    PermissionCheck(
        key="ec2_write",
        name="EC2 Write",
        description="Start, stop and reboot instances",
        required=False,
        actions=("ec2:StartInstances", "ec2:StopInstances", "ec2:RebootInstances"),
        skip_message="Cannot test without affecting instances. Verify the policy manually.",
    ),
    PermissionCheck(
        key="s3_read",
        name="S3 Read",
        description="List buckets and objects",
        required=True,
        actions=("s3:ListAllMyBuckets", "s3:ListBucket", "s3:GetObject"),
        service="s3",
        method="list_buckets",
    ),
    PermissionCheck(
        key="lambda_read",
        name="Lambda Read",
        description="List and describe functions",
        required=True,
        actions=("lambda:ListFunctions", "lambda:GetFunction"),
        service="lambda",
        method="list_functions",
        kwargs={"MaxItems": 5},
    ),
    PermissionCheck(
        key="lambda_invoke",
        name="Lambda Invoke",
        description="Invoke functions",
        required=False,
        actions=("lambda:InvokeFunction",),
        skip_message="Cannot test without invoking a function. Verify the policy manually.",
    ),
    PermissionCheck(
        key="cloudwatch_read",
        name="CloudWatch Read",
        description="View alarms and metrics",
        required=True,
        actions=(
            "cloudwatch:DescribeAlarms",
            "cloudwatch:GetMetricStatistics",
            "cloudwatch:ListMetrics",
        ),
        service="cloudwatch",
        method="describe_alarms",
        kwargs={"MaxRecords": 5},
    ),
    PermissionCheck(
        key="logs_read",
        name="CloudWatch Logs Read",
        description="View log groups and events",
        required=True,
        actions=("logs:DescribeLogGroups", "logs:GetLogEvents", "logs:FilterLogEvents"),
        service="logs",
        method="describe_log_groups",
        kwargs={"limit": 5},
    ),
    PermissionCheck(
        key="cost_explorer",
        name="Cost Explorer",
        description="View costs and usage",
        required=False,
        actions=("ce:GetCostAndUsage", "ce:GetCostForecast"),
        skip_message="Skipped: every Cost Explorer call costs $0.01. Verify the policy manually.",
    ),
    PermissionCheck(
        key="rds_read",
        name="RDS Read",
        description="List and describe databases",
        required=False,
        actions=("rds:DescribeDBInstances", "rds:DescribeDBClusters"),
        service="rds",
        method="describe_db_instances",
        kwargs={"MaxRecords": 20},
    ),
    PermissionCheck(
        key="sns_read",
        name="SNS Read",
        description="List topics and subscriptions",
        required=False,
        actions=("sns:ListTopics", "sns:ListSubscriptions", "sns:GetTopicAttributes"),
        service="sns",
        method="list_topics",
    ),
    PermissionCheck(
        key="sns_write",
        name="SNS Write",
        description="Publish messages",
        required=False,
        actions=("sns:Publish",),
        skip_message="Cannot test without sending a message. Verify the policy manually.",
    ),
    PermissionCheck(
        key="iam_read",
        name="IAM Read",
        description="List users, roles and policies",
        required=False,
        actions=("iam:ListUsers", "iam:ListRoles", "iam:GetUser"),
        service="iam",
        method="list_users",
        kwargs={"MaxItems": 5},
    ),
    PermissionCheck(
        key="bedrock",
        name="Bedrock AI",
        description="AI assistance",
        required=False,
        actions=("bedrock:InvokeModel", "bedrock:InvokeModelWithResponseStream"),
        skip_message=(
            "Skipped: model calls cost money. Model access must also be enabled in the "
            "Bedrock console."
        ),
    ),
)

_CHECKS_BY_KEY: dict[str, PermissionCheck] = {
    check.key: check for check in (IDENTITY_CHECK, *PERMISSION_CHECKS)
}


def list_checks() -> list[str]:
    return list(_CHECKS_BY_KEY)


def get_check(key: str) -> PermissionCheck:
    check = _CHECKS_BY_KEY.get(key)
    if check is None:
        raise UnknownPermissionCheckError(key)
    return check


class PermissionService:
    """Runs permission checks with one resolved credential set."""

    def __init__(self, factory: CloudClientFactory) -> None:
        self.factory = factory

    async def check_all(self) -> PermissionReportResponse:
        """
        Run every check after confirming the identity.

        Raises:
            CredentialError: INVALID or EXPIRED keys, found by the identity call
        """
        identity = await self.factory.caller_identity()

        results = [await self.check(check.key) for check in PERMISSION_CHECKS]
        denied = [r for r in results if r.status == PermissionStatus.DENIED]
        summary = PermissionSummary(
            total=len(results),
            passed=sum(r.status == PermissionStatus.GRANTED for r in results),
            failed=len(denied),
            skipped=sum(r.status == PermissionStatus.SKIPPED for r in results),
            required_missing=[r.key for r in denied if r.required],
        )

        logger.info(
            "permission_check_completed",
            user_id=self.factory.credentials.user_id,
            passed=summary.passed,
            failed=summary.failed,
            required_missing=summary.required_missing,
        )

        return PermissionReportResponse(
            region=self.factory.region,
            account_id=identity.get("Account"),
            arn=identity.get("Arn"),
            checks=results,
            summary=summary,
            recommendations=[f"Missing {r.name}: {r.fix}" for r in denied if r.fix],
        )

    async def check(self, key: str) -> PermissionCheckResponse:
        """
        Run one check.

        A permission denial or other provider failure is reported as DENIED.
        Invalid or expired keys propagate as CredentialError.

        Raises:
            UnknownPermissionCheckError: Key is not registered
        """
        check = get_check(key)
        result = PermissionCheckResponse(
            key=check.key,
            name=check.name,
            description=check.description,
            required=check.required,
            actions=list(check.actions),
            status=PermissionStatus.SKIPPED,
            message=check.skip_message,
        )

        if check.service is None or check.method is None:
            metrics.record_permission_check(check.key, PermissionStatus.SKIPPED.value)
            return result

        try:
            await self.factory.call(check.service, check.method, **check.kwargs)
        except ForbiddenCredentialsError as exc:
            result = self._denied(result, check, exc.detail or "AccessDenied")
        except CloudProviderError as exc:
            result = self._denied(result, check, exc.code)
        else:
            result = result.model_copy(update={"status": PermissionStatus.GRANTED})

        metrics.record_permission_check(check.key, result.status.value)
        return result

    @staticmethod
    def _denied(
        result: PermissionCheckResponse, check: PermissionCheck, error_code: str
    ) -> PermissionCheckResponse:
        logger.info("permission_denied", check=check.key, error_code=error_code)
        return result.model_copy(
            update={
                "status": PermissionStatus.DENIED,
                "message": None,
                "error_code": error_code,
                "fix": check.fix,
            }
        )


# ============================================================================
# Required policy
# ============================================================================

_POLICY_GRANTS: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    (
        "EC2Access",
        ("ec2:Describe*",),
        ("ec2:StartInstances", "ec2:StopInstances", "ec2:RebootInstances"),
    ),
    (
        "S3Access",
        ("s3:ListAllMyBuckets", "s3:ListBucket", "s3:GetObject", "s3:GetBucketLocation"),
        ("s3:CreateBucket",),
    ),
    ("LambdaAccess", ("lambda:ListFunctions", "lambda:GetFunction"), ("lambda:InvokeFunction",)),
    (
        "CloudWatchAccess",
        ("cloudwatch:Describe*", "cloudwatch:GetMetricStatistics", "cloudwatch:ListMetrics"),
        ("cloudwatch:PutMetricAlarm", "cloudwatch:DeleteAlarms"),
    ),
    ("CloudWatchLogsAccess", ("logs:Describe*", "logs:GetLogEvents", "logs:FilterLogEvents"), ()),
    (
        "CostExplorerAccess",
        ("ce:GetCostAndUsage", "ce:GetCostForecast", "ce:GetDimensionValues"),
        (),
    ),
    (
        "RDSAccess",
        ("rds:Describe*",),
        ("rds:StartDBInstance", "rds:StopDBInstance", "rds:RebootDBInstance"),
    ),
    (
        "SNSAccess",
        ("sns:List*", "sns:GetTopicAttributes"),
        ("sns:Publish", "sns:CreateTopic", "sns:DeleteTopic", "sns:Subscribe", "sns:Unsubscribe"),
    ),
    ("IAMAccess", ("iam:List*", "iam:Get*"), ()),
    (
        "BedrockAccess",
        (
            "bedrock:InvokeModel",
            "bedrock:InvokeModelWithResponseStream",
            "bedrock:GetFoundationModel",
            "bedrock:ListFoundationModels",
        ),
        (),
    ),
    (
        "MarketplaceForBedrock",
        (
            "aws-marketplace:ViewSubscriptions",
            "aws-marketplace:Subscribe",
            "aws-marketplace:Unsubscribe",
        ),
        (),
    ),
)


def required_policy(include_write: bool = True) -> PolicyDocument:
    """IAM policy for every action the broker runs; read-only when include_write is False."""
    return PolicyDocument(
        statement=[
            PolicyStatement(sid=sid, action=[*read, *(write if include_write else ())])
            for sid, read, write in _POLICY_GRANTS
        ]
    )
