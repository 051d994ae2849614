"""
Paid Category Catalog - static metered-action reference data.

The partition between metered and free actions is fixed at import time and
is not configurable at runtime.
"""

from types import MappingProxyType

from broker.models.api import PaidCategoryId
from broker.models.domain import CostWarning, PaidCategory

PAID_CATEGORIES: MappingProxyType[PaidCategoryId, PaidCategory] = MappingProxyType(
    {
        PaidCategoryId.COST_EXPLORER: PaidCategory(
            category_id=PaidCategoryId.COST_EXPLORER,
            label="Cost Explorer",
            description="Cost & usage reports",
            cost_description="$0.01 per API call",
            actions=(
                "cost:getUsage",
                "cost:byPeriod",
                "cost:forecast",
                "cost:monthToDate",
                "cost:comparison",
                "cost:topServices",
                "cost:trend",
                "cost:byTag",
            ),
        ),
        PaidCategoryId.BEDROCK_AI: PaidCategory(
            category_id=PaidCategoryId.BEDROCK_AI,
            label="Bedrock AI (Claude)",
            description="AI-powered assistance using Amazon Bedrock",
            cost_description="~$0.01-0.15 per query",
            actions=(
                "bedrock:chat",
                "bedrock:chatWithContext",
                "bedrock:generateCfn",
                "bedrock:generateIam",
                "bedrock:generateLambda",
                "bedrock:troubleshoot",
                "bedrock:optimize",
                "bedrock:reviewArchitecture",
                "bedrock:explain",
                "bedrock:generateCli",
            ),
        ),
        PaidCategoryId.LAMBDA_INVOKE: PaidCategory(
            category_id=PaidCategoryId.LAMBDA_INVOKE,
            label="Lambda Invocation",
            description="Execute Lambda functions",
            cost_description="Depends on function (uses your Lambda quota)",
            actions=("lambda:invoke",),
        ),
        PaidCategoryId.SNS_PUBLISH: PaidCategory(
            category_id=PaidCategoryId.SNS_PUBLISH,
            label="SNS Notifications",
            description="Send messages via SNS",
            cost_description="$0.50 per 1M publishes + SMS costs",
            actions=("sns:publish", "sns:publishDirect"),
        ),
    }
)

_ACTION_INDEX: dict[str, PaidCategory] = {
    action_key: category
    for category in PAID_CATEGORIES.values()
    for action_key in category.actions
}

# Per-action estimates shown after a metered call succeeds
_ESTIMATED_COSTS: dict[str, str] = {
    "cost:comparison": "$0.02 (2 API calls)",
    "bedrock:chat": "$0.01-0.05",
    "bedrock:chatWithContext": "$0.02-0.10",
    "bedrock:generateCfn": "$0.02-0.10",
    "bedrock:generateIam": "$0.01-0.05",
    "bedrock:generateLambda": "$0.02-0.10",
    "bedrock:troubleshoot": "$0.02-0.10",
    "bedrock:optimize": "$0.02-0.10",
    "bedrock:reviewArchitecture": "$0.03-0.15",
    "bedrock:explain": "$0.01-0.05",
    "bedrock:generateCli": "$0.01-0.03",
    "lambda:invoke": "depends on function",
    "sns:publish": "~$0.0000005 + SMS costs",
    "sns:publishDirect": "SMS rate varies by country",
}

_WARNINGS: dict[PaidCategoryId, str] = {
    PaidCategoryId.COST_EXPLORER: "Cost Explorer API charges $0.01 per API request",
    PaidCategoryId.BEDROCK_AI: (
        "Bedrock AI charges ~$0.003/1K input tokens + ~$0.015/1K output tokens"
    ),
    PaidCategoryId.LAMBDA_INVOKE: (
        "Invoking Lambda functions uses your Lambda execution quota and may incur costs"
    ),
    PaidCategoryId.SNS_PUBLISH: (
        "SNS: $0.50 per 1M publishes. SMS messages have additional per-message charges"
    ),
}


def action_key(service: str, action: str) -> str:
    return f"{service}:{action}"


def category_for_action(service: str, action: str) -> PaidCategory | None:
    """Return the metered category an action belongs to, or None if it is free."""
    return _ACTION_INDEX.get(action_key(service, action))


def requires_consent(service: str, action: str) -> bool:
    category = category_for_action(service, action)
    return category is not None and category.gate_required


def get_category(category_id: str | PaidCategoryId) -> PaidCategory | None:
    """Look up a category by id. Unknown ids return None."""
    try:
        return PAID_CATEGORIES.get(PaidCategoryId(category_id))
    except ValueError:
        return None


def list_paid_categories() -> list[PaidCategory]:
    return list(PAID_CATEGORIES.values())


def cost_warning_for(service: str, action: str) -> CostWarning | None:
    """Cost note for a metered action, None for free actions."""
    category = category_for_action(service, action)
    if category is None:
        return None
    key = action_key(service, action)
    return CostWarning(
        category_id=category.category_id,
        estimated_cost=_ESTIMATED_COSTS.get(key, category.cost_description),
        warning=_WARNINGS[category.category_id],
    )
