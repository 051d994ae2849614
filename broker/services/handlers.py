"""
Action Handlers - thin provider calls behind the action envelope.

Each handler is a synchronous function run off the event loop by
CloudClientFactory.run, so provider failures are mapped in one place.
A handler with a notification type announces its success to the user's
channel for that type; read-only handlers announce nothing.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

from broker.config import settings
from broker.exceptions import InvalidActionParamsError, UnknownActionError
from broker.models.api import NotificationType
from broker.services.catalog import action_key
from broker.services.cloud import CloudClientFactory

HandlerFn = Callable[[CloudClientFactory, dict[str, Any]], Any]
MessageFn = Callable[[dict[str, Any], Any], str]

MAX_AI_TOKENS = 4096


@dataclass(frozen=True)
class ActionHandler:
    """Registered service:action handler."""

    service: str
    action: str
    run: HandlerFn
    notification_type: NotificationType | None = None
    describe: MessageFn | None = None

    @property
    def key(self) -> str:
        return action_key(self.service, self.action)

    def message(self, params: dict[str, Any], data: Any, region: str) -> str:
        if self.describe is None:
            return f"{self.key} completed in {region}"
        return f"{self.describe(params, data)} ({region})"


def require_param(service: str, action: str, params: dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise InvalidActionParamsError(service, action, name)
    return value


def int_param(
    service: str,
    action: str,
    params: dict[str, Any],
    name: str,
    default: int,
    maximum: int,
) -> int:
    value = params.get(name, default)
    if isinstance(value, bool):
        raise InvalidActionParamsError(service, action, name, "expected an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidActionParamsError(service, action, name, "expected an integer") from exc
    if not 1 <= number <= maximum:
        raise InvalidActionParamsError(service, action, name, f"must be between 1 and {maximum}")
    return number


# ============================================================================
# Compute
# ============================================================================


def list_instances(factory: CloudClientFactory, params: dict[str, Any]) -> list[dict[str, Any]]:
    response = factory.client("ec2").describe_instances()
    instances = []
    for reservation in response.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            name = next(
                (tag["Value"] for tag in instance.get("Tags", []) if tag.get("Key") == "Name"),
                None,
            )
            instances.append(
                {
                    "instance_id": instance.get("InstanceId"),
                    "name": name,
                    "state": instance.get("State", {}).get("Name"),
                    "instance_type": instance.get("InstanceType"),
                }
            )
    return instances


def start_instance(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    instance_id = require_param("ec2", "startInstance", params, "instanceId")
    response = factory.client("ec2").start_instances(InstanceIds=[instance_id])
    change = next(iter(response.get("StartingInstances", [])), {})
    return {
        "instance_id": instance_id,
        "previous_state": change.get("PreviousState", {}).get("Name"),
        "current_state": change.get("CurrentState", {}).get("Name"),
    }


def stop_instance(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    instance_id = require_param("ec2", "stopInstance", params, "instanceId")
    response = factory.client("ec2").stop_instances(InstanceIds=[instance_id])
    change = next(iter(response.get("StoppingInstances", [])), {})
    return {
        "instance_id": instance_id,
        "previous_state": change.get("PreviousState", {}).get("Name"),
        "current_state": change.get("CurrentState", {}).get("Name"),
    }


# ============================================================================
# Storage
# ============================================================================


def list_buckets(factory: CloudClientFactory, params: dict[str, Any]) -> list[dict[str, Any]]:
    response = factory.client("s3").list_buckets()
    return [
        {"name": bucket.get("Name"), "created_at": str(bucket.get("CreationDate"))}
        for bucket in response.get("Buckets", [])
    ]


def create_bucket(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    bucket = require_param("s3", "createBucket", params, "bucket")
    region = factory.region_for("s3")
    kwargs: dict[str, Any] = {"Bucket": bucket}
    # us-east-1 rejects an explicit location constraint
    if region != "us-east-1":
        kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
    factory.client("s3").create_bucket(**kwargs)
    return {"bucket": bucket, "region": region}


# ============================================================================
# Metered
# ============================================================================


def invoke_function(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    function_name = require_param("lambda", "invoke", params, "functionName")
    payload = params.get("payload", {})
    response = factory.client("lambda").invoke(
        FunctionName=function_name,
        InvocationType="RequestResponse",
        Payload=json.dumps(payload).encode(),
    )
    body = response["Payload"].read().decode() if "Payload" in response else ""
    return {
        "function_name": function_name,
        "status_code": response.get("StatusCode"),
        "function_error": response.get("FunctionError"),
        "payload": body,
    }


def cost_month_to_date(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    today = datetime.now(UTC).date()
    start = date(today.year, today.month, 1)
    # End is exclusive and must be after start, even on the 1st
    end = today + timedelta(days=1)
    response = factory.client("ce").get_cost_and_usage(
        TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
        Granularity="MONTHLY",
        Metrics=["UnblendedCost"],
    )
    results = response.get("ResultsByTime", [])
    total = results[0]["Total"]["UnblendedCost"] if results else {"Amount": "0", "Unit": "USD"}
    return {
        "start": start.isoformat(),
        "end": today.isoformat(),
        "amount": total.get("Amount"),
        "unit": total.get("Unit"),
    }


def publish_message(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    topic_arn = require_param("sns", "publish", params, "topicArn")
    message = require_param("sns", "publish", params, "message")
    kwargs: dict[str, Any] = {"TopicArn": topic_arn, "Message": message}
    if params.get("subject"):
        kwargs["Subject"] = params["subject"]
    response = factory.client("sns").publish(**kwargs)
    return {"topic_arn": topic_arn, "message_id": response.get("MessageId")}


def ai_chat(factory: CloudClientFactory, params: dict[str, Any]) -> dict[str, Any]:
    prompt = require_param("bedrock", "chat", params, "prompt")
    body = {
        "anthropic_version": "bedrock-2023-05-31",
        "max_tokens": int_param("bedrock", "chat", params, "maxTokens", 1024, MAX_AI_TOKENS),
        "messages": [{"role": "user", "content": prompt}],
    }
    response = factory.client("bedrock-runtime").invoke_model(
        modelId=settings.ai_model_id,
        contentType="application/json",
        accept="application/json",
        body=json.dumps(body),
    )
    result = json.loads(response["body"].read())
    text = "".join(
        part.get("text", "") for part in result.get("content", []) if part.get("type") == "text"
    )
    return {"model_id": settings.ai_model_id, "response": text, "usage": result.get("usage")}


HANDLERS: dict[str, ActionHandler] = {
    handler.key: handler
    for handler in (
        ActionHandler("ec2", "listInstances", list_instances),
        ActionHandler(
            "ec2",
            "startInstance",
            start_instance,
            NotificationType.COMPUTE_LIFECYCLE,
            lambda params, data: f"Instance {data['instance_id']} is starting",
        ),
        ActionHandler(
            "ec2",
            "stopInstance",
            stop_instance,
            NotificationType.COMPUTE_LIFECYCLE,
            lambda params, data: f"Instance {data['instance_id']} is stopping",
        ),
        ActionHandler("s3", "listBuckets", list_buckets),
        ActionHandler(
            "s3",
            "createBucket",
            create_bucket,
            NotificationType.STORAGE_LIFECYCLE,
            lambda params, data: f"Bucket {data['bucket']} created",
        ),
        ActionHandler(
            "lambda",
            "invoke",
            invoke_function,
            NotificationType.FUNCTION_LIFECYCLE,
            lambda params, data: f"Function {data['function_name']} invoked",
        ),
        ActionHandler("cost", "monthToDate", cost_month_to_date),
        ActionHandler(
            "sns",
            "publish",
            publish_message,
            NotificationType.MESSAGING,
            lambda params, data: f"Message {data['message_id']} published",
        ),
        ActionHandler("bedrock", "chat", ai_chat),
    )
}


def get_handler(service: str, action: str) -> ActionHandler:
    """
    Raises:
        UnknownActionError: nothing registered for service:action
    """
    handler = HANDLERS.get(action_key(service, action))
    if handler is None:
        raise UnknownActionError(service, action)
    return handler
