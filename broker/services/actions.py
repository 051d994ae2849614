"""
Action Gateway - the envelope every cloud action passes through.

Order is fixed: credentials, then consent for metered categories, then the
provider call. Notification routing runs after the result is known and
never changes it.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from broker.db.models import utc_now
from broker.exceptions import CloudProviderError, ConsentRequiredError, CredentialError
from broker.models.api import ActionResponse, CostWarningResponse
from broker.models.domain import ConsentBlocked, RequestContext
from broker.observability.metrics import metrics
from broker.observability.tracing import trace_operation
from broker.services.catalog import cost_warning_for
from broker.services.cloud import CloudClientFactory
from broker.services.consent import ConsentGate
from broker.services.credentials import CredentialResolver
from broker.services.handlers import ActionHandler, get_handler
from broker.services.notifications import dispatch_notification

logger = get_logger(__name__)

Scheduler = Callable[..., Any]

# Strong references to fire-and-forget tasks until they finish
_background_tasks: set[asyncio.Task] = set()


def schedule_in_loop(fn: Callable[..., Any], *args: Any) -> None:
    """Default scheduler: run a coroutine function as a detached task."""
    task = asyncio.create_task(fn(*args))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


class ActionGateway:
    """
    Runs one inbound action for one user.

    ``schedule`` receives ``(fn, *args)`` for post-response work. Routes
    pass ``BackgroundTasks.add_task``; everything else gets a detached task.
    """

    def __init__(self, session: AsyncSession, schedule: Scheduler | None = None) -> None:
        self.session = session
        self.schedule = schedule or schedule_in_loop
        self.resolver = CredentialResolver(session)
        self.consent = ConsentGate(session)

    async def execute(
        self,
        ctx: RequestContext,
        service: str,
        action: str,
        params: dict[str, Any] | None = None,
        consent: bool = False,
    ) -> ActionResponse:
        """
        Execute a service:action under the caller's credentials.

        Raises:
            UnknownActionError: No handler for service:action
            CredentialError: UNCONFIGURED before any call, or a provider rejection
            ConsentRequiredError: Metered action without a grant or explicit consent
            InvalidActionParamsError: Required parameter missing
            CloudProviderError: Any other provider failure
        """
        params = params or {}
        handler = get_handler(service, action)
        start = time.perf_counter()

        with trace_operation(
            "broker.action", service=service, action=action, user_id=ctx.user_id
        ) as span:
            try:
                credentials = await self.resolver.resolve(ctx.user_id)
            except CredentialError:
                metrics.record_action(service, action, "credential_error", time.perf_counter() - start)
                raise

            decision = await self.consent.check_action(ctx.user_id, service, action, consent)
            if isinstance(decision, ConsentBlocked):
                metrics.record_action(service, action, "blocked", time.perf_counter() - start)
                logger.info(
                    "action_blocked_pending_consent",
                    user_id=ctx.user_id,
                    service=service,
                    action=action,
                    category_id=decision.category.category_id.value,
                    request_id=ctx.request_id,
                )
                raise ConsentRequiredError(ctx.user_id, decision.category)

            factory = CloudClientFactory(credentials, region=ctx.region)
            span.set_attribute("region", factory.region)
            try:
                data = await factory.run(lambda: handler.run(factory, params))
            except CredentialError as exc:
                metrics.record_action(service, action, "credential_error", time.perf_counter() - start)
                logger.info(
                    "action_credentials_rejected",
                    user_id=ctx.user_id,
                    service=service,
                    action=action,
                    kind=exc.kind.value,
                    request_id=ctx.request_id,
                )
                raise
            except CloudProviderError as exc:
                metrics.record_action(service, action, "provider_error", time.perf_counter() - start)
                logger.warning(
                    "action_provider_error",
                    user_id=ctx.user_id,
                    service=service,
                    action=action,
                    code=exc.code,
                    request_id=ctx.request_id,
                )
                raise

        duration = time.perf_counter() - start
        metrics.record_action(service, action, "success", duration)
        logger.info(
            "action_executed",
            user_id=ctx.user_id,
            service=service,
            action=action,
            region=factory.region,
            duration_ms=round(duration * 1000, 2),
            request_id=ctx.request_id,
        )

        self._schedule_notification(ctx, handler, params, data, factory.region)

        warning = cost_warning_for(service, action)
        return ActionResponse(
            service=service,
            action=action,
            region=factory.region,
            data=data,
            cost_warning=(
                CostWarningResponse(
                    category_id=warning.category_id,
                    estimated_cost=warning.estimated_cost,
                    warning=warning.warning,
                )
                if warning
                else None
            ),
            request_id=ctx.request_id,
            timestamp=utc_now(),
        )

    def _schedule_notification(
        self,
        ctx: RequestContext,
        handler: ActionHandler,
        params: dict[str, Any],
        data: Any,
        region: str,
    ) -> None:
        if handler.notification_type is None:
            return
        message = handler.message(params, data, region)
        self.schedule(dispatch_notification, ctx.user_id, handler.notification_type, message)
