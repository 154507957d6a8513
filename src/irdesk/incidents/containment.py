"""Containment executor: dispatches named response actions to handlers.

Action names resolve through an explicit handler table. Unknown names are
rejected up front with :class:`UnknownActionError`; a handler that raises
or times out yields a ``failed`` outcome instead of an exception.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from irdesk.api.exceptions import ActionExecutionError, UnknownActionError
from irdesk.models.base import ActionStatus, ActionType

logger = structlog.get_logger()


class ActionRequest(BaseModel):
    """A response action to run against a target."""

    type: ActionType = ActionType.MANUAL
    action: str
    target: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    # Incident facts handed to the handler (affected users/resources).
    context: dict[str, Any] = Field(default_factory=dict)


class ActionOutcome(BaseModel):
    status: ActionStatus
    result: Any = None
    error: str | None = None


ActionHandler = Callable[[ActionRequest], Awaitable[Any]]


# --- Built-in handlers ---
# These stand in for the firewall / IAM / EDR integrations a deployment wires
# in with ContainmentExecutor.register().


async def lockdown_affected_accounts(request: ActionRequest) -> dict[str, Any]:
    accounts = request.context.get("affected_users") or []
    return {"locked_accounts": list(accounts), "scope": request.parameters.get("scope")}


async def block_outbound_traffic(request: ActionRequest) -> dict[str, Any]:
    return {"target": request.target, "blocked_for": int(request.parameters.get("duration", 3600))}


async def force_password_reset(request: ActionRequest) -> dict[str, Any]:
    return {"reset_initiated": True, "scope": request.parameters.get("scope", request.target)}


async def isolate_affected_hosts(request: ActionRequest) -> dict[str, Any]:
    hosts = request.context.get("affected_resources") or [request.target]
    return {"isolated_hosts": list(hosts), "mode": request.parameters.get("mode", "quarantine")}


async def enable_rate_limiting(request: ActionRequest) -> dict[str, Any]:
    return {
        "target": request.target,
        "requests_per_minute": int(request.parameters.get("requests_per_minute", 600)),
    }


async def block_ip(request: ActionRequest) -> dict[str, Any]:
    return {"blocked_ip": request.target}


async def revoke_sessions(request: ActionRequest) -> dict[str, Any]:
    return {"revoked_sessions_for": request.target}


async def disable_user_account(request: ActionRequest) -> dict[str, Any]:
    return {"disabled_account": request.target}


DEFAULT_HANDLERS: dict[str, ActionHandler] = {
    "lockdown_affected_accounts": lockdown_affected_accounts,
    "block_outbound_traffic": block_outbound_traffic,
    "force_password_reset": force_password_reset,
    "isolate_affected_hosts": isolate_affected_hosts,
    "enable_rate_limiting": enable_rate_limiting,
    "block_ip": block_ip,
    "revoke_sessions": revoke_sessions,
    "disable_user_account": disable_user_account,
}


class ContainmentExecutor:
    """Run containment actions with a per-action time limit."""

    def __init__(
        self,
        handlers: dict[str, ActionHandler] | None = None,
        *,
        include_defaults: bool = True,
        timeout_seconds: float = 300.0,
    ) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        if include_defaults:
            self._handlers.update(DEFAULT_HANDLERS)
        self._handlers.update(handlers or {})
        self._timeout = timeout_seconds

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler
        logger.info("containment_executor.handler_registered", action=name)

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self, name: str) -> None:
        if name not in self._handlers:
            raise UnknownActionError(
                f"No handler registered for action {name!r}",
                extra={"action": name, "known_actions": self.actions},
            )

    async def run(self, request: ActionRequest) -> ActionOutcome:
        """Execute *request*. Cancellation propagates to the caller."""
        self.validate(request.action)
        handler = self._handlers[request.action]
        logger.info(
            "containment_executor.executing",
            action=request.action,
            target=request.target,
            action_type=request.type.value,
        )
        try:
            async with asyncio.timeout(self._timeout):
                result = await handler(request)
        except TimeoutError:
            logger.warning(
                "containment_executor.timeout",
                action=request.action,
                timeout_seconds=self._timeout,
            )
            return ActionOutcome(status=ActionStatus.FAILED, error="timeout")
        except ActionExecutionError as e:
            return ActionOutcome(status=ActionStatus.FAILED, error=e.detail)
        except Exception as e:
            logger.warning(
                "containment_executor.handler_failed",
                action=request.action,
                error=str(e),
            )
            return ActionOutcome(status=ActionStatus.FAILED, error=str(e) or type(e).__name__)
        return ActionOutcome(status=ActionStatus.COMPLETED, result=result)
