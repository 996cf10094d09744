"""Step executor adapter contract and the built-in adapters.

The engine never performs agent work itself. Every dispatch goes through a
``StepExecutor``. Cancellation is advisory: the engine sets the token and
cancels the awaiting task, but an adapter that ignores both is allowed to
finish; its result is then discarded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from workforge.config.schema import WorkflowAgent
from workforge.control.tool_policy import ToolPolicy
from workforge.errors import ExecutorFailure

_log = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal. Cancelling a parent cancels its children."""

    def __init__(self, parent: CancellationToken | None = None):
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self.cancelled:
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutorFailure(self.reason or "cancelled", kind="cancelled")


@dataclass(frozen=True)
class SessionSettings:
    """Resolved session behaviour for one dispatch."""

    mode: str = "fresh"
    context: str = "minimal"
    cleanup: str = "delete"
    timeout: float = 600.0
    include_outputs_from: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecutionRequest:
    run_id: str
    step_id: str
    agent: WorkflowAgent
    input: str
    session: SessionSettings
    session_key: str
    tool_policy: ToolPolicy
    timeout: float
    context: Mapping[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    attempt: int = 1
    iteration: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))


@dataclass
class StepExecutionResult:
    output: Any
    output_path: Optional[str] = None


class StepExecutor(ABC):
    """Performs the work of one agent dispatch.

    Implementations raise ``ExecutorFailure`` to report a failed attempt and
    must not invoke tools rejected by ``request.tool_policy``.
    """

    @abstractmethod
    async def execute(
        self, request: ExecutionRequest, cancel: CancellationToken
    ) -> StepExecutionResult:
        ...

    async def cleanup_session(self, session_key: str) -> None:
        _log.debug("Session cleanup requested", extra={"session_key": session_key})


class SimulatedExecutor(StepExecutor):
    """Produces placeholder output without contacting any agent runtime."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    async def execute(
        self, request: ExecutionRequest, cancel: CancellationToken
    ) -> StepExecutionResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        cancel.raise_if_cancelled()
        policy = request.tool_policy.to_filter()
        suffix = f" iteration {request.iteration + 1}" if request.iteration is not None else ""
        text = (
            f"Agent {request.agent.id} (role: {request.agent.role}) executed step "
            f"{request.step_id}{suffix}\n\n"
            f"Session: mode={request.session.mode} context={request.session.context} "
            f"cleanup={request.session.cleanup} timeout={request.timeout}s\n"
            f"Allowed tools: {', '.join(policy.get('allowed', [])) or 'all'}\n"
            f"Denied tools: {', '.join(policy.get('denied', [])) or 'none'}\n\n"
            f"Prompt:\n{request.input}\n\n"
            "STATUS: done"
        )
        return StepExecutionResult(output=text)


class CallableExecutor(StepExecutor):
    """Adapts a plain function or coroutine function into a ``StepExecutor``.

    The callable receives the ``ExecutionRequest`` and returns either a
    ``StepExecutionResult`` or the raw output. Synchronous callables run in a
    worker thread so they never block other runs.
    """

    def __init__(self, handler: Callable[[ExecutionRequest], Any], cleanup: Callable | None = None):
        self.handler = handler
        self.cleanup = cleanup

    async def execute(
        self, request: ExecutionRequest, cancel: CancellationToken
    ) -> StepExecutionResult:
        cancel.raise_if_cancelled()
        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(request)
        else:
            result = await asyncio.to_thread(self.handler, request)
        if isinstance(result, StepExecutionResult):
            return result
        return StepExecutionResult(output=result)

    async def cleanup_session(self, session_key: str) -> None:
        if self.cleanup is None:
            return
        if inspect.iscoroutinefunction(self.cleanup):
            await self.cleanup(session_key)
        else:
            self.cleanup(session_key)
