"""Per-step execution session management."""

from __future__ import annotations

import logging
import secrets

from workforge.config.schema import WorkflowDefinition
from workforge.core.context import ContextStore
from workforge.core.executor import SessionSettings, StepExecutor
from workforge.core.models import WorkflowRun

_log = logging.getLogger(__name__)


def resolve_timeout(
    step_timeout: float | None,
    session_timeout: float | None,
    definition: WorkflowDefinition,
    default: float,
) -> float:
    """Step, then session, then workflow config, then the engine default."""
    for candidate in (step_timeout, session_timeout, definition.config.timeout):
        if candidate:
            return float(candidate)
    return float(default)


def resolve_session(step, definition: WorkflowDefinition, default_timeout: float) -> SessionSettings:
    """Session settings for an agent-bound step, honouring legacy switches."""
    session = getattr(step, "session", None)
    step_timeout = getattr(step, "timeout", None)
    if session is not None:
        return SessionSettings(
            mode=session.mode,
            context=session.context,
            cleanup=session.cleanup,
            timeout=resolve_timeout(step_timeout, session.timeout, definition, default_timeout),
            include_outputs_from=tuple(session.include_outputs_from),
        )

    fresh_session = getattr(step, "fresh_session", None)
    if fresh_session is None:
        fresh_session = definition.config.fresh_session_default
    return SessionSettings(
        mode="fresh" if fresh_session else "reuse",
        timeout=resolve_timeout(step_timeout, None, definition, default_timeout),
    )


class SessionManager:
    """Hands out session keys and releases them according to their cleanup policy.

    Reusable sessions are recorded in the run context under ``_sessions``
    keyed by scope (normally the agent id) so a resumed run picks them up
    again. Fresh sessions with ``cleanup: delete`` are released as soon as
    their dispatch ends; everything else stays open until the run finishes.
    """

    def __init__(self, executor: StepExecutor):
        self.executor = executor
        self._open: dict[str, dict[str, str]] = {}  # run_id → {session_key: cleanup}

    @staticmethod
    def new_key(run_id: str, scope: str) -> str:
        return f"{run_id}:{scope}:{secrets.token_hex(4)}"

    def acquire(self, run: WorkflowRun, scope: str, settings: SessionSettings) -> str:
        sessions = ContextStore(run).sessions()
        if settings.mode == "reuse" and scope in sessions:
            return sessions[scope]
        key = self.new_key(run.id, scope)
        sessions[scope] = key
        self._open.setdefault(run.id, {})[key] = settings.cleanup
        _log.debug(
            "Session opened",
            extra={"run_id": run.id, "session_key": key, "mode": settings.mode},
        )
        return key

    async def release(self, run: WorkflowRun, session_key: str, settings: SessionSettings) -> None:
        """Release after a dispatch; only fresh, deletable sessions close here."""
        if settings.mode != "fresh" or settings.cleanup != "delete":
            return
        await self._close(run, session_key)

    async def release_all(self, run: WorkflowRun, force: bool = False) -> None:
        """Close the run's sessions. ``force`` also closes ``cleanup: keep`` sessions."""
        opened = dict(self._open.get(run.id, {}))
        # Sessions restored from a checkpoint were opened by another process.
        for key in ContextStore(run).sessions().values():
            opened.setdefault(key, "delete")
        for key, cleanup in opened.items():
            if force or cleanup == "delete":
                await self._close(run, key)
        self._open.pop(run.id, None)

    async def _close(self, run: WorkflowRun, session_key: str) -> None:
        self._open.get(run.id, {}).pop(session_key, None)
        sessions = ContextStore(run).sessions()
        for scope in [s for s, k in sessions.items() if k == session_key]:
            del sessions[scope]
        try:
            await self.executor.cleanup_session(session_key)
        except Exception as e:
            _log.warning(
                "Session cleanup failed: %s", e,
                extra={"run_id": run.id, "session_key": session_key},
            )
