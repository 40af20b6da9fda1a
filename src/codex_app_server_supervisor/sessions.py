from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pydantic import BaseModel

from . import events
from .channels import Broadcast, Subscription

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    ARCHIVED = "archived"


_INACTIVE_STATES = frozenset({SessionState.COMPLETED, SessionState.ARCHIVED})


class Session(BaseModel):
    """Locally tracked state of one thread.

    Sessions are not persisted; after an app-server restart every session is
    stale and must be recreated by the caller.
    """

    thread_id: str
    model: str
    cwd: str
    state: SessionState = SessionState.CREATED
    active_turn_id: str | None = None
    last_turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """Published on registration and on every state change."""

    thread_id: str
    state: SessionState


class ThreadOps(Protocol):
    async def interrupt_turn(self, thread_id: str, turn_id: str) -> None: ...

    async def archive_thread(self, thread_id: str) -> None: ...


class SessionRegistry:
    """Per-thread state machine driven by local calls and normalized events."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._events: Broadcast[SessionEvent] = Broadcast()
        # Threads whose `thread/started` arrived before they were registered.
        self._started_early: set[str] = set()

    def subscribe(self) -> Subscription[SessionEvent]:
        return self._events.subscribe()

    def register_session(self, thread_id: str, model: str, cwd: str) -> Session:
        session = Session(thread_id=thread_id, model=model, cwd=cwd)
        self._sessions[thread_id] = session
        logger.info("registered session %s (model: %s)", thread_id, model)
        self._events.publish(SessionEvent(thread_id, SessionState.CREATED))
        if thread_id in self._started_early:
            self._started_early.discard(thread_id)
            return self.handle_thread_started(thread_id) or session
        return session

    def handle_thread_started(self, thread_id: str) -> Session | None:
        """Move a new session to configured; remember the id if it is not registered yet."""
        if thread_id not in self._sessions:
            if thread_id:
                self._started_early.add(thread_id)
            return None
        return self._transition(
            thread_id,
            SessionState.CONFIGURED,
            allowed_from=(SessionState.CREATED, SessionState.ACTIVE),
        )

    def mark_turn_active(self, thread_id: str, turn_id: str) -> Session | None:
        current = self._sessions.get(thread_id)
        if current is not None and current.last_turn_id == turn_id:
            # The turn already finished; a late local call must not revive it.
            logger.debug("ignoring activation of finished turn %s in thread %s", turn_id, thread_id)
            return None
        return self._transition(thread_id, SessionState.ACTIVE, active_turn_id=turn_id)

    def complete_turn(self, thread_id: str) -> Session | None:
        return self._finish_turn(thread_id, SessionState.COMPLETED)

    def mark_turn_interrupted(self, thread_id: str) -> Session | None:
        return self._finish_turn(thread_id, SessionState.INTERRUPTED)

    def _finish_turn(self, thread_id: str, state: SessionState) -> Session | None:
        current = self._sessions.get(thread_id)
        last_turn_id = current.active_turn_id if current is not None else None
        return self._transition(
            thread_id,
            state,
            allowed_from=(SessionState.ACTIVE,),
            active_turn_id=None,
            last_turn_id=last_turn_id,
        )

    def archive(self, thread_id: str) -> Session | None:
        return self._transition(thread_id, SessionState.ARCHIVED)

    async def interrupt_active_turn(self, api: ThreadOps, thread_id: str) -> bool:
        """Interrupt the thread's active turn remotely, then mark it interrupted.

        Returns False when there is no session or no active turn. A remote
        failure propagates and leaves the local state unchanged.
        """
        session = self._sessions.get(thread_id)
        if session is None or session.active_turn_id is None:
            return False
        logger.info("interrupting turn %s in thread %s", session.active_turn_id, thread_id)
        await api.interrupt_turn(thread_id, session.active_turn_id)
        self.mark_turn_interrupted(thread_id)
        return True

    async def archive_session(self, api: ThreadOps, thread_id: str) -> bool:
        """Archive the thread remotely, then mark the session archived."""
        if thread_id not in self._sessions:
            return False
        logger.info("archiving session %s", thread_id)
        await api.archive_thread(thread_id)
        self.archive(thread_id)
        return True

    def apply_event(self, event: events.CodexEvent) -> Session | None:
        """Advance session state from a normalized event; unrelated events are ignored."""
        match event:
            case events.ThreadStarted(thread_id=thread_id):
                return self.handle_thread_started(thread_id)
            case events.TaskStarted(thread_id=thread_id, turn_id=str() as turn_id):
                return self.mark_turn_active(thread_id, turn_id)
            case events.TaskComplete(thread_id=thread_id, status="interrupted"):
                return self.mark_turn_interrupted(thread_id)
            case events.TaskComplete(thread_id=thread_id):
                return self.complete_turn(thread_id)
            case events.TurnAborted(thread_id=thread_id):
                return self.mark_turn_interrupted(thread_id)
            case _:
                return None

    def get_session(self, thread_id: str) -> Session | None:
        return self._sessions.get(thread_id)

    def list_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def list_active_sessions(self) -> list[Session]:
        return [session for session in self._sessions.values() if session.state not in _INACTIVE_STATES]

    def remove_session(self, thread_id: str) -> None:
        self._started_early.discard(thread_id)
        if self._sessions.pop(thread_id, None) is not None:
            logger.info("removed session %s", thread_id)

    async def shutdown(self) -> None:
        logger.info("shutting down all sessions")
        self._sessions.clear()
        self._started_early.clear()

    def _transition(
        self,
        thread_id: str,
        state: SessionState,
        *,
        allowed_from: tuple[SessionState, ...] | None = None,
        **updates: str | None,
    ) -> Session | None:
        current = self._sessions.get(thread_id)
        if current is None:
            logger.debug("ignoring %s for unknown thread %s", state.value, thread_id)
            return None
        if allowed_from is not None and current.state not in allowed_from:
            logger.debug(
                "ignoring %s for thread %s in state %s",
                state.value,
                thread_id,
                current.state.value,
            )
            return None
        updated = current.model_copy(update={"state": state, **updates})
        self._sessions[thread_id] = updated
        logger.info("session %s state: %s", thread_id, state.value)
        self._events.publish(SessionEvent(thread_id, state))
        return updated
