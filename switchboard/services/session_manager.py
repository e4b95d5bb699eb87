"""Lifecycle of live per-tenant channel sessions.

Each session is owned by one actor task draining its own queue; only that task
changes the session's state. Start, restart and logout on one session are
serialized by that session's own lock, so concurrent callers never open two
underlying connections for the same id. The registry lock only guards creation
and is never held across bridge I/O.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services.clock import utcnow
from switchboard.services.session_bridge import BRIDGE_EVENT_TYPES, ChannelBridge, ChannelConnection
from switchboard.services.session_state import (
    InvalidTransitionError,
    SessionState,
    disconnect,
    is_live,
    reinitialize,
    transition,
)

logger = get_logger("session_manager")

BROADCAST_ADDRESS = "status@broadcast"
SUBSCRIBER_QUEUE_SIZE = 100

MessageHandler = Callable[[UUID, dict[str, Any]], Awaitable[Any]]


class SessionNotFound(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotReady(Exception):
    def __init__(self, session_id: str, state: SessionState):
        self.session_id = session_id
        self.state = state
        super().__init__(f"Session not ready: {session_id} is {state.value}")


@dataclass
class ChannelSession:
    id: str
    tenant_id: UUID
    state: SessionState
    created_at: datetime
    updated_at: datetime
    auth_payload: Optional[str] = None
    connected_identifier: Optional[str] = None
    disconnect_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": str(self.tenant_id),
            "state": self.state.value,
            "auth_payload": self.auth_payload,
            "connected_identifier": self.connected_identifier,
            "disconnect_reason": self.disconnect_reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionEvent:
    type: str
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Subscription:
    session_id: str
    queue: asyncio.Queue


@dataclass
class _Envelope:
    type: str
    data: dict[str, Any]
    generation: int
    ack: Optional[asyncio.Future] = None


@dataclass
class _SessionActor:
    session: ChannelSession
    queue: asyncio.Queue
    generation: int = 0
    task: Optional[asyncio.Task] = None
    open_task: Optional[asyncio.Task] = None
    timer_task: Optional[asyncio.Task] = None
    connection: Optional[ChannelConnection] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def default_session_id(tenant_id: UUID) -> str:
    return f"session_{tenant_id}"


def format_chat_id(address: str) -> str:
    """Chat id for live sessions: ``<digits>@c.us`` unless already a full id."""
    address = (address or "").strip()
    if "@" in address:
        return address
    return f"{re.sub(r'[^0-9]', '', address)}@c.us"


class SessionManager:
    def __init__(
        self,
        bridge: ChannelBridge,
        *,
        message_handler: Optional[MessageHandler] = None,
        handshake_timeout_seconds: Optional[float] = None,
    ):
        self._bridge = bridge
        self._message_handler = message_handler
        self._handshake_timeout = (
            handshake_timeout_seconds
            if handshake_timeout_seconds is not None
            else settings.session_handshake_timeout_seconds
        )
        self._actors: dict[str, _SessionActor] = {}
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    # -- registry -----------------------------------------------------------------

    def get(self, tenant_id: UUID, session_id: str) -> ChannelSession:
        return self._lookup(tenant_id, session_id).session

    def list_sessions(self, tenant_id: UUID) -> list[ChannelSession]:
        sessions = [a.session for a in self._actors.values() if a.session.tenant_id == tenant_id]
        return sorted(sessions, key=lambda s: s.created_at)

    def preferred(self, tenant_id: UUID) -> Optional[ChannelSession]:
        """Most recently active live session, else the most recent one overall."""
        sessions = sorted(self.list_sessions(tenant_id), key=lambda s: s.updated_at, reverse=True)
        for session in sessions:
            if is_live(session.state):
                return session
        return sessions[0] if sessions else None

    def ready_session(self, tenant_id: UUID) -> Optional[ChannelSession]:
        sessions = sorted(self.list_sessions(tenant_id), key=lambda s: s.updated_at, reverse=True)
        for session in sessions:
            if session.state == SessionState.READY:
                return session
        return None

    # -- control ------------------------------------------------------------------

    async def start(self, tenant_id: UUID, session_id: Optional[str] = None) -> ChannelSession:
        """Idempotent: a live session with this id is returned unchanged."""
        session_id = session_id or default_session_id(tenant_id)
        while True:
            async with self._lock:
                actor = self._actors.get(session_id)
                created = actor is None
                if created:
                    actor = self._create_actor(tenant_id, session_id)
                elif actor.session.tenant_id != tenant_id:
                    raise SessionNotFound(session_id)

            async with actor.lock:
                if self._actors.get(session_id) is not actor:
                    # Evicted while we waited; register a fresh one.
                    continue
                if not created and is_live(actor.session.state):
                    return actor.session
                await self._submit(actor, "_initialize", {})
                return actor.session

    async def restart(self, tenant_id: UUID, session_id: str) -> ChannelSession:
        actor = self._lookup(tenant_id, session_id)
        async with actor.lock:
            self._ensure_registered(actor)
            await self._submit(actor, "_close", {"reason": "restart"})
            await self._submit(actor, "_initialize", {})
            return actor.session

    async def logout(self, tenant_id: UUID, session_id: str) -> None:
        """Tear down the connection and evict the session record."""
        actor = self._lookup(tenant_id, session_id)
        async with actor.lock:
            self._ensure_registered(actor)
            await self._submit(actor, "_close", {"reason": "logout"})
            await self._evict(actor)
        logger.info("Session logged out", extra={"context": {"tenant_id": str(tenant_id), "session_id": session_id}})

    async def send(self, tenant_id: UUID, session_id: str, address: str, content: str) -> Optional[str]:
        actor = self._ready_actor(tenant_id, session_id)
        return await actor.connection.send_text(format_chat_id(address), content)

    async def send_media(
        self,
        tenant_id: UUID,
        session_id: str,
        address: str,
        media_ref: str,
        *,
        media_type: str = "image",
        caption: Optional[str] = None,
    ) -> Optional[str]:
        actor = self._ready_actor(tenant_id, session_id)
        return await actor.connection.send_media(
            format_chat_id(address), media_ref, media_type=media_type, caption=caption
        )

    async def deliver(self, session_id: str, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Entry point for bridges that report events out of band (HTTP callbacks)."""
        actor = self._actors.get(session_id)
        if actor is None:
            raise SessionNotFound(session_id)
        if event_type not in BRIDGE_EVENT_TYPES:
            raise ValueError(f"Unknown session event type: {event_type}")
        await actor.queue.put(_Envelope(event_type, data or {}, actor.generation))

    async def collect_garbage(self, max_age_seconds: Optional[int] = None, *, now: Optional[datetime] = None) -> int:
        """Evict sessions that have been disconnected longer than ``max_age_seconds``."""
        max_age = max_age_seconds if max_age_seconds is not None else settings.session_gc_seconds
        cutoff = (now or utcnow()) - timedelta(seconds=max_age)
        evicted = 0
        for actor in list(self._actors.values()):
            async with actor.lock:
                if self._actors.get(actor.session.id) is not actor:
                    continue
                if actor.session.state == SessionState.DISCONNECTED and actor.session.updated_at < cutoff:
                    await self._evict(actor)
                    evicted += 1
        if evicted:
            logger.info(f"Collected {evicted} disconnected sessions")
        return evicted

    async def shutdown(self) -> None:
        for actor in list(self._actors.values()):
            async with actor.lock:
                if self._actors.get(actor.session.id) is not actor:
                    continue
                await self._submit(actor, "_close", {"reason": "shutdown"})
                await self._evict(actor)

    async def wait_idle(self) -> None:
        """Block until every session actor has drained its queue."""
        for actor in list(self._actors.values()):
            await actor.queue.join()

    def _create_actor(self, tenant_id: UUID, session_id: str) -> _SessionActor:
        now = utcnow()
        session = ChannelSession(
            id=session_id,
            tenant_id=tenant_id,
            state=SessionState.INITIALIZING,
            created_at=now,
            updated_at=now,
        )
        actor = _SessionActor(session=session, queue=asyncio.Queue())
        actor.task = asyncio.create_task(self._run_actor(actor), name=f"session-actor-{session_id}")
        self._actors[session_id] = actor
        logger.info(
            "Session created",
            extra={"context": {"tenant_id": str(tenant_id), "session_id": session_id}},
        )
        return actor

    def _lookup(self, tenant_id: UUID, session_id: str) -> _SessionActor:
        actor = self._actors.get(session_id)
        # Another tenant's session is reported exactly like a missing one.
        if actor is None or actor.session.tenant_id != tenant_id:
            raise SessionNotFound(session_id)
        return actor

    def _ensure_registered(self, actor: _SessionActor) -> None:
        if self._actors.get(actor.session.id) is not actor:
            raise SessionNotFound(actor.session.id)

    def _ready_actor(self, tenant_id: UUID, session_id: str) -> _SessionActor:
        actor = self._lookup(tenant_id, session_id)
        if actor.session.state != SessionState.READY or actor.connection is None:
            raise SessionNotReady(session_id, actor.session.state)
        return actor

    # -- subscriptions ------------------------------------------------------------

    def subscribe(self, session_id: str) -> Subscription:
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.setdefault(session_id, set()).add(queue)
        return Subscription(session_id=session_id, queue=queue)

    def unsubscribe(self, subscription: Subscription) -> None:
        queues = self._subscribers.get(subscription.session_id)
        if not queues:
            return
        queues.discard(subscription.queue)
        if not queues:
            self._subscribers.pop(subscription.session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def _publish(self, event: SessionEvent) -> None:
        for queue in list(self._subscribers.get(event.session_id, ())):
            if queue.full():
                # Slow consumer: drop its oldest event.
                queue.get_nowait()
            queue.put_nowait(event)

    # -- actor --------------------------------------------------------------------

    async def _submit(self, actor: _SessionActor, event_type: str, data: dict[str, Any]) -> None:
        ack = asyncio.get_running_loop().create_future()
        await actor.queue.put(_Envelope(event_type, data, actor.generation, ack))
        await ack

    async def _evict(self, actor: _SessionActor) -> None:
        session_id = actor.session.id
        self._actors.pop(session_id, None)
        for queue in list(self._subscribers.pop(session_id, ())):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        if actor.task is not None:
            actor.task.cancel()
            try:
                await actor.task
            except asyncio.CancelledError:
                pass

    async def _run_actor(self, actor: _SessionActor) -> None:
        while True:
            envelope = await actor.queue.get()
            try:
                await self._apply(actor, envelope)
                if envelope.ack is not None and not envelope.ack.done():
                    envelope.ack.set_result(None)
            except InvalidTransitionError as e:
                logger.warning(
                    f"Dropped session event: {e}",
                    extra={"context": {"session_id": actor.session.id, "event": envelope.type}},
                )
                if envelope.ack is not None and not envelope.ack.done():
                    envelope.ack.set_exception(e)
            except asyncio.CancelledError:
                if envelope.ack is not None and not envelope.ack.done():
                    envelope.ack.cancel()
                raise
            except Exception as e:
                logger.exception(
                    "Session event handling failed",
                    extra={"context": {"session_id": actor.session.id, "event": envelope.type}},
                )
                if envelope.ack is not None and not envelope.ack.done():
                    envelope.ack.set_exception(e)
            finally:
                actor.queue.task_done()

    async def _apply(self, actor: _SessionActor, envelope: _Envelope) -> None:
        session = actor.session
        if envelope.generation != actor.generation and not envelope.type.startswith("_"):
            logger.debug(f"Ignoring stale {envelope.type} event for {session.id}")
            return

        handler = {
            "_initialize": self._on_initialize,
            "_close": self._on_close,
            "qr": self._on_qr,
            "authenticated": self._on_authenticated,
            "ready": self._on_ready,
            "disconnected": self._on_disconnected,
            "message": self._on_message,
        }.get(envelope.type)
        if handler is None:
            logger.warning(f"Unknown session event type: {envelope.type}")
            return
        await handler(actor, envelope.data)

    def _touch(self, session: ChannelSession, state: SessionState, data: Optional[dict[str, Any]] = None) -> None:
        session.state = state
        session.updated_at = utcnow()
        self._publish(SessionEvent(type="status", session_id=session.id, data={"state": state.value, **(data or {})}))

    async def _on_initialize(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        session = actor.session
        if session.state == SessionState.DISCONNECTED:
            session.state = reinitialize(session.state)
        elif actor.open_task is not None:
            # Already initialized by a previous start.
            return

        actor.generation += 1
        session.auth_payload = None
        session.connected_identifier = None
        session.disconnect_reason = None
        self._touch(session, session.state)

        generation = actor.generation
        actor.open_task = asyncio.create_task(self._open_connection(actor, generation))
        if self._handshake_timeout and self._handshake_timeout > 0:
            actor.timer_task = asyncio.create_task(self._handshake_timer(actor, generation))

    async def _on_close(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        await self._teardown(actor)
        session = actor.session
        if is_live(session.state):
            self._mark_disconnected(actor, data.get("reason") or "closed")

    async def _on_qr(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        session = actor.session
        if session.state != SessionState.QR_READY:
            session.state = transition(session.state, SessionState.QR_READY)
        session.auth_payload = data.get("qr")
        self._touch(session, session.state)
        self._publish(SessionEvent(type="qr", session_id=session.id, data={"qr": session.auth_payload}))

    async def _on_authenticated(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        session = actor.session
        session.state = transition(session.state, SessionState.AUTHENTICATED)
        session.auth_payload = None
        self._touch(session, session.state)
        self._publish(SessionEvent(type="authenticated", session_id=session.id))

    async def _on_ready(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        session = actor.session
        if session.state == SessionState.QR_READY:
            await self._on_authenticated(actor, {})
        session.state = transition(session.state, SessionState.READY)
        session.connected_identifier = data.get("identifier") or data.get("wid")
        session.auth_payload = None
        self._cancel_timer(actor)
        self._touch(session, session.state)
        self._publish(
            SessionEvent(
                type="ready", session_id=session.id, data={"connected_identifier": session.connected_identifier}
            )
        )
        logger.info(
            "Session ready",
            extra={"context": {"tenant_id": str(session.tenant_id), "session_id": session.id}},
        )

    async def _on_disconnected(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        if not is_live(actor.session.state):
            return
        await self._teardown(actor)
        self._mark_disconnected(actor, data.get("reason") or "disconnected")

    async def _on_message(self, actor: _SessionActor, data: dict[str, Any]) -> None:
        session = actor.session
        if data.get("from") == BROADCAST_ADDRESS or data.get("isStatus"):
            return
        if self._message_handler is None:
            logger.warning(f"No message handler, dropping live message on {session.id}")
            return
        session.updated_at = utcnow()
        try:
            await self._message_handler(session.tenant_id, data)
        except Exception:
            logger.exception(
                "Live message handling failed",
                extra={"context": {"tenant_id": str(session.tenant_id), "session_id": session.id}},
            )

    def _mark_disconnected(self, actor: _SessionActor, reason: str) -> None:
        session = actor.session
        session.state = disconnect(session.state)
        session.disconnect_reason = reason
        self._touch(session, session.state, {"reason": reason})
        self._publish(SessionEvent(type="disconnected", session_id=session.id, data={"reason": reason}))
        logger.warning(
            f"Session disconnected: {reason}",
            extra={"context": {"tenant_id": str(session.tenant_id), "session_id": session.id}},
        )

    def _cancel_timer(self, actor: _SessionActor) -> None:
        if actor.timer_task is not None and actor.timer_task is not asyncio.current_task():
            actor.timer_task.cancel()
        actor.timer_task = None

    async def _teardown(self, actor: _SessionActor) -> None:
        self._cancel_timer(actor)
        if actor.open_task is not None:
            if not actor.open_task.done():
                actor.open_task.cancel()
            try:
                await actor.open_task
            except asyncio.CancelledError:
                pass
            actor.open_task = None
        connection, actor.connection = actor.connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Closing connection for {actor.session.id} failed: {e}")
        # Anything the old connection still reports is stale from here on.
        actor.generation += 1

    async def _open_connection(self, actor: _SessionActor, generation: int) -> None:
        session = actor.session

        async def emit(event_type: str, data: dict[str, Any]) -> None:
            await actor.queue.put(_Envelope(event_type, data or {}, generation))

        try:
            connection = await self._bridge.open(session.id, session.tenant_id, emit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Session handshake failed: {e}",
                extra={"context": {"tenant_id": str(session.tenant_id), "session_id": session.id}},
            )
            await actor.queue.put(_Envelope("disconnected", {"reason": f"handshake_error: {e}"}, generation))
            return

        if generation != actor.generation:
            await connection.close()
            return
        actor.connection = connection

    async def _handshake_timer(self, actor: _SessionActor, generation: int) -> None:
        await asyncio.sleep(self._handshake_timeout)
        await actor.queue.put(_Envelope("disconnected", {"reason": "handshake_timeout"}, generation))
