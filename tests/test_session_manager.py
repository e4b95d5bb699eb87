import asyncio
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from switchboard.services.clock import utcnow
from switchboard.services.session_manager import (
    SessionManager,
    SessionNotFound,
    SessionNotReady,
    default_session_id,
    format_chat_id,
)
from switchboard.services.session_state import SessionState


class FakeConnection:
    def __init__(self):
        self.sent = []
        self.media = []
        self.closed = False

    async def send_text(self, address, content):
        self.sent.append((address, content))
        return f"wamid.out.{len(self.sent)}"

    async def send_media(self, address, media_ref, *, media_type="image", caption=None):
        self.media.append((address, media_ref, media_type, caption))
        return f"wamid.media.{len(self.media)}"

    async def close(self):
        self.closed = True


class FakeBridge:
    def __init__(self, fail=False):
        self.fail = fail
        self.opened = []
        self.emitters = {}
        self.connections = []

    async def open(self, session_id, tenant_id, emit):
        self.opened.append(session_id)
        if self.fail:
            raise RuntimeError("browser crashed")
        self.emitters[session_id] = emit
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


async def settle(manager):
    for _ in range(5):
        await asyncio.sleep(0)
    await manager.wait_idle()


async def make_ready(manager, bridge, tenant_id, session_id=None):
    session = await manager.start(tenant_id, session_id)
    await settle(manager)
    emit = bridge.emitters[session.id]
    await emit("qr", {"qr": "qr-code-1"})
    await emit("ready", {"identifier": "77001112233@c.us"})
    await settle(manager)
    return session


def collect(subscription):
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


class TestStart:
    def test_start_creates_initializing_session(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            session = await manager.start(tenant_id)
            await settle(manager)
            await manager.shutdown()
            return tenant_id, session, bridge

        tenant_id, session, bridge = asyncio.run(scenario())
        assert session.id == default_session_id(tenant_id)
        assert session.state == SessionState.INITIALIZING
        assert bridge.opened == [session.id]

    def test_concurrent_starts_open_one_connection(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            sessions = await asyncio.gather(*(manager.start(tenant_id, "s1") for _ in range(5)))
            await settle(manager)
            await manager.shutdown()
            return sessions, bridge

        sessions, bridge = asyncio.run(scenario())
        assert len({id(s) for s in sessions}) == 1
        assert bridge.opened == ["s1"]

    def test_start_of_live_session_is_unchanged(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            session = await make_ready(manager, bridge, tenant_id, "s1")
            again = await manager.start(tenant_id, "s1")
            await manager.shutdown()
            return session, again, bridge

        session, again, bridge = asyncio.run(scenario())
        assert again is session
        assert again.state == SessionState.READY
        assert bridge.opened == ["s1"]

    def test_session_id_owned_by_other_tenant(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            await manager.start(uuid.uuid4(), "shared")
            try:
                with pytest.raises(SessionNotFound):
                    await manager.start(uuid.uuid4(), "shared")
            finally:
                await manager.shutdown()

        asyncio.run(scenario())


class TestHandshake:
    def test_qr_then_ready(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            session = await manager.start(tenant_id, "s1")
            subscription = manager.subscribe("s1")
            await settle(manager)

            await bridge.emitters["s1"]("qr", {"qr": "qr-code-1"})
            await settle(manager)
            qr_state, qr_payload = session.state, session.auth_payload

            await bridge.emitters["s1"]("ready", {"identifier": "77001112233@c.us"})
            await settle(manager)
            events = collect(subscription)
            await manager.shutdown()
            return session, qr_state, qr_payload, events

        session, qr_state, qr_payload, events = asyncio.run(scenario())
        assert qr_state == SessionState.QR_READY
        assert qr_payload == "qr-code-1"
        assert session.state == SessionState.READY
        assert session.connected_identifier == "77001112233@c.us"
        assert session.auth_payload is None
        states = [e.data["state"] for e in events if e.type == "status"]
        assert states == ["QR_READY", "AUTHENTICATED", "READY"]
        assert [e.type for e in events if e.type != "status"] == ["qr", "authenticated", "ready"]

    def test_qr_refresh_keeps_state(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            session = await manager.start(uuid.uuid4(), "s1")
            await settle(manager)
            await bridge.emitters["s1"]("qr", {"qr": "first"})
            await bridge.emitters["s1"]("qr", {"qr": "second"})
            await settle(manager)
            await manager.shutdown()
            return session

        session = asyncio.run(scenario())
        assert session.auth_payload == "second"

    def test_ready_without_qr_is_rejected(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            session = await manager.start(uuid.uuid4(), "s1")
            await settle(manager)
            await bridge.emitters["s1"]("ready", {})
            await settle(manager)
            state = session.state
            await manager.shutdown()
            return state

        assert asyncio.run(scenario()) == SessionState.INITIALIZING

    def test_handshake_timeout_disconnects(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge, handshake_timeout_seconds=0.05)
            session = await manager.start(uuid.uuid4(), "s1")
            await asyncio.sleep(0.1)
            await settle(manager)
            await manager.shutdown()
            return session, bridge

        session, bridge = asyncio.run(scenario())
        assert session.state == SessionState.DISCONNECTED
        assert session.disconnect_reason == "handshake_timeout"
        assert bridge.connections[0].closed is True

    def test_ready_cancels_handshake_timer(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge, handshake_timeout_seconds=0.05)
            session = await make_ready(manager, bridge, uuid.uuid4(), "s1")
            await asyncio.sleep(0.1)
            await settle(manager)
            state = session.state
            await manager.shutdown()
            return state

        assert asyncio.run(scenario()) == SessionState.READY

    def test_handshake_error_is_not_retried(self):
        async def scenario():
            bridge = FakeBridge(fail=True)
            manager = SessionManager(bridge)
            session = await manager.start(uuid.uuid4(), "s1")
            await settle(manager)
            await asyncio.sleep(0.01)
            await settle(manager)
            await manager.shutdown()
            return session, bridge

        session, bridge = asyncio.run(scenario())
        assert session.state == SessionState.DISCONNECTED
        assert session.disconnect_reason.startswith("handshake_error")
        assert bridge.opened == ["s1"]


class TestDisconnectAndRestart:
    def test_disconnect_requires_explicit_restart(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            session = await make_ready(manager, bridge, tenant_id, "s1")
            await manager.deliver("s1", "disconnected", {"reason": "phone offline"})
            await settle(manager)
            after_disconnect = (session.state, session.disconnect_reason)

            # A late ready from the dead connection must not revive it.
            await bridge.emitters["s1"]("ready", {})
            await settle(manager)
            after_late_ready = session.state

            await manager.start(tenant_id, "s1")
            await settle(manager)
            after_start = session.state
            await manager.shutdown()
            return after_disconnect, after_late_ready, after_start, bridge

        after_disconnect, after_late_ready, after_start, bridge = asyncio.run(scenario())
        assert after_disconnect == (SessionState.DISCONNECTED, "phone offline")
        assert after_late_ready == SessionState.DISCONNECTED
        assert after_start == SessionState.INITIALIZING
        assert bridge.opened == ["s1", "s1"]
        assert bridge.connections[0].closed is True

    def test_restart_tears_down_and_reinitializes(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            old_emit = bridge.emitters["s1"]
            session = await manager.restart(tenant_id, "s1")
            await settle(manager)
            await old_emit("qr", {"qr": "stale"})
            await settle(manager)
            await manager.shutdown()
            return session, bridge

        session, bridge = asyncio.run(scenario())
        assert session.state == SessionState.INITIALIZING
        assert session.auth_payload is None
        assert bridge.connections[0].closed is True
        assert len(bridge.opened) == 2

    def test_restart_interrupts_pending_handshake(self):
        class SlowBridge(FakeBridge):
            async def open(self, session_id, tenant_id, emit):
                self.opened.append(session_id)
                await asyncio.sleep(10)

        async def scenario():
            bridge = SlowBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await manager.start(tenant_id, "s1")
            await settle(manager)
            session = await asyncio.wait_for(manager.restart(tenant_id, "s1"), timeout=1)
            await manager.shutdown()
            return session, bridge

        session, bridge = asyncio.run(scenario())
        assert session.state == SessionState.INITIALIZING
        assert bridge.opened == ["s1", "s1"]

    def test_restart_unknown_session(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            with pytest.raises(SessionNotFound):
                await manager.restart(uuid.uuid4(), "missing")

        asyncio.run(scenario())

    def test_slow_teardown_does_not_block_other_tenants(self):
        class SlowCloseConnection(FakeConnection):
            async def close(self):
                await asyncio.sleep(0.5)
                self.closed = True

        class SlowCloseBridge(FakeBridge):
            async def open(self, session_id, tenant_id, emit):
                self.opened.append(session_id)
                self.emitters[session_id] = emit
                connection = SlowCloseConnection()
                self.connections.append(connection)
                return connection

        async def scenario():
            bridge = SlowCloseBridge()
            manager = SessionManager(bridge)
            tenant_a, tenant_b = uuid.uuid4(), uuid.uuid4()
            await make_ready(manager, bridge, tenant_a, "a1")

            restarting = asyncio.create_task(manager.restart(tenant_a, "a1"))
            await asyncio.sleep(0.05)
            started = await asyncio.wait_for(manager.start(tenant_b, "b1"), timeout=0.2)
            restart_pending = not restarting.done()
            await restarting
            await manager.shutdown()
            return started, restart_pending

        started, restart_pending = asyncio.run(scenario())
        assert started.id == "b1"
        assert started.state == SessionState.INITIALIZING
        assert restart_pending is True

    def test_restart_racing_logout(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            results = await asyncio.gather(
                manager.logout(tenant_id, "s1"),
                manager.restart(tenant_id, "s1"),
                return_exceptions=True,
            )
            sessions = manager.list_sessions(tenant_id)
            await manager.shutdown()
            return results, sessions, bridge

        results, sessions, bridge = asyncio.run(scenario())
        assert results[0] is None
        assert isinstance(results[1], SessionNotFound)
        assert sessions == []
        assert bridge.opened == ["s1"]


class TestSend:
    def test_send_requires_ready(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await manager.start(tenant_id, "s1")
            await settle(manager)
            try:
                with pytest.raises(SessionNotReady):
                    await manager.send(tenant_id, "s1", "77001112233", "hi")
            finally:
                await manager.shutdown()

        asyncio.run(scenario())

    def test_send_formats_chat_id(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            message_id = await manager.send(tenant_id, "s1", "+7 700 111 22 33", "hi")
            await manager.shutdown()
            return message_id, bridge

        message_id, bridge = asyncio.run(scenario())
        assert message_id == "wamid.out.1"
        assert bridge.connections[0].sent == [("77001112233@c.us", "hi")]

    def test_send_media_formats_chat_id(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            message_id = await manager.send_media(
                tenant_id, "s1", "+7 700 111 22 33", "https://cdn.example.com/a.jpg", caption="Look"
            )
            await manager.shutdown()
            return message_id, bridge

        message_id, bridge = asyncio.run(scenario())
        assert message_id == "wamid.media.1"
        assert bridge.connections[0].media == [("77001112233@c.us", "https://cdn.example.com/a.jpg", "image", "Look")]

    def test_send_to_other_tenants_session(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            await make_ready(manager, bridge, uuid.uuid4(), "s1")
            try:
                with pytest.raises(SessionNotFound):
                    await manager.send(uuid.uuid4(), "s1", "77001112233", "hi")
            finally:
                await manager.shutdown()

        asyncio.run(scenario())


class TestMessages:
    def test_messages_are_forwarded_with_tenant(self):
        async def scenario():
            bridge = FakeBridge()
            handler = AsyncMock()
            manager = SessionManager(bridge, message_handler=handler)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            data = {"from": "77001112233@c.us", "body": "hello", "waMessageId": "wamid.1"}
            await bridge.emitters["s1"]("message", data)
            await bridge.emitters["s1"]("message", {"from": "status@broadcast", "body": "story"})
            await settle(manager)
            await manager.shutdown()
            return tenant_id, data, handler

        tenant_id, data, handler = asyncio.run(scenario())
        handler.assert_awaited_once_with(tenant_id, data)

    def test_handler_failure_keeps_actor_alive(self):
        async def scenario():
            bridge = FakeBridge()
            handler = AsyncMock(side_effect=[RuntimeError("db down"), None])
            manager = SessionManager(bridge, message_handler=handler)
            tenant_id = uuid.uuid4()
            session = await make_ready(manager, bridge, tenant_id, "s1")
            await bridge.emitters["s1"]("message", {"from": "1", "body": "a"})
            await bridge.emitters["s1"]("message", {"from": "1", "body": "b"})
            await settle(manager)
            await manager.shutdown()
            return session, handler

        session, handler = asyncio.run(scenario())
        assert handler.await_count == 2
        assert session.state == SessionState.READY


class TestRegistry:
    def test_preferred_picks_live_session(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "a")
            await manager.start(tenant_id, "b")
            await settle(manager)
            await manager.deliver("b", "disconnected", {"reason": "closed"})
            await settle(manager)
            preferred = manager.preferred(tenant_id)
            ready = manager.ready_session(tenant_id)
            await manager.shutdown()
            return preferred, ready

        preferred, ready = asyncio.run(scenario())
        assert preferred.id == "a"
        assert ready.id == "a"

    def test_preferred_falls_back_to_most_recent(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            tenant_id = uuid.uuid4()
            await manager.start(tenant_id, "a")
            await manager.start(tenant_id, "b")
            await settle(manager)
            await manager.deliver("a", "disconnected", {})
            await settle(manager)
            await manager.deliver("b", "disconnected", {})
            await settle(manager)
            preferred = manager.preferred(tenant_id)
            ready = manager.ready_session(tenant_id)
            await manager.shutdown()
            return preferred, ready

        preferred, ready = asyncio.run(scenario())
        assert preferred.id == "b"
        assert ready is None

    def test_list_is_tenant_scoped(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            acme, globex = uuid.uuid4(), uuid.uuid4()
            await manager.start(acme, "a1")
            await manager.start(acme, "a2")
            await manager.start(globex, "g1")
            result = ([s.id for s in manager.list_sessions(acme)], [s.id for s in manager.list_sessions(globex)])
            await manager.shutdown()
            return result

        assert asyncio.run(scenario()) == (["a1", "a2"], ["g1"])

    def test_logout_evicts_and_ends_subscriptions(self):
        async def scenario():
            bridge = FakeBridge()
            manager = SessionManager(bridge)
            tenant_id = uuid.uuid4()
            await make_ready(manager, bridge, tenant_id, "s1")
            subscription = manager.subscribe("s1")
            await manager.logout(tenant_id, "s1")
            events = collect(subscription)
            with pytest.raises(SessionNotFound):
                manager.get(tenant_id, "s1")
            return events, bridge, manager.subscriber_count("s1")

        events, bridge, subscribers = asyncio.run(scenario())
        assert events[-1] is None
        assert any(e is not None and e.type == "disconnected" and e.data["reason"] == "logout" for e in events)
        assert bridge.connections[0].closed is True
        assert subscribers == 0

    def test_collect_garbage_evicts_old_disconnected(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            tenant_id = uuid.uuid4()
            await manager.start(tenant_id, "old")
            await manager.start(tenant_id, "live")
            await settle(manager)
            await manager.deliver("old", "disconnected", {})
            await settle(manager)
            evicted = await manager.collect_garbage(3600, now=utcnow() + timedelta(hours=2))
            remaining = [s.id for s in manager.list_sessions(tenant_id)]
            await manager.shutdown()
            return evicted, remaining

        assert asyncio.run(scenario()) == (1, ["live"])

    def test_unsubscribe(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            subscription = manager.subscribe("s1")
            count = manager.subscriber_count("s1")
            manager.unsubscribe(subscription)
            return count, manager.subscriber_count("s1")

        assert asyncio.run(scenario()) == (1, 0)

    def test_deliver_validation(self):
        async def scenario():
            manager = SessionManager(FakeBridge())
            with pytest.raises(SessionNotFound):
                await manager.deliver("missing", "ready", {})
            await manager.start(uuid.uuid4(), "s1")
            try:
                with pytest.raises(ValueError):
                    await manager.deliver("s1", "exploded", {})
            finally:
                await manager.shutdown()

        asyncio.run(scenario())


class TestFormatChatId:
    def test_digits_get_suffix(self):
        assert format_chat_id("+7 (700) 111-22-33") == "77001112233@c.us"

    def test_full_ids_are_kept(self):
        assert format_chat_id("12345-678@g.us") == "12345-678@g.us"
