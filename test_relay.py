"""
Tests for the connection registry and WebSocket relay.

Tests cover:
- register / sendMessage over a real WebSocket
- Auto-creation of unknown recipients
- Ack-before-push ordering with identical payloads
- Orphaned connections, stale handles and close semantics
- Bounded pushes and storage failures
- Malformed frames
"""

import asyncio
import time

import pytest
from starlette.websockets import WebSocketState

from messenger.directory import Directory
from messenger.errors import StorageError
from messenger.message_log import MessageLog
from messenger.relay import Connection, ConnectionRegistry, ConnectionState, Relay
from messenger.sessions import SessionManager
from messenger.storage import MessageRepository, UserRepository


# =============================================================================
# Over a real WebSocket
# =============================================================================

def register(ws, token):
    ws.send_json({"type": "register", "sessionId": token})
    return ws.receive_json()


class TestWebSocketRelay:
    def test_send_to_never_seen_number(self, client, login):
        token = login("+375000")

        with client.websocket_connect("/ws") as ws:
            assert register(ws, token) == {"type": "registered", "phoneNumber": "+375000"}
            ws.send_json({"type": "sendMessage", "sessionId": token, "to": "+375999", "text": "hi"})
            frame = ws.receive_json()

        assert frame["type"] == "messageSent"
        assert frame["message"]["from"] == "+375000"
        assert frame["message"]["to"] == "+375999"
        assert frame["message"]["text"] == "hi"

        recipient = client.app.state.directory.find("+375999")
        assert recipient is not None
        assert recipient.username is None
        log = client.app.state.messages.conversation("+375000", "+375999")
        assert [(m.sender, m.recipient, m.text) for m in log] == [("+375000", "+375999", "hi")]

    def test_both_online(self, client, login):
        alice = login("+375000")
        bob = login("+375001")

        with client.websocket_connect("/ws") as alice_ws, client.websocket_connect("/") as bob_ws:
            register(alice_ws, alice)
            register(bob_ws, bob)

            alice_ws.send_json({"type": "sendMessage", "sessionId": alice, "to": "+375001", "text": "hey"})
            sent = alice_ws.receive_json()
            pushed = bob_ws.receive_json()

        assert sent["type"] == "messageSent"
        assert pushed["type"] == "newMessage"
        assert pushed["message"] == sent["message"]

    def test_send_without_session_id_uses_bound_identity(self, client, login):
        token = login("+375000")

        with client.websocket_connect("/ws") as ws:
            register(ws, token)
            ws.send_json({"type": "sendMessage", "to": "+375001", "text": "x"})
            frame = ws.receive_json()

        assert frame["type"] == "messageSent"
        assert frame["message"]["from"] == "+375000"

    def test_unbound_send_rejected_connection_stays_open(self, client, login):
        token = login("+375000")

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "sendMessage", "sessionId": token, "to": "+375001", "text": "x"})
            assert ws.receive_json() == {"type": "error", "message": "not authorized"}

            register(ws, token)
            ws.send_json({"type": "sendMessage", "sessionId": token, "to": "+375001", "text": "y"})
            assert ws.receive_json()["type"] == "messageSent"

        assert len(client.app.state.messages) == 1

    def test_register_with_invalid_token(self, client):
        with client.websocket_connect("/ws") as ws:
            assert register(ws, "bogus") == {"type": "error", "message": "invalid session"}
            ws.send_json({"type": "sendMessage", "sessionId": "bogus", "to": "+375001", "text": "x"})
            assert ws.receive_json() == {"type": "error", "message": "not authorized"}

    def test_superseded_token_cannot_register(self, client, login):
        old = login("+375000")
        login("+375000")

        with client.websocket_connect("/ws") as ws:
            assert register(ws, old)["type"] == "error"

    def test_close_unbinds(self, client, login):
        token = login("+375000")

        with client.websocket_connect("/ws") as ws:
            register(ws, token)
            assert client.app.state.registry.get(token) is not None

        # the server loop observes the disconnect asynchronously
        registry = client.app.state.registry
        for _ in range(100):
            if registry.get(token) is None:
                break
            time.sleep(0.01)
        assert registry.get(token) is None

    def test_malformed_frames(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "message": "invalid JSON"}

            ws.send_json(["register"])
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": ["register"], "sessionId": "x"})
            assert ws.receive_json() == {"type": "error", "message": "frame type must be a string"}

            ws.send_json({"type": {"name": "register"}})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "launch"})
            assert ws.receive_json() == {"type": "error", "message": "unknown frame type: launch"}

            ws.send_json({"type": "sendMessage", "text": "x"})
            frame = ws.receive_json()
            assert frame["type"] == "error"
            assert "to" in frame["message"]


# =============================================================================
# Relay internals with fake sockets
# =============================================================================

class FakeWebSocket:
    """Records sent frames into a journal shared between sockets."""

    def __init__(self, name, journal, delay=0.0):
        self.name = name
        self.journal = journal
        self.delay = delay
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.journal.append((self.name, payload))


class FailingMessageRepository:
    def load_all(self):
        return []

    def insert(self, message):
        raise StorageError("failed to persist message")


@pytest.fixture
def stores(session_factory, clock):
    directory = Directory(UserRepository(session_factory), clock=clock)
    sessions = SessionManager()
    messages = MessageLog(MessageRepository(session_factory), clock=clock)
    registry = ConnectionRegistry()
    for phone_number in ("+375000", "+375001"):
        directory.get_or_create(phone_number)
    return directory, sessions, messages, registry


@pytest.fixture
def relay(stores):
    directory, sessions, messages, registry = stores
    return Relay(directory, sessions, messages, registry, push_timeout=0.2)


@pytest.fixture
def journal():
    return []


def open_bound(relay, sessions, journal, name, phone_number, token=None, **kwargs):
    token = token or sessions.create_session(phone_number)
    connection = relay.connect(FakeWebSocket(name, journal, **kwargs))
    asyncio.run(relay.handle_frame(connection, {"type": "register", "sessionId": token}))
    return connection, token


def frames_for(journal, name):
    return [payload for who, payload in journal if who == name]


class TestRelayOrdering:
    def test_ack_precedes_push_with_identical_payload(self, relay, stores, journal):
        _, sessions, _, _ = stores
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        open_bound(relay, sessions, journal, "bob", "+375001")
        journal.clear()

        asyncio.run(relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "hey"}))

        assert [(who, payload["type"]) for who, payload in journal] == [
            ("alice", "messageSent"),
            ("bob", "newMessage"),
        ]
        assert journal[0][1]["message"] == journal[1][1]["message"]

    def test_offline_recipient_is_not_an_error(self, relay, stores, journal):
        _, sessions, messages, _ = stores
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        journal.clear()

        asyncio.run(relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "hey"}))

        assert [p["type"] for p in frames_for(journal, "alice")] == ["messageSent"]
        assert len(messages) == 1

    def test_recipient_with_session_but_no_connection(self, relay, stores, journal):
        _, sessions, _, _ = stores
        sessions.create_session("+375001")
        open_bound(relay, sessions, journal, "alice", "+375000")

        assert asyncio.run(relay.deliver("+375001", {"type": "newMessage"})) is False


class TestRegistryBinding:
    def test_second_registration_orphans_first(self, relay, stores, journal):
        _, sessions, _, registry = stores
        first, token = open_bound(relay, sessions, journal, "first", "+375001")
        second, _ = open_bound(relay, sessions, journal, "second", "+375001", token=token)
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        journal.clear()

        asyncio.run(relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "hey"}))

        assert registry.get(token) is second
        assert frames_for(journal, "first") == []
        assert [p["type"] for p in frames_for(journal, "second")] == ["newMessage"]
        assert first.state is ConnectionState.BOUND

    def test_orphan_closing_keeps_replacement_bound(self, relay, stores, journal):
        _, sessions, _, registry = stores
        first, token = open_bound(relay, sessions, journal, "first", "+375001")
        second, _ = open_bound(relay, sessions, journal, "second", "+375001", token=token)

        relay.close(first)

        assert first.state is ConnectionState.CLOSED
        assert registry.get(token) is second

    def test_close_unbinds_synchronously(self, relay, stores, journal):
        _, sessions, _, registry = stores
        bob, token = open_bound(relay, sessions, journal, "bob", "+375001")

        relay.close(bob)

        assert registry.get(token) is None
        assert len(registry) == 0
        assert asyncio.run(relay.deliver("+375001", {"type": "newMessage"})) is False

    def test_close_is_idempotent_and_unbound_close_is_noop(self, relay, journal):
        connection = relay.connect(FakeWebSocket("x", journal))
        relay.close(connection)
        relay.close(connection)
        assert connection.state is ConnectionState.CLOSED

    def test_stale_handle_is_skipped(self, relay, stores, journal):
        _, sessions, _, _ = stores
        bob, _ = open_bound(relay, sessions, journal, "bob", "+375001")
        bob.websocket.client_state = WebSocketState.DISCONNECTED
        journal.clear()

        assert asyncio.run(relay.deliver("+375001", {"type": "newMessage"})) is False
        assert journal == []

    def test_registry_unbind_requires_same_connection(self, journal):
        registry = ConnectionRegistry()
        a = Connection(FakeWebSocket("a", journal))
        b = Connection(FakeWebSocket("b", journal))

        assert registry.bind("t", a) is None
        assert registry.bind("t", b) is a
        assert registry.unbind("t", a) is False
        assert registry.unbind("t", b) is True
        assert registry.get("t") is None

    def test_rebinding_same_connection_returns_none(self, journal):
        registry = ConnectionRegistry()
        a = Connection(FakeWebSocket("a", journal))
        registry.bind("t", a)
        assert registry.bind("t", a) is None


class TestRelayFailures:
    def test_slow_recipient_push_is_bounded(self, relay, stores, journal):
        _, sessions, messages, _ = stores
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        bob, _ = open_bound(relay, sessions, journal, "bob", "+375001")
        bob.websocket.delay = 5.0
        journal.clear()

        async def send():
            return await asyncio.wait_for(
                relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "hey"}),
                timeout=2.0,
            )

        asyncio.run(send())

        assert [p["type"] for p in frames_for(journal, "alice")] == ["messageSent"]
        assert frames_for(journal, "bob") == []
        assert len(messages) == 1

    def test_timed_out_recipient_is_dropped(self, relay, stores, journal):
        _, sessions, messages, registry = stores
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        bob, bob_token = open_bound(relay, sessions, journal, "bob", "+375001")
        bob.websocket.delay = 5.0
        journal.clear()

        asyncio.run(relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "one"}))

        assert bob.state is ConnectionState.CLOSED
        assert registry.get(bob_token) is None

        bob.websocket.delay = 0.0
        asyncio.run(relay.handle_frame(alice, {"type": "sendMessage", "to": "+375001", "text": "two"}))
        asyncio.run(relay.handle_text(bob, '{"type": "register", "sessionId": "' + bob_token + '"}'))

        assert frames_for(journal, "bob") == []
        assert [p["type"] for p in frames_for(journal, "alice")] == ["messageSent", "messageSent"]
        assert bob.state is ConnectionState.CLOSED
        assert len(messages) == 2

    def test_storage_failure_reported_to_sender(self, stores, journal):
        directory, sessions, _, registry = stores
        relay = Relay(directory, sessions, MessageLog(FailingMessageRepository()), registry)
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        open_bound(relay, sessions, journal, "bob", "+375001")
        journal.clear()

        asyncio.run(relay.handle_text(alice, '{"type": "sendMessage", "to": "+375001", "text": "hey"}'))

        assert journal == [("alice", {"type": "error", "message": "failed to persist message"})]

    def test_superseded_session_id_in_frame_rejected(self, relay, stores, journal):
        _, sessions, messages, _ = stores
        alice, token = open_bound(relay, sessions, journal, "alice", "+375000")
        sessions.create_session("+375000")
        journal.clear()

        frame = '{"type": "sendMessage", "sessionId": "%s", "to": "+375001", "text": "x"}' % token
        asyncio.run(relay.handle_text(alice, frame))

        assert journal == [("alice", {"type": "error", "message": "not authorized"})]
        assert len(messages) == 0

    def test_session_id_of_other_identity_rejected(self, relay, stores, journal):
        _, sessions, messages, _ = stores
        alice, _ = open_bound(relay, sessions, journal, "alice", "+375000")
        other = sessions.create_session("+375001")
        journal.clear()

        frame = '{"type": "sendMessage", "sessionId": "%s", "to": "+375001", "text": "x"}' % other
        asyncio.run(relay.handle_text(alice, frame))

        assert journal[0][1]["type"] == "error"
        assert len(messages) == 0

    def test_failed_register_keeps_previous_binding(self, relay, stores, journal):
        _, sessions, _, registry = stores
        alice, token = open_bound(relay, sessions, journal, "alice", "+375000")

        asyncio.run(relay.handle_text(alice, '{"type": "register", "sessionId": "bogus"}'))

        assert alice.state is ConnectionState.BOUND
        assert registry.get(token) is alice
