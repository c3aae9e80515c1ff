import asyncio
import json

from starlette.websockets import WebSocketState

from app.rooms import Participant, RoomHub


class FakeSocket:
    def __init__(self, *, fail_sends: bool = False) -> None:
        self.sent = []
        self.closed_with = None
        self.fail_sends = fail_sends
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def types(self):
        return [message["type"] for message in self.sent]


def _join(hub: RoomHub, room_id: str, **kwargs):
    socket = FakeSocket(**kwargs)
    participant = Participant(socket)
    asyncio.run(hub.join(room_id, participant))
    return socket, participant


def test_join_sends_hello():
    hub = RoomHub()
    socket, participant = _join(hub, "alpha")
    assert socket.sent[0]["type"] == "hello"
    assert socket.sent[0]["streamId"] == "alpha"
    assert participant.room_id == "alpha"
    assert "alpha" in hub


def test_broadcast_is_annotated_and_room_scoped():
    hub = RoomHub()
    first, sender = _join(hub, "alpha")
    second, _ = _join(hub, "alpha")
    outsider, _ = _join(hub, "beta")

    asyncio.run(hub.handle_message(sender, json.dumps({"type": "chat", "text": "hi"})))

    for socket in (first, second):
        message = socket.sent[-1]
        assert message["type"] == "chat"
        assert message["text"] == "hi"
        assert message["streamId"] == "alpha"
        assert isinstance(message["serverTs"], int)
    assert outsider.types() == ["hello"]


def test_ping_is_answered_privately():
    hub = RoomHub()
    sender_socket, sender = _join(hub, "alpha")
    peer_socket, _ = _join(hub, "alpha")

    asyncio.run(hub.handle_message(sender, json.dumps({"type": "ping"})))

    assert sender_socket.types() == ["hello", "pong"]
    assert peer_socket.types() == ["hello"]


def test_pong_and_malformed_messages_are_not_broadcast():
    hub = RoomHub()
    sender_socket, sender = _join(hub, "alpha")
    peer_socket, _ = _join(hub, "alpha")

    async def scenario():
        for raw in (json.dumps({"type": "pong"}), "not json", "[1, 2]", "", None):
            await hub.handle_message(sender, raw)

    asyncio.run(scenario())
    assert sender_socket.types() == ["hello"]
    assert peer_socket.types() == ["hello"]


def test_publish_skips_closed_and_failing_participants():
    hub = RoomHub()
    healthy, _ = _join(hub, "alpha")
    closed, _ = _join(hub, "alpha")
    broken, _ = _join(hub, "alpha")
    closed.client_state = WebSocketState.DISCONNECTED
    broken.fail_sends = True

    delivered = asyncio.run(hub.publish("alpha", {"type": "note"}))
    assert delivered == 1
    assert healthy.types() == ["hello", "note"]
    assert closed.types() == ["hello"]


def test_publish_to_unknown_room_delivers_nothing():
    hub = RoomHub()
    assert asyncio.run(hub.publish("nobody", {"type": "note"})) == 0


def test_room_disappears_when_last_participant_leaves():
    hub = RoomHub()
    _, first = _join(hub, "alpha")
    _, second = _join(hub, "alpha")
    hub.leave(first)
    assert "alpha" in hub
    hub.leave(second)
    assert "alpha" not in hub
    # Leaving twice is harmless
    hub.leave(second)
    assert hub.snapshot() == {"rooms": 0, "participants": 0}


def test_sweep_keeps_listen_only_participants():
    hub = RoomHub()
    viewer_socket, viewer = _join(hub, "alpha")
    _, sender = _join(hub, "alpha")

    async def scenario():
        dropped = [await hub.sweep() for _ in range(5)]
        await hub.handle_message(sender, json.dumps({"type": "chat", "text": "still here?"}))
        return dropped

    assert asyncio.run(scenario()) == [0, 0, 0, 0, 0]
    # The viewer never sent anything and only sees room traffic
    assert viewer_socket.types() == ["hello", "chat"]
    assert viewer_socket.closed_with is None
    assert viewer in hub.members("alpha")


def test_sweep_removes_closed_participants():
    hub = RoomHub()
    gone_socket, gone = _join(hub, "alpha")
    live_socket, live = _join(hub, "alpha")
    _, lonely = _join(hub, "beta")
    lonely.websocket.client_state = WebSocketState.DISCONNECTED
    gone_socket.client_state = WebSocketState.DISCONNECTED

    assert asyncio.run(hub.sweep()) == 2
    assert gone.room_id is None
    assert gone_socket.closed_with == 1001
    assert live_socket.closed_with is None
    assert hub.members("alpha") == {live}
    assert "beta" not in hub
