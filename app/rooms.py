"""Room-based broadcast over WebSockets.

Each ``streamId`` is a room.  Rooms appear on first join and disappear when
their last participant leaves.  Delivery is best-effort: a participant whose
socket is not open (or fails mid-send) is skipped, never retried.
"""

import json
import time
from typing import Any, Dict, Optional, Set

from starlette.websockets import WebSocket, WebSocketState

from .log import logger, struct_logger


def now_ms() -> int:
    return int(time.time() * 1000)


class Participant:
    __slots__ = ("websocket", "room_id")

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.room_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: str) -> bool:
        if not self.is_open:
            return False
        try:
            await self.websocket.send_text(payload)
        except Exception as exc:
            logger.debug("Dropping message for participant in %s: %s", self.room_id, exc)
            return False
        return True

    async def send_json(self, message: Dict[str, Any]) -> bool:
        return await self.send(json.dumps(message))

    async def close(self, code: int = 1001) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close(code=code)
        except Exception as exc:
            logger.debug("Close failed for participant in %s: %s", self.room_id, exc)


class RoomHub:
    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Participant]] = {}

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def members(self, room_id: str) -> Set[Participant]:
        return set(self._rooms.get(room_id, ()))

    async def join(self, room_id: str, participant: Participant) -> None:
        if participant.room_id is not None and participant.room_id != room_id:
            self.leave(participant)
        self._rooms.setdefault(room_id, set()).add(participant)
        participant.room_id = room_id
        struct_logger.info("room_joined", stream_id=room_id, size=len(self._rooms[room_id]))
        await participant.send_json({"type": "hello", "streamId": room_id, "serverTs": now_ms()})

    def leave(self, participant: Participant) -> None:
        room_id = participant.room_id
        if room_id is None:
            return
        members = self._rooms.get(room_id)
        if members is not None:
            members.discard(participant)
            if not members:
                del self._rooms[room_id]
        participant.room_id = None
        struct_logger.info("room_left", stream_id=room_id, size=len(members or ()))

    async def publish(self, room_id: str, message: Dict[str, Any]) -> int:
        members = self._rooms.get(room_id)
        if not members:
            return 0
        payload = json.dumps(message)
        delivered = 0
        # Snapshot: a send can yield and let another participant leave
        for participant in list(members):
            if await participant.send(payload):
                delivered += 1
        return delivered

    async def handle_message(self, participant: Participant, raw: Any) -> None:
        if not raw:
            return
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return
        if not isinstance(message, dict):
            return
        kind = message.get("type")
        if kind == "ping":
            await participant.send_json({"type": "pong", "t": now_ms()})
            return
        if kind == "pong":
            return
        room_id = participant.room_id
        if room_id is None:
            return
        await self.publish(room_id, {**message, "streamId": room_id, "serverTs": now_ms()})

    async def sweep(self) -> int:
        """Remove participants whose socket is no longer open.

        Nothing is sent to live participants; dead peers are detected by the
        server's protocol-level pings (``ws_ping_interval``).
        """
        dropped = 0
        for participant in [p for members in self._rooms.values() for p in members]:
            if participant.is_open:
                continue
            logger.info("Removing closed participant from %s", participant.room_id)
            self.leave(participant)
            await participant.close(code=1001)
            dropped += 1
        return dropped

    def snapshot(self) -> Dict[str, int]:
        return {
            "rooms": len(self._rooms),
            "participants": sum(len(members) for members in self._rooms.values()),
        }
