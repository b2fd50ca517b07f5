import asyncio
import contextlib
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from models.catalog import now_ms

PLACEHOLDER_PLAYER_NAME = "player"
MAX_NAME_LENGTH = 64
MAX_UA_LENGTH = 256

Subscriber = Callable[[Dict[str, object]], None]


@dataclass
class PlayerPresence:
    name: str
    ua: str
    connected_at: int
    last_seen: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name.strip(),
            "ua": self.ua,
            "connectedAt": self.connected_at,
            "lastSeen": self.last_seen,
        }


class TransportHub:
    """Fans messages out to WebSocket clients and in-process subscribers.

    Also tracks player presence (from ``identify`` messages and HTTP heartbeats)
    and keeps a bounded log of commands for players that poll over HTTP.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        heartbeat_interval: float = 25.0,
        presence_window: float = 40.0,
        command_log_size: int = 200,
        recent_commands: int = 20,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.logger = logger or logging.getLogger("marquee.hub")
        self.heartbeat_interval = heartbeat_interval
        self.presence_window_ms = int(presence_window * 1000)
        self.recent_commands = recent_commands
        self.clock = clock

        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._ws_players: Dict[WebSocket, PlayerPresence] = {}
        self._http_players: Dict[str, PlayerPresence] = {}
        self._commands: Deque[Dict[str, object]] = deque(maxlen=command_log_size)
        self._last_command_ts = 0
        self._subscribers: List[Subscriber] = []
        self.last_player_state: Optional[Dict[str, object]] = None

    # Fan-out --------------------------------------------------------------
    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(callback)

    async def broadcast(self, payload: Dict[str, object]) -> None:
        if isinstance(payload, dict) and payload.get("type") == "player_state":
            self.last_player_state = payload

        async with self._lock:
            targets = list(self._clients)

        dead: List[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception:
                dead.append(ws)

        if dead:
            async with self._lock:
                for ws in dead:
                    self._drop(ws)

        for callback in list(self._subscribers):
            try:
                callback(payload)
            except Exception:
                self.logger.exception("Local subscriber failed for %r", payload.get("type"))

    async def publish_refresh(self) -> None:
        await self.broadcast({"type": "refresh"})

    # WebSocket sessions ----------------------------------------------------
    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        now = self.clock()
        async with self._lock:
            self._clients.add(websocket)
            self._ws_players[websocket] = PlayerPresence(name="", ua="", connected_at=now, last_seen=now)
        heartbeat = asyncio.create_task(self._heartbeat(websocket))
        try:
            while True:
                text = await websocket.receive_text()
                await self.handle_message(websocket, text)
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected.")
        except Exception:
            self.logger.exception("WebSocket error.")
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            async with self._lock:
                self._drop(websocket)

    async def handle_message(self, websocket: WebSocket, text: str) -> None:
        try:
            payload = json.loads(text)
        except (TypeError, ValueError):
            payload = {"type": "message", "data": text}
        if not isinstance(payload, dict):
            payload = {"type": "message", "data": payload}

        presence = self._ws_players.get(websocket)
        if presence:
            presence.last_seen = self.clock()

        kind = payload.get("type")
        if kind == "broadcast":
            await self.broadcast(payload.get("data") or {"type": "refresh"})
        elif kind == "ping":
            await websocket.send_json({"type": "pong", "t": self.clock()})
        elif kind == "identify":
            name = str(payload.get("name") or "")[:MAX_NAME_LENGTH]
            ua = str(payload.get("ua") or "")[:MAX_UA_LENGTH]
            now = self.clock()
            self._ws_players[websocket] = PlayerPresence(
                name=name or (presence.name if presence else "") or "Player",
                ua=ua,
                connected_at=presence.connected_at if presence else now,
                last_seen=now,
            )
            self.logger.info("Player identified as %s", name or "Player")

    async def _heartbeat(self, websocket: WebSocket) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                await websocket.send_json({"type": "heartbeat", "t": self.clock()})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.debug("Heartbeat stopped: %s", exc)

    def _drop(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        self._ws_players.pop(websocket, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # Presence --------------------------------------------------------------
    def touch_http_player(self, name: object, ua: object) -> None:
        clean = str(name)[:MAX_NAME_LENGTH].strip() if isinstance(name, str) else ""
        if not clean or clean.lower() == PLACEHOLDER_PLAYER_NAME:
            return
        agent = str(ua or "")[:MAX_UA_LENGTH]
        key = f"{clean}|{agent}"
        now = self.clock()
        existing = self._http_players.get(key)
        if existing:
            existing.last_seen = now
        else:
            self._http_players[key] = PlayerPresence(name=clean, ua=agent, connected_at=now, last_seen=now)

    def list_players(self) -> List[Dict[str, object]]:
        now = self.clock()
        candidates = list(self._ws_players.values()) + list(self._http_players.values())
        active = [
            presence
            for presence in candidates
            if now - presence.last_seen <= self.presence_window_ms
            and presence.name.strip()
            and presence.name.strip().lower() != PLACEHOLDER_PLAYER_NAME
        ]
        active.sort(key=lambda presence: presence.last_seen, reverse=True)
        return [presence.to_dict() for presence in active]

    # Command log -------------------------------------------------------------
    def record_command(self, payload: Dict[str, object]) -> int:
        """Appends ``payload`` to the command log and returns its timestamp.

        Timestamps are strictly increasing so ``since`` cursors never skip a
        command recorded within the same millisecond.
        """
        ts = max(self.clock(), self._last_command_ts + 1)
        self._last_command_ts = ts
        self._commands.append({"ts": ts, "payload": payload})
        return ts

    def commands_since(self, since: Optional[int] = None) -> List[Dict[str, object]]:
        entries = list(self._commands)
        if since and since > 0:
            return [entry for entry in entries if entry["ts"] > since]
        return entries[-self.recent_commands:]
