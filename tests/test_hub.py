import asyncio

from controllers.hub import TransportHub


class ManualClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(payload)


def test_command_timestamps_strictly_increase():
    clock = ManualClock()
    hub = TransportHub(clock=clock)
    stamps = [hub.record_command({"type": "command", "action": "next"}) for _ in range(3)]
    assert stamps == [1_000_000, 1_000_001, 1_000_002]

    clock.now = 2_000_000
    assert hub.record_command({"type": "command", "action": "prev"}) == 2_000_000


def test_commands_since_filters_and_limits():
    hub = TransportHub(clock=ManualClock(), command_log_size=200, recent_commands=20)
    stamps = [hub.record_command({"type": "command", "action": "next", "n": i}) for i in range(250)]

    recent = hub.commands_since()
    assert len(recent) == 20
    assert recent[-1]["ts"] == stamps[-1]

    later = hub.commands_since(stamps[247])
    assert [entry["payload"]["n"] for entry in later] == [248, 249]

    # The oldest 50 entries fell out of the bounded log.
    everything = hub.commands_since(1)
    assert len(everything) == 200
    assert everything[0]["payload"]["n"] == 50


def test_http_presence_window_and_filtering():
    clock = ManualClock()
    hub = TransportHub(clock=clock, presence_window=40)
    hub.touch_http_player("Lobby", "kiosk/1.0")
    hub.touch_http_player("player", "kiosk/1.0")
    hub.touch_http_player("   ", "kiosk/1.0")
    hub.touch_http_player(None, "kiosk/1.0")

    assert [entry["name"] for entry in hub.list_players()] == ["Lobby"]

    clock.now += 20_000
    hub.touch_http_player("Cafe", "kiosk/1.0")
    assert [entry["name"] for entry in hub.list_players()] == ["Cafe", "Lobby"]

    clock.now += 21_000
    assert [entry["name"] for entry in hub.list_players()] == ["Cafe"]


def test_websocket_ping_and_identify():
    clock = ManualClock()
    hub = TransportHub(clock=clock)
    websocket = FakeWebSocket()

    async def scenario():
        await hub.handle_message(websocket, '{"type": "ping"}')
        await hub.handle_message(websocket, '{"type": "identify", "name": "Reception", "ua": "mpv"}')

    asyncio.run(scenario())

    assert websocket.sent == [{"type": "pong", "t": clock.now}]
    players = hub.list_players()
    assert players[0]["name"] == "Reception"
    assert players[0]["ua"] == "mpv"


def test_broadcast_reaches_local_subscribers_and_remembers_state():
    hub = TransportHub(clock=ManualClock())
    received = []
    hub.subscribe(received.append)
    state = {"type": "player_state", "powered": True}

    async def scenario():
        await hub.broadcast({"type": "refresh"})
        await hub.handle_message(FakeWebSocket(), '{"type": "broadcast", "data": {"type": "player_state", "powered": true}}')

    asyncio.run(scenario())

    assert received == [{"type": "refresh"}, state]
    assert hub.last_player_state == state

    hub.unsubscribe(received.append)
    asyncio.run(hub.broadcast({"type": "refresh"}))
    assert len(received) == 2


def test_broadcast_drops_dead_clients():
    hub = TransportHub(clock=ManualClock())
    alive, dead = FakeWebSocket(), FakeWebSocket(fail=True)
    hub._clients.update({alive, dead})

    asyncio.run(hub.broadcast({"type": "refresh"}))

    assert alive.sent == [{"type": "refresh"}]
    assert hub.client_count == 1
