import pytest

from controllers.commands import CommandInterpreter


class RecordingSequencer:
    def __init__(self):
        self.calls = []

    def set_power(self, powered):
        self.calls.append(("power", powered))

    def set_orientation(self, orientation):
        self.calls.append(("orientation", orientation))

    def set_brightness(self, brightness):
        self.calls.append(("brightness", brightness))

    def skip(self, step):
        self.calls.append(("skip", step))

    def set_label(self, label):
        self.calls.append(("label", label))

    def pause_active(self):
        self.calls.append(("pause", None))


@pytest.fixture
def interpreter():
    return CommandInterpreter(RecordingSequencer())


def _apply(interpreter, action, value=None, ts=None):
    return interpreter.apply({"type": "command", "action": action, "value": value}, ts=ts)


@pytest.mark.parametrize(
    "value, expected",
    [(150, 150), (500, 200), (-5, 0), ("80", 80), (99.6, 100)],
)
def test_brightness_is_clamped(interpreter, value, expected):
    assert _apply(interpreter, "brightness", value)
    assert interpreter.sequencer.calls == [("brightness", expected)]


def test_non_numeric_brightness_is_ignored(interpreter):
    _apply(interpreter, "brightness", "bright")
    _apply(interpreter, "brightness", None)
    assert interpreter.sequencer.calls == []


def test_power_values(interpreter):
    _apply(interpreter, "power", "off")
    _apply(interpreter, "power", "on")
    _apply(interpreter, "power")
    assert interpreter.sequencer.calls == [("power", False), ("power", True), ("power", True)]


def test_skip_aliases(interpreter):
    for action in ("next", "skipNext", "prev", "skipPrev"):
        _apply(interpreter, action)
    assert interpreter.sequencer.calls == [("skip", 1), ("skip", 1), ("skip", -1), ("skip", -1)]


def test_orientation_defaults_to_landscape(interpreter):
    _apply(interpreter, "orientation", "portrait")
    _apply(interpreter, "orientation", "upside-down")
    assert interpreter.sequencer.calls == [("orientation", "portrait"), ("orientation", "landscape")]


def test_identify_truncates_label_and_notifies():
    announced = []
    interpreter = CommandInterpreter(RecordingSequencer(), on_identify=announced.append)
    _apply(interpreter, "set_label", "x" * 80)
    _apply(interpreter, "identify", "   ")
    assert interpreter.sequencer.calls == [("label", "x" * 64)]
    assert announced == ["x" * 64]


def test_stop_pauses(interpreter):
    _apply(interpreter, "stop")
    assert interpreter.sequencer.calls == [("pause", None)]


def test_unknown_and_malformed_messages_are_ignored(interpreter):
    assert _apply(interpreter, "reboot") is False
    assert interpreter.apply("power") is False
    assert interpreter.apply({"type": "refresh"}) is False
    assert interpreter.apply({"type": "command"}) is False
    assert interpreter.sequencer.calls == []


def test_last_command_ts_only_moves_forward(interpreter):
    _apply(interpreter, "next", ts=10)
    _apply(interpreter, "next", ts=5)
    assert interpreter.last_command_ts == 10
    interpreter.apply({"type": "command", "action": "next", "ts": 12})
    assert interpreter.last_command_ts == 12
    _apply(interpreter, "reboot", ts=50)
    assert interpreter.last_command_ts == 12
