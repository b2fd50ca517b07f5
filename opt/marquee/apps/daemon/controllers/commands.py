import logging
from typing import Callable, Dict, Optional

from models.catalog import BRIGHTNESS_MAX, BRIGHTNESS_MIN


class CommandInterpreter:
    """Routes ``{type: "command", action, value}`` messages onto a playback sequencer.

    Every action is idempotent in effect, so a command delivered twice (once over
    the WebSocket and again by HTTP polling) leaves the player in the same state.
    Duplicates are tolerated rather than detected; ``last_command_ts`` only
    serves as the polling cursor.
    """

    def __init__(
        self,
        sequencer,
        logger: Optional[logging.Logger] = None,
        on_identify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.sequencer = sequencer
        self.logger = logger or logging.getLogger("marquee.commands")
        self.on_identify = on_identify
        self.last_command_ts = 0

        self._handlers: Dict[str, Callable[[object], None]] = {
            "power": self._power,
            "orientation": self._orientation,
            "brightness": self._brightness,
            "next": self._skip_next,
            "skipNext": self._skip_next,
            "prev": self._skip_prev,
            "skipPrev": self._skip_prev,
            "identify": self._identify,
            "set_label": self._identify,
            "stop": self._stop,
        }

    def apply(self, message: object, ts: Optional[int] = None) -> bool:
        """Applies one command message; returns False when it was ignored."""
        if not isinstance(message, dict):
            self.logger.debug("Ignoring malformed command %r", message)
            return False
        if message.get("type", "command") != "command":
            self.logger.debug("Ignoring non-command message %r", message.get("type"))
            return False

        action = message.get("action")
        handler = self._handlers.get(action) if isinstance(action, str) else None
        if handler is None:
            self.logger.debug("Ignoring unknown command action %r", action)
            return False

        handler(message.get("value"))
        self._advance_cursor(ts if ts is not None else message.get("ts"))
        return True

    def _advance_cursor(self, ts: object) -> None:
        if isinstance(ts, (int, float)) and not isinstance(ts, bool) and ts > self.last_command_ts:
            self.last_command_ts = int(ts)

    # Actions ------------------------------------------------------------
    def _power(self, value: object) -> None:
        self.sequencer.set_power(value != "off")

    def _orientation(self, value: object) -> None:
        self.sequencer.set_orientation("portrait" if value == "portrait" else "landscape")

    def _brightness(self, value: object) -> None:
        try:
            level = float(value)
        except (TypeError, ValueError):
            self.logger.debug("Ignoring non-numeric brightness %r", value)
            return
        if level != level:
            return
        self.sequencer.set_brightness(int(round(max(BRIGHTNESS_MIN, min(BRIGHTNESS_MAX, level)))))

    def _skip_next(self, value: object) -> None:
        self.sequencer.skip(1)

    def _skip_prev(self, value: object) -> None:
        self.sequencer.skip(-1)

    def _identify(self, value: object) -> None:
        label = str(value or "").strip()[:64]
        if not label:
            return
        self.sequencer.set_label(label)
        if self.on_identify:
            self.on_identify(label)

    def _stop(self, value: object) -> None:
        self.sequencer.pause_active()
