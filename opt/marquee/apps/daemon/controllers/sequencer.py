import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional

from adapters.media import RenderSlot
from adapters.surfaces import SurfaceWorker
from controllers.commands import CommandInterpreter
from controllers.resolver import natural_advance_seconds, resolve_display_list, resolve_duration
from models.catalog import CatalogRepository, ContentItem, DisplayListEntry, GlobalSettings

PHASE_IDLE = "idle"
PHASE_SHOWING = "showing"
PHASE_TRANSITIONING = "transitioning"

SLOT_NAMES = ("A", "B")
MAX_REFRESH_INTERVAL = 60.0


@dataclass
class PlayerRuntimeState:
    active_index: int = 0
    powered_on: bool = True
    orientation: str = "landscape"
    brightness: int = 100
    has_auto_started: bool = False
    active_slot: str = "A"
    label: str = ""


# Events ---------------------------------------------------------------
@dataclass(frozen=True)
class Refresh:
    pass


@dataclass(frozen=True)
class TimerFired:
    generation: int


@dataclass(frozen=True)
class MediaEnded:
    slot: str
    item_id: str


@dataclass(frozen=True)
class SlotReady:
    slot: str
    item_id: str


@dataclass(frozen=True)
class CommandReceived:
    message: Dict[str, object]
    ts: Optional[int] = None


@dataclass
class _PendingHandoff:
    index: int
    item: ContentItem


class PlaybackSequencer:
    """Event-driven playback state machine for one player.

    Events are queued by ``post`` and handled strictly one after another, so a
    timer, a slot callback and a command can never interleave. Exactly one timer
    is armed at a time: the advance timer while an item is showing, or the
    handoff grace timer while waiting for the next video to become renderable.
    Each arm bumps ``_generation`` and timer events from older generations are
    dropped.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        slots: Dict[str, RenderSlot],
        loop,
        link_surface=None,
        source_for: Optional[Callable[[ContentItem], str]] = None,
        logger: Optional[logging.Logger] = None,
        on_state_change: Optional[Callable[[Dict[str, object]], None]] = None,
        display_power: Optional[Callable[[bool], None]] = None,
        on_identify: Optional[Callable[[str], None]] = None,
        handoff_timeout: float = 1.5,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        missing = [name for name in SLOT_NAMES if name not in slots]
        if missing:
            raise ValueError(f"Render slots {missing} are required")

        self.repository = repository
        self.slots = slots
        self.loop = loop
        self.link_surface = link_surface
        self.source_for = source_for or (lambda item: item.source_ref)
        self.logger = logger or logging.getLogger("marquee.sequencer")
        self.on_state_change = on_state_change
        self.display_power = display_power
        self.handoff_timeout = handoff_timeout
        self.clock = clock or datetime.now
        self.commands = CommandInterpreter(self, on_identify=on_identify)

        self.state = PlayerRuntimeState()
        self.phase = PHASE_IDLE
        self.display_list: List[DisplayListEntry] = []
        self.settings = GlobalSettings()

        self.timers_armed = 0
        self.timers_cancelled = 0

        self._queue: Deque[object] = deque()
        self._draining = False
        self._started = False
        self._stopped = False
        self._timer = None
        self._generation = 0
        self._current: Optional[ContentItem] = None
        self._current_duration: Optional[float] = None
        self._learned_length: Optional[float] = None
        self._link_open = False
        self._pending: Optional[_PendingHandoff] = None
        self._last_snapshot: Optional[Dict[str, object]] = None

    # Lifecycle ----------------------------------------------------------
    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.settings = self.repository.get_global_settings()
        self.state.orientation = self.settings.orientation
        self.state.brightness = self.settings.brightness
        self._apply_display()
        self.post(Refresh())

    def stop(self) -> None:
        """Cancels the outstanding timer and tears every surface down."""
        self._stopped = True
        self._queue.clear()
        self._cancel_timer()
        self._pending = None
        self._current = None
        self.phase = PHASE_IDLE
        for slot in self.slots.values():
            self._surface_call(slot.close)
        self._close_link()

    @property
    def live_timers(self) -> int:
        return 1 if self._timer is not None else 0

    # Event queue --------------------------------------------------------
    def post(self, event: object) -> None:
        if self._stopped:
            return
        self._queue.append(event)
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current = self._queue.popleft()
                try:
                    self._dispatch(current)
                except Exception:
                    self.logger.exception("Failed handling %r", current)
        finally:
            self._draining = False
        self._publish_state()

    def _dispatch(self, event: object) -> None:
        if isinstance(event, Refresh):
            self._on_refresh()
        elif isinstance(event, TimerFired):
            self._on_timer(event.generation)
        elif isinstance(event, MediaEnded):
            self._on_media_ended(event.slot, event.item_id)
        elif isinstance(event, SlotReady):
            self._on_slot_ready(event.slot, event.item_id)
        elif isinstance(event, CommandReceived):
            self.commands.apply(event.message, ts=event.ts)
        else:
            self.logger.debug("Ignoring unknown event %r", event)

    # Event handlers -----------------------------------------------------
    def _on_refresh(self) -> None:
        previous = self.settings
        self.settings = self.repository.get_global_settings()
        # Saved display settings win only when they change; commands persist otherwise.
        if self.settings.brightness != previous.brightness:
            self.set_brightness(self.settings.brightness)
        if self.settings.orientation != previous.orientation:
            self.set_orientation(self.settings.orientation)

        entries = resolve_display_list(self.repository, self.clock())
        self.display_list = entries

        if not entries:
            self.state.has_auto_started = False
            if self.phase != PHASE_IDLE:
                self.logger.info("Display list is empty; waiting for content.")
            self._go_idle()
            return

        if self.phase == PHASE_IDLE:
            if self.state.powered_on and self.settings.auto_start:
                self._begin_playback()
            return

        if self._pending is not None:
            self._revalidate_handoff()
            return

        self._revalidate_current()

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            self.logger.debug("Dropping stale timer event (generation %s)", generation)
            return
        self._timer = None
        if self._pending is not None:
            self.logger.debug("Handoff grace elapsed; switching without a ready frame.")
            self._finish_handoff()
        elif self.phase == PHASE_SHOWING and self.state.powered_on:
            self._advance(1)

    def _on_media_ended(self, slot: str, item_id: str) -> None:
        if slot != self.state.active_slot or not self._current or self._current.id != item_id:
            return
        if self._current.media_class != "video" or not self.state.powered_on:
            return
        if self._pending is not None:
            self._finish_handoff()
        elif self.phase == PHASE_SHOWING:
            self._advance(1)

    def _on_slot_ready(self, slot: str, item_id: str) -> None:
        pending = self._pending
        if pending is None:
            self._learn_length(slot, item_id)
            return
        if slot != self._idle_slot_name() or pending.item.id != item_id:
            return
        self._finish_handoff()

    def _learn_length(self, slot: str, item_id: str) -> None:
        """Re-arms a video's timer once its slot reports the length ffprobe could not."""
        current = self._current
        if slot != self.state.active_slot or current is None or current.id != item_id:
            return
        if current.media_class != "video" or current.natural_duration or self._current_duration is not None:
            return
        if self._learned_length is not None:
            return
        length = self._surface_call(self._active_slot().natural_duration)
        if not length or length <= 0:
            return
        self._learned_length = length
        self.logger.debug("Slot %s reports %.1fs for %s", slot, length, current.name)
        if self.state.powered_on and self.phase == PHASE_SHOWING:
            self._arm_advance_timer()

    # Commands -----------------------------------------------------------
    def set_power(self, powered: bool) -> None:
        if powered == self.state.powered_on:
            if powered and self.phase == PHASE_IDLE and self.display_list and not self.state.has_auto_started:
                self._begin_playback()
            return

        self.state.powered_on = powered
        self.logger.info("Power %s", "on" if powered else "off")
        if self.display_power:
            self._surface_call(self.display_power, powered)

        if not powered:
            self._cancel_timer()
            if self._pending is not None:
                self._pending = None
                self.phase = PHASE_SHOWING
            if self._current is not None and self._current.media_class == "video":
                self._surface_call(self._active_slot().pause)
            return

        if self.phase == PHASE_IDLE:
            if self.display_list:
                self._begin_playback()
            return

        if self._current is not None and self._current.media_class == "video":
            self._surface_call(self._active_slot().play)
        self._arm_advance_timer()

    def skip(self, step: int) -> None:
        if not self.state.powered_on:
            self.logger.debug("Ignoring skip while powered off.")
            return
        if not self.display_list:
            return
        if self.phase == PHASE_IDLE:
            self._begin_playback()
            return

        base = self._pending.index if self._pending is not None else self.state.active_index
        self._pending = None
        self._transition_to((base + step) % len(self.display_list))

    def set_orientation(self, orientation: str) -> None:
        if orientation == self.state.orientation:
            return
        self.state.orientation = orientation
        self._apply_display()

    def set_brightness(self, brightness: int) -> None:
        if brightness == self.state.brightness:
            return
        self.state.brightness = brightness
        self._apply_display()

    def set_label(self, label: str) -> None:
        self.state.label = label

    def pause_active(self) -> None:
        """Pauses the visible video; the advance timer keeps running."""
        if self._current is not None and self._current.media_class == "video":
            self._surface_call(self._active_slot().pause)

    # Playback -----------------------------------------------------------
    def _begin_playback(self) -> None:
        self.state.has_auto_started = True
        index = self.state.active_index if self.state.active_index < len(self.display_list) else 0
        self._activate(index)

    def _advance(self, step: int) -> None:
        if not self.display_list:
            self._go_idle()
            return
        self._transition_to((self.state.active_index + step) % len(self.display_list))

    def _transition_to(self, index: int) -> None:
        entry = self.display_list[index]
        item = self.repository.get_content_item(entry.content_item_id)
        if item is None:
            self._reset_to_start()
            return

        if item.media_class != "video" or self._current is None:
            self._activate(index, item)
            return

        idle = self._idle_slot()
        if idle.loaded_item_id() != item.id:
            self._surface_call(idle.load, item, self.source_for(item), False)
        if self._slot_ready(idle):
            self._activate(index, item)
            return

        self.logger.debug("Waiting for slot %s to buffer %s", idle.name, item.name)
        self._pending = _PendingHandoff(index=index, item=item)
        self.phase = PHASE_TRANSITIONING
        self._arm_timer(self.handoff_timeout)

    def _finish_handoff(self) -> None:
        pending = self._pending
        self._pending = None
        if pending is None:
            return
        self._activate(pending.index, pending.item)

    def _activate(self, index: int, item: Optional[ContentItem] = None) -> None:
        """Makes ``display_list[index]`` the visible item and arms its advance timer."""
        self._cancel_timer()
        self._pending = None
        entry = self.display_list[index]
        item = item or self.repository.get_content_item(entry.content_item_id)
        if item is None:
            self._reset_to_start()
            return

        outgoing = self._active_slot()
        media_class = item.media_class
        if media_class == "link":
            for slot in self.slots.values():
                self._surface_call(slot.pause)
                self._surface_call(slot.hide)
                self._surface_call(slot.unload)
            self._open_link(item)
        else:
            incoming = self._idle_slot()
            if incoming.loaded_item_id() == item.id:
                self._surface_call(incoming.play)
            else:
                self._surface_call(incoming.load, item, self.source_for(item), True)
            self._surface_call(incoming.show)
            self._close_link()
            self._surface_call(outgoing.pause)
            self._surface_call(outgoing.hide)
            self._surface_call(outgoing.unload)
            self.state.active_slot = incoming.name

        self.state.active_index = index
        self._current = item
        self._learned_length = None
        self.phase = PHASE_SHOWING
        self.logger.info("Showing %s (%s) at index %s", item.name, media_class, index)

        self._current_duration = resolve_duration(entry, item, self.settings)
        if self.state.powered_on:
            self._arm_advance_timer()
        elif media_class == "video":
            self._surface_call(self._active_slot().pause)
        self._preload_next()

    def _arm_advance_timer(self) -> None:
        if self._current is None:
            return
        delay = self._current_duration
        if delay is None:
            natural = (
                self._current.natural_duration
                or self._learned_length
                or self._surface_call(self._active_slot().natural_duration)
            )
            delay = natural_advance_seconds(natural)
        self._arm_timer(delay)

    def _preload_next(self) -> None:
        if not self.display_list:
            return
        entry = self.display_list[(self.state.active_index + 1) % len(self.display_list)]
        item = self.repository.get_content_item(entry.content_item_id)
        if item is None or item.media_class != "video":
            return
        idle = self._idle_slot()
        if idle.loaded_item_id() != item.id:
            self._surface_call(idle.load, item, self.source_for(item), False)

    def _revalidate_current(self) -> None:
        current = self._current
        if current is None or self.repository.get_content_item(current.id) is None:
            self._reset_to_start()
            return

        index = self.state.active_index
        if index >= len(self.display_list) or self.display_list[index].content_item_id != current.id:
            matches = [i for i, entry in enumerate(self.display_list) if entry.content_item_id == current.id]
            if not matches:
                self._reset_to_start()
                return
            index = matches[0]
            self.state.active_index = index

        duration = resolve_duration(self.display_list[index], current, self.settings)
        if duration != self._current_duration:
            self._current_duration = duration
            if self.state.powered_on:
                self._arm_advance_timer()
        self._preload_next()

    def _revalidate_handoff(self) -> None:
        pending = self._pending
        matches = [i for i, entry in enumerate(self.display_list) if entry.content_item_id == pending.item.id]
        if matches and self.repository.get_content_item(pending.item.id) is not None:
            pending.index = matches[0]
            return
        self._pending = None
        self._reset_to_start()

    def _reset_to_start(self) -> None:
        """Recovers from a display list entry whose content item no longer exists."""
        self._cancel_timer()
        self._pending = None
        self.display_list = resolve_display_list(self.repository, self.clock())
        if not self.display_list:
            self._go_idle()
            return
        entry = self.display_list[0]
        if self.repository.get_content_item(entry.content_item_id) is None:
            self.logger.warning("Content %s is missing; waiting for a refresh.", entry.content_item_id)
            self._go_idle()
            return
        self.logger.info("Current item is gone; restarting from the first entry.")
        self.state.active_index = 0
        if not self.state.powered_on:
            self._teardown_surfaces()
            self._current = None
            self.phase = PHASE_IDLE
            return
        self._activate(0)

    def _go_idle(self) -> None:
        self._cancel_timer()
        self._pending = None
        self._teardown_surfaces()
        self._current = None
        self._current_duration = None
        self.state.active_index = 0
        self.phase = PHASE_IDLE

    # Timers -------------------------------------------------------------
    def _arm_timer(self, delay: float) -> None:
        self._cancel_timer()
        generation = self._generation
        self._timer = self.loop.call_later(delay, self.post, TimerFired(generation))
        self.timers_armed += 1
        self.logger.debug("Timer armed for %.2fs (generation %s)", delay, generation)

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        self.timers_cancelled += 1

    # Surfaces -----------------------------------------------------------
    def _active_slot(self) -> RenderSlot:
        return self.slots[self.state.active_slot]

    def _idle_slot_name(self) -> str:
        return "B" if self.state.active_slot == "A" else "A"

    def _idle_slot(self) -> RenderSlot:
        return self.slots[self._idle_slot_name()]

    def _slot_ready(self, slot: RenderSlot) -> bool:
        return bool(self._surface_call(slot.is_ready_to_render))

    def _open_link(self, item: ContentItem) -> None:
        if self.link_surface is None:
            self.logger.warning("No link surface configured; %s stays hidden.", item.url)
            return
        self._surface_call(self.link_surface.open, self.source_for(item))
        self._link_open = True

    def _close_link(self) -> None:
        if self.link_surface is not None and self._link_open:
            self._surface_call(self.link_surface.stop)
        self._link_open = False

    def _teardown_surfaces(self) -> None:
        for slot in self.slots.values():
            self._surface_call(slot.pause)
            self._surface_call(slot.hide)
            self._surface_call(slot.unload)
        self._close_link()

    def _apply_display(self) -> None:
        for slot in self.slots.values():
            self._surface_call(slot.apply_display, self.state.brightness, self.state.orientation)
        if self.link_surface is not None:
            self._surface_call(self.link_surface.apply_display, self.state.brightness, self.state.orientation)

    def _surface_call(self, func: Callable, *args):
        try:
            return func(*args)
        except Exception:
            self.logger.exception("Render surface call %s failed", getattr(func, "__name__", func))
            return None

    # State --------------------------------------------------------------
    def snapshot(self) -> Dict[str, object]:
        current = self._current
        now_playing = None
        if current is not None:
            now_playing = {"id": current.id, "name": current.name, "mime": current.mime, "url": current.url}
        return {
            "type": "player_state",
            "nowPlaying": now_playing,
            "powered": self.state.powered_on,
            "orientation": self.state.orientation,
            "brightness": self.state.brightness,
            "muted": True,
            "activeIndex": self.state.active_index,
            "displayListLength": len(self.display_list),
            "phase": self.phase,
            "activeSlot": self.state.active_slot,
            "autoStartEnabled": self.settings.auto_start,
            "hasAutoStarted": self.state.has_auto_started,
            "label": self.state.label,
        }

    def _publish_state(self) -> None:
        if not self.on_state_change:
            return
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        try:
            self.on_state_change(snapshot)
        except Exception:
            self.logger.exception("Player state listener failed")


class PlayerService:
    """Runs a :class:`PlaybackSequencer` on the asyncio loop.

    Owns the periodic re-resolution task that catches schedule boundaries while
    nothing else changes, and marshals render-slot callbacks (fired from mpv
    monitor threads) back onto the loop. When a ``worker`` is given it is
    started with the player and drained on stop, after the slots are closed.
    """

    def __init__(
        self,
        sequencer_factory: Callable[[asyncio.AbstractEventLoop], PlaybackSequencer],
        refresh_interval: float = 30.0,
        logger: Optional[logging.Logger] = None,
        worker: Optional[SurfaceWorker] = None,
    ) -> None:
        self.sequencer_factory = sequencer_factory
        self.refresh_interval = min(MAX_REFRESH_INTERVAL, max(1.0, float(refresh_interval)))
        self.logger = logger or logging.getLogger("marquee.player")
        self.worker = worker

        self.sequencer: Optional[PlaybackSequencer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task:
            return
        self._loop = asyncio.get_running_loop()
        if self.worker:
            self.worker.start()
        self.sequencer = self.sequencer_factory(self._loop)
        for slot in self.sequencer.slots.values():
            slot.set_listeners(self._slot_ended, self._slot_ready)
        self.sequencer.start()
        self._task = asyncio.create_task(self._run())
        self.logger.info("Player started (refresh every %ss)", self.refresh_interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self.sequencer:
            for slot in self.sequencer.slots.values():
                slot.set_listeners(None, None)
            self.sequencer.stop()
        if self.worker and self._loop:
            await self._loop.run_in_executor(None, self.worker.stop)

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.refresh_interval)
                self.request_refresh()
        except asyncio.CancelledError:
            self.logger.debug("Player refresh loop cancelled")

    def request_refresh(self) -> None:
        self._post(Refresh())

    def submit_command(self, message: Dict[str, object], ts: Optional[int] = None) -> None:
        self._post(CommandReceived(message=message, ts=ts))

    def handle_message(self, message: Dict[str, object]) -> None:
        """Routes one transport message; heartbeats and pongs only prove liveness."""
        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "refresh":
            self.request_refresh()
        elif kind == "command":
            ts = message.get("ts")
            self.submit_command(message, ts if isinstance(ts, int) else None)

    def snapshot(self) -> Optional[Dict[str, object]]:
        return self.sequencer.snapshot() if self.sequencer else None

    def _post(self, event: object) -> None:
        if not self.sequencer or not self._loop:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self.sequencer.post(event)
        else:
            self._loop.call_soon_threadsafe(self.sequencer.post, event)

    def _slot_ended(self, slot: str, item_id: str) -> None:
        self._post(MediaEnded(slot=slot, item_id=item_id))

    def _slot_ready(self, slot: str, item_id: str) -> None:
        self._post(SlotReady(slot=slot, item_id=item_id))
