import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
DAEMON_PATH = ROOT / "opt/marquee/apps/daemon"
if DAEMON_PATH.exists() and str(DAEMON_PATH) not in sys.path:
    sys.path.insert(0, str(DAEMON_PATH))

from adapters.media import RenderSlot  # noqa: E402
from controllers.catalog import CatalogStore  # noqa: E402
from models.catalog import ContentItem, GlobalSettings, ScheduleRule  # noqa: E402

# Wednesday, 10:30 local time.
NOW = datetime(2024, 1, 3, 10, 30)


class FakeTimer:
    def __init__(self, when: float, callback, args) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeLoop:
    """Deterministic stand-in for the two asyncio loop methods the sequencer uses."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback, *args) -> FakeTimer:
        timer = FakeTimer(self.now + delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [timer for timer in self.pending() if timer.when <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda entry: entry.when)
            self.now = timer.when
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target


class FakeSlot(RenderSlot):
    def __init__(self, name: str, ready: bool = True) -> None:
        super().__init__(name)
        self.ready = ready
        self.item_id: Optional[str] = None
        self.source: Optional[str] = None
        self.playing = False
        self.visible = False
        self.display = None
        self.closed = False
        self.loads: List[str] = []
        self.duration: Optional[float] = None

    def load(self, item, source, autoplay=True) -> None:
        self.item_id = item.id
        self.source = source
        self.playing = autoplay
        self.loads.append(item.id)

    def loaded_item_id(self):
        return self.item_id

    def is_ready_to_render(self) -> bool:
        return self.ready and self.item_id is not None

    def natural_duration(self):
        return self.duration if self.item_id is not None else None

    def play(self) -> None:
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def show(self) -> None:
        self.visible = True

    def hide(self) -> None:
        self.visible = False

    def unload(self) -> None:
        self.item_id = None
        self.playing = False

    def apply_display(self, brightness, orientation) -> None:
        self.display = (brightness, orientation)

    def close(self) -> None:
        self.closed = True
        self.unload()


class FakeLinkSurface:
    def __init__(self) -> None:
        self.opened: List[str] = []
        self.stopped = 0
        self.display = None

    def open(self, url: str) -> None:
        self.opened.append(url)

    def stop(self) -> None:
        self.stopped += 1

    def apply_display(self, brightness, orientation) -> None:
        self.display = (brightness, orientation)


class MemoryCatalog:
    """Plain in-memory repository used where persistence is irrelevant."""

    def __init__(self, items=(), rules=(), settings: Optional[GlobalSettings] = None) -> None:
        self.items: Dict[str, ContentItem] = {item.id: item for item in items}
        self.rules: List[ScheduleRule] = list(rules)
        self.settings = settings or GlobalSettings()

    def list_content_items(self):
        return list(self.items.values())

    def get_content_item(self, identifier):
        return self.items.get(identifier)

    def list_schedule_rules(self):
        return list(self.rules)

    def get_global_settings(self):
        return self.settings


def image(identifier: str, duration: Optional[float] = None) -> ContentItem:
    return ContentItem(
        id=identifier,
        name=f"{identifier}.png",
        mime="image/png",
        url=f"/api/files/stream/{identifier}",
        duration_override=duration,
    )


def video(identifier: str, natural: Optional[float] = None) -> ContentItem:
    return ContentItem(
        id=identifier,
        name=f"{identifier}.mp4",
        mime="video/mp4",
        url=f"/api/files/stream/{identifier}",
        natural_duration=natural,
    )


def link(identifier: str, url: str = "https://example.com/board") -> ContentItem:
    return ContentItem(id=identifier, name=url, mime="link/external", url=url, storage="external")


@pytest.fixture
def store(tmp_path):
    catalog = CatalogStore(tmp_path / "store.json", save_delay=60.0)
    yield catalog
    catalog.flush()


@pytest.fixture
def fake_loop():
    return FakeLoop()


@pytest.fixture
def slots():
    return {"A": FakeSlot("A"), "B": FakeSlot("B")}


@pytest.fixture
def link_surface():
    return FakeLinkSurface()
