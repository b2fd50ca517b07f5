import logging
import queue
import threading
from typing import Callable, Optional, Tuple

from adapters.media import RenderSlot
from models.catalog import ContentItem

_Task = Optional[Tuple[Callable, tuple]]


class SurfaceWorker:
    """Runs blocking render-surface calls in submission order on one thread.

    mpv launches, IPC round-trips, Chromium DevTools handshakes and ``xset`` all
    block; funnelling them through a single thread keeps the asyncio loop free
    while preserving the order the sequencer issued them in.
    """

    def __init__(self, name: str = "marquee-surfaces", logger: Optional[logging.Logger] = None) -> None:
        self.name = name
        self.logger = logger or logging.getLogger("marquee.surfaces")
        self._queue: "queue.Queue[_Task]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def submit(self, func: Callable, *args) -> None:
        self.start()
        self._queue.put((func, args))

    def drain(self) -> None:
        """Blocks until every call submitted so far has run."""
        self._queue.join()

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if not thread:
            return
        self._queue.put(None)
        thread.join(timeout=timeout)
        if thread.is_alive():
            self.logger.warning("Surface worker did not finish within %.0fs.", timeout)

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                func, args = task
                try:
                    func(*args)
                except Exception:
                    self.logger.exception("Render surface call %s failed", getattr(func, "__name__", func))
            finally:
                self._queue.task_done()


class QueuedSlot(RenderSlot):
    """Non-blocking front for a render slot whose commands run on a :class:`SurfaceWorker`.

    The loaded item is tracked at submission time. Readiness and natural length
    are cached from the inner slot's ready callback, so the sequencer's queries
    never touch mpv.
    """

    def __init__(self, inner: RenderSlot, worker: SurfaceWorker) -> None:
        super().__init__(inner.name)
        self.inner = inner
        self.worker = worker
        self._lock = threading.Lock()
        self._item_id: Optional[str] = None
        self._ready = False
        self._duration: Optional[float] = None
        inner.set_listeners(self._handle_ended, self._handle_ready)

    def load(self, item: ContentItem, source: str, autoplay: bool = True) -> None:
        with self._lock:
            self._item_id = item.id
            self._ready = False
            self._duration = None
        self.worker.submit(self.inner.load, item, source, autoplay)

    def loaded_item_id(self) -> Optional[str]:
        with self._lock:
            return self._item_id

    def is_ready_to_render(self) -> bool:
        with self._lock:
            return self._ready and self._item_id is not None

    def natural_duration(self) -> Optional[float]:
        with self._lock:
            return self._duration

    def play(self) -> None:
        self.worker.submit(self.inner.play)

    def pause(self) -> None:
        self.worker.submit(self.inner.pause)

    def show(self) -> None:
        self.worker.submit(self.inner.show)

    def hide(self) -> None:
        self.worker.submit(self.inner.hide)

    def unload(self) -> None:
        self._forget()
        self.worker.submit(self.inner.unload)

    def apply_display(self, brightness: int, orientation: str) -> None:
        self.worker.submit(self.inner.apply_display, brightness, orientation)

    def close(self) -> None:
        self._forget()
        self.worker.submit(self.inner.close)

    def _forget(self) -> None:
        with self._lock:
            self._item_id = None
            self._ready = False
            self._duration = None

    # Inner slot callbacks (worker or monitor threads) -----------------------
    def _handle_ready(self, slot: str, item_id: str) -> None:
        duration = self.inner.natural_duration()
        with self._lock:
            if item_id != self._item_id:
                return
            self._ready = True
            self._duration = duration
        if self._on_ready:
            self._on_ready(self.name, item_id)

    def _handle_ended(self, slot: str, item_id: str) -> None:
        if self._on_ended:
            self._on_ended(self.name, item_id)


class QueuedLinkSurface:
    """Forwards link-surface calls to a :class:`SurfaceWorker`."""

    def __init__(self, inner, worker: SurfaceWorker) -> None:
        self.inner = inner
        self.worker = worker

    def open(self, url: str) -> None:
        self.worker.submit(self.inner.open, url)

    def stop(self) -> None:
        self.worker.submit(self.inner.stop)

    def apply_display(self, brightness: int, orientation: str) -> None:
        self.worker.submit(self.inner.apply_display, brightness, orientation)
