import json
import logging
import threading
from contextlib import closing
from typing import Callable, Dict, List, Optional
from urllib.error import URLError
from urllib.parse import urljoin, urlsplit, urlunsplit
from urllib.request import Request, urlopen

import websocket

from models.catalog import ContentItem, GlobalSettings, ScheduleRule, now_ms

MessageHandler = Callable[[Dict[str, object]], None]


def fetch_json(url: str, timeout: float = 5.0) -> Dict[str, object]:
    with closing(urlopen(url, timeout=timeout)) as response:
        return json.loads(response.read().decode("utf-8"))


def post_json(url: str, payload: Dict[str, object], timeout: float = 5.0) -> Dict[str, object]:
    request = Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with closing(urlopen(request, timeout=timeout)) as response:
        return json.loads(response.read().decode("utf-8") or "{}")


def websocket_url(base_url: str, path: str = "/api/ws") -> str:
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


class RemoteCatalog:
    """Catalog snapshot fetched from a Marquee daemon over HTTP.

    Serves the same read interface as the local store so the playback engine
    can run unchanged on a remote player. A failed fetch keeps the previous
    snapshot.
    """

    def __init__(self, base_url: str, logger: Optional[logging.Logger] = None, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.logger = logger or logging.getLogger("marquee.remote.catalog")
        self.timeout = timeout

        self._lock = threading.Lock()
        self._files: Dict[str, ContentItem] = {}
        self._schedules: List[ScheduleRule] = []
        self._settings = GlobalSettings()

    def refresh(self) -> bool:
        try:
            files = fetch_json(self._url("api/files"), self.timeout).get("files") or []
            schedules = fetch_json(self._url("api/schedule"), self.timeout).get("schedules") or []
            settings = fetch_json(self._url("api/settings"), self.timeout).get("settings")
        except (URLError, OSError, ValueError) as exc:
            self.logger.warning("Catalog fetch from %s failed: %s", self.base_url, exc)
            return False

        parsed: List[ContentItem] = []
        for entry in files:
            try:
                parsed.append(ContentItem.from_dict(entry))
            except (TypeError, ValueError):
                self.logger.debug("Skipping malformed content entry %r", entry)
        # The listing is newest first; the fallback rotation follows upload order.
        parsed.sort(key=lambda item: item.uploaded_at)
        items = {item.id: item for item in parsed}

        rules: List[ScheduleRule] = []
        for entry in schedules:
            try:
                rule = ScheduleRule.from_dict(entry)
                rule.validate()
            except (TypeError, ValueError):
                self.logger.debug("Skipping malformed schedule entry %r", entry)
                continue
            rules.append(rule)

        with self._lock:
            self._files = items
            self._schedules = rules
            self._settings = GlobalSettings.from_dict(settings if isinstance(settings, dict) else None)
        self.logger.debug("Catalog refreshed: %s files, %s schedules", len(items), len(rules))
        return True

    def source_for(self, item: ContentItem) -> str:
        if item.media_class == "link":
            return item.url
        return self._url(item.url.lstrip("/"))

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path)

    # Repository interface ---------------------------------------------------
    def list_content_items(self) -> List[ContentItem]:
        with self._lock:
            return list(self._files.values())

    def get_content_item(self, identifier: str) -> Optional[ContentItem]:
        with self._lock:
            return self._files.get(identifier)

    def list_schedule_rules(self) -> List[ScheduleRule]:
        with self._lock:
            return list(self._schedules)

    def get_global_settings(self) -> GlobalSettings:
        with self._lock:
            return self._settings


class PlayerLink:
    """Keeps a remote player connected to the daemon's transport.

    The WebSocket reconnects with exponential backoff. While it is down the
    link polls the catalog and the command log over HTTP, and heartbeats go
    to ``/api/players`` instead of a WebSocket ``ping``.
    """

    def __init__(
        self,
        base_url: str,
        on_message: MessageHandler,
        name: str,
        ua: str = "marquee-player",
        on_poll: Optional[Callable[[], None]] = None,
        cursor: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
        heartbeat_interval: float = 20.0,
        poll_interval: float = 2.0,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.ws_url = websocket_url(base_url)
        self.on_message = on_message
        self.name = name
        self.ua = ua
        self.on_poll = on_poll
        self.cursor = cursor
        self.logger = logger or logging.getLogger("marquee.remote.link")
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout

        self._stopping = threading.Event()
        self._connected = threading.Event()
        self._app: Optional[websocket.WebSocketApp] = None
        self._threads: List[threading.Thread] = []
        self._backoff = initial_backoff
        self._since = 0

    # Lifecycle ----------------------------------------------------------------
    def start(self) -> None:
        if self._threads:
            return
        self._stopping.clear()
        self._since = now_ms()
        for target, name in (
            (self._connection_loop, "marquee-ws"),
            (self._heartbeat_loop, "marquee-heartbeat"),
            (self._poll_loop, "marquee-poll"),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stopping.set()
        app = self._app
        if app:
            try:
                app.close()
            except Exception as exc:
                self.logger.debug("Error closing WebSocket: %s", exc)
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    # Outbound ---------------------------------------------------------------
    def send(self, payload: Dict[str, object]) -> bool:
        app = self._app
        if not app or not self._connected.is_set():
            return False
        try:
            app.send(json.dumps(payload))
        except (websocket.WebSocketException, OSError) as exc:
            self.logger.debug("WebSocket send failed: %s", exc)
            return False
        return True

    def announce(self, name: Optional[str] = None) -> None:
        if name:
            self.name = name
        self.send({"type": "identify", "name": self.name, "ua": self.ua})

    def publish_state(self, snapshot: Dict[str, object]) -> None:
        self.send({"type": "broadcast", "data": snapshot})

    # WebSocket ----------------------------------------------------------------
    def _connection_loop(self) -> None:
        while not self._stopping.is_set():
            app = websocket.WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_ws_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
            self._app = app
            try:
                app.run_forever()
            except Exception:
                self.logger.exception("WebSocket loop crashed.")
            self._connected.clear()
            self._app = None
            if self._stopping.is_set():
                break
            delay = self._backoff
            self._backoff = min(self._backoff * 2, self.max_backoff)
            self.logger.info("WebSocket closed; reconnecting in %.0fs", delay)
            self._stopping.wait(delay)

    def _on_open(self, app) -> None:
        self.logger.info("Connected to %s", self.ws_url)
        self._backoff = self.initial_backoff
        self._connected.set()
        self.announce()

    def _on_ws_message(self, app, text: str) -> None:
        try:
            message = json.loads(text)
        except (TypeError, ValueError):
            self.logger.debug("Ignoring non-JSON message %r", text)
            return
        if isinstance(message, dict):
            self._deliver(message)

    def _on_error(self, app, error) -> None:
        self.logger.debug("WebSocket error: %s", error)

    def _on_close(self, app, status_code=None, reason=None) -> None:
        self._connected.clear()

    # Heartbeat and polling ------------------------------------------------------
    def _heartbeat_loop(self) -> None:
        while not self._stopping.is_set():
            if not self.send({"type": "ping"}):
                try:
                    post_json(self._url("api/players"), {"name": self.name, "ua": self.ua}, self.timeout)
                except (URLError, OSError, ValueError) as exc:
                    self.logger.debug("HTTP heartbeat failed: %s", exc)
            self._stopping.wait(self.heartbeat_interval)

    def _poll_loop(self) -> None:
        while not self._stopping.wait(self.poll_interval):
            if self._connected.is_set():
                continue
            try:
                self.poll_once()
            except Exception:
                self.logger.exception("HTTP polling failed.")

    def poll_once(self) -> None:
        if self.on_poll:
            self.on_poll()
        since = max(self._since, self.cursor() if self.cursor else 0)
        try:
            data = fetch_json(self._url(f"api/commands?since={since}"), self.timeout)
        except (URLError, OSError, ValueError) as exc:
            self.logger.debug("Command poll failed: %s", exc)
            return
        latest = since
        for entry in data.get("commands") or []:
            ts = entry.get("ts") if isinstance(entry, dict) else None
            payload = entry.get("payload") if isinstance(entry, dict) else None
            if not isinstance(ts, int) or not isinstance(payload, dict):
                continue
            self._deliver(dict(payload, ts=ts))
            latest = max(latest, ts)
        self._since = latest

    def _deliver(self, message: Dict[str, object]) -> None:
        try:
            self.on_message(message)
        except Exception:
            self.logger.exception("Transport message handler failed.")

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path)
