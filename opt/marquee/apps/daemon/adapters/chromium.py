import itertools
import json
import logging
import os
import re
import socket
import subprocess
import threading
import time
from contextlib import closing, suppress
from pathlib import Path
from typing import Dict, List, Optional
from urllib.error import URLError
from urllib.parse import quote
from urllib.request import urlopen

import websocket

_YOUTUBE_PATTERNS = (
    re.compile(r"youtube\.com/watch.*[?&]v=([^&]+)"),
    re.compile(r"youtu\.be/([^?&]+)"),
    re.compile(r"youtube\.com/embed/([^?&]+)"),
)
_VIMEO_PATTERN = re.compile(r"vimeo\.com/(\d+)")


def embed_url_for(url: str, origin: str = "") -> str:
    """Rewrites YouTube and Vimeo page links into autoplaying, muted embed URLs."""
    for pattern in _YOUTUBE_PATTERNS:
        match = pattern.search(url)
        if match:
            video_id = match.group(1)
            embed = (
                f"https://www.youtube.com/embed/{video_id}?autoplay=1&mute=1&loop=1&controls=1"
                f"&modestbranding=1&rel=0&iv_load_policy=3&fs=1&playsinline=1"
                f"&playlist={video_id}"
            )
            if origin:
                embed += f"&origin={quote(origin, safe='')}"
            return embed

    match = _VIMEO_PATTERN.search(url)
    if match:
        return f"https://player.vimeo.com/video/{match.group(1)}?autoplay=1&muted=1&controls=0&loop=1"
    return url


class ChromiumAdapter:
    """Manages the Chromium kiosk subprocess that renders link content."""

    def __init__(
        self,
        flags_file: str,
        binary: str = "/usr/bin/chromium-browser",
        debug_port: int = 9222,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.flags_path = Path(flags_file)
        self.binary = binary
        self.debug_port = debug_port
        self.logger = logger or logging.getLogger(__name__)

        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._monitor_thread: Optional[threading.Thread] = None
        self._stopping = False
        self._last_url = "about:blank"
        self._devtools_lock = threading.Lock()
        self._message_counter = itertools.count(1)
        self._ws_url: Optional[str] = None
        self._devtools_enabled = False
        self._display_style: Optional[Dict[str, object]] = None

    # Public API -----------------------------------------------------------
    def open(self, url: str) -> None:
        """Shows ``url``, navigating the running browser when possible."""
        target = embed_url_for(url)
        if self.is_alive():
            try:
                self.logger.info("Navigating Chromium to %s", target)
                self._send_devtools_command("Page.navigate", {"url": target})
                self._last_url = target
                self._restyle()
                return
            except RuntimeError as exc:
                self.logger.warning("DevTools navigation failed (%s); restarting Chromium.", exc)
                self.stop()
        self.start(target)

    def start(self, url: Optional[str] = None) -> None:
        target_url = url or self._last_url
        with self._lock:
            if self._process and self._process.poll() is None:
                self.logger.info("Chromium already running, skipping start.")
                return
            self._reset_devtools()
            self._launch(target_url)
        try:
            self._initialise_devtools()
        except Exception:
            self.logger.exception("Chromium launched but DevTools handshake failed; stopping.")
            self.stop()
            raise
        self._restyle()
        self._ensure_monitor()

    def stop(self) -> None:
        with self._lock:
            if not self._process:
                return
            self.logger.info("Stopping Chromium process.")
            self._stopping = True
            self._terminate_process()
            self._process = None
            self._stopping = False
        self._reset_devtools()

    def apply_display(self, brightness: int, orientation: str) -> None:
        self._display_style = {"brightness": int(brightness), "orientation": orientation}
        if self.is_alive():
            try:
                self._restyle()
            except RuntimeError as exc:
                self.logger.debug("Unable to restyle Chromium page: %s", exc)

    def is_alive(self) -> bool:
        with self._lock:
            return bool(self._process and self._process.poll() is None)

    # Private helpers ------------------------------------------------------
    def _restyle(self) -> None:
        style = self._display_style
        if not style or not self.debug_port or self.debug_port <= 0:
            return
        rotate = "rotate(90deg)" if style["orientation"] == "portrait" else "none"
        expression = (
            "(() => { const root = document.documentElement;"
            f" root.style.filter = 'brightness({style['brightness']}%)';"
            f" root.style.transform = '{rotate}';"
            " root.style.transformOrigin = 'center'; })()"
        )
        self._send_devtools_command("Runtime.evaluate", {"expression": expression})

    def _launch(self, url: str) -> None:
        self._last_url = url
        cmd = self._build_command(url)
        self.logger.info("Launching Chromium: %s", " ".join(cmd))
        try:
            self._process = subprocess.Popen(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except FileNotFoundError as exc:
            self.logger.error("Chromium binary not found at %s", self.binary)
            raise exc
        except Exception:
            self.logger.exception("Failed to launch Chromium.")
            raise

    def _terminate_process(self, timeout: float = 5.0) -> None:
        if not self._process:
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning("Chromium did not exit in time; killing.")
            self._process.kill()
        finally:
            self._process = None
            self._reset_devtools()

    def _build_command(self, url: str) -> List[str]:
        flags = [
            "--kiosk",
            url,
            "--noerrdialogs",
            "--incognito",
            "--disable-translate",
            "--autoplay-policy=no-user-gesture-required",
            "--mute-audio",
            "--disable-infobars",
            "--start-maximized",
            "--no-first-run",
            "--disable-features=TranslateUI",
        ]
        if self.debug_port and self.debug_port > 0:
            flags.append(f"--remote-debugging-port={self.debug_port}")
            flags.append("--remote-allow-origins=*")

        flags.extend(self._load_flag_file())

        if not os.environ.get("DISPLAY"):
            os.environ.setdefault("DISPLAY", ":0")

        return [self.binary, *flags]

    def _load_flag_file(self) -> List[str]:
        if not self.flags_path.exists():
            return []
        try:
            content = self.flags_path.read_text().strip().splitlines()
            return [line.strip() for line in content if line.strip() and not line.startswith("#")]
        except OSError:
            self.logger.exception("Failed to read Chromium flags file %s", self.flags_path)
            return []

    def _initialise_devtools(self, timeout: float = 10.0) -> None:
        if not self.debug_port or self.debug_port <= 0:
            return

        deadline = time.time() + timeout
        last_error: Optional[str] = None
        while time.time() < deadline:
            try:
                ws_url = self._fetch_websocket_url()
                if ws_url:
                    with self._devtools_lock:
                        self._ws_url = ws_url
                        self._devtools_enabled = False
                    self._enable_devtools()
                    self.logger.debug("Chromium DevTools connected (%s).", ws_url)
                    return
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                self.logger.debug("DevTools handshake attempt failed: %s", last_error)
            time.sleep(0.4)

        message = last_error or "no DevTools target exposed"
        raise TimeoutError(f"Timed out establishing Chromium DevTools connection: {message}")

    def _enable_devtools(self) -> None:
        with self._devtools_lock:
            if self._devtools_enabled:
                return
        try:
            self._send_devtools_command("Page.enable")
            self._send_devtools_command("Runtime.enable")
        except Exception as exc:
            self.logger.debug("Failed enabling Chromium DevTools APIs: %s", exc)
            self._invalidate_ws_url()
            raise
        else:
            with self._devtools_lock:
                self._devtools_enabled = True

    def _fetch_websocket_url(self) -> Optional[str]:
        endpoint = f"http://127.0.0.1:{self.debug_port}/json"
        try:
            with closing(urlopen(endpoint, timeout=2.0)) as response:
                try:
                    payload = json.loads(response.read().decode("utf-8"))
                except json.JSONDecodeError as exc:
                    self.logger.debug("Failed to parse DevTools JSON payload: %s", exc)
                    return None
        except (URLError, ConnectionError, socket.error):
            return None

        targets = payload if isinstance(payload, list) else []
        for target in targets:
            if isinstance(target, dict) and target.get("type") == "page":
                ws_url = target.get("webSocketDebuggerUrl")
                if ws_url:
                    return ws_url
        return None

    def _ensure_ws_url(self) -> str:
        with self._devtools_lock:
            ws_url = self._ws_url
        if ws_url:
            return ws_url

        ws_url = self._fetch_websocket_url()
        if not ws_url:
            raise RuntimeError("Chromium DevTools target unavailable.")

        with self._devtools_lock:
            self._ws_url = ws_url
        return ws_url

    def _invalidate_ws_url(self) -> None:
        with self._devtools_lock:
            self._ws_url = None
            self._devtools_enabled = False

    def _send_devtools_command(self, method: str, params: Optional[Dict[str, object]] = None) -> Dict[str, object]:
        if not self.debug_port or self.debug_port <= 0:
            raise RuntimeError("Chromium launched without remote debugging support.")

        ws_url = self._ensure_ws_url()
        with self._devtools_lock:
            message_id = next(self._message_counter)
        request = {
            "id": message_id,
            "method": method,
            "params": params or {},
        }

        try:
            ws = websocket.create_connection(ws_url, timeout=4.0)
        except Exception as exc:
            self._invalidate_ws_url()
            raise RuntimeError(f"Failed to connect to Chromium DevTools: {exc}") from exc

        try:
            ws.send(json.dumps(request))
            while True:
                message = json.loads(ws.recv())
                if message.get("id") == message_id:
                    if "error" in message:
                        error_message = message["error"].get("message", "Unknown Chrome error")
                        raise RuntimeError(error_message)
                    return message.get("result", {})
        except websocket.WebSocketException as exc:
            self._invalidate_ws_url()
            raise RuntimeError(f"Chromium DevTools command failed: {exc}") from exc
        finally:
            with suppress(Exception):
                ws.close()

    def _reset_devtools(self) -> None:
        with self._devtools_lock:
            self._ws_url = None
            self._devtools_enabled = False
            self._message_counter = itertools.count(1)

    def _ensure_monitor(self) -> None:
        if self._monitor_thread and self._monitor_thread.is_alive():
            return
        self._monitor_thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._monitor_thread.start()

    def _monitor_loop(self) -> None:
        while True:
            with self._lock:
                process = self._process
            if not process:
                return

            return_code = process.wait()
            with self._lock:
                if self._stopping or process is not self._process:
                    self.logger.info("Chromium exited (intentional stop).")
                    return

                self.logger.warning(
                    "Chromium crashed or exited unexpectedly (code=%s). Restarting.",
                    return_code,
                )
                self._process = None
                self._reset_devtools()

            time.sleep(2)
            try:
                with self._lock:
                    self._launch(self._last_url)
                self._initialise_devtools()
                self._restyle()
            except Exception:
                self.logger.exception("Failed to relaunch Chromium.")
                time.sleep(5)
