import json
import logging
import mimetypes
import os
import shutil
import socket
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from models.catalog import ContentItem, media_class_for

MEDIA_TYPE_MAP = {
    "video": {
        ".mp4",
        ".mkv",
        ".mov",
        ".webm",
        ".avi",
        ".m4v",
        ".ts",
    },
    "image": {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".webp",
    },
}

SlotCallback = Callable[[str, str], None]


def classify_upload(filename: str, content_type: Optional[str]) -> Optional[str]:
    """Returns the mime type to record for an upload, or ``None`` when it is not image/video."""
    if content_type and media_class_for(content_type) in ("image", "video"):
        return content_type

    extension = Path(filename or "").suffix.lower()
    mime_type, _ = mimetypes.guess_type(filename or "")
    for media_type, extensions in MEDIA_TYPE_MAP.items():
        if extension in extensions:
            return mime_type or f"{media_type}/{extension.lstrip('.')}"
    if mime_type and media_class_for(mime_type) in ("image", "video"):
        return mime_type
    return None


def probe_media(
    path: Path,
    media_class: str,
    ffprobe_binary: Optional[str] = None,
    timeout: float = 5.0,
) -> Dict[str, float]:
    """Reads width, height and duration with ffprobe; missing fields are simply absent."""
    result: Dict[str, float] = {}
    binary = ffprobe_binary or shutil.which("ffprobe")
    if not binary:
        return result

    try:
        cmd = [
            binary,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height,duration:format=duration",
            "-of",
            "json",
            str(path),
        ]
        process = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            timeout=timeout,
        )
        if process.returncode != 0:
            return result
        payload = json.loads(process.stdout.decode("utf-8"))
    except (subprocess.TimeoutExpired, json.JSONDecodeError, OSError):
        return result

    streams = payload.get("streams") or []
    if streams:
        stream = streams[0]
        for key in ("width", "height"):
            value = stream.get(key)
            if value:
                try:
                    result[key] = int(float(value))
                except (TypeError, ValueError):
                    pass
        duration = stream.get("duration")
        if duration and media_class == "video":
            try:
                result["duration"] = float(duration)
            except (TypeError, ValueError):
                pass

    format_section = payload.get("format") or {}
    if media_class == "video" and "duration" in format_section and not result.get("duration"):
        try:
            result["duration"] = float(format_section["duration"])
        except (TypeError, ValueError):
            pass

    return result


class RenderSlot:
    """One of the two interchangeable surfaces the sequencer renders images and videos on."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._on_ended: Optional[SlotCallback] = None
        self._on_ready: Optional[SlotCallback] = None

    def set_listeners(self, on_ended: Optional[SlotCallback], on_ready: Optional[SlotCallback]) -> None:
        self._on_ended = on_ended
        self._on_ready = on_ready

    def load(self, item: ContentItem, source: str, autoplay: bool = True) -> None:
        raise NotImplementedError

    def loaded_item_id(self) -> Optional[str]:
        raise NotImplementedError

    def is_ready_to_render(self) -> bool:
        raise NotImplementedError

    def natural_duration(self) -> Optional[float]:
        return None

    def play(self) -> None:
        raise NotImplementedError

    def pause(self) -> None:
        raise NotImplementedError

    def show(self) -> None:
        raise NotImplementedError

    def hide(self) -> None:
        raise NotImplementedError

    def unload(self) -> None:
        raise NotImplementedError

    def apply_display(self, brightness: int, orientation: str) -> None:
        pass

    def close(self) -> None:
        self.unload()


class MpvSlot(RenderSlot):
    """Render slot backed by a long-lived mpv window controlled over its IPC socket."""

    def __init__(
        self,
        name: str,
        mpv_binary: str = "mpv",
        ipc_socket: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = 0.25,
    ) -> None:
        super().__init__(name)
        self.mpv_binary = mpv_binary
        self.ipc_socket = Path(ipc_socket or f"/tmp/marquee-mpv-{name.lower()}.sock")
        self.logger = logger or logging.getLogger(f"marquee.media.slot.{name.lower()}")
        self.poll_interval = poll_interval

        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._item_id: Optional[str] = None
        self._ready_reported = False
        self._ended_reported = False
        self._closing = False

    # Public API ---------------------------------------------------------
    def load(self, item: ContentItem, source: str, autoplay: bool = True) -> None:
        with self._lock:
            self._ensure_process()
            self._item_id = item.id
            self._ready_reported = False
            self._ended_reported = False
        self.logger.info("Slot %s loading %s (%s)", self.name, item.name, source)
        self._send_mpv_command({"command": ["set_property", "pause", not autoplay]})
        self._send_mpv_command({"command": ["loadfile", source, "replace"]})
        self._ensure_monitor_thread()

    def loaded_item_id(self) -> Optional[str]:
        with self._lock:
            return self._item_id

    def is_ready_to_render(self) -> bool:
        with self._lock:
            if not self._item_id or not self._process:
                return False
        params = self._send_mpv_command({"command": ["get_property", "video-params"]}, expect_response=True)
        if not params:
            return False
        stalled = self._send_mpv_command({"command": ["get_property", "paused-for-cache"]}, expect_response=True)
        return not stalled

    def natural_duration(self) -> Optional[float]:
        value = self._send_mpv_command({"command": ["get_property", "duration"]}, expect_response=True)
        try:
            duration = float(value) if value is not None else None
        except (TypeError, ValueError):
            return None
        if duration is None or duration <= 0:
            return None
        return duration

    def play(self) -> None:
        self._send_mpv_command({"command": ["set_property", "pause", False]})

    def pause(self) -> None:
        self._send_mpv_command({"command": ["set_property", "pause", True]})

    def show(self) -> None:
        self._send_mpv_command({"command": ["set_property", "ontop", True]})

    def hide(self) -> None:
        self._send_mpv_command({"command": ["set_property", "ontop", False]})

    def unload(self) -> None:
        with self._lock:
            self._item_id = None
            running = self._process is not None
        if running:
            self._send_mpv_command({"command": ["stop"]})

    def apply_display(self, brightness: int, orientation: str) -> None:
        # mpv brightness is -100..100 with 0 as neutral.
        level = max(-100, min(100, int(brightness) - 100))
        self._send_mpv_command({"command": ["set_property", "brightness", level]})
        rotation = 90 if orientation == "portrait" else 0
        self._send_mpv_command({"command": ["set_property", "video-rotate", rotation]})

    def close(self) -> None:
        with self._lock:
            self._closing = True
            process = self._process
            self._process = None
            self._item_id = None
        if process:
            self.logger.info("Stopping mpv slot %s.", self.name)
            self._terminate_process(process)

    # Internal helpers -----------------------------------------------------
    def _ensure_process(self) -> None:
        if self._process and self._process.poll() is None:
            return
        if not shutil.which(self.mpv_binary):
            raise FileNotFoundError(f"mpv binary '{self.mpv_binary}' not found.")

        if self.ipc_socket.exists():
            try:
                self.ipc_socket.unlink()
            except OSError:
                self.logger.warning("Failed to remove stale mpv IPC socket %s.", self.ipc_socket)

        env = os.environ.copy()
        env.setdefault("DISPLAY", ":0")
        cmd = [
            self.mpv_binary,
            "--idle=yes",
            "--force-window=yes",
            "--fs",
            "--no-border",
            "--really-quiet",
            "--keep-open=yes",
            "--image-display-duration=inf",
            "--mute=yes",
            "--no-osc",
            "--no-input-default-bindings",
            f"--title=marquee-{self.name.lower()}",
            f"--input-ipc-server={self.ipc_socket}",
        ]
        self.logger.info("Launching mpv slot %s", self.name)
        self._closing = False
        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
        )
        deadline = time.time() + 5.0
        while time.time() < deadline and not self.ipc_socket.exists():
            time.sleep(0.05)

    def _terminate_process(self, process: subprocess.Popen, timeout: float = 5.0) -> None:
        try:
            process.terminate()
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning("mpv slot %s did not exit in time; killing.", self.name)
            process.kill()

    def _ensure_monitor_thread(self) -> None:
        with self._lock:
            if self._monitor_thread and self._monitor_thread.is_alive():
                return
            self._monitor_thread = threading.Thread(target=self._monitor_loop, daemon=True)
            self._monitor_thread.start()

    def _monitor_loop(self) -> None:
        while True:
            with self._lock:
                process = self._process
                item_id = self._item_id
                closing = self._closing
            if closing or not process:
                return
            if process.poll() is not None:
                self.logger.warning("mpv slot %s exited with code %s", self.name, process.returncode)
                with self._lock:
                    if process is self._process:
                        self._process = None
                if item_id and self._on_ended:
                    self._emit(self._on_ended, item_id)
                return

            if item_id:
                self._check_progress(item_id)
            time.sleep(self.poll_interval)

    def _check_progress(self, item_id: str) -> None:
        if not self._ready_reported and self.is_ready_to_render():
            with self._lock:
                fresh = self._item_id == item_id and not self._ready_reported
                self._ready_reported = True
            if fresh and self._on_ready:
                self._emit(self._on_ready, item_id)

        if not self._ended_reported:
            eof = self._send_mpv_command({"command": ["get_property", "eof-reached"]}, expect_response=True)
            if eof is True:
                with self._lock:
                    fresh = self._item_id == item_id and not self._ended_reported
                    self._ended_reported = True
                if fresh and self._on_ended:
                    self._emit(self._on_ended, item_id)

    def _emit(self, callback: SlotCallback, item_id: str) -> None:
        try:
            callback(self.name, item_id)
        except Exception:  # pragma: no cover - defensive logging
            self.logger.exception("Slot %s callback failed.", self.name)

    def _send_mpv_command(
        self,
        payload: Dict[str, object],
        expect_response: bool = False,
    ) -> Optional[object]:
        if not self.ipc_socket.exists():
            return None

        data = json.dumps(payload) + "\n"
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(2.0)
                sock.connect(str(self.ipc_socket))
                sock.sendall(data.encode("utf-8"))
                if not expect_response:
                    return None
                buffer = b""
                while True:
                    chunk = sock.recv(4096)
                    if not chunk:
                        return None
                    buffer += chunk
                    while b"\n" in buffer:
                        line, buffer = buffer.split(b"\n", 1)
                        try:
                            reply = json.loads(line.decode("utf-8"))
                        except json.JSONDecodeError:
                            continue
                        # Unsolicited events share the socket; only replies carry "error".
                        if isinstance(reply, dict) and "error" in reply:
                            if reply.get("error") != "success":
                                return None
                            return reply.get("data")
        except (socket.error, OSError):
            return None
