import copy
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

import psutil
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.environ.get("MARQUEE_CONFIG_PATH", "/etc/marquee/config.yaml")
DEFAULT_FLAGS_FILE = os.environ.get(
    "MARQUEE_CHROMIUM_FLAGS_FILE", "/etc/marquee/chromium-flags.conf"
)
DEFAULT_CHROMIUM_BINARY = os.environ.get(
    "MARQUEE_CHROMIUM_BINARY", "/usr/bin/chromium-browser"
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "ui": {"port": 8080},
    "storage": {
        "data_dir": "/var/lib/marquee",
        "upload_dir": "/var/lib/marquee/uploads",
        "max_upload_mb": 100,
        "save_delay": 2.0,
        "ffprobe_binary": "",
    },
    "security": {
        "password_hash": "",
        "token_secret": "",
        "token_ttl": 3600,
    },
    "player": {
        "enabled": True,
        "name": "",
        "display": ":0",
        "mpv_binary": "mpv",
        "refresh_interval": 30,
        "handoff_timeout": 1.5,
        "blank_display_on_power_off": True,
    },
    "chromium": {
        "flags_file": DEFAULT_FLAGS_FILE,
        "binary": DEFAULT_CHROMIUM_BINARY,
        "debug_port": 9222,
    },
    "transport": {
        "heartbeat_interval": 25,
        "presence_window": 40,
        "command_log_size": 200,
    },
    "remote": {
        "server_url": "http://127.0.0.1:8080",
        "poll_interval": 2.0,
        "heartbeat_interval": 20,
        "max_backoff": 30,
    },
}


def load_config(path: str = "") -> Dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(path or os.environ.get("MARQUEE_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        logger.warning("Configuration file %s missing; using defaults.", config_path)
        return config

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            _deep_merge(config, data)
    except Exception as exc:
        logger.warning("Failed to load config: %s", exc)
    return config


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def get_cpu_percent() -> float:
    return psutil.cpu_percent(interval=None)


def get_memory_percent() -> float:
    return psutil.virtual_memory().percent


def get_temperature() -> Optional[float]:
    try:
        temps = psutil.sensors_temperatures()
        if temps:
            for entries in temps.values():
                if entries:
                    return float(entries[0].current)
    except (AttributeError, OSError):
        pass

    zone_path = Path("/sys/class/thermal/thermal_zone0/temp")
    if zone_path.exists():
        try:
            raw = zone_path.read_text().strip()
            return float(raw) / 1000.0
        except (OSError, ValueError):
            pass
    return None


def set_display_power(powered: bool) -> None:
    """Wakes or blanks the local display through DPMS."""
    state = "on" if powered else "off"
    logger.info("Display power requested: %s", state)

    display = os.environ.get("DISPLAY") or ":0"
    os.environ.setdefault("DISPLAY", display)

    xset_binary = shutil.which("xset")
    if not xset_binary:
        logger.warning("xset binary not found; cannot toggle display power.")
        return

    command = [xset_binary, "-display", display, "dpms", "force", state]
    try:
        subprocess.run(command, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except subprocess.CalledProcessError as exc:
        logger.error("DPMS command failed: %s", exc)
