import json
import logging
import secrets
import threading
from pathlib import Path
from typing import Dict, List, Optional

from models.catalog import (
    ContentItem,
    GlobalSettings,
    ScheduleRule,
    media_class_for,
    now_ms,
    positive_seconds,
    valid_setting_updates,
)

LINK_FALLBACK_DURATION = 10
DEFAULT_WINDOW_MS = 3600_000


class CatalogStore:
    """In-memory content, schedule and settings registries with a debounced JSON snapshot."""

    def __init__(
        self,
        path: Path,
        logger: Optional[logging.Logger] = None,
        save_delay: float = 2.0,
    ) -> None:
        self.path = path
        self.logger = logger or logging.getLogger("marquee.catalog")
        self.save_delay = save_delay

        self._lock = threading.RLock()
        self._files: Dict[str, ContentItem] = {}
        self._schedules: Dict[str, ScheduleRule] = {}
        self._settings = GlobalSettings()
        self._admin_password_hash: str = ""
        self._save_timer: Optional[threading.Timer] = None
        self._load()

    # Data management --------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            self.logger.info("No existing store file at %s; starting with an empty store.", self.path)
            return
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError):
            self.logger.warning("Failed to load store from %s; starting fresh.", self.path)
            return

        with self._lock:
            for entry in _pairs(data.get("files")):
                try:
                    item = ContentItem.from_dict(entry)
                except (TypeError, ValueError):
                    self.logger.warning("Skipping malformed content entry %r", entry)
                    continue
                if item.storage != "external" and not (item.path and Path(item.path).exists()):
                    self.logger.info("Dropping content %s; file %s is gone.", item.id, item.path)
                    continue
                self._files[item.id] = item

            for entry in _pairs(data.get("schedules")):
                try:
                    rule = ScheduleRule.from_dict(entry)
                    rule.validate()
                except (TypeError, ValueError):
                    self.logger.warning("Skipping malformed schedule entry %r", entry)
                    continue
                if rule.content_item_id in self._files:
                    self._schedules[rule.id] = rule

            self._settings = GlobalSettings.from_dict(data.get("playerSettings"))
            self._admin_password_hash = str(data.get("adminPasswordHash") or "")

        self.logger.info(
            "Store loaded: %s files, %s schedules", len(self._files), len(self._schedules)
        )

    def save(self) -> None:
        with self._lock:
            payload = {
                "files": [[key, item.to_dict()] for key, item in self._files.items()],
                "schedules": [[key, rule.to_dict()] for key, rule in self._schedules.items()],
                "playerSettings": self._settings.to_dict(),
                "adminPasswordHash": self._admin_password_hash,
                "savedAt": now_ms(),
            }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError:
            self.logger.exception("Failed to save store to %s", self.path)
            return
        self.logger.debug("Store saved to %s", self.path)

    def flush(self) -> None:
        """Cancels any pending debounced save and writes immediately."""
        with self._lock:
            timer = self._save_timer
            self._save_timer = None
        if timer:
            timer.cancel()
        self.save()

    def _changed(self) -> None:
        with self._lock:
            if self._save_timer:
                self._save_timer.cancel()
            self._save_timer = threading.Timer(self.save_delay, self._save_from_timer)
            self._save_timer.daemon = True
            self._save_timer.start()

    def _save_from_timer(self) -> None:
        with self._lock:
            self._save_timer = None
        self.save()

    # Content registry --------------------------------------------------
    def list_content_items(self) -> List[ContentItem]:
        with self._lock:
            return list(self._files.values())

    def get_content_item(self, identifier: str) -> Optional[ContentItem]:
        with self._lock:
            return self._files.get(identifier)

    def add_content_item(self, item: ContentItem) -> ContentItem:
        if not media_class_for(item.mime):
            raise ValueError("Only images, videos and links are allowed")
        with self._lock:
            self._files[item.id] = item
        self._changed()
        return item

    def remove_content_item(self, identifier: str) -> Optional[ContentItem]:
        with self._lock:
            item = self._files.pop(identifier, None)
            if item is None:
                return None
            orphaned = [key for key, rule in self._schedules.items() if rule.content_item_id == identifier]
            for key in orphaned:
                self._schedules.pop(key)
        if orphaned:
            self.logger.info("Removed %s schedules referencing %s", len(orphaned), identifier)
        self._changed()
        return item

    # Schedule registry -------------------------------------------------
    def list_schedule_rules(self) -> List[ScheduleRule]:
        with self._lock:
            return list(self._schedules.values())

    def get_schedule_rule(self, identifier: str) -> Optional[ScheduleRule]:
        with self._lock:
            return self._schedules.get(identifier)

    def add_schedule_rule(self, data: Dict[str, object]) -> ScheduleRule:
        """Creates a rule from its wire representation, filling the usual defaults."""
        file_id = str(data.get("fileId") or "")
        with self._lock:
            item = self._files.get(file_id)
        if not item:
            raise ValueError("Invalid fileId")

        now = now_ms()
        start = data.get("startAt")
        start_at = int(start) if _is_number(start) else now
        end = data.get("endAt")
        end_at = int(end) if _is_number(end) else start_at + DEFAULT_WINDOW_MS
        order = data.get("order")

        duration = positive_seconds(data.get("durationSeconds"))
        if item.media_class == "link" and duration is None:
            duration = float(LINK_FALLBACK_DURATION)

        payload = dict(data)
        payload.update(
            {
                "id": data.get("id") or new_identifier(),
                "fileId": file_id,
                "startAt": start_at,
                "endAt": end_at,
                "order": int(order) if _is_number(order) else 0,
                "durationSeconds": duration,
            }
        )
        rule = ScheduleRule.from_dict(payload)
        rule.validate()

        with self._lock:
            self._schedules[rule.id] = rule
        self._changed()
        return rule

    def remove_schedule_rule(self, identifier: str) -> bool:
        with self._lock:
            removed = self._schedules.pop(identifier, None) is not None
        if removed:
            self._changed()
        return removed

    # Settings ----------------------------------------------------------
    def get_global_settings(self) -> GlobalSettings:
        with self._lock:
            return self._settings

    def update_settings(self, updates: Dict[str, object]) -> GlobalSettings:
        accepted = valid_setting_updates(updates)
        if not accepted:
            raise ValueError("No valid updates provided")
        with self._lock:
            self._settings = self._settings.merged(accepted)
            settings = self._settings
        self._changed()
        return settings

    # Credentials -------------------------------------------------------
    def get_admin_password_hash(self) -> str:
        with self._lock:
            return self._admin_password_hash

    def set_admin_password_hash(self, password_hash: str) -> None:
        with self._lock:
            self._admin_password_hash = password_hash
        self._changed()


def _pairs(entries: object) -> List[Dict[str, object]]:
    """Accepts both ``[[id, item], ...]`` snapshots and plain item lists."""
    result: List[Dict[str, object]] = []
    if not isinstance(entries, list):
        return result
    for entry in entries:
        if isinstance(entry, (list, tuple)) and len(entry) == 2 and isinstance(entry[1], dict):
            result.append(entry[1])
        elif isinstance(entry, dict):
            result.append(entry)
    return result


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def new_identifier() -> str:
    return f"{now_ms()}-{secrets.token_hex(5)}"
