import json

import pytest

from controllers.catalog import CatalogStore
from models.catalog import ContentItem, now_ms

from conftest import image, link, video


def test_remove_content_cascades_to_schedules(store):
    store.add_content_item(image("a"))
    store.add_content_item(image("b"))
    keep = store.add_schedule_rule({"fileId": "b"})
    store.add_schedule_rule({"fileId": "a"})
    store.add_schedule_rule({"fileId": "a", "order": 3})

    removed = store.remove_content_item("a")

    assert removed.id == "a"
    assert [rule.id for rule in store.list_schedule_rules()] == [keep.id]
    assert store.remove_content_item("a") is None


def test_schedule_defaults_and_link_fallback(store):
    store.add_content_item(link("site"))
    before = now_ms()
    rule = store.add_schedule_rule({"fileId": "site"})

    assert rule.id
    assert rule.order == 0
    assert before <= rule.start_at
    assert rule.end_at == rule.start_at + 3600_000
    assert rule.duration_override == 10.0


def test_schedule_validation(store):
    store.add_content_item(image("a"))

    with pytest.raises(ValueError, match="Invalid fileId"):
        store.add_schedule_rule({"fileId": "missing"})
    with pytest.raises(ValueError):
        store.add_schedule_rule({"fileId": "a", "startAt": 2000, "endAt": 1000})
    with pytest.raises(ValueError):
        store.add_schedule_rule({"fileId": "a", "startTime": "09:00"})
    with pytest.raises(ValueError, match="End time must be after start time"):
        store.add_schedule_rule({"fileId": "a", "startTime": "17:00", "endTime": "09:00"})
    with pytest.raises(ValueError, match="Invalid time"):
        store.add_schedule_rule({"fileId": "a", "startTime": 930, "endTime": "10:00"})

    assert store.list_schedule_rules() == []


def test_schedule_days_are_normalised(store):
    store.add_content_item(image("a"))
    rule = store.add_schedule_rule({"fileId": "a", "days": [1, 1, 9, "3", "x"]})
    assert rule.days == [1, 3]


def test_remove_schedule_rule(store):
    store.add_content_item(image("a"))
    rule = store.add_schedule_rule({"fileId": "a"})
    assert store.remove_schedule_rule(rule.id) is True
    assert store.remove_schedule_rule(rule.id) is False


def test_update_settings_filters_invalid_values(store):
    settings = store.update_settings({"brightness": 150, "orientation": "sideways", "autoStart": False})
    assert settings.brightness == 150
    assert settings.orientation == "landscape"
    assert settings.auto_start is False

    with pytest.raises(ValueError, match="No valid updates provided"):
        store.update_settings({"brightness": 250})
    with pytest.raises(ValueError):
        store.update_settings({})
    assert store.get_global_settings().brightness == 150


def test_rejects_unsupported_mime(store):
    with pytest.raises(ValueError):
        store.add_content_item(ContentItem(id="doc", name="doc.pdf", mime="application/pdf", url="/x"))


def test_store_persists_and_drops_missing_files(tmp_path):
    media = tmp_path / "clip.mp4"
    media.write_bytes(b"\x00" * 16)
    path = tmp_path / "store.json"

    store = CatalogStore(path, save_delay=60.0)
    clip = video("clip", natural=12.0)
    clip.path = str(media)
    store.add_content_item(clip)
    gone = image("gone")
    gone.path = str(tmp_path / "gone.png")
    store.add_content_item(gone)
    store.add_content_item(link("site"))
    store.add_schedule_rule({"fileId": "clip", "order": 2})
    store.add_schedule_rule({"fileId": "gone"})
    store.update_settings({"brightness": 80})
    store.set_admin_password_hash("hash-value")
    store.flush()

    snapshot = json.loads(path.read_text())
    assert snapshot["files"][0][0] == "clip"

    reloaded = CatalogStore(path, save_delay=60.0)
    assert {item.id for item in reloaded.list_content_items()} == {"clip", "site"}
    assert reloaded.get_content_item("clip").natural_duration == 12.0
    assert [rule.content_item_id for rule in reloaded.list_schedule_rules()] == ["clip"]
    assert reloaded.get_global_settings().brightness == 80
    assert reloaded.get_admin_password_hash() == "hash-value"


def test_corrupt_store_starts_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json")
    store = CatalogStore(path, save_delay=60.0)
    assert store.list_content_items() == []
