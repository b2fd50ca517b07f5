from datetime import datetime, timedelta

from controllers.resolver import (
    epoch_ms,
    natural_advance_seconds,
    resolve_display_list,
    resolve_duration,
    rule_is_active,
    weekday_index,
)
from models.catalog import DisplayListEntry, GlobalSettings, ScheduleRule

from conftest import NOW, MemoryCatalog, image, link, video

HOUR_MS = 3600_000


def _rule(identifier, file_id, order=0, **kwargs):
    start = kwargs.pop("start_at", epoch_ms(NOW) - HOUR_MS)
    end = kwargs.pop("end_at", epoch_ms(NOW) + HOUR_MS)
    return ScheduleRule(id=identifier, content_item_id=file_id, start_at=start, end_at=end, order=order, **kwargs)


def _ids(entries):
    return [entry.content_item_id for entry in entries]


def test_fallback_lists_every_item_in_registry_order():
    catalog = MemoryCatalog(items=[image("a", duration=4), image("b"), video("c")])
    entries = resolve_display_list(catalog, NOW)
    assert _ids(entries) == ["a", "b", "c"]
    assert entries[0].duration_override == 4


def test_empty_catalog_resolves_to_empty_list():
    assert resolve_display_list(MemoryCatalog(), NOW) == []


def test_active_rules_sorted_by_order_with_stable_ties():
    catalog = MemoryCatalog(
        items=[image("a"), image("b"), image("c")],
        rules=[_rule("r1", "a", order=5), _rule("r2", "b", order=1), _rule("r3", "c", order=5)],
    )
    assert _ids(resolve_display_list(catalog, NOW)) == ["b", "a", "c"]


def test_rules_outside_window_fall_back_to_all_items():
    expired = _rule("r1", "a", start_at=epoch_ms(NOW) - 2 * HOUR_MS, end_at=epoch_ms(NOW) - HOUR_MS)
    catalog = MemoryCatalog(items=[image("a"), image("b")], rules=[expired])
    assert _ids(resolve_display_list(catalog, NOW)) == ["a", "b"]


def test_window_edges_are_inclusive():
    instant = epoch_ms(NOW)
    assert rule_is_active(_rule("r", "a", start_at=instant, end_at=instant + 1), NOW)
    assert rule_is_active(_rule("r", "a", start_at=instant - 1, end_at=instant), NOW)
    assert not rule_is_active(_rule("r", "a", start_at=instant + 1, end_at=instant + 2), NOW)


def test_weekday_index_counts_from_sunday():
    assert weekday_index(datetime(2024, 1, 7, 12, 0)) == 0
    assert weekday_index(NOW) == 3


def test_days_filter():
    wednesday_only = _rule("r", "a", days=[3])
    weekend_only = _rule("r", "a", days=[0, 6])
    assert rule_is_active(wednesday_only, NOW)
    assert not rule_is_active(weekend_only, NOW)


def test_daily_clock_window_is_inclusive():
    morning = _rule("r", "a", start_time="09:00", end_time="10:30")
    afternoon = _rule("r", "a", start_time="13:00", end_time="17:00")
    assert rule_is_active(morning, NOW)
    assert not rule_is_active(afternoon, NOW)


def test_rule_activity_matches_every_filter():
    base = datetime(2024, 1, 1, 0, 0)
    rule = ScheduleRule(
        id="r",
        content_item_id="a",
        start_at=epoch_ms(base + timedelta(days=1)),
        end_at=epoch_ms(base + timedelta(days=5)),
        days=[2, 4],
        start_time="08:00",
        end_time="12:00",
    )
    for hours in range(0, 24 * 7, 3):
        moment = base + timedelta(hours=hours)
        expected = (
            rule.start_at <= epoch_ms(moment) <= rule.end_at
            and weekday_index(moment) in (2, 4)
            and 8 * 60 <= moment.hour * 60 + moment.minute <= 12 * 60
        )
        assert rule_is_active(rule, moment) is expected, moment


def test_image_without_overrides_shows_for_default_duration():
    catalog = MemoryCatalog(items=[image("a")])
    entries = resolve_display_list(catalog, NOW)
    assert entries == [DisplayListEntry(content_item_id="a")]
    assert resolve_duration(entries[0], catalog.get_content_item("a"), catalog.settings) == 10.0


def test_duration_precedence():
    settings = GlobalSettings(default_image_duration=7, default_link_duration=20)
    item = image("a", duration=5)
    assert resolve_duration(DisplayListEntry("a", duration_override=3), item, settings) == 3.0
    assert resolve_duration(DisplayListEntry("a"), item, settings) == 5.0
    assert resolve_duration(DisplayListEntry("a"), image("b"), settings) == 7.0
    assert resolve_duration(DisplayListEntry("s"), link("s"), settings) == 20.0
    assert resolve_duration(DisplayListEntry("v"), video("v", natural=12.0), settings) is None
    assert resolve_duration(DisplayListEntry("a", duration_override=0.01), item, settings) == 0.1


def test_natural_advance_pads_video_length():
    assert natural_advance_seconds(12.0) == 12.5
    assert natural_advance_seconds(None) == 30.5
    assert natural_advance_seconds(0) == 30.5
