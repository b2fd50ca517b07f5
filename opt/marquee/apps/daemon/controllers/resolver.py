from datetime import datetime
from typing import List, Optional

from models.catalog import (
    CatalogRepository,
    ContentItem,
    DisplayListEntry,
    GlobalSettings,
    ScheduleRule,
    parse_clock,
)

MIN_DURATION_SECONDS = 0.1
VIDEO_END_PAD_SECONDS = 0.5
UNKNOWN_VIDEO_SECONDS = 30.0
MINUTES_PER_DAY = 24 * 60


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def weekday_index(moment: datetime) -> int:
    """Weekday with 0 = Sunday, matching the ``days`` field of schedules."""
    return (moment.weekday() + 1) % 7


def minute_of_day(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def rule_is_active(rule: ScheduleRule, moment: datetime) -> bool:
    instant = epoch_ms(moment)
    if not (rule.start_at <= instant <= rule.end_at):
        return False

    if rule.days and weekday_index(moment) not in rule.days:
        return False

    if rule.start_time is None and rule.end_time is None:
        return True
    start = parse_clock(rule.start_time) if rule.start_time else 0
    end = parse_clock(rule.end_time) if rule.end_time else MINUTES_PER_DAY
    return start <= minute_of_day(moment) <= end


def resolve_display_list(
    repository: CatalogRepository,
    moment: Optional[datetime] = None,
) -> List[DisplayListEntry]:
    """Computes the ordered list of items that should be on rotation at ``moment``.

    Rules are filtered by their absolute window, weekday set and daily clock
    window (local time), then sorted by ``order``; ties keep registry order.
    When no rule survives, every content item is shown with its own override.
    """
    moment = moment or datetime.now()
    active = [rule for rule in repository.list_schedule_rules() if rule_is_active(rule, moment)]
    if active:
        active.sort(key=lambda rule: rule.order)
        return [
            DisplayListEntry(content_item_id=rule.content_item_id, duration_override=rule.duration_override)
            for rule in active
        ]

    return [
        DisplayListEntry(content_item_id=item.id, duration_override=item.duration_override)
        for item in repository.list_content_items()
    ]


def resolve_duration(
    entry: DisplayListEntry,
    item: ContentItem,
    settings: GlobalSettings,
) -> Optional[float]:
    """Returns on-screen seconds, or ``None`` when a video should run its natural length."""
    for override in (entry.duration_override, item.duration_override):
        if override is not None and override > 0:
            return max(MIN_DURATION_SECONDS, float(override))

    media_class = item.media_class
    if media_class == "video":
        return None
    if media_class == "link":
        return max(MIN_DURATION_SECONDS, float(settings.default_link_duration))
    return max(MIN_DURATION_SECONDS, float(settings.default_image_duration))


def natural_advance_seconds(natural_length: Optional[float]) -> float:
    if natural_length is None or natural_length != natural_length or natural_length <= 0:
        natural_length = UNKNOWN_VIDEO_SECONDS
    return natural_length + VIDEO_END_PAD_SECONDS
