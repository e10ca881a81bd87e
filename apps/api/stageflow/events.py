from __future__ import annotations

from typing import Any

from stageflow.context import get_correlation_id
from stageflow.core.events import ChangeEvent, ChangeEventType, ChangeFeed, change_feed
from stageflow.metrics import observe_feed_event

PROJECTS_TABLE = "projects"
QUOTES_TABLE = "quotes"
STAGE_HISTORY_TABLE = "stage_history"
HISTORY_TABLE = "history"
FEED_TABLES = (PROJECTS_TABLE, QUOTES_TABLE, STAGE_HISTORY_TABLE, HISTORY_TABLE)

published_events: list[dict[str, Any]] = []


def publish_change(
    table: str,
    event_type: ChangeEventType,
    record: dict[str, Any],
    *,
    feed: ChangeFeed | None = None,
) -> ChangeEvent:
    event = ChangeEvent(
        table=table,
        event_type=event_type,
        record=record,
        correlation_id=get_correlation_id(),
    )
    published_events.append(event.to_dict())
    observe_feed_event(table, event_type)
    (feed or change_feed).publish(table, event)
    return event
