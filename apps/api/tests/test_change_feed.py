from __future__ import annotations

import threading
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from stageflow import events
from stageflow.core.auth import AuthUser, get_current_user as auth_get_current_user, issue_token
from stageflow.core.config import get_settings
from stageflow.core.events import ChangeEvent, ChangeFeed, change_feed
from stageflow.main import app


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()
    app.dependency_overrides.clear()


def test_subscribers_see_channel_events_in_publish_order() -> None:
    feed = ChangeFeed()
    seen: list[tuple[str, str]] = []
    feed.subscribe("quotes", lambda event: seen.append((event.event_type, event.record["id"])))

    for index in range(5):
        events.publish_change("quotes", "update", {"id": f"q{index}"}, feed=feed)
    events.publish_change("projects", "update", {"id": "p1"}, feed=feed)

    assert seen == [("update", f"q{index}") for index in range(5)]


def test_concurrent_publishers_keep_per_channel_delivery_serial() -> None:
    feed = ChangeFeed()
    inside = threading.Event()
    overlaps: list[str] = []
    delivered: list[str] = []

    def handler(event: ChangeEvent) -> None:
        if inside.is_set():
            overlaps.append(event.record["id"])
        inside.set()
        delivered.append(event.record["id"])
        inside.clear()

    feed.subscribe("projects", handler)
    threads = [
        threading.Thread(target=events.publish_change, args=("projects", "update", {"id": f"p{index}"}), kwargs={"feed": feed})
        for index in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(delivered) == sorted(f"p{index}" for index in range(20))
    assert overlaps == []


def test_unsubscribe_stops_delivery() -> None:
    feed = ChangeFeed()
    seen: list[ChangeEvent] = []
    subscription = feed.subscribe("history", seen.append)

    events.publish_change("history", "insert", {"id": "h1"}, feed=feed)
    subscription.unsubscribe()
    subscription.unsubscribe()
    events.publish_change("history", "insert", {"id": "h2"}, feed=feed)

    assert [event.record["id"] for event in seen] == ["h1"]
    assert feed.subscriber_count("history") == 0


def test_failing_subscriber_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    feed = ChangeFeed()
    seen: list[ChangeEvent] = []

    def broken(event: ChangeEvent) -> None:
        raise RuntimeError("listener crashed")

    feed.subscribe("stage_history", broken)
    feed.subscribe("stage_history", seen.append)

    delivered = feed.publish("stage_history", ChangeEvent(table="stage_history", event_type="insert", record={"id": "s1"}))

    assert delivered == 1
    assert len(seen) == 1
    assert any(record.getMessage() == "change_feed.subscriber_failed" for record in caplog.records)


def test_published_events_capture_envelope() -> None:
    event = events.publish_change("projects", "delete", {"id": "p9"}, feed=ChangeFeed())

    assert events.published_events == [event.to_dict()]
    restored = ChangeEvent.from_dict(events.published_events[0])
    assert restored.event_id == event.event_id
    assert restored.record == {"id": "p9"}


def _auth_as(roles: list[str]) -> None:
    def override_auth_user() -> AuthUser:
        return AuthUser(sub="viewer-1", roles=roles)

    app.dependency_overrides[auth_get_current_user] = override_auth_user


def test_websocket_relays_requested_tables() -> None:
    _auth_as(["pipeline.projects.read"])
    with TestClient(app) as client:
        with client.websocket_connect("/api/pipeline/ws/changes?tables=projects,quotes") as websocket:
            assert websocket.receive_json() == {"type": "subscribed", "tables": ["projects", "quotes"]}

            events.publish_change("history", "insert", {"id": "ignored"})
            events.publish_change("projects", "update", {"id": "p1", "status": "accepte"})
            events.publish_change("quotes", "insert", {"id": "q1"})

            first = websocket.receive_json()
            second = websocket.receive_json()

        assert (first["table"], first["event_type"], first["record"]["id"]) == ("projects", "update", "p1")
        assert (second["table"], second["record"]["id"]) == ("quotes", "q1")
        assert change_feed.subscriber_count("projects") == 0


def test_websocket_accepts_query_token() -> None:
    token = issue_token("viewer-2", ["pipeline.projects.read"])
    with TestClient(app) as client:
        with client.websocket_connect(f"/api/pipeline/ws/changes?tables=history&access_token={token}") as websocket:
            assert websocket.receive_json()["tables"] == ["history"]


def test_websocket_rejects_missing_permission() -> None:
    _auth_as(["guest"])
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/pipeline/ws/changes") as websocket:
                websocket.receive_json()

    assert exc_info.value.code == 1008


def test_websocket_rejects_unknown_table() -> None:
    _auth_as(["pipeline.projects.read"])
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/pipeline/ws/changes?tables=invoices") as websocket:
                websocket.receive_json()

    assert exc_info.value.code == 1008
