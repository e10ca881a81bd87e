"""Client-side reconciliation of pipeline state.

A :class:`ReconciliationStore` holds one :class:`ProjectView` per project and
keeps it consistent with the server from two directions: optimistic local
writes (applied immediately, then confirmed or rolled back by the remote
writer) and change-feed events (merged last-write-wins by ``updated_at``,
idempotent by record id). Both go through one mailbox that is drained
serially, so a merge never observes a half-applied local write.

Conflict policy is plain last-write-wins on timestamps. It suits small teams
with little write contention and does not merge concurrent field edits.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from stageflow.client.cache import InMemoryCache, LocalCache
from stageflow.client.gateway import RemoteWriter, SnapshotFetcher
from stageflow.client.views import EntityState, ProjectView, QuoteView, parse_timestamp
from stageflow.core.events import ChangeEvent, ChangeFeed, Subscription, change_feed
from stageflow.events import HISTORY_TABLE, PROJECTS_TABLE, QUOTES_TABLE, STAGE_HISTORY_TABLE
from stageflow.pipeline.derivation import evaluate_transition
from stageflow.pipeline.statuses import ProjectStatus, QuoteStatus


logger = logging.getLogger("stageflow.client.store")

Listener = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Message:
    kind: str
    payload: Any = None
    future: Future = field(default_factory=Future)


class ReconciliationStore:
    def __init__(
        self,
        *,
        fetcher: SnapshotFetcher,
        remote: RemoteWriter,
        cache: LocalCache | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.fetcher = fetcher
        self.remote = remote
        self.cache = cache or InMemoryCache()
        self.feed = feed or change_feed
        self.clock = clock
        self._projects: dict[str, ProjectView] = {}
        self._quote_index: dict[str, str] = {}
        self._timelines_loaded: set[str] = set()
        self._listeners: list[Listener] = []
        self._subscriptions: list[Subscription] = []
        self._mailbox: deque[_Message] = deque()
        self._mailbox_lock = threading.Lock()
        self._draining = False
        self._drain_thread: int | None = None
        self.connected = False

    # Lifecycle

    def start(self) -> None:
        """Warm from the local cache, subscribe to the feed, then fetch."""
        self._call("warm_start")
        self._subscribe()
        self._call("refresh")

    def close(self) -> None:
        self._unsubscribe()
        self._listeners.clear()

    def on_disconnect(self) -> None:
        self._unsubscribe()
        self._call("disconnect")

    def on_reconnect(self) -> None:
        self._subscribe()
        self._call("refresh")

    def refresh(self) -> None:
        self._call("refresh")

    def load_timeline(self, project_id: str) -> list[dict[str, Any]]:
        return self._call("load_timeline", str(project_id))

    # Reads

    def get(self, project_id: str) -> ProjectView | None:
        view = self._projects.get(str(project_id))
        return view.copy() if view is not None else None

    def projects(self) -> list[ProjectView]:
        return [view.copy() for view in self._projects.values()]

    def state_of(self, project_id: str) -> EntityState:
        view = self._projects.get(str(project_id))
        return view.state if view is not None else EntityState.UNLOADED

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # Local mutations

    def accept_quote(self, quote_id: str) -> ProjectView:
        return self._call("local_write", (str(quote_id), {"status": QuoteStatus.ACCEPTED.value}))

    def refuse_quote(self, quote_id: str) -> ProjectView:
        return self._call("local_write", (str(quote_id), {"status": QuoteStatus.REFUSED.value}))

    def set_invoice_settled(self, quote_id: str, settled: bool = True) -> ProjectView:
        return self._call("local_write", (str(quote_id), {"invoice_settled": settled}))

    # Feed input

    def handle_event(self, event: ChangeEvent | dict[str, Any]) -> None:
        if isinstance(event, dict):
            event = ChangeEvent.from_dict(event)
        self._submit(_Message("event", event))

    # Mailbox

    def _call(self, kind: str, payload: Any = None) -> Any:
        if self._drain_thread == threading.get_ident():
            raise RuntimeError("store actions cannot be issued from a store listener")
        message = self._submit(_Message(kind, payload))
        return message.future.result()

    def _submit(self, message: _Message) -> _Message:
        with self._mailbox_lock:
            self._mailbox.append(message)
            if self._draining:
                return message
            self._draining = True
            self._drain_thread = threading.get_ident()
        self._drain()
        return message

    def _drain(self) -> None:
        while True:
            with self._mailbox_lock:
                if not self._mailbox:
                    self._draining = False
                    self._drain_thread = None
                    return
                message = self._mailbox.popleft()
            try:
                message.future.set_result(self._process(message))
            except Exception as exc:
                if message.kind == "event":
                    logger.exception(
                        "client_store.merge_failed",
                        extra={"table": message.payload.table, "error": str(exc)[:500]},
                    )
                message.future.set_exception(exc)

    def _process(self, message: _Message) -> Any:
        if message.kind == "event":
            return self._merge_event(message.payload)
        if message.kind == "local_write":
            quote_id, changes = message.payload
            return self._apply_local_write(quote_id, changes)
        if message.kind == "refresh":
            return self._refresh()
        if message.kind == "warm_start":
            return self._warm_start()
        if message.kind == "disconnect":
            return self._mark_stale()
        if message.kind == "load_timeline":
            return self._load_timeline(message.payload)
        raise ValueError(f"unknown store message: {message.kind}")

    # Handlers, always run on the draining thread

    def _warm_start(self) -> int:
        for record in self.cache.load_snapshot():
            view = ProjectView.from_record(record, state=EntityState.STALE)
            self._put(view)
        for project_id in list(self._projects):
            self._notify(project_id)
        return len(self._projects)

    def _refresh(self) -> int:
        records = self.fetcher.fetch_projects()
        fetched: dict[str, ProjectView] = {}
        for record in records:
            view = ProjectView.from_record(record, state=EntityState.LOADED)
            existing = self._projects.get(view.id)
            if existing is not None:
                view.history = existing.history
            fetched[view.id] = view

        removed = set(self._projects) - set(fetched)
        self._projects = {}
        self._quote_index = {}
        for view in fetched.values():
            self._put(view)
        for project_id in list(self._timelines_loaded):
            if project_id in self._projects:
                self._load_timeline(project_id)
            else:
                self._timelines_loaded.discard(project_id)

        self.connected = True
        self._persist()
        for project_id in [*fetched, *removed]:
            self._notify(project_id)
        return len(fetched)

    def _load_timeline(self, project_id: str) -> list[dict[str, Any]]:
        view = self._projects.get(project_id)
        if view is None:
            raise KeyError(project_id)
        for entry in self.fetcher.fetch_timeline(project_id):
            view.history[str(entry["id"])] = dict(entry)
        self._timelines_loaded.add(project_id)
        return view.timeline()

    def _mark_stale(self) -> None:
        self.connected = False
        for view in self._projects.values():
            view.state = EntityState.STALE
        for project_id in list(self._projects):
            self._notify(project_id)

    def _apply_local_write(self, quote_id: str, changes: dict[str, Any]) -> ProjectView:
        project_id = self._quote_index.get(quote_id)
        view = self._projects.get(project_id) if project_id is not None else None
        if view is None:
            raise KeyError(quote_id)

        previous = view.copy()
        quote = view.quotes[quote_id]
        now = self.clock()
        if "status" in changes:
            quote.status = QuoteStatus(changes["status"])
        if "invoice_settled" in changes:
            quote.invoice_settled = bool(changes["invoice_settled"])
        quote.updated_at = now
        view.updated_at = now
        self._rederive(view, now)
        view.state = EntityState.LOCAL_ONLY
        self._persist()
        self._notify(view.id)

        view.state = EntityState.IN_FLIGHT
        try:
            ack = self.remote.update_quote(quote_id, changes)
        except Exception:
            self._projects[view.id] = previous
            self._persist()
            self._notify(view.id)
            logger.warning("client_store.write_rolled_back", extra={"project_id": view.id, "quote_id": quote_id})
            raise

        confirmed = QuoteView.from_record(ack)
        view.quotes[confirmed.id] = confirmed
        self._rederive(view, now)
        view.state = EntityState.CONFIRMED
        self._persist()
        self._notify(view.id)
        return view.copy()

    def _merge_event(self, event: ChangeEvent) -> bool:
        if event.table == QUOTES_TABLE:
            changed = self._merge_quote(event)
        elif event.table == PROJECTS_TABLE:
            changed = self._merge_project(event)
        elif event.table == STAGE_HISTORY_TABLE:
            changed = self._merge_stage_interval(event)
        elif event.table == HISTORY_TABLE:
            changed = self._merge_history(event)
        else:
            changed = False
        if changed:
            self._persist()
        return changed

    def _merge_quote(self, event: ChangeEvent) -> bool:
        incoming = QuoteView.from_record(event.record)
        view = self._projects.get(incoming.project_id)
        if view is None:
            return False

        if event.event_type == "delete":
            if view.quotes.pop(incoming.id, None) is None:
                return False
            self._quote_index.pop(incoming.id, None)
        else:
            existing = view.quotes.get(incoming.id)
            if existing is not None and incoming.updated_at < existing.updated_at:
                return False
            if existing is not None and existing.to_record() == incoming.to_record():
                return False
            view.quotes[incoming.id] = incoming
            self._quote_index[incoming.id] = view.id

        self._rederive(view, incoming.updated_at)
        self._mark_live(view)
        self._notify(view.id)
        return True

    def _merge_project(self, event: ChangeEvent) -> bool:
        project_id = str(event.record["id"])
        if event.event_type == "delete":
            view = self._projects.pop(project_id, None)
            if view is None:
                return False
            for quote_id in view.quotes:
                self._quote_index.pop(quote_id, None)
            self._notify(project_id)
            return True

        incoming = ProjectView.from_record(event.record, state=EntityState.LOADED)
        view = self._projects.get(project_id)
        if view is None:
            self._put(incoming)
            self._notify(project_id)
            return True
        if incoming.updated_at < view.updated_at:
            return False

        view.name = incoming.name
        view.status = incoming.status
        view.status_changed_at = incoming.status_changed_at
        view.updated_at = incoming.updated_at
        view.assigned_user_id = incoming.assigned_user_id
        view.row_version = incoming.row_version
        self._mark_live(view)
        self._notify(project_id)
        return True

    def _merge_stage_interval(self, event: ChangeEvent) -> bool:
        record = event.record
        view = self._projects.get(str(record.get("project_id")))
        if view is None or event.event_type == "delete" or record.get("ended_at") is not None:
            return False

        started_at = parse_timestamp(record.get("started_at"))
        if started_at is None or started_at < view.status_changed_at:
            return False
        stage = ProjectStatus(record["stage_name"])
        if stage is view.status and started_at == view.status_changed_at:
            return False

        view.status = stage
        view.status_changed_at = started_at
        self._mark_live(view)
        self._notify(view.id)
        return True

    def _merge_history(self, event: ChangeEvent) -> bool:
        record = event.record
        view = self._projects.get(str(record.get("project_id")))
        if view is None:
            return False
        entry_id = str(record["id"])
        if event.event_type == "delete":
            return view.history.pop(entry_id, None) is not None
        if entry_id in view.history:
            return False
        view.history[entry_id] = dict(record)
        self._notify(view.id)
        return True

    # Helpers

    def _rederive(self, view: ProjectView, at: datetime) -> None:
        decision = evaluate_transition(view.status, view.quotes.values())
        if decision.advanced and decision.new_status is not None:
            view.status = decision.new_status
            view.status_changed_at = max(at, view.status_changed_at)

    def _mark_live(self, view: ProjectView) -> None:
        if view.state is EntityState.STALE and self.connected:
            view.state = EntityState.LOADED

    def _put(self, view: ProjectView) -> None:
        self._projects[view.id] = view
        for quote_id in view.quotes:
            self._quote_index[quote_id] = view.id

    def _persist(self) -> None:
        try:
            self.cache.save_snapshot([view.to_record() for view in self._projects.values()])
        except OSError as exc:
            logger.warning("client_cache.save_failed", extra={"error": str(exc)[:500]})

    def _notify(self, project_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(project_id)
            except Exception as exc:
                logger.warning("client_store.listener_failed", extra={"project_id": project_id, "error": str(exc)[:500]})

    def _subscribe(self) -> None:
        if self._subscriptions:
            return
        for table in (PROJECTS_TABLE, QUOTES_TABLE, STAGE_HISTORY_TABLE, HISTORY_TABLE):
            self._subscriptions.append(self.feed.subscribe(table, self.handle_event))

    def _unsubscribe(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
