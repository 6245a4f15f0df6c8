"""Event sync engine for CRUD and recurring series materialization."""
import hashlib
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set
from zoneinfo import ZoneInfo

from boto3.dynamodb.conditions import Attr

from scheduling.event_cache import EventCache
from scheduling.models import (
    DuplicateDocument,
    EngineConfig,
    Event,
    NotFound,
    RecurrenceType,
    StoreError,
    StoreUnavailable,
    SyncResult,
    ValidationFailed,
    document_to_event,
    event_to_document,
    format_timestamp,
    parse_timestamp,
)
from scheduling.recurrence import RecurrenceCalculator
from storage.document_store import Change, ChangeKind

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_instance_id(parent_event_id: str, occurrence: datetime) -> str:
    """
    Generate the deterministic id of a template's occurrence slot.

    Args:
        parent_event_id: Template id
        occurrence: Scheduled start of the slot

    Returns:
        SHA256 hex digest of parent id + UTC occurrence time
    """
    composite = f"{parent_event_id}|{format_timestamp(occurrence)}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


class EventSyncEngine:
    """
    Owns event CRUD and the materialized instances of recurring templates.

    Templates are expanded into concrete instances covering
    ``[now, now + horizon)``. Syncing is idempotent: every occurrence slot has
    a deterministic id and is written with a create-if-absent condition, so
    repeated or concurrent syncs never create the same slot twice.
    """

    LISTENER_RETRY_SECONDS = 5.0

    def __init__(
        self,
        store,
        config: Optional[EngineConfig] = None,
        calculator: Optional[RecurrenceCalculator] = None,
        cache: Optional[EventCache] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the engine.

        Args:
            store: Document store collaborator
            config: Collections, horizon and timezone
            calculator: Recurrence calculator
            cache: Local event cache
            clock: Callable returning the current aware datetime
        """
        self.store = store
        self.config = config or EngineConfig()
        self.calculator = calculator or RecurrenceCalculator()
        self.cache = cache if cache is not None else EventCache()
        self.clock = clock or _utc_now
        self.tz = ZoneInfo(self.config.timezone)
        self.last_sync_result: Optional[SyncResult] = None
        self._listener_thread: Optional[threading.Thread] = None
        self._listener_stop = threading.Event()

    @property
    def events_collection(self) -> str:
        return self.config.events_collection

    @property
    def exclusions_collection(self) -> str:
        return self.config.exclusions_collection

    def _now(self) -> datetime:
        return self.clock().astimezone(self.tz)

    # ------------------------------------------------------------------ #
    # CRUD                                                                 #
    # ------------------------------------------------------------------ #

    def add_event(self, event: Event) -> Event:
        """
        Persist a new template or one-off event.

        A start time in the past is moved to now, keeping the duration.
        Adding a template triggers a sync.

        Args:
            event: Event without an id

        Returns:
            The persisted event carrying its new id

        Raises:
            ValidationFailed: If the event is invalid or already persisted
            StoreError: If the write fails
        """
        if event.id:
            raise ValidationFailed(
                f"Event already has id {event.id}, use update_event"
            )
        if event.parent_event_id:
            raise ValidationFailed(
                "Instances are created by the sync engine, not add_event"
            )
        event = self._validate(event)

        now = self._now()
        if event.start_time < now:
            logger.info(
                f"Start time {event.start_time.isoformat()} of '{event.title}' "
                f"is in the past, moving it to {now.isoformat()}"
            )
            event = replace(event, start_time=now, end_time=now + event.duration)

        event_id = self.store.create(
            self.events_collection, event_to_document(event)
        )
        saved = replace(event, id=event_id)
        self.cache.put(saved)
        logger.info(f"Added event {event_id} '{saved.title}'")

        if saved.is_template:
            self._sync_after_write()
        return saved

    def update_event(self, event: Event) -> Event:
        """
        Overwrite a stored event wholesale.

        Updating a template triggers a sync. Instances that already exist
        are left as they are; only future expansion follows the new schedule.

        Raises:
            ValidationFailed: If the event is invalid or has no id
            NotFound: If no event with this id exists
            StoreError: If the write fails
        """
        if not event.id:
            raise ValidationFailed("Event has no id, use add_event")
        event = self._validate(event)

        self.store.set(
            self.events_collection,
            event.id,
            event_to_document(event),
            must_exist=True
        )
        self.cache.put(event)
        logger.info(f"Updated event {event.id} '{event.title}'")

        if event.is_template:
            self._sync_after_write()
        return event

    def delete_event(self, event: Event) -> None:
        """
        Delete an event.

        Deleting an instance removes only that instance and records its slot
        as excluded so later syncs skip it. Deleting anything else first
        removes every instance and exclusion pointing at it, then the event.

        Raises:
            ValidationFailed: If the event has no id
            NotFound: If no event with this id exists
            StoreError: If a delete fails
        """
        if not event.id:
            raise ValidationFailed("Event has no id")

        if event.is_instance:
            self.store.delete(self.events_collection, event.id)
            self.cache.remove(event.id)
            self._exclude_occurrence(event)
            logger.info(
                f"Deleted instance {event.id} of template {event.parent_event_id}"
            )
            return

        # Instances first; the template must outlive a failed cascade
        removed = self.delete_series(event.id)
        self.store.delete(self.events_collection, event.id)
        self.cache.remove(event.id)
        logger.info(f"Deleted event {event.id} and {removed} instances")

    def get_event(self, event_id: str) -> Event:
        """
        Return an event, from the cache when possible.

        Raises:
            NotFound: If the event does not exist
            StoreUnavailable: If the store is down and nothing is cached
        """
        cached = self.cache.get(event_id)
        if cached is not None:
            return cached

        doc = self.store.get(self.events_collection, event_id)
        if doc is None:
            raise NotFound(f"Event {event_id} not found")

        event = document_to_event(doc)
        self.cache.put(event)
        return event

    def list_events(self, include_templates: bool = False) -> List[Event]:
        """Return cached events sorted by start time, templates hidden by default."""
        return [
            event for event in self.cache.events()
            if include_templates or not event.is_template
        ]

    def list_templates(self) -> List[Event]:
        return [event for event in self.cache.events() if event.is_template]

    def fetch_events(self) -> List[Event]:
        """
        Refresh the cache from the store and return the listed events.

        When the store is unavailable, cached events are returned instead.

        Raises:
            StoreUnavailable: If the store is down and the cache is empty
        """
        try:
            docs = self.store.query(self.events_collection, order_by='start_time')
        except StoreUnavailable as e:
            if len(self.cache) == 0:
                raise
            self.cache.offline = True
            logger.warning(
                f"Store unavailable, serving {len(self.cache)} cached events: {e}"
            )
            return self.list_events()

        events = self._documents_to_events(docs)
        self.cache.replace_all(events)
        self.cache.offline = False
        logger.info(f"Fetched {len(events)} events from store")
        return self.list_events()

    # ------------------------------------------------------------------ #
    # Recurring series                                                     #
    # ------------------------------------------------------------------ #

    def sync_recurring_events(self) -> SyncResult:
        """
        Materialize every template's instances over the forward horizon.

        Past instances are retired, missing instances are created. A store
        failure on one template is recorded and the remaining templates
        still run.

        Returns:
            SyncResult with counts of templates, created and deleted
            instances, and error messages
        """
        now = self._now()
        horizon_end = now + self.config.horizon
        result = SyncResult()
        logger.info(
            f"Starting recurring event sync for horizon "
            f"{now.isoformat()} to {horizon_end.isoformat()}"
        )

        try:
            templates = self._fetch_templates()
        except StoreError as e:
            error_msg = f"Error fetching recurring templates: {e}"
            logger.error(error_msg)
            result.errors.append(error_msg)
            self.last_sync_result = result
            return result

        result.templates = len(templates)
        for template in templates:
            try:
                self._sync_template(template, now, horizon_end, result)
            except (StoreError, KeyError, TypeError, ValueError) as e:
                error_msg = f"Error syncing template {template.id}: {e}"
                logger.error(error_msg)
                result.errors.append(error_msg)

        logger.info(
            f"Sync complete: {result.templates} templates, "
            f"{result.created} instances created, "
            f"{result.deleted} instances deleted, "
            f"{len(result.errors)} errors"
        )
        self.last_sync_result = result
        return result

    def _sync_after_write(self) -> None:
        result = self.sync_recurring_events()
        if result.errors:
            logger.warning(
                f"Recurring event sync finished with {len(result.errors)} errors; "
                f"the next sync will complete the series"
            )

    def _fetch_templates(self) -> List[Event]:
        docs = self.store.query(
            self.events_collection,
            Attr('parent_event_id').not_exists() &
            Attr('recurrence_type').ne(RecurrenceType.NONE.value)
        )
        return [
            event for event in self._documents_to_events(docs)
            if event.is_template
        ]

    def _sync_template(
        self,
        template: Event,
        now: datetime,
        horizon_end: datetime,
        result: SyncResult
    ) -> None:
        """Retire past instances of one template and create missing ones."""
        instance_docs = self.store.query(
            self.events_collection,
            Attr('parent_event_id').eq(template.id)
        )

        existing_ids = set()
        for instance in self._documents_to_events(instance_docs):
            if instance.start_time < now:
                self._retire_instance(instance, now)
                result.deleted += 1
            else:
                existing_ids.add(instance.id)

        excluded_ids = self._active_exclusions(template.id, now)

        start = template.start_time.astimezone(self.tz)
        for occurrence in self.calculator.occurrences(
            start, template.recurrence_type, now, horizon_end
        ):
            instance_id = generate_instance_id(template.id, occurrence)
            if instance_id in existing_ids or instance_id in excluded_ids:
                continue

            instance = template.make_instance(occurrence, instance_id)
            try:
                self.store.create(
                    self.events_collection,
                    event_to_document(instance),
                    doc_id=instance_id
                )
            except DuplicateDocument:
                # Another sync created this slot first
                logger.debug(f"Instance {instance_id} already exists")
                continue

            self.cache.put(instance)
            existing_ids.add(instance_id)
            result.created += 1

        logger.debug(
            f"Template {template.id}: {len(existing_ids)} live instances"
        )

    def _retire_instance(self, instance: Event, now: datetime) -> None:
        self.store.delete(self.events_collection, instance.id, must_exist=False)
        self.cache.remove(instance.id)
        # Moved into the past ahead of its slot; keep the slot from coming back
        if instance.occurrence_time and instance.occurrence_time >= now:
            self._exclude_occurrence(instance)

    def _exclude_occurrence(self, instance: Event) -> None:
        occurrence = instance.occurrence_time or instance.start_time
        slot_id = generate_instance_id(instance.parent_event_id, occurrence)
        self.store.set(
            self.exclusions_collection,
            slot_id,
            {
                'parent_event_id': instance.parent_event_id,
                'occurrence_time': format_timestamp(occurrence),
            }
        )
        logger.debug(f"Excluded slot {slot_id} of {instance.parent_event_id}")

    def _active_exclusions(self, template_id: str, now: datetime) -> Set[str]:
        """Return excluded slot ids still in the future, pruning past ones."""
        docs = self.store.query(
            self.exclusions_collection,
            Attr('parent_event_id').eq(template_id)
        )
        active = set()
        for doc in docs:
            try:
                occurrence = parse_timestamp(doc['occurrence_time'])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    f"Skipping malformed exclusion {doc.get('id')} "
                    f"of template {template_id}: {e}"
                )
                continue
            if occurrence < now:
                self.store.delete(
                    self.exclusions_collection, doc['id'], must_exist=False
                )
            else:
                active.add(doc['id'])
        return active

    def delete_series(self, template_id: str) -> int:
        instance_docs = self.store.query(
            self.events_collection,
            Attr('parent_event_id').eq(template_id)
        )
        for doc in instance_docs:
            self.store.delete(self.events_collection, doc['id'], must_exist=False)
            self.cache.remove(doc['id'])

        exclusion_docs = self.store.query(
            self.exclusions_collection,
            Attr('parent_event_id').eq(template_id)
        )
        for doc in exclusion_docs:
            self.store.delete(
                self.exclusions_collection, doc['id'], must_exist=False
            )
        return len(instance_docs)

    # ------------------------------------------------------------------ #
    # Change stream                                                        #
    # ------------------------------------------------------------------ #

    def apply_change(self, change: Change) -> None:
        """Apply one change notification to the cache."""
        doc_id = change.document.get('id')
        if not doc_id:
            logger.warning("Change notification without document id, skipping")
            return

        if change.kind == ChangeKind.REMOVED:
            self.cache.remove(doc_id)
            return

        event = self._document_to_event(change.document)
        if event is not None:
            self.cache.put(event)

    def start_listener(self, poll_interval: Optional[float] = None) -> None:
        """Start feeding the cache from the store's change stream."""
        if self._listener_thread and self._listener_thread.is_alive():
            return
        self._listener_stop.clear()
        self._listener_thread = threading.Thread(
            target=self._listen,
            args=(poll_interval,),
            name='event-change-listener',
            daemon=True
        )
        self._listener_thread.start()
        logger.info("Started event change listener")

    def stop_listener(self, timeout: float = 5.0) -> None:
        self._listener_stop.set()
        if self._listener_thread:
            self._listener_thread.join(timeout)
            self._listener_thread = None
        logger.info("Stopped event change listener")

    def _listen(self, poll_interval: Optional[float]) -> None:
        while not self._listener_stop.is_set():
            if self.cache.offline:
                # Changes were missed while disconnected
                try:
                    self.fetch_events()
                except StoreUnavailable as e:
                    logger.warning(f"Store still unavailable: {e}")
                if self.cache.offline:
                    self._listener_stop.wait(self.LISTENER_RETRY_SECONDS)
                    continue

            try:
                for change in self.store.subscribe(
                    self.events_collection,
                    order_by='start_time',
                    stop_event=self._listener_stop,
                    poll_interval=poll_interval
                ):
                    self.apply_change(change)
            except StoreUnavailable as e:
                self.cache.offline = True
                logger.warning(
                    f"Change stream unavailable, serving cached events: {e}"
                )
                self._listener_stop.wait(self.LISTENER_RETRY_SECONDS)
            except StoreError as e:
                logger.error(f"Change stream failed, listener stopping: {e}")
                return

    # ------------------------------------------------------------------ #
    # Helpers                                                              #
    # ------------------------------------------------------------------ #

    def _validate(self, event: Event) -> Event:
        """
        Check an event at the edit boundary.

        Naive datetimes are taken to be in the configured timezone.

        Returns:
            Event with aware datetimes

        Raises:
            ValidationFailed: If a required field is missing or end <= start
        """
        if not event.title or not event.title.strip():
            raise ValidationFailed("Event missing required field: title")
        if event.start_time is None or event.end_time is None:
            raise ValidationFailed(
                f"Event '{event.title}' missing start_time or end_time"
            )

        start_time = self._aware(event.start_time)
        end_time = self._aware(event.end_time)
        if end_time <= start_time:
            raise ValidationFailed(
                f"Event '{event.title}' ends at or before it starts"
            )

        return replace(
            event,
            start_time=start_time,
            end_time=end_time,
            recurrence_type=RecurrenceType.parse(event.recurrence_type),
            description=event.description or '',
            location=event.location or '',
        )

    def _aware(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value

    def _document_to_event(self, doc: dict) -> Optional[Event]:
        try:
            return document_to_event(doc)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"Failed to convert document {doc.get('id')} to Event: {e}"
            )
            return None

    def _documents_to_events(self, docs: List[dict]) -> List[Event]:
        events = []
        for doc in docs:
            event = self._document_to_event(doc)
            if event is not None:
                events.append(event)
        return events
