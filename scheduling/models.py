"""Data models for recurring event materialization."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from dateutil.relativedelta import relativedelta


class EventSyncError(Exception):
    """Base exception for event sync errors."""
    pass


class ValidationFailed(EventSyncError):
    """Event rejected before any store call."""
    pass


class StoreError(EventSyncError):
    """Document store operation failed."""
    pass


class StoreUnavailable(StoreError):
    """Store backend unreachable, throttled or timed out."""
    pass


class NotFound(StoreError):
    """Document does not exist."""
    pass


class DuplicateDocument(StoreError):
    """Conditional create found an existing document with the same id."""
    pass


class RecurrenceType(str, Enum):
    """Closed set of recurrence rules."""
    NONE = 'none'
    WEEKLY = 'weekly'
    BIWEEKLY = 'biweekly'
    MONTHLY = 'monthly'
    FIRST_TUESDAY_OF_MONTH = 'first_tuesday_of_month'

    @classmethod
    def parse(cls, value) -> 'RecurrenceType':
        """
        Decode a stored rule value.

        Unknown or missing values decode to NONE. Legacy values written by
        older app releases are accepted.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.NONE
        legacy = _LEGACY_RECURRENCE_VALUES.get(value)
        if legacy is not None:
            return legacy
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.NONE


_LEGACY_RECURRENCE_VALUES = {
    '': RecurrenceType.NONE,
    'recurring': RecurrenceType.WEEKLY,
    'WEEKLY': RecurrenceType.WEEKLY,
    'BIWEEKLY': RecurrenceType.BIWEEKLY,
    'MONTHLY': RecurrenceType.MONTHLY,
    'FIRST_TUESDAY': RecurrenceType.FIRST_TUESDAY_OF_MONTH,
    'firstTuesdayOfMonth': RecurrenceType.FIRST_TUESDAY_OF_MONTH,
}


@dataclass
class Event:
    """Calendar event: a recurring template, a generated instance or a one-off."""
    title: str
    description: str
    location: str
    start_time: datetime
    end_time: datetime
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    id: str = ''
    parent_event_id: Optional[str] = None
    occurrence_time: Optional[datetime] = None
    location_url: Optional[str] = None
    image_url: Optional[str] = None
    registration_url: Optional[str] = None
    is_published: bool = True

    @property
    def is_template(self) -> bool:
        return (
            self.parent_event_id is None and
            self.recurrence_type != RecurrenceType.NONE
        )

    @property
    def is_instance(self) -> bool:
        return self.parent_event_id is not None

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def make_instance(self, occurrence: datetime, instance_id: str) -> 'Event':
        """
        Build the instance of this template scheduled at ``occurrence``.

        Args:
            occurrence: Scheduled start of the instance
            instance_id: Deterministic id of the slot

        Returns:
            Instance event copying this template's fields
        """
        return replace(
            self,
            id=instance_id,
            parent_event_id=self.id,
            occurrence_time=occurrence,
            start_time=occurrence,
            end_time=occurrence + self.duration,
            recurrence_type=RecurrenceType.NONE,
        )


@dataclass
class EngineConfig:
    """Configuration for the event sync engine."""
    events_collection: str = 'events'
    exclusions_collection: str = 'event_exclusions'
    horizon: Union[relativedelta, timedelta] = field(
        default_factory=lambda: relativedelta(months=6)
    )
    timezone: str = 'UTC'


@dataclass
class SyncResult:
    """Result of a recurring event sync pass."""
    templates: int = 0
    created: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as a sortable UTC ISO-8601 string."""
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp into an aware UTC datetime."""
    # fromisoformat only accepts the 'Z' suffix from Python 3.11
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def event_to_document(event: Event) -> dict:
    """
    Convert Event object to a store document.

    Args:
        event: Event object

    Returns:
        Document dictionary (id excluded, None fields omitted)
    """
    doc = {
        'title': event.title,
        'description': event.description,
        'location': event.location,
        'start_time': format_timestamp(event.start_time),
        'end_time': format_timestamp(event.end_time),
        'recurrence_type': RecurrenceType.parse(event.recurrence_type).value,
        'is_published': event.is_published,
    }

    # Add optional fields if present
    if event.parent_event_id:
        doc['parent_event_id'] = event.parent_event_id
    if event.occurrence_time:
        doc['occurrence_time'] = format_timestamp(event.occurrence_time)
    if event.location_url:
        doc['location_url'] = event.location_url
    if event.image_url:
        doc['image_url'] = event.image_url
    if event.registration_url:
        doc['registration_url'] = event.registration_url

    return doc


def document_to_event(doc: dict) -> Event:
    """
    Convert a store document to an Event object.

    Args:
        doc: Document dictionary including its ``id``

    Returns:
        Event object

    Raises:
        KeyError, ValueError: If required fields are missing or malformed
    """
    occurrence_time = doc.get('occurrence_time')
    return Event(
        id=doc['id'],
        title=doc['title'],
        description=doc.get('description', ''),
        location=doc.get('location', ''),
        start_time=parse_timestamp(doc['start_time']),
        end_time=parse_timestamp(doc['end_time']),
        recurrence_type=RecurrenceType.parse(doc.get('recurrence_type')),
        parent_event_id=doc.get('parent_event_id') or None,
        occurrence_time=(
            parse_timestamp(occurrence_time) if occurrence_time else None
        ),
        location_url=doc.get('location_url'),
        image_url=doc.get('image_url'),
        registration_url=doc.get('registration_url'),
        is_published=bool(doc.get('is_published', True)),
    )
