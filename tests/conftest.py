"""Shared pytest fixtures and event helpers."""
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

from scheduling.models import EngineConfig, Event, RecurrenceType
from scheduling.sync_engine import EventSyncEngine
from storage.document_store import DynamoDBDocumentStore

REGION = 'us-east-1'
EVENTS_TABLE = 'test-events'
EXCLUSIONS_TABLE = 'test-event-exclusions'

# Tuesday
FIRST_MEETING = datetime(2024, 1, 2, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable 'now' injected into the engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now = self.now + delta


def make_event(
    title: str = 'Prayer Meeting',
    start: datetime = FIRST_MEETING,
    duration: timedelta = timedelta(hours=1),
    recurrence: RecurrenceType = RecurrenceType.NONE,
    **kwargs
) -> Event:
    """Return an unsaved event; pass a recurrence to get a template."""
    return Event(
        title=title,
        description=f'{title} description',
        location='Fellowship Hall',
        start_time=start,
        end_time=start + duration,
        recurrence_type=recurrence,
        **kwargs
    )


def create_table(dynamodb, table_name: str):
    return dynamodb.create_table(
        TableName=table_name,
        KeySchema=[
            {'AttributeName': 'id', 'KeyType': 'HASH'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'id', 'AttributeType': 'S'}
        ],
        BillingMode='PAY_PER_REQUEST',
        StreamSpecification={
            'StreamEnabled': True,
            'StreamViewType': 'NEW_AND_OLD_IMAGES'
        }
    )


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', REGION)


@pytest.fixture
def dynamodb_tables(aws_credentials):
    """Create mock events and exclusions tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name=REGION)
        events_table = create_table(dynamodb, EVENTS_TABLE)
        exclusions_table = create_table(dynamodb, EXCLUSIONS_TABLE)
        yield events_table, exclusions_table


@pytest.fixture
def store(dynamodb_tables):
    """DynamoDBDocumentStore bound to the mock tables."""
    return DynamoDBDocumentStore(region_name=REGION)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def engine_config():
    """Two-week horizon keeps expected instance sets small."""
    return EngineConfig(
        events_collection=EVENTS_TABLE,
        exclusions_collection=EXCLUSIONS_TABLE,
        horizon=timedelta(weeks=2),
        timezone='UTC'
    )


@pytest.fixture
def engine(store, engine_config, clock):
    return EventSyncEngine(store, engine_config, clock=clock)
