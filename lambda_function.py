"""AWS Lambda handler for recurring church event sync."""
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from scheduling.models import (
    EngineConfig,
    Event,
    NotFound,
    StoreUnavailable,
    ValidationFailed,
    document_to_event,
    event_to_document,
)
from scheduling.sync_engine import EventSyncEngine
from storage.document_store import (
    ChangeKind,
    DynamoDBDocumentStore,
    change_from_stream_record,
)

ADMIN_ACTIONS = (
    'add_event',
    'update_event',
    'delete_event',
    'get_event',
    'list_events',
    'sync',
)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    # Attributes every LogRecord carries; anything else came from ``extra``
    RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in self.RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_config() -> EngineConfig:
    """Build engine configuration from environment variables."""
    return EngineConfig(
        events_collection=os.environ.get('EVENTS_TABLE', 'events'),
        exclusions_collection=os.environ.get(
            'EXCLUSIONS_TABLE', 'event_exclusions'
        ),
        horizon=relativedelta(months=int(os.environ.get('HORIZON_MONTHS', '6'))),
        timezone=os.environ.get('TIMEZONE', 'UTC'),
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for recurring event sync.

    Handles three kinds of invocation:
    - EventBridge schedule (or empty payload): run a recurring event sync
    - DynamoDB Stream trigger: apply changes, re-sync when a template changed
    - Admin action payload: ``{"action": ..., "event": {...}}``

    Args:
        event: Invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    # Read configuration from environment variables
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '10'))
    region_name = os.environ.get('AWS_REGION')
    endpoint_url = os.environ.get('DYNAMODB_ENDPOINT_URL')

    # Initialize logging
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    event = event or {}

    if _is_stream_event(event):
        # Errors propagate so Lambda redelivers the batch
        try:
            store, engine = _build_engine(timeout_seconds, region_name, endpoint_url)
            return _handle_stream(engine, store, event, start_time)
        except Exception as e:
            logger.error(
                f"Stream batch failed, leaving it for retry: {str(e)}",
                extra={
                    'duration_seconds': _duration(start_time),
                    'error_type': type(e).__name__
                },
                exc_info=True
            )
            raise

    try:
        store, engine = _build_engine(timeout_seconds, region_name, endpoint_url)

        action = event.get('action', 'sync')
        if action not in ADMIN_ACTIONS:
            return _response(400, {
                'message': f"Unknown action: {action}",
                'duration_seconds': _duration(start_time)
            })
        if action == 'sync':
            return _handle_sync(engine, start_time)
        return _handle_action(engine, action, event, start_time)

    except ValidationFailed as e:
        logger.warning(f"Rejected invalid request: {e}")
        return _error_response(400, 'Invalid event', e, start_time)
    except NotFound as e:
        logger.warning(f"Event not found: {e}")
        return _error_response(404, 'Event not found', e, start_time)
    except StoreUnavailable as e:
        logger.error(
            f"Event store unavailable: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(503, 'Event store unavailable', e, start_time)
    except Exception as e:
        # Log error
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': _duration(start_time),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _error_response(500, 'Request failed', e, start_time)


def _build_engine(
    timeout_seconds: int,
    region_name: Optional[str],
    endpoint_url: Optional[str]
) -> Tuple[DynamoDBDocumentStore, EventSyncEngine]:
    """Load configuration and instantiate the store and engine."""
    logger = logging.getLogger(__name__)
    config = load_config()
    logger.info(
        "Lambda execution started",
        extra={
            'events_table': config.events_collection,
            'horizon': str(config.horizon),
            'timeout_seconds': timeout_seconds
        }
    )

    store = DynamoDBDocumentStore(
        region_name=region_name,
        endpoint_url=endpoint_url,
        timeout=timeout_seconds
    )
    return store, EventSyncEngine(store, config)


def _handle_sync(engine: EventSyncEngine, start_time: float) -> Dict[str, Any]:
    """Run a recurring event sync and report statistics."""
    logger = logging.getLogger(__name__)
    logger.info("Synchronizing recurring events")
    sync_result = engine.sync_recurring_events()
    duration = _duration(start_time)

    logger.info(
        "Lambda execution completed successfully",
        extra={
            'duration_seconds': duration,
            'templates': sync_result.templates,
            'instances_created': sync_result.created,
            'instances_deleted': sync_result.deleted,
            'errors': sync_result.errors
        }
    )

    return _response(200, {
        'message': 'Sync completed successfully',
        'statistics': {
            'templates': sync_result.templates,
            'instances_created': sync_result.created,
            'instances_deleted': sync_result.deleted,
            'duration_seconds': duration
        },
        'errors': sync_result.errors
    })


def _handle_action(
    engine: EventSyncEngine,
    action: str,
    event: Dict[str, Any],
    start_time: float
) -> Dict[str, Any]:
    """Dispatch an admin CRUD action."""
    logger = logging.getLogger(__name__)
    logger.info(f"Handling admin action {action}")

    if action == 'list_events':
        events = engine.fetch_events()
        if event.get('include_templates'):
            events = engine.list_events(include_templates=True)
        return _response(200, {
            'message': 'Events listed',
            'events': [_event_payload(e) for e in events],
            'duration_seconds': _duration(start_time)
        })

    if action == 'get_event':
        found = engine.get_event(_require_event_id(event))
        return _response(200, {
            'message': 'Event found',
            'event': _event_payload(found),
            'duration_seconds': _duration(start_time)
        })

    if action == 'delete_event':
        if 'event' in event:
            target = _parse_event(event['event'])
        else:
            target = engine.get_event(_require_event_id(event))
        engine.delete_event(target)
        return _response(200, {
            'message': 'Event deleted',
            'event_id': target.id,
            'duration_seconds': _duration(start_time)
        })

    payload = event.get('event')
    if not isinstance(payload, dict):
        raise ValidationFailed("Request is missing the 'event' object")
    incoming = _parse_event(payload)

    if action == 'add_event':
        saved = engine.add_event(incoming)
        status, message = 201, 'Event added'
    else:
        saved = engine.update_event(incoming)
        status, message = 200, 'Event updated'

    sync_result = engine.last_sync_result if saved.is_template else None
    return _response(status, {
        'message': message,
        'event': _event_payload(saved),
        'sync_errors': sync_result.errors if sync_result else [],
        'duration_seconds': _duration(start_time)
    })


def _handle_stream(
    engine: EventSyncEngine,
    store: DynamoDBDocumentStore,
    event: Dict[str, Any],
    start_time: float
) -> Dict[str, Any]:
    """
    Process a DynamoDB Stream batch for the events table.

    Inserted or modified templates trigger a sync. Templates removed
    outside the engine get their instances removed too.
    """
    logger = logging.getLogger(__name__)
    table_marker = f":table/{store.table_name(engine.events_collection)}/"

    template_changed = False
    removed_templates: List[str] = []
    applied = 0

    for record in event.get('Records', []):
        if table_marker not in record.get('eventSourceARN', table_marker):
            continue
        change = change_from_stream_record(record)
        if change is None:
            continue
        engine.apply_change(change)
        applied += 1

        if not _is_template_document(change.document):
            continue
        if change.kind == ChangeKind.REMOVED:
            removed_templates.append(change.document['id'])
        else:
            template_changed = True

    for template_id in removed_templates:
        removed = engine.delete_series(template_id)
        logger.info(f"Removed {removed} instances of deleted template {template_id}")

    errors = []
    if template_changed:
        errors = engine.sync_recurring_events().errors

    logger.info(
        f"Processed {applied} stream records",
        extra={
            'template_changed': template_changed,
            'removed_templates': len(removed_templates)
        }
    )
    return _response(200, {
        'message': 'Stream records processed',
        'records_applied': applied,
        'synced': template_changed,
        'errors': errors,
        'duration_seconds': _duration(start_time)
    })


def _is_stream_event(event: Dict[str, Any]) -> bool:
    records = event.get('Records')
    return bool(records) and all(
        record.get('eventSource') == 'aws:dynamodb' for record in records
    )


def _is_template_document(doc: dict) -> bool:
    # REMOVE records without an old image carry only the key
    if 'recurrence_type' not in doc:
        return False
    try:
        return document_to_event(doc).is_template
    except (KeyError, TypeError, ValueError):
        return False


def _parse_event(payload: dict) -> Event:
    try:
        return document_to_event({'id': '', **payload})
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationFailed(f"Malformed event payload: {e}") from e


def _require_event_id(event: Dict[str, Any]) -> str:
    event_id = event.get('event_id')
    if not event_id:
        raise ValidationFailed("Request is missing 'event_id'")
    return event_id


def _event_payload(event: Event) -> dict:
    payload = event_to_document(event)
    payload['id'] = event.id
    return payload


def _duration(start_time: float) -> float:
    return round(time.time() - start_time, 2)


def _response(status_code: int, body: dict) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'body': json.dumps(body)
    }


def _error_response(
    status_code: int,
    message: str,
    error: Exception,
    start_time: float
) -> Dict[str, Any]:
    return _response(status_code, {
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__,
        'duration_seconds': _duration(start_time)
    })
