"""DynamoDB document store for event collections."""
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

import boto3
from boto3.dynamodb.types import TypeDeserializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from scheduling.models import (
    DuplicateDocument,
    NotFound,
    StoreError,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

# Error codes that mean the backend is down or shedding load
UNAVAILABLE_ERROR_CODES = {
    'InternalServerError',
    'ServiceUnavailable',
    'ProvisionedThroughputExceededException',
    'RequestLimitExceeded',
    'ThrottlingException',
}


class ChangeKind(str, Enum):
    """Kind of change notification."""
    ADDED_OR_MODIFIED = 'added_or_modified'
    REMOVED = 'removed'


@dataclass
class Change:
    """Single change notification from a collection."""
    kind: ChangeKind
    document: dict


_deserializer = TypeDeserializer()


def change_from_stream_record(record: dict) -> Optional[Change]:
    """
    Convert a DynamoDB Stream record to a Change.

    Works for records returned by the Streams API and for records delivered
    to a Lambda stream trigger.

    Args:
        record: Stream record dictionary

    Returns:
        Change, or None if the record carries no usable image
    """
    event_name = record.get('eventName')
    data = record.get('dynamodb', {})

    if event_name == 'REMOVE':
        image = data.get('OldImage') or data.get('Keys')
        kind = ChangeKind.REMOVED
    elif event_name in ('INSERT', 'MODIFY'):
        image = data.get('NewImage')
        kind = ChangeKind.ADDED_OR_MODIFIED
    else:
        logger.warning(f"Ignoring stream record with eventName {event_name!r}")
        return None

    if not image:
        logger.warning(f"Stream record {event_name} has no image, skipping")
        return None

    document = {
        key: _deserializer.deserialize(value) for key, value in image.items()
    }
    return Change(kind=kind, document=document)


class DynamoDBDocumentStore:
    """Document store backed by one DynamoDB table per collection."""

    KEY_ATTRIBUTE = 'id'
    POLL_INTERVAL = 1.0

    def __init__(
        self,
        table_prefix: str = '',
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout: int = 10
    ):
        """
        Initialize DynamoDB resource.

        Args:
            table_prefix: Prefix prepended to collection names
            region_name: AWS region (boto3 default when None)
            endpoint_url: Override endpoint, e.g. DynamoDB Local
            timeout: Connect and read timeout in seconds
        """
        self.table_prefix = table_prefix
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self.config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={'max_attempts': 2}
        )
        self.dynamodb = boto3.resource(
            'dynamodb',
            region_name=region_name,
            endpoint_url=endpoint_url,
            config=self.config
        )
        self._tables = {}
        logger.info(
            f"Initialized DynamoDBDocumentStore with prefix: {table_prefix!r}"
        )

    def table_name(self, collection: str) -> str:
        return f"{self.table_prefix}{collection}"

    def _table(self, collection: str):
        if collection not in self._tables:
            self._tables[collection] = self.dynamodb.Table(
                self.table_name(collection)
            )
        return self._tables[collection]

    def create(
        self,
        collection: str,
        doc: dict,
        doc_id: Optional[str] = None
    ) -> str:
        """
        Create a document, assigning a fresh id unless one is given.

        Args:
            collection: Collection name
            doc: Document body (without id)
            doc_id: Explicit id; the write fails if it already exists

        Returns:
            Id of the created document

        Raises:
            DuplicateDocument: If doc_id is given and already present
            StoreUnavailable, StoreError: On backend failures
        """
        new_id = doc_id or uuid.uuid4().hex
        item = dict(doc)
        item[self.KEY_ATTRIBUTE] = new_id

        try:
            self._table(collection).put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(#id)',
                ExpressionAttributeNames={'#id': self.KEY_ATTRIBUTE}
            )
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise DuplicateDocument(
                    f"Document {new_id} already exists in {collection}"
                ) from e
            raise _translate_error(e, f"create in {collection}") from e
        except BotoCoreError as e:
            raise _translate_error(e, f"create in {collection}") from e

        logger.debug(f"Created document {new_id} in {collection}")
        return new_id

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        """
        Fetch a single document by id.

        Returns:
            Document dictionary or None if absent
        """
        try:
            response = self._table(collection).get_item(
                Key={self.KEY_ATTRIBUTE: doc_id}
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate_error(e, f"get from {collection}") from e
        return response.get('Item')

    def query(
        self,
        collection: str,
        condition=None,
        order_by: Optional[str] = None
    ) -> List[dict]:
        """
        Retrieve documents matching a filter using a Scan operation.

        Args:
            collection: Collection name
            condition: boto3.dynamodb.conditions expression, or None for all
            order_by: Attribute to sort ascending by; documents missing it
                sort last

        Returns:
            List of document dictionaries
        """
        scan_kwargs = {}
        if condition is not None:
            scan_kwargs['FilterExpression'] = condition

        table = self._table(collection)
        try:
            response = table.scan(**scan_kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **scan_kwargs
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            raise _translate_error(e, f"query {collection}") from e

        if order_by:
            items.sort(key=lambda item: (order_by not in item, item.get(order_by, '')))

        logger.debug(f"Query on {collection} returned {len(items)} documents")
        return items

    def set(
        self,
        collection: str,
        doc_id: str,
        doc: dict,
        must_exist: bool = False
    ) -> None:
        """
        Overwrite a document wholesale.

        Raises:
            NotFound: If must_exist and the document is absent
        """
        item = dict(doc)
        item[self.KEY_ATTRIBUTE] = doc_id
        put_kwargs = {'Item': item}
        if must_exist:
            put_kwargs['ConditionExpression'] = 'attribute_exists(#id)'
            put_kwargs['ExpressionAttributeNames'] = {'#id': self.KEY_ATTRIBUTE}

        try:
            self._table(collection).put_item(**put_kwargs)
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise NotFound(
                    f"Document {doc_id} not found in {collection}"
                ) from e
            raise _translate_error(e, f"set in {collection}") from e
        except BotoCoreError as e:
            raise _translate_error(e, f"set in {collection}") from e

    def delete(
        self,
        collection: str,
        doc_id: str,
        must_exist: bool = True
    ) -> None:
        """
        Delete a document by id.

        Raises:
            NotFound: If must_exist and the document is absent
        """
        delete_kwargs = {'Key': {self.KEY_ATTRIBUTE: doc_id}}
        if must_exist:
            delete_kwargs['ConditionExpression'] = 'attribute_exists(#id)'
            delete_kwargs['ExpressionAttributeNames'] = {
                '#id': self.KEY_ATTRIBUTE
            }

        try:
            self._table(collection).delete_item(**delete_kwargs)
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise NotFound(
                    f"Document {doc_id} not found in {collection}"
                ) from e
            raise _translate_error(e, f"delete from {collection}") from e
        except BotoCoreError as e:
            raise _translate_error(e, f"delete from {collection}") from e

        logger.debug(f"Deleted document {doc_id} from {collection}")

    def subscribe(
        self,
        collection: str,
        order_by: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        poll_interval: Optional[float] = None
    ) -> Iterator[Change]:
        """
        Stream changes to a collection by polling its DynamoDB Stream.

        Only changes made after the subscription starts are delivered.
        Delivery is at-least-once. Changes within a poll batch are ordered
        by ``order_by`` when given.

        Args:
            collection: Collection name (table must have a stream enabled)
            order_by: Attribute to order each batch by
            stop_event: Set to end the iteration
            poll_interval: Seconds between polls

        Yields:
            Change notifications
        """
        stop_event = stop_event or threading.Event()
        poll_interval = poll_interval if poll_interval is not None else self.POLL_INTERVAL

        try:
            stream_arn = self._table(collection).latest_stream_arn
        except (ClientError, BotoCoreError) as e:
            raise _translate_error(e, f"subscribe to {collection}") from e
        if not stream_arn:
            raise StoreError(
                f"Table {self.table_name(collection)} has no stream enabled"
            )

        streams = boto3.client(
            'dynamodbstreams',
            region_name=self.region_name,
            endpoint_url=self.endpoint_url,
            config=self.config
        )
        iterators: Dict[str, str] = {}
        drained: Set[str] = set()
        first_pass = True
        logger.info(f"Subscribed to changes on {collection}")

        while not stop_event.is_set():
            try:
                changes = self._poll_stream(
                    streams, stream_arn, iterators, drained, first_pass
                )
            except (ClientError, BotoCoreError) as e:
                raise _translate_error(e, f"poll stream for {collection}") from e
            first_pass = False

            if order_by:
                changes.sort(key=lambda change: change.document.get(order_by, ''))
            for change in changes:
                yield change

            stop_event.wait(poll_interval)

        logger.info(f"Subscription to {collection} stopped")

    def _poll_stream(
        self,
        streams,
        stream_arn: str,
        iterators: Dict[str, str],
        drained: Set[str],
        first_pass: bool
    ) -> List[Change]:
        """
        Read one batch of records from every open shard.

        Shards present when the subscription starts are read from LATEST;
        shards that appear later are read from TRIM_HORIZON. A shard whose
        iterator runs out is closed and fully read; it moves to ``drained``.
        """
        listed = set()
        describe_kwargs = {'StreamArn': stream_arn}
        while True:
            description = streams.describe_stream(**describe_kwargs)['StreamDescription']
            for shard in description.get('Shards', []):
                shard_id = shard['ShardId']
                listed.add(shard_id)
                if shard_id in iterators or shard_id in drained:
                    continue
                iterator_type = 'LATEST' if first_pass else 'TRIM_HORIZON'
                response = streams.get_shard_iterator(
                    StreamArn=stream_arn,
                    ShardId=shard_id,
                    ShardIteratorType=iterator_type
                )
                if response.get('ShardIterator'):
                    iterators[shard_id] = response['ShardIterator']
                else:
                    drained.add(shard_id)

            last_shard_id = description.get('LastEvaluatedShardId')
            if not last_shard_id:
                break
            describe_kwargs['ExclusiveStartShardId'] = last_shard_id

        # Shards trimmed from the stream will not be listed again
        drained &= listed

        changes = []
        for shard_id, shard_iterator in list(iterators.items()):
            response = streams.get_records(ShardIterator=shard_iterator)
            next_iterator = response.get('NextShardIterator')
            if next_iterator:
                iterators[shard_id] = next_iterator
            else:
                del iterators[shard_id]
                drained.add(shard_id)
                logger.debug(f"Shard {shard_id} closed and drained")
            for record in response.get('Records', []):
                change = change_from_stream_record(record)
                if change:
                    changes.append(change)
        return changes


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _translate_error(error: Exception, operation: str) -> StoreError:
    """
    Map a botocore exception onto the store error taxonomy.

    Args:
        error: ClientError or BotoCoreError
        operation: Description used in the log and message

    Returns:
        StoreUnavailable for transient/backend failures, StoreError otherwise
    """
    if isinstance(error, BotoCoreError):
        logger.error(f"DynamoDB unreachable during {operation}: {error}")
        return StoreUnavailable(f"DynamoDB unreachable during {operation}: {error}")

    code = _error_code(error)
    if code in UNAVAILABLE_ERROR_CODES:
        logger.error(f"DynamoDB unavailable during {operation}: {error}")
        return StoreUnavailable(f"DynamoDB unavailable during {operation}: {code}")

    logger.error(f"DynamoDB error during {operation}: {error}")
    return StoreError(f"DynamoDB error during {operation}: {code or error}")
