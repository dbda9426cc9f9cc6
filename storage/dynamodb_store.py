"""DynamoDB persistence for events, friendships, matches and the notification ledger."""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from matching.models import (
    Event,
    Friendship,
    FRIENDSHIP_ACCEPTED,
    MatchRecord,
    MATCH_STATUS_ACTIVE,
    NotificationSent,
)

logger = logging.getLogger(__name__)

USER_INDEX = 'user-index'
ADDRESSEE_INDEX = 'addressee-index'
EVENT_1_INDEX = 'event-1-index'
EVENT_2_INDEX = 'event-2-index'


def format_timestamp(value: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_decimal(value: float) -> Decimal:
    return Decimal(str(value))


def _optional_float(item: dict, key: str) -> Optional[float]:
    value = item.get(key)
    if value is None:
        return None
    return float(value)


class DynamoDBStore:
    """Store backed by four DynamoDB tables."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems limit

    def __init__(self, events_table: str, friendships_table: str,
                 matches_table: str, notifications_table: str,
                 region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table references.

        Args:
            events_table: Table holding free-time events
            friendships_table: Table holding friendship edges
            matches_table: Table holding match records
            notifications_table: Table holding the notification ledger
            region_name: AWS region (defaults to the environment's)
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        # The resource's client marshals plain Python values itself
        self.client = self.dynamodb.meta.client
        self.events = self.dynamodb.Table(events_table)
        self.friendships = self.dynamodb.Table(friendships_table)
        self.matches = self.dynamodb.Table(matches_table)
        self.notifications = self.dynamodb.Table(notifications_table)
        logger.info(
            f"Initialized DynamoDBStore with tables: {events_table}, "
            f"{friendships_table}, {matches_table}, {notifications_table}"
        )

    # Events

    def get_user_events(self, user_id: str) -> List[Event]:
        """
        Retrieve all events owned by a user.

        Args:
            user_id: Owner of the events

        Returns:
            List of Event objects
        """
        items = self._query_all(
            self.events,
            IndexName=USER_INDEX,
            KeyConditionExpression=Key('user_id').eq(user_id)
        )
        return self._items_to_events(items)

    def get_events_for_users(self, user_ids: Iterable[str]) -> List[Event]:
        """Retrieve the events of several users."""
        events = []
        for user_id in user_ids:
            events.extend(self.get_user_events(user_id))
        return events

    def get_all_events(self) -> List[Event]:
        """
        Retrieve every event using a Scan operation.

        Returns:
            List of Event objects
        """
        logger.info("Scanning events table")
        items = self._scan_all(self.events)
        events = self._items_to_events(items)
        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def put_events(self, events: List[Event]) -> int:
        """
        Write events in batches of 25 items.

        Args:
            events: Events to write

        Returns:
            Count of successfully written events
        """
        if not events:
            return 0

        success_count = 0
        for i in range(0, len(events), self.BATCH_SIZE):
            batch = events[i:i + self.BATCH_SIZE]
            try:
                with self.events.batch_writer() as writer:
                    for event in batch:
                        writer.put_item(Item=self._event_to_item(event))
                        success_count += 1
            except ClientError as e:
                logger.error(
                    f"Error writing event batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully wrote {success_count} events")
        return success_count

    def delete_events(self, event_ids: List[str]) -> int:
        """
        Delete events in batches of 25 items.

        Args:
            event_ids: Ids of the events to delete

        Returns:
            Count of successfully deleted events
        """
        if not event_ids:
            return 0

        success_count = 0
        for i in range(0, len(event_ids), self.BATCH_SIZE):
            batch = event_ids[i:i + self.BATCH_SIZE]
            try:
                with self.events.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(Key={'event_id': event_id})
                        success_count += 1
            except ClientError as e:
                logger.error(
                    f"Error deleting event batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {success_count} events")
        return success_count

    # Friendships

    def get_accepted_friend_ids(self, user_id: str) -> List[str]:
        """
        Find users with an accepted friendship to the given user.

        Edges are looked up in both directions.

        Args:
            user_id: User whose friends are wanted

        Returns:
            Sorted list of friend user ids
        """
        outgoing = self._query_all(
            self.friendships,
            KeyConditionExpression=Key('requester_id').eq(user_id)
        )
        incoming = self._query_all(
            self.friendships,
            IndexName=ADDRESSEE_INDEX,
            KeyConditionExpression=Key('addressee_id').eq(user_id)
        )

        friend_ids = set()
        for item in outgoing + incoming:
            friendship = self._item_to_friendship(item)
            if friendship and friendship.status == FRIENDSHIP_ACCEPTED:
                friend_ids.add(friendship.other(user_id))

        friend_ids.discard(user_id)
        return sorted(friend_ids)

    def get_accepted_friendships(self) -> List[Friendship]:
        """Scan every accepted friendship edge."""
        items = self._scan_all(
            self.friendships,
            FilterExpression=Attr('status').eq(FRIENDSHIP_ACCEPTED)
        )
        friendships = []
        for item in items:
            friendship = self._item_to_friendship(item)
            if friendship:
                friendships.append(friendship)
        return friendships

    def put_friendships(self, friendships: List[Friendship]) -> int:
        """Write friendship edges."""
        with self.friendships.batch_writer() as writer:
            for friendship in friendships:
                writer.put_item(Item={
                    'requester_id': friendship.requester_id,
                    'addressee_id': friendship.addressee_id,
                    'status': friendship.status
                })
        return len(friendships)

    # Matches

    def get_matches_for_events(self, event_ids: Iterable[str]) -> List[MatchRecord]:
        """
        Retrieve matches that reference any of the given events.

        Each id is looked up on both sides of the pair.

        Args:
            event_ids: Event ids to search for

        Returns:
            List of distinct MatchRecord objects
        """
        matches: Dict[str, MatchRecord] = {}
        for event_id in event_ids:
            for index, key in ((EVENT_1_INDEX, 'event_id_1'),
                               (EVENT_2_INDEX, 'event_id_2')):
                items = self._query_all(
                    self.matches,
                    IndexName=index,
                    KeyConditionExpression=Key(key).eq(event_id)
                )
                for item in items:
                    match = self._item_to_match(item)
                    if match:
                        matches[match.match_id] = match
        return list(matches.values())

    def get_all_matches(self) -> List[MatchRecord]:
        """Scan every stored match."""
        matches = []
        for item in self._scan_all(self.matches):
            match = self._item_to_match(item)
            if match:
                matches.append(match)
        return matches

    def replace_matches(self, event_ids: Iterable[str],
                        matches: List[MatchRecord]) -> List[MatchRecord]:
        """
        Replace the match rows that reference the given events.

        New rows are upserted by match_id and rows that no longer hold are
        deleted, in TransactWriteItems calls of up to 100 actions. Rows that
        survive are overwritten in place, never removed first.

        Args:
            event_ids: Events whose existing matches are being recomputed
            matches: Freshly computed matches

        Returns:
            The matches written
        """
        existing = self.get_matches_for_events(event_ids)
        new_ids = {match.match_id for match in matches}
        stale_ids = sorted(
            match.match_id for match in existing if match.match_id not in new_ids
        )

        actions = [
            {'Put': {
                'TableName': self.matches.name,
                'Item': self._match_to_item(match)
            }}
            for match in matches
        ]
        actions.extend(
            {'Delete': {
                'TableName': self.matches.name,
                'Key': {'match_id': match_id}
            }}
            for match_id in stale_ids
        )

        logger.info(
            f"Replacing matches: {len(matches)} to upsert, "
            f"{len(stale_ids)} to delete"
        )

        for i in range(0, len(actions), self.TRANSACTION_LIMIT):
            chunk = actions[i:i + self.TRANSACTION_LIMIT]
            try:
                self.client.transact_write_items(TransactItems=chunk)
            except ClientError as e:
                logger.error(
                    f"Error in match transaction {i // self.TRANSACTION_LIMIT + 1}: {e}"
                )
                raise

        return matches

    def put_matches(self, matches: List[MatchRecord]) -> int:
        """
        Write matches in batches of 25 items.

        Raises:
            ClientError: If any batch fails
        """
        for i in range(0, len(matches), self.BATCH_SIZE):
            batch = matches[i:i + self.BATCH_SIZE]
            try:
                with self.matches.batch_writer() as writer:
                    for match in batch:
                        writer.put_item(Item=self._match_to_item(match))
            except ClientError as e:
                logger.error(
                    f"Error writing match batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                raise

        logger.info(f"Successfully wrote {len(matches)} matches")
        return len(matches)

    def delete_matches(self, match_ids: List[str]) -> int:
        """
        Delete matches in batches of 25 items.

        Raises:
            ClientError: If any batch fails
        """
        for i in range(0, len(match_ids), self.BATCH_SIZE):
            batch = match_ids[i:i + self.BATCH_SIZE]
            try:
                with self.matches.batch_writer() as writer:
                    for match_id in batch:
                        writer.delete_item(Key={'match_id': match_id})
            except ClientError as e:
                logger.error(
                    f"Error deleting match batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                raise

        return len(match_ids)

    def delete_matches_for_events(self, event_ids: Iterable[str]) -> int:
        """Delete every match referencing any of the given events."""
        match_ids = [m.match_id for m in self.get_matches_for_events(event_ids)]
        return self.delete_matches(match_ids)

    def clear_all_matches(self) -> int:
        """Delete every stored match."""
        items = self._scan_all(self.matches, ProjectionExpression='match_id')
        deleted = self.delete_matches([item['match_id'] for item in items])
        logger.info(f"Cleared {deleted} matches")
        return deleted

    # Notification ledger

    def get_notified_pairs(self, match_ids: Iterable[str]) -> Set[Tuple[str, str]]:
        """
        Read the ledger for the given matches.

        Returns:
            Set of (match_id, user_id) pairs already notified
        """
        pairs = set()
        for match_id in set(match_ids):
            items = self._query_all(
                self.notifications,
                KeyConditionExpression=Key('match_id').eq(match_id)
            )
            for item in items:
                pairs.add((item['match_id'], item['user_id']))
        return pairs

    def record_notifications(self, rows: List[NotificationSent]) -> int:
        """
        Append ledger rows, skipping pairs that are already recorded.

        Returns:
            Count of rows actually inserted
        """
        written = 0
        for row in rows:
            try:
                self.notifications.put_item(
                    Item={
                        'match_id': row.match_id,
                        'user_id': row.user_id,
                        'sent_at': format_timestamp(row.sent_at)
                    },
                    ConditionExpression='attribute_not_exists(match_id)'
                )
                written += 1
            except ClientError as e:
                if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                    logger.debug(
                        f"Ledger already has ({row.match_id}, {row.user_id})"
                    )
                    continue
                raise
        return written

    # Helpers

    def _query_all(self, table, **kwargs) -> List[dict]:
        response = table.query(**kwargs)
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = table.query(
                ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
            )
            items.extend(response.get('Items', []))

        return items

    def _scan_all(self, table, **kwargs) -> List[dict]:
        try:
            response = table.scan(**kwargs)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
                )
                items.extend(response.get('Items', []))

            return items
        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
            raise

    def _items_to_events(self, items: List[dict]) -> List[Event]:
        events = []
        for item in items:
            event = self._item_to_event(item)
            if event:
                events.append(event)
        return events

    def _item_to_event(self, item: dict) -> Optional[Event]:
        """
        Convert a DynamoDB item to an Event.

        Returns:
            Event or None if the item is unreadable
        """
        try:
            return Event(
                event_id=item['event_id'],
                user_id=item['user_id'],
                start_time=parse_timestamp(item['start_time']),
                end_time=parse_timestamp(item['end_time']),
                location_type=item['location_type'],
                latitude=_optional_float(item, 'latitude'),
                longitude=_optional_float(item, 'longitude'),
                radius_km=float(item.get('radius_km', 0)),
                created_at=parse_timestamp(item['created_at']),
                title=item.get('title', ''),
                visibility=item.get('visibility', 'all_friends')
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to Event: {e}")
            return None

    def _event_to_item(self, event: Event) -> dict:
        item = {
            'event_id': event.event_id,
            'user_id': event.user_id,
            'start_time': format_timestamp(event.start_time),
            'end_time': format_timestamp(event.end_time),
            'location_type': event.location_type,
            'radius_km': _to_decimal(event.radius_km),
            'created_at': format_timestamp(event.created_at),
            'visibility': event.visibility
        }

        if event.title:
            item['title'] = event.title
        if event.latitude is not None:
            item['latitude'] = _to_decimal(event.latitude)
        if event.longitude is not None:
            item['longitude'] = _to_decimal(event.longitude)

        return item

    def _item_to_friendship(self, item: dict) -> Optional[Friendship]:
        try:
            return Friendship(
                requester_id=item['requester_id'],
                addressee_id=item['addressee_id'],
                status=item['status']
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to Friendship: {e}")
            return None

    def _item_to_match(self, item: dict) -> Optional[MatchRecord]:
        try:
            return MatchRecord(
                match_id=item['match_id'],
                event_id_1=item['event_id_1'],
                event_id_2=item['event_id_2'],
                distance_km=float(item['distance_km']),
                overlap_start=parse_timestamp(item['overlap_start']),
                overlap_end=parse_timestamp(item['overlap_end']),
                overlap_minutes=int(item['overlap_minutes']),
                score=int(item['score']),
                meeting_point_lat=_optional_float(item, 'meeting_point_lat'),
                meeting_point_lng=_optional_float(item, 'meeting_point_lng'),
                status=item.get('status', MATCH_STATUS_ACTIVE)
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to MatchRecord: {e}")
            return None

    def _match_to_item(self, match: MatchRecord) -> dict:
        item = {
            'match_id': match.match_id,
            'event_id_1': match.event_id_1,
            'event_id_2': match.event_id_2,
            'distance_km': _to_decimal(match.distance_km),
            'overlap_start': format_timestamp(match.overlap_start),
            'overlap_end': format_timestamp(match.overlap_end),
            'overlap_minutes': match.overlap_minutes,
            'score': match.score,
            'status': match.status
        }

        if match.meeting_point_lat is not None:
            item['meeting_point_lat'] = _to_decimal(match.meeting_point_lat)
        if match.meeting_point_lng is not None:
            item['meeting_point_lng'] = _to_decimal(match.meeting_point_lng)

        return item
