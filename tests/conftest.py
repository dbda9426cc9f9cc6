"""Shared fixtures: mock DynamoDB tables and event builders."""
import os
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

from matching.models import Event, Friendship, FRIENDSHIP_ACCEPTED
from storage.dynamodb_store import DynamoDBStore

REGION = 'us-east-1'
TABLES = {
    'events_table': 'test-events',
    'friendships_table': 'test-friendships',
    'matches_table': 'test-matches',
    'notifications_table': 'test-notifications-sent',
}

# Fixed reference time so expiry checks are deterministic
NOW = datetime(2030, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def aws_credentials():
    """Fake credentials so boto3 never touches a real account."""
    os.environ['AWS_ACCESS_KEY_ID'] = 'testing'
    os.environ['AWS_SECRET_ACCESS_KEY'] = 'testing'
    os.environ['AWS_SECURITY_TOKEN'] = 'testing'
    os.environ['AWS_SESSION_TOKEN'] = 'testing'
    os.environ['AWS_DEFAULT_REGION'] = REGION


def _gsi(name, hash_key, range_key=None):
    key_schema = [{'AttributeName': hash_key, 'KeyType': 'HASH'}]
    if range_key:
        key_schema.append({'AttributeName': range_key, 'KeyType': 'RANGE'})
    return {
        'IndexName': name,
        'KeySchema': key_schema,
        'Projection': {'ProjectionType': 'ALL'},
    }


def create_tables(dynamodb):
    """Create the four tables the store expects."""
    dynamodb.create_table(
        TableName=TABLES['events_table'],
        KeySchema=[{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[
            {'AttributeName': 'event_id', 'AttributeType': 'S'},
            {'AttributeName': 'user_id', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[_gsi('user-index', 'user_id')],
        BillingMode='PAY_PER_REQUEST',
    )
    dynamodb.create_table(
        TableName=TABLES['friendships_table'],
        KeySchema=[
            {'AttributeName': 'requester_id', 'KeyType': 'HASH'},
            {'AttributeName': 'addressee_id', 'KeyType': 'RANGE'},
        ],
        AttributeDefinitions=[
            {'AttributeName': 'requester_id', 'AttributeType': 'S'},
            {'AttributeName': 'addressee_id', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            _gsi('addressee-index', 'addressee_id', 'requester_id')
        ],
        BillingMode='PAY_PER_REQUEST',
    )
    dynamodb.create_table(
        TableName=TABLES['matches_table'],
        KeySchema=[{'AttributeName': 'match_id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[
            {'AttributeName': 'match_id', 'AttributeType': 'S'},
            {'AttributeName': 'event_id_1', 'AttributeType': 'S'},
            {'AttributeName': 'event_id_2', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            _gsi('event-1-index', 'event_id_1'),
            _gsi('event-2-index', 'event_id_2'),
        ],
        BillingMode='PAY_PER_REQUEST',
    )
    dynamodb.create_table(
        TableName=TABLES['notifications_table'],
        KeySchema=[
            {'AttributeName': 'match_id', 'KeyType': 'HASH'},
            {'AttributeName': 'user_id', 'KeyType': 'RANGE'},
        ],
        AttributeDefinitions=[
            {'AttributeName': 'match_id', 'AttributeType': 'S'},
            {'AttributeName': 'user_id', 'AttributeType': 'S'},
        ],
        BillingMode='PAY_PER_REQUEST',
    )


@pytest.fixture
def store(aws_credentials):
    """DynamoDBStore backed by mock tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name=REGION)
        create_tables(dynamodb)
        yield DynamoDBStore(region_name=REGION, **TABLES)


def make_event(event_id, user_id, start_hour=18, end_hour=20,
               lat=52.5200, lng=13.4050, radius_km=2.0,
               location_type='physical', created_minutes_ago=60,
               day=NOW.date() + timedelta(days=1), visibility='all_friends'):
    """Build an Event on a given day from whole hours."""
    base = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    if location_type == 'online':
        lat = lng = None
    return Event(
        event_id=event_id,
        user_id=user_id,
        start_time=base + timedelta(hours=start_hour),
        end_time=base + timedelta(hours=end_hour),
        location_type=location_type,
        latitude=lat,
        longitude=lng,
        radius_km=radius_km,
        created_at=NOW - timedelta(minutes=created_minutes_ago),
        title=f"Free {event_id}",
        visibility=visibility,
    )


def accepted(requester_id, addressee_id):
    return Friendship(requester_id, addressee_id, FRIENDSHIP_ACCEPTED)
