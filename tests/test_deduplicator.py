"""Unit tests for the notification deduplicator."""
from dataclasses import replace
from datetime import timedelta
from unittest.mock import Mock

import pytest

from conftest import NOW, make_event
from matching.errors import NotificationError
from matching.match_resolver import evaluate_pair
from matching.models import DispatchResult
from notifications.deduplicator import NotificationDeduplicator, select_recipient


@pytest.fixture
def events():
    """u1 created e-a most recently; e-b and e-c are older."""
    return {
        'e-a': make_event('e-a', 'u1', 18, 20, created_minutes_ago=1),
        'e-b': make_event('e-b', 'u2', 19, 21, created_minutes_ago=120),
        'e-c': make_event('e-c', 'u3', 18, 21, created_minutes_ago=300),
    }


@pytest.fixture
def matches(events):
    ab, _ = evaluate_pair(events['e-a'], events['e-b'])
    ac, _ = evaluate_pair(events['e-a'], events['e-c'])
    return [ab, ac]


@pytest.fixture
def mock_store():
    store = Mock()
    store.get_notified_pairs.return_value = set()
    store.record_notifications.side_effect = lambda rows: len(rows)
    return store


@pytest.fixture
def mock_dispatcher():
    dispatcher = Mock()
    dispatcher.dispatch.return_value = DispatchResult(sent=2, failed=0)
    return dispatcher


class TestSelectRecipient:
    """Test cases for select_recipient."""

    def test_first_event_newer(self, events, matches):
        assert select_recipient(matches[0], events['e-a'], events['e-b']) == 'u2'

    def test_second_event_newer(self, events, matches):
        older_a = replace(events['e-a'], created_at=NOW - timedelta(days=1))
        assert select_recipient(matches[0], older_a, events['e-b']) == 'u1'

    def test_tie_notifies_first_owner(self, events, matches):
        tied_b = replace(events['e-b'], created_at=events['e-a'].created_at)
        assert select_recipient(matches[0], events['e-a'], tied_b) == 'u1'


class TestNotificationDeduplicator:
    """Test cases for NotificationDeduplicator class."""

    def test_notifies_other_participants_once(
        self, events, matches, mock_store, mock_dispatcher
    ):
        deduplicator = NotificationDeduplicator(mock_store, mock_dispatcher)

        outcome = deduplicator.notify_new_matches(matches, events, now=NOW)

        mock_dispatcher.dispatch.assert_called_once_with(
            ['u2', 'u3'], 'new_matches',
            {'match_counts': {'u2': 1, 'u3': 1}, 'total_matches': 2}
        )
        assert outcome.notified_user_ids == ['u2', 'u3']
        assert outcome.ledger_rows_written == 2
        rows = mock_store.record_notifications.call_args[0][0]
        assert {(r.match_id, r.user_id) for r in rows} == {
            ('e-a#e-b', 'u2'), ('e-a#e-c', 'u3')
        }
        assert all(r.sent_at == NOW for r in rows)

    def test_counts_group_by_user(self, events, mock_store, mock_dispatcher):
        """Test that one user with two new matches gets one count of 2."""
        e_d = make_event('e-d', 'u1', 19, 22, created_minutes_ago=0)
        ab, _ = evaluate_pair(events['e-a'], events['e-b'])
        bd, _ = evaluate_pair(events['e-b'], e_d)
        all_events = dict(events, **{'e-d': e_d})

        NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            [ab, bd], all_events, now=NOW
        )

        mock_dispatcher.dispatch.assert_called_once_with(
            ['u2'], 'new_matches',
            {'match_counts': {'u2': 2}, 'total_matches': 2}
        )

    def test_ledger_suppresses_repeats(self, events, matches, mock_store, mock_dispatcher):
        mock_store.get_notified_pairs.return_value = {('e-a#e-b', 'u2')}

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        mock_dispatcher.dispatch.assert_called_once_with(
            ['u3'], 'new_matches',
            {'match_counts': {'u3': 1}, 'total_matches': 1}
        )
        assert outcome.suppressed == 1

    def test_everything_already_sent(self, events, matches, mock_store, mock_dispatcher):
        mock_store.get_notified_pairs.return_value = {
            ('e-a#e-b', 'u2'), ('e-a#e-c', 'u3')
        }

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        mock_dispatcher.dispatch.assert_not_called()
        mock_store.record_notifications.assert_not_called()
        assert outcome.suppressed == 2

    def test_dispatch_failure_is_swallowed(self, events, matches, mock_store, mock_dispatcher):
        """Test that a dispatcher error is logged, not raised, and not recorded."""
        mock_dispatcher.dispatch.side_effect = NotificationError('gateway down')

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        assert outcome.notified_user_ids == []
        mock_store.record_notifications.assert_not_called()

    def test_ledger_read_failure_is_swallowed(self, events, matches, mock_store, mock_dispatcher):
        mock_store.get_notified_pairs.side_effect = RuntimeError('store down')

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        assert outcome.notified_user_ids == []
        mock_dispatcher.dispatch.assert_not_called()

    def test_partial_failure_records_only_delivered(
        self, events, matches, mock_store, mock_dispatcher
    ):
        mock_dispatcher.dispatch.return_value = DispatchResult(
            sent=1, failed=1, failed_user_ids=['u3']
        )

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        rows = mock_store.record_notifications.call_args[0][0]
        assert [(r.match_id, r.user_id) for r in rows] == [('e-a#e-b', 'u2')]
        assert outcome.notified_user_ids == ['u2']

    def test_unnamed_failures_record_nothing(
        self, events, matches, mock_store, mock_dispatcher
    ):
        """Test that a failure count without user ids leaves everyone retryable."""
        mock_dispatcher.dispatch.return_value = DispatchResult(sent=1, failed=1)

        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        mock_store.record_notifications.assert_not_called()
        assert outcome.notified_user_ids == []
        assert outcome.ledger_rows_written == 0

    def test_missing_events_are_skipped(self, events, matches, mock_store, mock_dispatcher):
        del events['e-c']

        NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            matches, events, now=NOW
        )

        assert mock_dispatcher.dispatch.call_args[0][0] == ['u2']

    def test_no_matches(self, mock_store, mock_dispatcher):
        outcome = NotificationDeduplicator(mock_store, mock_dispatcher).notify_new_matches(
            [], {}, now=NOW
        )

        assert outcome.notified_user_ids == []
        mock_store.get_notified_pairs.assert_not_called()

    def test_ledger_round_trip_with_dynamodb(self, store, events, matches, mock_dispatcher):
        """Test that a second fan-out over the real ledger sends nothing."""
        deduplicator = NotificationDeduplicator(store, mock_dispatcher)

        first = deduplicator.notify_new_matches(matches, events, now=NOW)
        second = deduplicator.notify_new_matches(matches, events, now=NOW)

        assert first.ledger_rows_written == 2
        assert second.suppressed == 2
        assert mock_dispatcher.dispatch.call_count == 1
