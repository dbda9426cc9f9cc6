"""Decides who hears about new matches, and makes sure they hear only once."""
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

from matching.models import Event, MatchRecord, NotificationOutcome, NotificationSent
from notifications.push_dispatcher import NOTIFICATION_NEW_MATCHES

logger = logging.getLogger(__name__)


def select_recipient(match: MatchRecord, event_1: Event, event_2: Event) -> str:
    """
    Pick the participant to notify about a match.

    The owner of the most recently created event just acted and is skipped;
    the other owner is notified. On a tie the owner of event_id_2 counts as
    the most recent creator.

    Args:
        match: The match record
        event_1: Event referenced by match.event_id_1
        event_2: Event referenced by match.event_id_2

    Returns:
        User id of the participant to notify
    """
    if event_1.created_at > event_2.created_at:
        return event_2.user_id
    return event_1.user_id


class NotificationDeduplicator:
    """Fans out new-match notifications through the dispatcher."""

    def __init__(self, store, dispatcher):
        """
        Args:
            store: Store providing get_notified_pairs / record_notifications
            dispatcher: Object with dispatch(user_ids, type, payload)
        """
        self.store = store
        self.dispatcher = dispatcher

    def notify_new_matches(self, matches: List[MatchRecord],
                           events_by_id: Dict[str, Event],
                           now: Optional[datetime] = None) -> NotificationOutcome:
        """
        Notify the right participant of each match, once.

        Never raises; failures are logged and an empty or partial outcome
        is returned.

        Args:
            matches: Matches that were just persisted
            events_by_id: Events referenced by those matches
            now: Timestamp recorded in the ledger

        Returns:
            NotificationOutcome describing what was sent
        """
        outcome = NotificationOutcome()
        if not matches:
            return outcome

        try:
            return self._notify(matches, events_by_id, now, outcome)
        except Exception as e:
            logger.error(
                f"Notification fan-out failed: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            return outcome

    def _notify(self, matches: List[MatchRecord], events_by_id: Dict[str, Event],
                now: Optional[datetime], outcome: NotificationOutcome) -> NotificationOutcome:
        candidates = []
        for match in matches:
            event_1 = events_by_id.get(match.event_id_1)
            event_2 = events_by_id.get(match.event_id_2)
            if event_1 is None or event_2 is None:
                logger.warning(
                    f"Skipping notification for match '{match.match_id}': "
                    f"referenced event not loaded"
                )
                continue
            candidates.append((match.match_id, select_recipient(match, event_1, event_2)))

        already_sent = self.store.get_notified_pairs(
            match_id for match_id, _ in candidates
        )
        pending = [pair for pair in candidates if pair not in already_sent]
        outcome.suppressed = len(candidates) - len(pending)

        if not pending:
            logger.info(
                f"No new notifications; {outcome.suppressed} already sent"
            )
            return outcome

        counts = Counter(user_id for _, user_id in pending)
        user_ids = sorted(counts)

        result = self.dispatcher.dispatch(
            user_ids,
            NOTIFICATION_NEW_MATCHES,
            {'match_counts': dict(counts), 'total_matches': len(pending)}
        )

        failed = set(result.failed_user_ids)
        if result.failed:
            logger.warning(
                f"Push dispatch partially failed: {result.failed} failures",
                extra={'failed_user_ids': sorted(failed)}
            )
            if len(failed) < result.failed:
                # Unknown failures; leave the ledger alone so every user is retried
                logger.warning(
                    f"Gateway named {len(failed)} of {result.failed} failed users; "
                    f"not recording notifications"
                )
                return outcome

        sent_at = now or datetime.now(timezone.utc)
        rows = [
            NotificationSent(match_id=match_id, user_id=user_id, sent_at=sent_at)
            for match_id, user_id in pending
            if user_id not in failed
        ]

        outcome.notified_user_ids = [u for u in user_ids if u not in failed]
        outcome.match_counts = {u: counts[u] for u in outcome.notified_user_ids}
        outcome.ledger_rows_written = self.store.record_notifications(rows)

        logger.info(
            f"Notified {len(outcome.notified_user_ids)} users about "
            f"{len(rows)} matches"
        )
        return outcome
