"""Match resolution: finds, scores and persists matches between friends' events."""
import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from matching.candidate_filter import (
    CandidateFilter,
    REJECT_DISTANCE,
    REJECT_LOCATION_TYPE,
    REJECT_TIME,
)
from matching.errors import DeadlineExceeded, InputError, TransientStoreError
from matching.event_validator import EventValidator
from matching.geo import midpoint, precise_distance
from matching.models import (
    ComputeResult,
    Event,
    MATCH_STATUS_ACTIVE,
    MatchRecord,
    RebuildStats,
)
from matching.overlap import compute_overlap
from matching.scoring import score

logger = logging.getLogger(__name__)

MIN_OVERLAP_MINUTES = 30

REJECT_SAME_OWNER = 'same_owner'
REJECT_VISIBILITY = 'visibility'
REJECT_OVERLAP = 'overlap'

STORE_ERRORS = (ClientError, BotoCoreError)


def canonical_pair(event_id_a: str, event_id_b: str) -> Tuple[str, str]:
    """
    Order two event ids so a pair is always stored the same way.

    Ids are compared as strings; the smaller one comes first.

    Raises:
        InputError: If both ids are the same
    """
    a, b = str(event_id_a), str(event_id_b)
    if a == b:
        raise InputError(f"cannot pair event '{a}' with itself")
    return (a, b) if a < b else (b, a)


def match_id_for(event_id_1: str, event_id_2: str) -> str:
    """Build the storage key of a canonical pair."""
    return f"{event_id_1}#{event_id_2}"


def evaluate_pair(event_a: Event, event_b: Event,
                  min_overlap_minutes: int = MIN_OVERLAP_MINUTES
                  ) -> Tuple[Optional[MatchRecord], Optional[str]]:
    """
    Run the exact match checks on one pair of events.

    The pair is put in canonical order first, so evaluate_pair(a, b) and
    evaluate_pair(b, a) give identical results. Both events must allow
    matching; a private event never matches, whoever triggers the run.

    Args:
        event_a: One event
        event_b: The other event
        min_overlap_minutes: Shortest shared window that counts as a match

    Returns:
        (MatchRecord, None) on a match, otherwise (None, rejection reason)
    """
    if event_a.user_id == event_b.user_id:
        return None, REJECT_SAME_OWNER

    if not (event_a.is_matchable and event_b.is_matchable):
        return None, REJECT_VISIBILITY

    if event_a.location_type != event_b.location_type:
        return None, REJECT_LOCATION_TYPE

    first_id, _ = canonical_pair(event_a.event_id, event_b.event_id)
    if event_a.event_id == first_id:
        first, second = event_a, event_b
    else:
        first, second = event_b, event_a

    max_radius = max(first.radius_km, second.radius_km)

    if first.is_physical:
        distance = precise_distance(
            first.latitude, first.longitude,
            second.latitude, second.longitude
        )
        if not distance <= max_radius:
            return None, REJECT_DISTANCE
        meeting_lat, meeting_lng = midpoint(
            first.latitude, first.longitude,
            second.latitude, second.longitude
        )
    else:
        distance = 0.0
        meeting_lat, meeting_lng = None, None

    overlap = compute_overlap(
        first.start_time, first.end_time,
        second.start_time, second.end_time
    )
    if not overlap.overlap:
        return None, REJECT_TIME
    if overlap.minutes < min_overlap_minutes:
        return None, REJECT_OVERLAP

    match = MatchRecord(
        match_id=match_id_for(first.event_id, second.event_id),
        event_id_1=first.event_id,
        event_id_2=second.event_id,
        distance_km=round(distance, 2),
        overlap_start=overlap.start,
        overlap_end=overlap.end,
        overlap_minutes=overlap.minutes,
        score=score(distance, overlap.minutes, max_radius),
        meeting_point_lat=meeting_lat,
        meeting_point_lng=meeting_lng,
        status=MATCH_STATUS_ACTIVE
    )
    return match, None


class _UserLocks:
    """One lock per user id, so runs for the same user never interleave."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def get(self, user_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[user_id]


class MatchResolver:
    """Computes matches for a user, or for everyone, and persists them."""

    def __init__(self, store, deduplicator=None,
                 candidate_filter: Optional[CandidateFilter] = None,
                 validator: Optional[EventValidator] = None,
                 min_overlap_minutes: int = MIN_OVERLAP_MINUTES):
        """
        Args:
            store: Persistent store (see storage.dynamodb_store.DynamoDBStore)
            deduplicator: Optional NotificationDeduplicator for fan-out
            candidate_filter: Pre-filter, defaults to CandidateFilter()
            validator: Event validator, defaults to EventValidator()
            min_overlap_minutes: Shortest shared window that counts as a match
        """
        self.store = store
        self.deduplicator = deduplicator
        self.candidate_filter = candidate_filter or CandidateFilter()
        self.validator = validator or EventValidator()
        self.min_overlap_minutes = min_overlap_minutes
        self._locks = _UserLocks()

    def compute_matches(self, user_id: str, now: Optional[datetime] = None,
                        deadline: Optional[float] = None) -> ComputeResult:
        """
        Recompute and persist all matches for one user's events.

        Safe to call repeatedly; a second run with unchanged data writes the
        same rows.

        Args:
            user_id: Authenticated user id
            now: Reference time for expiry, defaults to the current UTC time
            deadline: Absolute time.monotonic() value after which the run is
                abandoned before writing

        Returns:
            ComputeResult with the matches now active for the user's events

        Raises:
            InputError: If user_id is missing
            TransientStoreError: If the store fails; nothing is written
            DeadlineExceeded: If the deadline passes before the write
        """
        if not user_id or not str(user_id).strip():
            raise InputError("user_id is required")

        now = now or datetime.now(timezone.utc)

        with self._locks.get(user_id):
            return self._compute_locked(user_id, now, deadline)

    def _compute_locked(self, user_id: str, now: datetime,
                        deadline: Optional[float]) -> ComputeResult:
        logger.info(f"Computing matches for user {user_id}")

        self._check_deadline(deadline, 'loading user events')
        loaded_events = self._load(
            'user events', self.store.get_user_events, user_id
        )
        # Rows of every stored event are in scope, matchable or not
        user_event_ids = [event.event_id for event in loaded_events]
        user_events = self.validator.validate_events(loaded_events, now=now)

        if not user_events:
            logger.info(f"No future events for user {user_id}")
            if user_event_ids:
                self._check_deadline(deadline, 'persisting matches')
                self._persist(user_id, user_event_ids, [])
            return ComputeResult(matches=[], message='No future events found')

        self._check_deadline(deadline, 'loading friendships')
        friend_ids = self._load(
            'friendships', self.store.get_accepted_friend_ids, user_id
        )

        friend_events: List[Event] = []
        if friend_ids:
            self._check_deadline(deadline, 'loading friend events')
            friend_events = self._load(
                'friend events', self.store.get_events_for_users, friend_ids
            )
            friend_events = [
                e for e in self.validator.validate_events(friend_events, now=now)
                if e.is_matchable
            ]

        matches = self._match_user_events(user_events, friend_events)

        if not friend_ids:
            message = 'No friends found'
        elif not friend_events:
            message = 'No friend events found'
        elif not matches:
            message = 'No matches found'
        else:
            message = f"Found {len(matches)} matches"

        self._check_deadline(deadline, 'persisting matches')
        self._persist(user_id, user_event_ids, matches)

        if matches and self.deduplicator is not None:
            events_by_id = {e.event_id: e for e in user_events + friend_events}
            self.deduplicator.notify_new_matches(matches, events_by_id, now=now)

        return ComputeResult(matches=matches, message=message)

    def _persist(self, user_id: str, event_ids: List[str],
                 matches: List[MatchRecord]) -> None:
        try:
            self.store.replace_matches(event_ids, matches)
        except STORE_ERRORS as e:
            logger.error(
                f"Failed to persist matches for user {user_id}: {e}",
                extra={'error_type': type(e).__name__}
            )
            raise TransientStoreError(f"Failed to save matches: {e}") from e

        logger.info(
            f"Persisted {len(matches)} matches for user {user_id}",
            extra={'user_id': user_id, 'matches': len(matches)}
        )

    def _match_user_events(self, user_events: List[Event],
                           friend_events: List[Event]) -> List[MatchRecord]:
        matches: Dict[str, MatchRecord] = {}

        for user_event in user_events:
            candidates = self.candidate_filter.filter_candidates(
                user_event, friend_events
            )
            for friend_event in candidates:
                match, reason = evaluate_pair(
                    user_event, friend_event, self.min_overlap_minutes
                )
                if match is None:
                    logger.debug(
                        f"No match between '{user_event.event_id}' and "
                        f"'{friend_event.event_id}': {reason}"
                    )
                    continue
                matches[match.match_id] = match

        return sorted(matches.values(), key=lambda m: m.match_id)

    def get_active_matches(self, user_id: str) -> List[MatchRecord]:
        """
        Read the persisted active matches touching a user's events.

        Args:
            user_id: Authenticated user id

        Returns:
            Matches ordered by score, highest first

        Raises:
            InputError: If user_id is missing
            TransientStoreError: If the store fails
        """
        if not user_id or not str(user_id).strip():
            raise InputError("user_id is required")

        user_events = self._load('user events', self.store.get_user_events, user_id)
        if not user_events:
            return []

        event_ids = [event.event_id for event in user_events]
        matches = self._load(
            'matches', self.store.get_matches_for_events, event_ids
        )
        active = [m for m in matches if m.status == MATCH_STATUS_ACTIVE]
        active.sort(key=lambda m: (-m.score, m.match_id))

        logger.info(f"Found {len(active)} active matches for user {user_id}")
        return active

    def rebuild_all_matches(self, now: Optional[datetime] = None) -> RebuildStats:
        """
        Recompute every match across all users.

        All pairs are computed before anything is written; then all match
        rows are cleared and rewritten. No notifications are sent.

        Args:
            now: Reference time for expiry

        Returns:
            RebuildStats with diagnostic counters

        Raises:
            TransientStoreError: If the store fails
        """
        start = time.time()
        now = now or datetime.now(timezone.utc)
        stats = RebuildStats()

        logger.info("Starting rebuild of all matches")

        all_events = self._load('all events', self.store.get_all_events)
        stats.total_events = len(all_events)
        events = self.validator.validate_events(all_events, now=now)
        stats.expired_events = stats.total_events - len(events)
        events.sort(key=lambda e: e.event_id)

        friendships = self._load('friendships', self.store.get_accepted_friendships)
        stats.friendships = len(friendships)
        friend_pairs = {
            frozenset((f.requester_id, f.addressee_id)) for f in friendships
        }

        matches = []
        for i, event_1 in enumerate(events):
            for event_2 in events[i + 1:]:
                stats.total_calculations += 1

                if event_1.user_id == event_2.user_id:
                    stats.skipped_same_owner += 1
                    continue

                if frozenset((event_1.user_id, event_2.user_id)) not in friend_pairs:
                    stats.skipped_by_friendship += 1
                    continue

                if not (event_1.is_matchable and event_2.is_matchable):
                    reason = REJECT_VISIBILITY
                else:
                    reason = self.candidate_filter.rejection_reason(event_1, event_2)
                if reason is None:
                    match, reason = evaluate_pair(
                        event_1, event_2, self.min_overlap_minutes
                    )
                    if match is not None:
                        matches.append(match)
                        continue

                self._count_rejection(stats, reason)

        stats.matches_found = len(matches)

        try:
            self.store.clear_all_matches()
            self.store.put_matches(matches)
        except STORE_ERRORS as e:
            logger.error(f"Failed to rewrite matches during rebuild: {e}")
            raise TransientStoreError(f"Failed to rebuild matches: {e}") from e

        stats.processing_time_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Match rebuild completed: {stats.matches_found} matches found "
            f"in {stats.processing_time_ms}ms",
            extra=stats.to_dict()
        )
        return stats

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete events whose end time has passed, and their matches.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            Number of events deleted

        Raises:
            TransientStoreError: If the store fails
        """
        now = now or datetime.now(timezone.utc)
        events = self._load('all events', self.store.get_all_events)
        expired_ids = [e.event_id for e in events if e.end_time < now]

        if not expired_ids:
            logger.info("No expired events to sweep")
            return 0

        try:
            self.store.delete_matches_for_events(expired_ids)
            deleted = self.store.delete_events(expired_ids)
        except STORE_ERRORS as e:
            logger.error(f"Failed to sweep expired events: {e}")
            raise TransientStoreError(f"Failed to sweep expired events: {e}") from e

        logger.info(f"Swept {deleted} expired events")
        return deleted

    @staticmethod
    def _count_rejection(stats: RebuildStats, reason: Optional[str]) -> None:
        if reason == REJECT_TIME:
            stats.skipped_by_time += 1
        elif reason == REJECT_DISTANCE:
            stats.skipped_by_distance += 1
        elif reason == REJECT_LOCATION_TYPE:
            stats.skipped_by_location_type += 1
        elif reason == REJECT_OVERLAP:
            stats.skipped_by_overlap += 1
        elif reason == REJECT_VISIBILITY:
            stats.skipped_by_visibility += 1

    @staticmethod
    def _check_deadline(deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"Deadline exceeded before {stage}")
            raise DeadlineExceeded(f"Deadline exceeded before {stage}")

    @staticmethod
    def _load(what: str, loader, *args):
        try:
            return loader(*args)
        except STORE_ERRORS as e:
            logger.error(
                f"Failed to load {what}: {e}",
                extra={'error_type': type(e).__name__}
            )
            raise TransientStoreError(f"Failed to load {what}: {e}") from e
