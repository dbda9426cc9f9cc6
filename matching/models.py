"""Data models for match computation."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

LOCATION_ONLINE = 'online'
LOCATION_PHYSICAL = 'physical'

FRIENDSHIP_PENDING = 'pending'
FRIENDSHIP_ACCEPTED = 'accepted'
FRIENDSHIP_DECLINED = 'declined'

MATCHABLE_VISIBILITIES = ('all_friends', 'overlap_only')

MATCH_STATUS_ACTIVE = 'active'


@dataclass
class Event:
    """A user's declared free time window."""
    event_id: str
    user_id: str
    start_time: datetime
    end_time: datetime
    location_type: str
    latitude: Optional[float]
    longitude: Optional[float]
    radius_km: float
    created_at: datetime
    title: str = ''
    visibility: str = 'all_friends'

    @property
    def is_online(self) -> bool:
        return self.location_type == LOCATION_ONLINE

    @property
    def is_physical(self) -> bool:
        return self.location_type == LOCATION_PHYSICAL

    @property
    def is_matchable(self) -> bool:
        """Whether the owner lets this event be matched with friends."""
        return self.visibility in MATCHABLE_VISIBILITIES


@dataclass
class Friendship:
    """Friendship edge between two users."""
    requester_id: str
    addressee_id: str
    status: str

    def other(self, user_id: str) -> str:
        """Return the id on the other side of the edge."""
        if user_id == self.requester_id:
            return self.addressee_id
        return self.requester_id


@dataclass
class OverlapResult:
    """Intersection of two time intervals."""
    overlap: bool
    start: Optional[datetime]
    end: Optional[datetime]
    minutes: int


@dataclass
class MatchRecord:
    """One unordered pair of matching events, stored once."""
    match_id: str
    event_id_1: str
    event_id_2: str
    distance_km: float
    overlap_start: datetime
    overlap_end: datetime
    overlap_minutes: int
    score: int
    meeting_point_lat: Optional[float] = None
    meeting_point_lng: Optional[float] = None
    status: str = MATCH_STATUS_ACTIVE

    @property
    def event_ids(self) -> tuple:
        return (self.event_id_1, self.event_id_2)

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dict."""
        return {
            'match_id': self.match_id,
            'event_id_1': self.event_id_1,
            'event_id_2': self.event_id_2,
            'distance_km': self.distance_km,
            'overlap_start': self.overlap_start.isoformat(),
            'overlap_end': self.overlap_end.isoformat(),
            'overlap_minutes': self.overlap_minutes,
            'score': self.score,
            'meeting_point_lat': self.meeting_point_lat,
            'meeting_point_lng': self.meeting_point_lng,
            'status': self.status
        }


@dataclass
class NotificationSent:
    """Ledger row recording that a user was told about a match."""
    match_id: str
    user_id: str
    sent_at: datetime


@dataclass
class ComputeResult:
    """Result of a per-user match computation."""
    matches: List[MatchRecord]
    message: str


@dataclass
class RebuildStats:
    """Counters collected by a global match rebuild."""
    total_events: int = 0
    expired_events: int = 0
    total_calculations: int = 0
    matches_found: int = 0
    skipped_by_time: int = 0
    skipped_by_distance: int = 0
    skipped_by_friendship: int = 0
    skipped_by_location_type: int = 0
    skipped_by_overlap: int = 0
    skipped_by_visibility: int = 0
    skipped_same_owner: int = 0
    friendships: int = 0
    processing_time_ms: int = 0

    @property
    def efficiency(self) -> str:
        """Share of pair calculations rejected before exact matching."""
        if not self.total_calculations:
            return '0% filtered'
        filtered = (
            self.skipped_by_time +
            self.skipped_by_distance +
            self.skipped_by_friendship
        )
        return f"{round(filtered / self.total_calculations * 100)}% filtered"

    def to_dict(self) -> dict:
        return {
            'total_events': self.total_events,
            'expired_events': self.expired_events,
            'total_calculations': self.total_calculations,
            'matches_found': self.matches_found,
            'skipped_by_time': self.skipped_by_time,
            'skipped_by_distance': self.skipped_by_distance,
            'skipped_by_friendship': self.skipped_by_friendship,
            'skipped_by_location_type': self.skipped_by_location_type,
            'skipped_by_overlap': self.skipped_by_overlap,
            'skipped_by_visibility': self.skipped_by_visibility,
            'skipped_same_owner': self.skipped_same_owner,
            'friendships': self.friendships,
            'processing_time_ms': self.processing_time_ms,
            'efficiency': self.efficiency
        }


@dataclass
class DispatchResult:
    """Result reported by the push gateway."""
    sent: int
    failed: int
    failed_user_ids: List[str] = field(default_factory=list)


@dataclass
class NotificationOutcome:
    """Summary of one notification fan-out."""
    notified_user_ids: List[str] = field(default_factory=list)
    match_counts: Dict[str, int] = field(default_factory=dict)
    ledger_rows_written: int = 0
    suppressed: int = 0
