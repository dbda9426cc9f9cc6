"""Cheap pre-filter that prunes event pairs before exact matching."""
import logging
from typing import List, Optional

from matching.geo import rough_distance
from matching.models import Event
from matching.overlap import has_overlap

logger = logging.getLogger(__name__)

REJECT_TIME = 'time'
REJECT_LOCATION_TYPE = 'location_type'
REJECT_DISTANCE = 'distance'


class CandidateFilter:
    """
    Pre-filter for candidate event pairs.

    The filter may keep pairs that the exact check later rejects, but must
    never drop a pair the exact check would accept. The flat-earth estimate
    can overstate the great-circle distance nearly twofold near the
    poles; the padded limit absorbs that only while the larger radius stays
    within LONG_RANGE_RADIUS_KM, so wider pairs skip the distance check.
    """

    SEARCH_PADDING_KM = 50.0
    RADIUS_SLACK = 1.5
    LONG_RANGE_RADIUS_KM = 100.0

    def __init__(self, search_padding_km: float = SEARCH_PADDING_KM,
                 radius_slack: float = RADIUS_SLACK):
        self.search_padding_km = search_padding_km
        self.radius_slack = radius_slack

    def rejection_reason(self, source: Event, candidate: Event) -> Optional[str]:
        """
        Explain why a pair is dropped.

        Args:
            source: Event being matched
            candidate: Possible partner event

        Returns:
            One of 'time', 'location_type', 'distance', or None if kept
        """
        if not has_overlap(source.start_time, source.end_time,
                           candidate.start_time, candidate.end_time):
            return REJECT_TIME

        if source.location_type != candidate.location_type:
            return REJECT_LOCATION_TYPE

        if source.is_online:
            return None

        if max(source.radius_km, candidate.radius_km) > self.LONG_RANGE_RADIUS_KM:
            return None

        distance = rough_distance(
            source.latitude, source.longitude,
            candidate.latitude, candidate.longitude
        )
        combined_radius = source.radius_km + candidate.radius_km
        limit = combined_radius * self.radius_slack + self.search_padding_km

        # NaN distances fail this comparison and are dropped
        if not distance <= limit:
            return REJECT_DISTANCE

        return None

    def accepts(self, source: Event, candidate: Event) -> bool:
        return self.rejection_reason(source, candidate) is None

    def filter_candidates(self, source: Event, candidates: List[Event]) -> List[Event]:
        """
        Keep the candidates that may match the source event.

        Args:
            source: Event being matched
            candidates: Friend events to compare against

        Returns:
            Reduced list of candidate events
        """
        kept = [c for c in candidates if self.accepts(source, c)]
        logger.debug(
            f"Candidate filter kept {len(kept)} of {len(candidates)} "
            f"events for '{source.event_id}'"
        )
        return kept
