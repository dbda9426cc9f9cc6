"""Validation of events before they enter match computation."""
import logging
import math
from datetime import datetime
from typing import List, Optional

from matching.errors import InputError
from matching.models import Event, LOCATION_ONLINE, LOCATION_PHYSICAL

logger = logging.getLogger(__name__)


class EventValidator:
    """Drops events that cannot be matched, one at a time."""

    VALID_LOCATION_TYPES = (LOCATION_ONLINE, LOCATION_PHYSICAL)

    def validate_events(self, events: List[Event],
                        now: Optional[datetime] = None) -> List[Event]:
        """
        Return the events that are safe to match.

        Malformed events are logged and skipped; they never abort the batch.

        Args:
            events: Events loaded from the store
            now: If given, events that ended before this moment are dropped

        Returns:
            List of valid, non-expired events
        """
        valid_events = []

        for event in events:
            try:
                self.validate(event)
            except InputError as e:
                logger.warning(f"Skipping event '{event.event_id}': {e}")
                continue

            if now is not None and event.end_time < now:
                logger.debug(f"Skipping expired event '{event.event_id}'")
                continue

            valid_events.append(event)

        if len(valid_events) != len(events):
            logger.info(
                f"Validated {len(valid_events)} usable events out of "
                f"{len(events)} total events"
            )
        return valid_events

    def validate(self, event: Event) -> None:
        """
        Check a single event.

        Raises:
            InputError: If the event is malformed
        """
        if not event.event_id:
            raise InputError("missing event_id")

        if not event.user_id:
            raise InputError("missing user_id")

        if event.start_time >= event.end_time:
            raise InputError(
                f"start_time {event.start_time.isoformat()} is not before "
                f"end_time {event.end_time.isoformat()}"
            )

        if event.location_type not in self.VALID_LOCATION_TYPES:
            raise InputError(f"unknown location_type '{event.location_type}'")

        if event.radius_km is None or event.radius_km < 0:
            raise InputError(f"invalid radius_km {event.radius_km}")

        if event.is_physical:
            self._validate_coordinates(event)

    def _validate_coordinates(self, event: Event) -> None:
        if event.latitude is None or event.longitude is None:
            raise InputError("physical event without coordinates")

        if math.isnan(event.latitude) or math.isnan(event.longitude):
            raise InputError("physical event with NaN coordinates")

        if not -90 <= event.latitude <= 90:
            raise InputError(f"latitude {event.latitude} out of range")

        if not -180 <= event.longitude <= 180:
            raise InputError(f"longitude {event.longitude} out of range")
