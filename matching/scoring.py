"""Match compatibility scoring."""
import math

MAX_DISTANCE_POINTS = 50
MAX_TIME_POINTS = 50
TIME_POINTS_PER_HOUR = 20


def score(distance_km: float, overlap_minutes: float, max_radius_km: float) -> int:
    """
    Score a match from 0 to 100.

    Half of the points reward proximity relative to the search radius, the
    other half reward overlap length at 20 points per hour.

    Args:
        distance_km: Precise distance between the two events
        overlap_minutes: Length of the shared window
        max_radius_km: Larger of the two event radii

    Returns:
        Integer score in [0, 100]
    """
    if max_radius_km > 0:
        distance_points = MAX_DISTANCE_POINTS * max(0.0, 1 - distance_km / max_radius_km)
    else:
        # Zero radius means "this exact point only"
        distance_points = MAX_DISTANCE_POINTS if distance_km == 0 else 0

    time_points = min(MAX_TIME_POINTS, max(0.0, overlap_minutes) / 60 * TIME_POINTS_PER_HOUR)

    total = int(math.floor(distance_points + time_points + 0.5))
    return max(0, min(100, total))
