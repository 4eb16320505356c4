# Mission Progress Estimator
# File: mission_progress.py

"""
In-flight mission progress from waypoint geometry and current position.

This is a nearest-waypoint projection, not a path-constrained one: it can
under- or over-estimate when the drone strays far from the planned route,
and the estimate can move backwards when the drone revisits an earlier
waypoint. Both are known approximations.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import config
from drone_state import DroneStateStore
from geofence_validator import waypoints_from_records
from models import Mission, MissionStatus, Point, Waypoint

logger = logging.getLogger(__name__)


def _distance_deg(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def _position_of(waypoint: Waypoint) -> Optional[Point]:
    if not waypoint.has_position:
        return None
    try:
        lon, lat = float(waypoint.lon), float(waypoint.lat)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return None
    return (lon, lat)


def ordered_waypoints(waypoints: Sequence[Waypoint]) -> List[Waypoint]:
    """Waypoints sorted by sequence number; stored order is not trusted"""
    return sorted(waypoints, key=lambda wp: wp.seq_number)


def estimate_progress(position: Optional[Point], waypoints: Sequence[Waypoint]) -> float:
    """
    Estimate completion of a drone's route.

    Args:
        position: Current (lon, lat) of the drone
        waypoints: The drone's waypoints in any order

    Returns:
        Progress in percent, 0-100
    """
    if position is None or not waypoints:
        return 0.0

    ordered = ordered_waypoints(waypoints)
    total = len(ordered)
    last = total - 1

    nearest_index = None
    nearest_distance = math.inf

    for index, waypoint in enumerate(ordered):
        point = _position_of(waypoint)
        if point is None:
            continue
        distance = _distance_deg(position, point)
        if distance < nearest_distance:
            nearest_index = index
            nearest_distance = distance

    if nearest_index is None:
        return 0.0

    if nearest_index == last:
        if nearest_distance < config.PROGRESS_EPSILON_DEG:
            return 100.0
        return (nearest_index / total) * 100

    current = _position_of(ordered[nearest_index])
    following = _position_of(ordered[nearest_index + 1])
    if following is None:
        return (nearest_index / total) * 100

    segment = _distance_deg(current, following)
    if segment == 0:
        ratio = 0.0
    else:
        ratio = max(0.0, min(1.0, nearest_distance / segment))

    return ((nearest_index + ratio) / total) * 100


# ============================================================================
# MISSIONS
# ============================================================================

def mission_from_record(record: Dict[str, Any]) -> Mission:
    """
    Parse a stored mission with its per-drone waypoint lists.

    Expected shape: {id, missionName, status, drones: [{droneId, waypoints: [...]}]}
    """
    raw_status = str(record.get('status') or MissionStatus.PLANNED.value).lower()
    try:
        status = MissionStatus(raw_status)
    except ValueError:
        logger.warning(f"Unknown mission status {raw_status!r}, treating as planned")
        status = MissionStatus.PLANNED

    drone_waypoints = {}
    for entry in record.get('drones') or record.get('missionDrones') or []:
        drone_id = entry.get('droneId', entry.get('drone_id'))
        if drone_id is None:
            continue
        drone_waypoints[str(drone_id)] = waypoints_from_records(entry.get('waypoints', []))

    return Mission(
        id=str(record.get('id')),
        status=status,
        drone_waypoints=drone_waypoints,
        name=record.get('missionName', record.get('name')),
    )


def mission_progress_for(mission: Mission, store: DroneStateStore) -> Dict[str, Optional[float]]:
    """
    Progress of every drone assigned to a mission.

    Drones without live state report None.
    """
    progress = {}
    for drone_id, waypoints in mission.drone_waypoints.items():
        state = store.get(drone_id)
        if state is None or not state.has_fix:
            progress[drone_id] = None
            continue
        progress[drone_id] = estimate_progress(state.position, waypoints)
    return progress


def overall_progress(progress: Dict[str, Optional[float]]) -> float:
    """Mean progress over drones with a known position"""
    known = [p for p in progress.values() if p is not None]
    if not known:
        return 0.0
    return sum(known) / len(known)
