# Waypoint & Geofence Validator
# File: geofence_validator.py

"""
Mission-authoring validation: turns a drawn mission area into an ordered
waypoint list and checks it against no-fly zones and permit areas.

Near-boundary warnings are advisory. Conflicts block commit.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import config
import geometry
from geometry import GeometryParseError
from models import MissionAreaDraft, Point, Waypoint

logger = logging.getLogger(__name__)

NO_FLY_REASON = "Mission area intersects a no-fly zone"
NO_PERMIT_REASON = "No permit area defined"


class MissionValidationError(Exception):
    """Blocking validation failure for a mission draft"""

    def __init__(self, reason: str, drone_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.drone_id = drone_id

    def to_dict(self) -> Dict[str, Any]:
        return {'reason': self.reason, 'drone_id': self.drone_id}


# ============================================================================
# WAYPOINT GENERATION
# ============================================================================

def waypoints_from_ring(ring: Sequence[Point],
                        previous: Optional[Sequence[Waypoint]] = None) -> List[Waypoint]:
    """
    Strip the closing point and index the remaining vertices 0..n-1.

    Altitude, speed and action are carried over from the previous waypoint
    at the same index, otherwise defaulted.
    """
    previous = list(previous or [])
    waypoints = []

    for index, (lon, lat) in enumerate(geometry.open_ring(ring)):
        prior = previous[index] if index < len(previous) else None
        if prior is not None:
            waypoints.append(Waypoint(
                seq_number=index,
                lon=lon,
                lat=lat,
                altitude_m=prior.altitude_m,
                speed_mps=prior.speed_mps,
                action=prior.action,
            ))
        else:
            waypoints.append(Waypoint(seq_number=index, lon=lon, lat=lat))

    return waypoints


# ============================================================================
# DRAFT VALIDATION
# ============================================================================

def validate_draft(ring: Sequence[Sequence[float]],
                   previous_waypoints: Optional[Sequence[Waypoint]],
                   no_fly_zones: Any,
                   permit_areas: Any,
                   drone_id: Optional[str] = None,
                   near_boundary_m: float = config.NEAR_BOUNDARY_METERS) -> MissionAreaDraft:
    """
    Validate a drawn mission area.

    Args:
        ring: Drawn polygon ring, open or closed, as (lon, lat) points
        previous_waypoints: Waypoints of the previous revision of this area
        no_fly_zones: Polygon set of forbidden airspace
        permit_areas: Polygon set of authorized airspace
        drone_id: Drone assigned to the area, if one is selected

    Returns:
        MissionAreaDraft with the closed ring, regenerated waypoints,
        conflict flag and reasons, and near-boundary warnings
    """
    try:
        closed = geometry.close_ring(ring or [])
    except (TypeError, ValueError, IndexError) as e:
        logger.warning(f"Ignoring malformed mission ring for {drone_id}: {e}")
        closed = []

    waypoints = waypoints_from_ring(closed, previous_waypoints)
    reasons = []

    if geometry.polygons_intersect(closed, no_fly_zones):
        reasons.append(NO_FLY_REASON)

    permit_rings = list(geometry.iter_exterior_rings(permit_areas))
    no_permit_defined = not permit_rings
    near_boundary = []

    if no_permit_defined:
        # Fails closed: with no permit every waypoint is outside
        if waypoints:
            reasons.append(NO_PERMIT_REASON)
    else:
        outside = [
            wp.seq_number for wp in waypoints
            if not geometry.point_in_polygon((wp.lon, wp.lat), permit_areas)
        ]
        if outside:
            reasons.append(
                "Waypoints outside permitted area: " + ", ".join(str(s) for s in outside)
            )

        near_boundary = [
            wp.seq_number for wp in waypoints
            if geometry.point_near_boundary((wp.lon, wp.lat), permit_areas, near_boundary_m)
        ]

    draft = MissionAreaDraft(
        drone_id=drone_id,
        ring=closed,
        waypoints=waypoints,
        has_conflict=bool(reasons),
        conflict_reasons=reasons,
        near_boundary=near_boundary,
        no_permit_defined=no_permit_defined,
    )

    if draft.has_conflict:
        logger.info(f"Mission area for {drone_id} has conflicts: {reasons}")

    return draft


def summarize_draft(draft: MissionAreaDraft) -> Dict[str, Any]:
    """Validation result in the issues/warnings form shown to operators"""
    issues = list(draft.conflict_reasons)
    if not draft.waypoints:
        issues.append("Mission area has no waypoints")

    warnings = [
        f"Waypoint {seq} is within {config.NEAR_BOUNDARY_METERS:.0f}m of the permit boundary"
        for seq in draft.near_boundary
    ]

    return {
        'valid': len(issues) == 0,
        'issues': issues,
        'warnings': warnings,
        'no_permit_defined': draft.no_permit_defined,
        'waypoint_count': len(draft.waypoints),
    }


# ============================================================================
# COMMIT
# ============================================================================

def _numeric(value: Any, field_name: str, waypoint: Waypoint, drone_id: Optional[str]) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = math.nan
    if math.isnan(number) or math.isinf(number):
        raise MissionValidationError(
            f"Waypoint {waypoint.seq_number} has invalid {field_name}: {value!r}",
            drone_id,
        )
    return number


def commit_draft(draft: MissionAreaDraft) -> Dict[str, Any]:
    """
    Check a draft for commit and build the mission-drone record.

    Raises:
        MissionValidationError: if the draft has no waypoints, no drone,
            a conflict, or non-numeric waypoint metadata
    """
    drone_id = draft.drone_id

    if not draft.waypoints:
        raise MissionValidationError("Mission area has no waypoints", drone_id)

    if not drone_id:
        raise MissionValidationError("No drone selected for mission area", drone_id)

    if draft.has_conflict:
        if draft.no_permit_defined:
            reason = NO_PERMIT_REASON
        else:
            reason = "; ".join(draft.conflict_reasons) or "Mission area has conflicts"
        raise MissionValidationError(reason, drone_id)

    records = []
    for wp in draft.waypoints:
        if not wp.has_position:
            raise MissionValidationError(f"Waypoint {wp.seq_number} has no position", drone_id)

        committed = Waypoint(
            seq_number=wp.seq_number,
            lon=wp.lon,
            lat=wp.lat,
            altitude_m=_numeric(wp.altitude_m, 'altitude', wp, drone_id),
            speed_mps=_numeric(wp.speed_mps, 'speed', wp, drone_id),
            action=(wp.action or '').strip() or config.WAYPOINT_DEFAULTS['action'],
        )
        records.append(committed.to_record())

    logger.info(f"Committed mission area for {drone_id} with {len(records)} waypoints")

    return {'droneId': drone_id, 'waypoints': records}


def commit_drafts(drafts: Sequence[MissionAreaDraft]) -> List[Dict[str, Any]]:
    """Commit all drafts of a mission; any failing draft rejects the whole set"""
    if not drafts:
        raise MissionValidationError("Mission has no mission areas")
    return [commit_draft(draft) for draft in drafts]


# ============================================================================
# DRAFTS FROM STORED MISSIONS
# ============================================================================

def waypoints_from_records(records: Sequence[Dict[str, Any]]) -> List[Waypoint]:
    """
    Parse stored waypoint records, ordered by sequence number.

    Records whose geo point cannot be parsed keep their metadata with no
    position.
    """
    def seq_of(record):
        try:
            return int(record.get('seqNumber', record.get('seq_number', 0)))
        except (TypeError, ValueError):
            return 0

    waypoints = []
    for record in sorted(records or [], key=seq_of):
        raw_point = record.get('geoPoint', record.get('geo_point'))
        try:
            lon, lat = geometry.parse_point(raw_point)
        except GeometryParseError as e:
            logger.warning(f"Waypoint {seq_of(record)} has malformed geo point: {e}")
            lon, lat = None, None

        waypoints.append(Waypoint(
            seq_number=seq_of(record),
            lon=lon,
            lat=lat,
            altitude_m=record.get('altitudeM', record.get('altitude_m', config.WAYPOINT_DEFAULTS['altitude_m'])),
            speed_mps=record.get('speedMps', record.get('speed_mps', config.WAYPOINT_DEFAULTS['speed_mps'])),
            action=record.get('action') or config.WAYPOINT_DEFAULTS['action'],
        ))

    return waypoints


def draft_from_mission_record(record: Dict[str, Any], no_fly_zones: Any,
                              permit_areas: Any) -> MissionAreaDraft:
    """Rebuild an editable draft from a stored mission-drone record"""
    drone_id = record.get('droneId', record.get('drone_id'))
    stored = [wp for wp in waypoints_from_records(record.get('waypoints', [])) if wp.has_position]
    ring = [(wp.lon, wp.lat) for wp in stored]

    return validate_draft(ring, stored, no_fly_zones, permit_areas, drone_id=drone_id)
