# Geometry Kernel
# File: geometry.py

"""
Pure geometry functions used by mission authoring and progress estimation.

Points are (lon, lat) pairs in degrees. A polygon set is a GeoJSON-style
FeatureCollection of simple polygons (a plain list of features is accepted
too). Only exterior rings take part in the tests.

Distances use a local planar approximation around the query point, which
is fine at city scale but not near the poles or across the antimeridian.

Raw geometries from collaborators come either as structured GeoJSON or as
well-known text; both are normalized through shapely.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from shapely import make_valid
from shapely import wkt as shapely_wkt
from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Polygon, shape
from shapely.geometry.base import BaseGeometry

import config
from models import Point

logger = logging.getLogger(__name__)

Ring = List[Point]


class GeometryParseError(ValueError):
    """Raised when a raw geometry value cannot be turned into a geometry"""


# ============================================================================
# GEOMETRY PARSING
# ============================================================================

@dataclass(frozen=True)
class StructuredGeometry:
    """GeoJSON geometry object, e.g. {'type': 'Point', 'coordinates': [lon, lat]}"""
    data: Dict[str, Any]


@dataclass(frozen=True)
class WellKnownText:
    """WKT geometry string, e.g. 'POINT(106.66 10.76)'"""
    text: str


Geometry = Union[StructuredGeometry, WellKnownText]


def classify_geometry(raw: Any) -> Geometry:
    """
    Tag a raw geometry value as structured or well-known text.

    Strings that look like JSON are decoded first; if decoding fails the
    string is treated as WKT.
    """
    if isinstance(raw, (StructuredGeometry, WellKnownText)):
        return raw

    if isinstance(raw, dict):
        return StructuredGeometry(raw)

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            raise GeometryParseError("empty geometry string")
        if text.startswith('{') or text.startswith('['):
            try:
                decoded = json.loads(text)
            except ValueError:
                return WellKnownText(text)
            if isinstance(decoded, dict):
                return StructuredGeometry(decoded)
            raise GeometryParseError(f"unsupported JSON geometry: {text[:60]}")
        return WellKnownText(text)

    raise GeometryParseError(f"unsupported geometry value of type {type(raw).__name__}")


def parse_geometry(raw: Any) -> BaseGeometry:
    """Parse a raw geometry value into a shapely geometry"""
    tagged = classify_geometry(raw)

    try:
        if isinstance(tagged, StructuredGeometry):
            geom = shape(tagged.data)
        else:
            geom = shapely_wkt.loads(tagged.text)
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError) as e:
        raise GeometryParseError(f"invalid geometry {tagged!r}: {e}") from e

    if geom.is_empty:
        raise GeometryParseError(f"empty geometry {tagged!r}")

    return geom


def parse_point(raw: Any) -> Point:
    """Parse a raw point geometry into (lon, lat)"""
    geom = parse_geometry(raw)
    if geom.geom_type != 'Point':
        raise GeometryParseError(f"expected Point, got {geom.geom_type}")
    return (float(geom.x), float(geom.y))


def point_to_wkt(point: Point) -> str:
    lon, lat = point
    return f"POINT({lon} {lat})"


def polygon_set_from_records(records: Iterable[Dict[str, Any]],
                             geometry_key: str = 'geometry',
                             id_key: str = 'id',
                             name_key: str = 'name') -> Dict[str, Any]:
    """
    Build a polygon set from collaborator records.

    Unparseable, non-polygonal or self-intersecting geometries are logged
    and skipped; the remaining records are still returned.
    """
    features = []

    for record in records:
        record_id = record.get(id_key)
        try:
            geom = parse_geometry(record.get(geometry_key))
        except GeometryParseError as e:
            logger.warning(f"Skipping zone {record_id}: {e}")
            continue

        if isinstance(geom, Polygon):
            polygons = [geom]
        elif isinstance(geom, MultiPolygon):
            polygons = list(geom.geoms)
        else:
            logger.warning(f"Skipping zone {record_id}: {geom.geom_type} is not a polygon")
            continue

        if not geom.is_valid:
            logger.warning(f"Skipping zone {record_id}: polygon is not simple")
            continue

        for polygon in polygons:
            ring = [[float(c[0]), float(c[1])] for c in polygon.exterior.coords]
            features.append({
                'type': 'Feature',
                'geometry': {'type': 'Polygon', 'coordinates': [ring]},
                'properties': {'id': record_id, 'name': record.get(name_key)},
            })

    return {'type': 'FeatureCollection', 'features': features}


# ============================================================================
# RINGS & FEATURE COLLECTIONS
# ============================================================================

def close_ring(ring: Sequence[Sequence[float]]) -> Ring:
    """Append a copy of the first point if the ring is open. Idempotent."""
    points = [(float(p[0]), float(p[1])) for p in ring]
    if not points:
        return points
    if points[0] != points[-1]:
        points.append(points[0])
    return points


def open_ring(ring: Sequence[Sequence[float]]) -> Ring:
    """Strip the closing point of a closed ring"""
    points = close_ring(ring)
    return points[:-1] if points else points


def feature_collection_from_ring(ring: Sequence[Sequence[float]]) -> Dict[str, Any]:
    closed = close_ring(ring)
    features = []
    if closed:
        features.append({
            'type': 'Feature',
            'geometry': {'type': 'Polygon', 'coordinates': [[list(p) for p in closed]]},
            'properties': {},
        })
    return {'type': 'FeatureCollection', 'features': features}


def ring_from_feature_collection(fc: Optional[Dict[str, Any]]) -> Ring:
    """Exterior ring of the first polygon feature, or an empty ring"""
    for ring in iter_exterior_rings(fc):
        return ring
    return []


def iter_exterior_rings(polygon_set: Any) -> Iterator[Ring]:
    """Yield the closed exterior ring of every well-formed polygon in the set"""
    if not polygon_set:
        return

    if isinstance(polygon_set, dict):
        if polygon_set.get('type') == 'FeatureCollection':
            items = polygon_set.get('features') or []
        else:
            items = [polygon_set]
    else:
        items = polygon_set

    for item in items:
        if not isinstance(item, dict):
            continue
        geom = item.get('geometry') if item.get('type') == 'Feature' else item
        if not isinstance(geom, dict):
            continue

        try:
            if geom.get('type') == 'Polygon':
                polygons = [geom['coordinates']]
            elif geom.get('type') == 'MultiPolygon':
                polygons = geom['coordinates']
            else:
                continue

            for coordinates in polygons:
                ring = close_ring(coordinates[0])
                if len(ring) >= 4:
                    yield ring
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed polygon: {e}")


# ============================================================================
# PREDICATES
# ============================================================================

def point_in_ring(point: Point, ring: Sequence[Point]) -> bool:
    """Ray casting (even-odd) test against a single ring"""
    x, y = point
    n = len(ring)
    if n < 3:
        return False
    inside = False

    p1x, p1y = ring[0]
    for i in range(1, n + 1):
        p2x, p2y = ring[i % n]
        if y > min(p1y, p2y):
            if y <= max(p1y, p2y):
                if x <= max(p1x, p2x):
                    if p1y != p2y:
                        xinters = (y - p1y) * (p2x - p1x) / (p2y - p1y) + p1x
                    if p1x == p2x or x <= xinters:
                        inside = not inside
        p1x, p1y = p2x, p2y

    return inside


def point_in_polygon(point: Point, polygon_set: Any) -> bool:
    """True iff the point lies inside at least one polygon of the set"""
    try:
        query = (float(point[0]), float(point[1]))
    except (TypeError, ValueError, IndexError):
        return False

    return any(point_in_ring(query, ring) for ring in iter_exterior_rings(polygon_set))


def planar_distance_m(a: Point, b: Point) -> float:
    """Local equirectangular distance in meters"""
    mean_lat = math.radians((a[1] + b[1]) / 2)
    dx = (b[0] - a[0]) * config.METERS_PER_DEGREE * math.cos(mean_lat)
    dy = (b[1] - a[1]) * config.METERS_PER_DEGREE
    return math.hypot(dx, dy)


def point_to_segment_distance_m(point: Point, p1: Point, p2: Point) -> float:
    """Distance from point to segment p1-p2, projected around the point"""
    scale_x = config.METERS_PER_DEGREE * math.cos(math.radians(point[1]))
    scale_y = config.METERS_PER_DEGREE

    ax, ay = (p1[0] - point[0]) * scale_x, (p1[1] - point[1]) * scale_y
    bx, by = (p2[0] - point[0]) * scale_x, (p2[1] - point[1]) * scale_y

    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return math.hypot(ax, ay)

    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    return math.hypot(ax + t * dx, ay + t * dy)


def distance_to_boundary_m(point: Point, polygon_set: Any) -> Optional[float]:
    """Minimum distance to any boundary edge of the set, None for an empty set"""
    min_distance = None

    for ring in iter_exterior_rings(polygon_set):
        for i in range(len(ring) - 1):
            distance = point_to_segment_distance_m(point, ring[i], ring[i + 1])
            if min_distance is None or distance < min_distance:
                min_distance = distance

    return min_distance


def point_near_boundary(point: Point, polygon_set: Any,
                        threshold_m: float = config.NEAR_BOUNDARY_METERS) -> bool:
    try:
        query = (float(point[0]), float(point[1]))
    except (TypeError, ValueError, IndexError):
        return False

    distance = distance_to_boundary_m(query, polygon_set)
    return distance is not None and distance < threshold_m


def _as_polygon(ring: Sequence[Point]) -> BaseGeometry:
    polygon = Polygon(ring)
    if not polygon.is_valid:
        # bow-ties and zero-area slivers still cover their edges
        polygon = make_valid(polygon)
    return polygon


def polygons_intersect(ring: Sequence[Sequence[float]], polygon_set: Any) -> bool:
    """True iff the ring's interior or boundary overlaps any polygon of the set"""
    try:
        subject = close_ring(ring)
    except (TypeError, ValueError, IndexError):
        return False

    if len(set(subject)) < 3:
        return False

    subject_polygon = _as_polygon(subject)
    for other in iter_exterior_rings(polygon_set):
        if len(set(other)) < 3:
            continue
        if subject_polygon.intersects(_as_polygon(other)):
            return True
    return False
