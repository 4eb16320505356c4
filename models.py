# Live Operations Data Models
# File: models.py

"""
Data model shared by the live operations core: telemetry snapshots,
per-drone live state with bounded history, waypoints, mission drafts
and missions.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

import config

# (lon, lat) in degrees
Point = Tuple[float, float]


class DroneStatus(str, Enum):
    AVAILABLE = "available"
    IN_MISSION = "in_mission"
    FLYING = "flying"
    HOVERING = "hovering"
    LANDING = "landing"
    MAINTENANCE = "maintenance"
    DECOMMISSIONED = "decommissioned"


class MissionStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# BOUNDED BUFFERS
# ============================================================================

class RingBuffer:
    """Fixed-capacity circular buffer, oldest item overwritten when full"""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: List[Any] = [None] * capacity
        self._start = 0
        self._size = 0

    def append(self, item: Any):
        end = (self._start + self._size) % self.capacity
        self._items[end] = item
        if self._size < self.capacity:
            self._size += 1
        else:
            self._start = (self._start + 1) % self.capacity

    def clear(self):
        self._items = [None] * self.capacity
        self._start = 0
        self._size = 0

    def last(self) -> Any:
        if not self._size:
            return None
        return self._items[(self._start + self._size - 1) % self.capacity]

    def to_list(self) -> List[Any]:
        return list(self)

    def __iter__(self) -> Iterator[Any]:
        for offset in range(self._size):
            yield self._items[(self._start + offset) % self.capacity]

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self.capacity}, items={self.to_list()!r})"


@dataclass(frozen=True)
class HistorySample:
    time: float   # ms since epoch
    value: float


# ============================================================================
# TELEMETRY & LIVE STATE
# ============================================================================

@dataclass(frozen=True)
class Telemetry:
    """One position/state report from a drone, immutable per message"""
    drone_id: str
    lat: float
    lon: float
    timestamp: float  # ms since epoch
    altitude: Optional[float] = None  # meters
    heading: Optional[float] = None   # degrees
    speed: Optional[float] = None     # m/s
    battery: Optional[float] = None   # percent


@dataclass
class DroneLiveState:
    """Current snapshot plus bounded history for one drone"""
    telemetry: Telemetry
    status: Optional[DroneStatus] = None
    name: Optional[str] = None
    has_fix: bool = True  # False while only the roster placeholder position is known
    path: RingBuffer = field(default_factory=lambda: RingBuffer(config.PATH_CAPACITY))
    battery_history: RingBuffer = field(default_factory=lambda: RingBuffer(config.HISTORY_CAPACITY))
    altitude_history: RingBuffer = field(default_factory=lambda: RingBuffer(config.HISTORY_CAPACITY))
    speed_history: RingBuffer = field(default_factory=lambda: RingBuffer(config.HISTORY_CAPACITY))

    @property
    def drone_id(self) -> str:
        return self.telemetry.drone_id

    @property
    def position(self) -> Point:
        return (self.telemetry.lon, self.telemetry.lat)

    def to_dict(self, active: bool = False) -> Dict[str, Any]:
        t = self.telemetry
        return {
            'drone_id': t.drone_id,
            'name': self.name,
            'status': self.status.value if self.status else None,
            'active': active,
            'has_fix': self.has_fix,
            'lat': t.lat,
            'lon': t.lon,
            'altitude': t.altitude,
            'heading': t.heading,
            'speed': t.speed,
            'battery': t.battery,
            'timestamp': t.timestamp,
            'path': [list(p) for p in self.path],
            'battery_history': [{'time': s.time, 'value': s.value} for s in self.battery_history],
            'altitude_history': [{'time': s.time, 'value': s.value} for s in self.altitude_history],
            'speed_history': [{'time': s.time, 'value': s.value} for s in self.speed_history],
        }


# ============================================================================
# MISSIONS
# ============================================================================

@dataclass
class Waypoint:
    seq_number: int
    lon: Optional[float]
    lat: Optional[float]
    altitude_m: float = config.WAYPOINT_DEFAULTS['altitude_m']
    speed_mps: float = config.WAYPOINT_DEFAULTS['speed_mps']
    action: str = config.WAYPOINT_DEFAULTS['action']

    @property
    def has_position(self) -> bool:
        return self.lon is not None and self.lat is not None

    def to_record(self) -> Dict[str, Any]:
        """Serialize in the fleet API's mission waypoint format"""
        return {
            'seqNumber': self.seq_number,
            'geoPoint': json.dumps({'type': 'Point', 'coordinates': [self.lon, self.lat]}),
            'altitudeM': self.altitude_m,
            'speedMps': self.speed_mps,
            'action': self.action,
        }


@dataclass
class MissionAreaDraft:
    """One drone's planned polygon with its derived waypoints"""
    drone_id: Optional[str]
    ring: List[Point]
    waypoints: List[Waypoint]
    has_conflict: bool = False
    conflict_reasons: List[str] = field(default_factory=list)
    near_boundary: List[int] = field(default_factory=list)  # seq numbers within the warning buffer
    no_permit_defined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'drone_id': self.drone_id,
            'ring': [list(p) for p in self.ring],
            'waypoints': [
                {
                    'seq_number': wp.seq_number,
                    'lon': wp.lon,
                    'lat': wp.lat,
                    'altitude_m': wp.altitude_m,
                    'speed_mps': wp.speed_mps,
                    'action': wp.action,
                }
                for wp in self.waypoints
            ],
            'has_conflict': self.has_conflict,
            'conflict_reasons': list(self.conflict_reasons),
            'near_boundary': list(self.near_boundary),
            'no_permit_defined': self.no_permit_defined,
        }


@dataclass
class Mission:
    id: str
    status: MissionStatus
    drone_waypoints: Dict[str, List[Waypoint]] = field(default_factory=dict)
    name: Optional[str] = None
